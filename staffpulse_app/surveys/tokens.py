"""Opaque identifier generation.

Every random identifier in the survey workflow (consent tokens, access
tokens, anonymous ids, survey links) comes from one ``RandomTokenGenerator``
instance. Services accept a generator in their constructor; the default is
resolved from the ``STAFFPULSE_TOKEN_GENERATOR`` setting so tests can plug in
a deterministic one.
"""

from __future__ import annotations

import secrets
import uuid

from django.conf import settings
from django.utils.module_loading import import_string


class RandomTokenGenerator:
    def token_hex(self, nbytes: int = 32) -> str:
        return secrets.token_hex(nbytes)

    def token_urlsafe(self, nbytes: int = 24) -> str:
        return secrets.token_urlsafe(nbytes)

    def uuid(self) -> uuid.UUID:
        return uuid.uuid4()


def get_token_generator() -> RandomTokenGenerator:
    path = getattr(
        settings,
        "STAFFPULSE_TOKEN_GENERATOR",
        "staffpulse_app.surveys.tokens.RandomTokenGenerator",
    )
    return import_string(path)()
