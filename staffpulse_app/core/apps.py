from django.apps import AppConfig


class CoreConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "staffpulse_app.core"
    label = "core"
    verbose_name = "Organisation"
