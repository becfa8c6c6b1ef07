from rest_framework.response import Response
from rest_framework.views import exception_handler

from staffpulse_app.surveys.errors import SurveyWorkflowError


def workflow_exception_handler(exc, context):
    """Render survey workflow errors with their code; defer the rest to DRF."""
    if isinstance(exc, SurveyWorkflowError):
        return Response(exc.as_dict(), status=exc.status_code)
    return exception_handler(exc, context)
