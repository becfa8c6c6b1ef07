import os

from django.urls import include, path
from rest_framework.routers import DefaultRouter
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

from . import views


# Custom token views without throttling for tests
class TestTokenObtainPairView(TokenObtainPairView):
    throttle_classes = []


class TestTokenRefreshView(TokenRefreshView):
    throttle_classes = []


# Use non-throttled views during tests
if os.environ.get("PYTEST_CURRENT_TEST"):
    TokenObtainView = TestTokenObtainPairView
    TokenRefView = TestTokenRefreshView
else:
    TokenObtainView = TokenObtainPairView
    TokenRefView = TokenRefreshView


class OptionalSlashRouter(DefaultRouter):
    """Accept routes with or without the trailing slash."""

    def __init__(self):
        super().__init__()
        self.trailing_slash = "/?"


router = OptionalSlashRouter()
router.register(r"surveys", views.SurveyViewSet, basename="survey")
router.register(r"notifications", views.NotificationViewSet, basename="notification")
router.register(r"departments", views.DepartmentViewSet, basename="department")
router.register(r"employees", views.EmployeeViewSet, basename="employee")

urlpatterns = [
    path("health", views.healthcheck, name="healthcheck"),
    path("token", TokenObtainView.as_view(), name="token_obtain_pair"),
    path("token/refresh", TokenRefView.as_view(), name="token_refresh"),
    # Public consent and participation endpoints
    path("consent/<str:token>", views.consent_detail, name="consent-detail"),
    path("participate/token", views.participate_with_token, name="participate-token"),
    path(
        "participate/anonymous/<str:anonymous_token>",
        views.anonymous_survey,
        name="participate-anonymous",
    ),
    path("attempts/<str:attempt_ref>", views.attempt_detail, name="attempt-detail"),
    path(
        "attempts/<str:attempt_ref>/responses",
        views.attempt_responses,
        name="attempt-responses",
    ),
    path(
        "attempts/<str:attempt_ref>/responses/bulk",
        views.attempt_responses_bulk,
        name="attempt-responses-bulk",
    ),
    path(
        "attempts/<str:attempt_ref>/complete",
        views.attempt_complete,
        name="attempt-complete",
    ),
    path("", include(router.urls)),
]
