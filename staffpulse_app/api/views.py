from typing import Any

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.validators import validate_ipv46_address
from django.db import transaction
from django.db.models import Q
from django.shortcuts import get_object_or_404
from django.utils import timezone
from rest_framework import mixins, permissions, serializers, status, viewsets
from rest_framework.decorators import (
    action,
    api_view,
    permission_classes,
    throttle_classes,
)
from rest_framework.response import Response

from staffpulse_app.core.models import Department, EmployeeProfile
from staffpulse_app.surveys import reports
from staffpulse_app.surveys.access_tokens import AccessTokenRegistry
from staffpulse_app.surveys.attempts import AttemptTracker, ParticipantIdentity
from staffpulse_app.surveys.consent import ConsentLedger
from staffpulse_app.surveys.errors import InvalidInput, StateConflict
from staffpulse_app.surveys.lifecycle import SurveyLifecycle
from staffpulse_app.surveys.models import (
    AccessToken,
    ConsentRecord,
    Notification,
    Question,
    Survey,
)
from staffpulse_app.surveys.notifications import (
    NotificationDispatcher,
    survey_notifications,
)
from staffpulse_app.surveys.permissions import (
    can_manage_survey,
    can_view_survey,
    is_survey_admin,
    require_admin,
)
from staffpulse_app.surveys.responses import ResponseStore
from staffpulse_app.surveys.tokens import get_token_generator

User = get_user_model()


def client_meta(request) -> dict[str, Any]:
    forwarded = request.META.get("HTTP_X_FORWARDED_FOR", "")
    ip = forwarded.split(",")[0].strip() or request.META.get("REMOTE_ADDR")
    try:
        validate_ipv46_address(ip)
    except ValidationError:
        ip = None
    return {"ip_address": ip, "user_agent": request.META.get("HTTP_USER_AGENT", "")}


def services() -> dict[str, Any]:
    """Workflow services sharing one token generator and dispatcher."""
    tokens = get_token_generator()
    dispatcher = NotificationDispatcher()
    registry = AccessTokenRegistry(tokens=tokens, dispatcher=dispatcher)
    consent = ConsentLedger(tokens=tokens, dispatcher=dispatcher)
    return {
        "lifecycle": SurveyLifecycle(
            tokens=tokens, dispatcher=dispatcher, consent=consent, registry=registry
        ),
        "consent": consent,
        "registry": registry,
        "dispatcher": dispatcher,
        "attempts": AttemptTracker(tokens=tokens, registry=registry),
        "responses": ResponseStore(tokens=tokens),
    }


# -------------------- serializers --------------------


class QuestionSerializer(serializers.ModelSerializer):
    class Meta:
        model = Question
        fields = ["id", "text", "options", "parameter", "order"]


class SurveySerializer(serializers.ModelSerializer):
    department = serializers.SlugRelatedField(slug_field="code", read_only=True)
    current_status = serializers.SerializerMethodField()
    consent_deadline = serializers.DateTimeField(read_only=True)
    question_count = serializers.SerializerMethodField()

    class Meta:
        model = Survey
        fields = [
            "id",
            "name",
            "description",
            "publish_date",
            "duration_days",
            "end_date",
            "consent_deadline",
            "department",
            "target_employees",
            "created_by",
            "status",
            "current_status",
            "question_count",
            "consent_email_sent",
            "survey_email_sent",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_current_status(self, obj: Survey) -> str:
        return obj.current_status()

    def get_question_count(self, obj: Survey) -> int:
        return obj.questions.count()

    def to_representation(self, instance: Survey) -> dict[str, Any]:
        data = super().to_representation(instance)
        request = self.context.get("request")
        if request is not None and can_manage_survey(request.user, instance):
            data["anonymous_link"] = f"/participate/anonymous/{instance.anonymous_token}"
        return data


class ConsentDecisionSerializer(serializers.Serializer):
    consent_given = serializers.BooleanField()


class TokenGenerateSerializer(serializers.Serializer):
    employees = serializers.ListField(child=serializers.DictField(), allow_empty=False)
    expiration_days = serializers.IntegerField(
        required=False, allow_null=True, min_value=1
    )


class AccessTokenSerializer(serializers.ModelSerializer):
    class Meta:
        model = AccessToken
        fields = [
            "token",
            "employee_email",
            "employee_name",
            "status",
            "expires_at",
            "access_count",
            "last_accessed_at",
            "email_sent",
            "used_at",
            "created_at",
        ]


class NotificationSerializer(serializers.ModelSerializer):
    class Meta:
        model = Notification
        fields = [
            "id",
            "type",
            "survey",
            "title",
            "message",
            "priority",
            "read",
            "read_at",
            "delivery_status",
            "created_at",
        ]
        read_only_fields = fields


class DepartmentSerializer(serializers.ModelSerializer):
    parent = serializers.SlugRelatedField(
        slug_field="code",
        queryset=Department.objects.all(),
        required=False,
        allow_null=True,
    )
    employee_count = serializers.SerializerMethodField()

    class Meta:
        model = Department
        fields = [
            "id",
            "code",
            "name",
            "description",
            "parent",
            "is_active",
            "employee_count",
        ]

    def get_employee_count(self, obj: Department) -> int:
        return obj.members.count()

    def validate_parent(self, value):
        node = value
        while node is not None and self.instance is not None:
            if node.pk == self.instance.pk:
                raise serializers.ValidationError(
                    "A department cannot be nested inside itself."
                )
            node = node.parent
        return value


class EmployeeSerializer(serializers.ModelSerializer):
    role = serializers.CharField(source="profile.role", read_only=True, default=None)
    department = serializers.CharField(
        source="profile.department.code", read_only=True, default=None
    )
    manager = serializers.IntegerField(
        source="profile.manager_id", read_only=True, default=None
    )

    class Meta:
        model = User
        fields = [
            "id",
            "username",
            "email",
            "first_name",
            "last_name",
            "role",
            "department",
            "manager",
        ]


def attempt_payload(attempt, questions=None, resumed=False) -> dict[str, Any]:
    data = {
        "attempt_id": str(attempt.submission_id),
        "survey_id": attempt.survey_id,
        "identified": attempt.is_identified,
        "anonymous": attempt.anonymous,
        "resumed": resumed,
        "started_at": attempt.started_at,
        "completed": attempt.completed,
        "completed_at": attempt.completed_at,
    }
    if questions is not None:
        data["questions"] = QuestionSerializer(questions, many=True).data
    return data


# -------------------- permissions --------------------


class SurveyAccessPermission(permissions.BasePermission):
    """SAFE methods require can_view_survey; unsafe ones can_manage_survey."""

    def has_object_permission(self, request, view, obj):
        if request.method in permissions.SAFE_METHODS:
            return can_view_survey(request.user, obj)
        return can_manage_survey(request.user, obj)


class SurveyViewerPermission(permissions.BasePermission):
    def has_object_permission(self, request, view, obj):
        return can_view_survey(request.user, obj)


class SurveyManagerPermission(permissions.BasePermission):
    def has_object_permission(self, request, view, obj):
        return can_manage_survey(request.user, obj)


class AdminOrReadOnlyPermission(permissions.BasePermission):
    def has_permission(self, request, view):
        if request.method in permissions.SAFE_METHODS:
            return True
        return is_survey_admin(request.user)


# -------------------- surveys --------------------


class SurveyViewSet(viewsets.ModelViewSet):
    serializer_class = SurveySerializer
    permission_classes = [permissions.IsAuthenticated, SurveyAccessPermission]

    def get_queryset(self):
        user = self.request.user
        qs = Survey.objects.select_related("department")
        if is_survey_admin(user):
            return qs
        return qs.filter(
            Q(created_by=user)
            | Q(pk__in=ConsentRecord.objects.filter(user=user).values("survey_id"))
            | Q(target_employees=user)
        ).distinct()

    def get_object(self):
        """Fetch without scoping to the queryset, then check permissions.

        Authenticated users get 403 rather than 404 for surveys that exist
        but that they may not see.
        """
        lookup_url_kwarg = self.lookup_url_kwarg or self.lookup_field
        obj = get_object_or_404(
            Survey.objects.select_related("department"),
            **{self.lookup_field: self.kwargs.get(lookup_url_kwarg)},
        )
        self.check_object_permissions(self.request, obj)
        return obj

    def create(self, request, *args, **kwargs):
        result = services()["lifecycle"].create_survey(request.user, request.data)
        data = {
            "survey": SurveySerializer(
                result.pop("survey"), context=self.get_serializer_context()
            ).data,
            "consent_process": result,
        }
        return Response(data, status=status.HTTP_201_CREATED)

    def update(self, request, *args, **kwargs):
        survey = self.get_object()
        data = {key: request.data.get(key) for key in request.data}
        survey = services()["lifecycle"].update_survey(request.user, survey, data)
        return Response(self.get_serializer(survey).data)

    def perform_destroy(self, instance):
        services()["lifecycle"].delete_survey(self.request.user, instance)

    @action(detail=True, methods=["put", "post"], url_path="status")
    def change_status(self, request, pk=None):
        """Explicit workflow transition (administrators only)."""
        survey = self.get_object()
        survey = services()["lifecycle"].advance_status(
            request.user, survey, request.data.get("status")
        )
        return Response(self.get_serializer(survey).data)

    @action(detail=False, methods=["post"])
    def reconcile(self, request):
        require_admin(request.user)
        return Response(services()["lifecycle"].reconcile_statuses())

    @action(detail=False, methods=["get"])
    def upcoming(self, request):
        """Surveys still collecting consent, soonest first."""
        surveys = self.get_queryset().filter(
            publish_date__gt=timezone.now(),
            status__in=[Survey.Status.DRAFT, Survey.Status.PENDING_CONSENT],
        ).order_by("publish_date")
        return Response(self.get_serializer(surveys, many=True).data)

    @action(detail=False, methods=["get"])
    def active(self, request):
        """Open surveys, closing soonest first."""
        now = timezone.now()
        surveys = self.get_queryset().filter(
            publish_date__lte=now, end_date__gte=now, status=Survey.Status.ACTIVE
        ).order_by("end_date")
        return Response(self.get_serializer(surveys, many=True).data)

    # ---- questions ----

    @action(detail=True, methods=["get", "post"])
    def questions(self, request, pk=None):
        survey = self.get_object()
        if request.method.lower() == "get":
            return Response(QuestionSerializer(survey.questions.all(), many=True).data)
        payload = request.data
        items = payload if isinstance(payload, list) else payload.get("questions", [])
        created = services()["lifecycle"].add_questions(request.user, survey, items)
        return Response(
            {
                "created": len(created),
                "questions": QuestionSerializer(created, many=True).data,
            },
            status=status.HTTP_201_CREATED,
        )

    @action(
        detail=True,
        methods=["patch", "delete"],
        url_path=r"questions/(?P<question_id>\d+)",
    )
    def question_detail(self, request, pk=None, question_id=None):
        survey = self.get_object()
        lifecycle = services()["lifecycle"]
        if request.method.lower() == "delete":
            lifecycle.delete_question(request.user, survey, question_id)
            return Response(status=status.HTTP_204_NO_CONTENT)
        question = lifecycle.update_question(
            request.user, survey, question_id, request.data
        )
        return Response(QuestionSerializer(question).data)

    # ---- consent ----

    @action(
        detail=True,
        methods=["get"],
        permission_classes=[permissions.IsAuthenticated, SurveyManagerPermission],
    )
    def consent(self, request, pk=None):
        survey = self.get_object()
        summary = services()["consent"].status_for(survey).as_dict()
        records = survey.consent_records.select_related("user").order_by("user_id")
        summary["records"] = [
            {
                "user_id": r.user_id,
                "username": r.user.get_username(),
                "consent_given": r.consent_given,
                "decided_at": r.decided_at,
                "email_sent": r.email_sent,
            }
            for r in records
        ]
        return Response(summary)

    @action(
        detail=True,
        methods=["post"],
        url_path="consent/regenerate",
        permission_classes=[permissions.IsAuthenticated, SurveyManagerPermission],
    )
    def regenerate_consent(self, request, pk=None):
        survey = self.get_object()
        return Response(services()["consent"].regenerate(request.user, survey))

    @action(detail=True, methods=["get"], url_path="consent/me")
    def my_consent(self, request, pk=None):
        survey = self.get_object()
        record = services()["consent"].consent_for(request.user, survey)
        if record is None:
            return Response(
                {"code": "not_found", "detail": "No consent request for this survey."},
                status=status.HTTP_404_NOT_FOUND,
            )
        return Response(
            {
                "consent_given": record.consent_given,
                "decided_at": record.decided_at,
                "deadline": survey.consent_deadline,
                "can_decide": record.consent_given is None
                and survey.is_consent_open(),
                "consent_token": record.consent_token,
            }
        )

    # ---- access tokens ----

    @action(
        detail=True,
        methods=["get", "post"],
        permission_classes=[permissions.IsAuthenticated, SurveyManagerPermission],
    )
    def tokens(self, request, pk=None):
        """List or generate single-use access tokens."""
        survey = self.get_object()
        if request.method.lower() == "get":
            tokens = survey.access_tokens.order_by("-created_at")[:500]
            data = AccessTokenSerializer(tokens, many=True).data
            return Response({"items": data, "count": len(data)})
        ser = TokenGenerateSerializer(data=request.data)
        if not ser.is_valid():
            raise InvalidInput(
                "invalid_employees", "Provide a list of employees.", errors=ser.errors
            )
        result = services()["registry"].generate(
            request.user,
            survey,
            ser.validated_data["employees"],
            ser.validated_data.get("expiration_days"),
        )
        return self._token_result(result)

    def _token_result(self, result):
        body = {
            "created": len(result["tokens"]),
            "tokens": AccessTokenSerializer(result["tokens"], many=True).data,
            "errors": result["errors"],
        }
        code = status.HTTP_201_CREATED if result["tokens"] else status.HTTP_400_BAD_REQUEST
        return Response(body, status=code)

    @action(
        detail=True,
        methods=["post"],
        url_path="tokens/targets",
        permission_classes=[permissions.IsAuthenticated, SurveyManagerPermission],
    )
    def target_tokens(self, request, pk=None):
        survey = self.get_object()
        result = services()["registry"].generate_for_targets(
            request.user, survey, request.data.get("expiration_days")
        )
        return self._token_result(result)

    @action(
        detail=True,
        methods=["post"],
        url_path="tokens/send",
        permission_classes=[permissions.IsAuthenticated, SurveyManagerPermission],
    )
    def invitations(self, request, pk=None):
        survey = self.get_object()
        return Response(services()["registry"].send_invitations(request.user, survey))

    @action(
        detail=True,
        methods=["delete"],
        url_path=r"tokens/(?P<token>(?!(?:send|targets)(?:/|$))[^/.]+)",
        permission_classes=[permissions.IsAuthenticated, SurveyManagerPermission],
    )
    def token_detail(self, request, pk=None, token=None):
        survey = self.get_object()
        services()["registry"].revoke(request.user, survey, token)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(
        detail=True,
        methods=["get"],
        url_path=r"tokens/(?P<token>[^/.]+)/validate",
        permission_classes=[permissions.AllowAny],
    )
    def validate_token(self, request, pk=None, token=None):
        check = services()["registry"].validate(pk, token, **client_meta(request))
        data = check.as_dict()
        if check.valid:
            data["survey"] = {
                "id": check.token.survey_id,
                "name": check.token.survey.name,
                "end_date": check.token.survey.end_date,
            }
            data["employee_name"] = check.token.employee_name
        return Response(data)

    # ---- participation ----

    @action(
        detail=True,
        methods=["post"],
        permission_classes=[permissions.IsAuthenticated, SurveyViewerPermission],
    )
    def attempts(self, request, pk=None):
        """Start (or resume) the caller's own attempt."""
        survey = self.get_object()
        identity = ParticipantIdentity.for_user(request.user, **client_meta(request))
        result = services()["attempts"].start(survey.pk, identity)
        return Response(
            attempt_payload(result.attempt, result.questions, result.resumed),
            status=status.HTTP_200_OK if result.resumed else status.HTTP_201_CREATED,
        )

    @action(
        detail=True,
        methods=["post"],
        permission_classes=[permissions.IsAuthenticated, SurveyManagerPermission],
    )
    def notify(self, request, pk=None):
        survey = self.get_object()
        return Response(
            services()["dispatcher"].notify_survey_available(request.user, survey)
        )

    @action(
        detail=True,
        methods=["post"],
        url_path="send-to-departments",
        permission_classes=[permissions.IsAuthenticated, SurveyManagerPermission],
    )
    def send_to_departments(self, request, pk=None):
        """Email personal links to staff of further departments."""
        survey = self.get_object()
        result = services()["registry"].send_to_departments(
            request.user,
            survey,
            request.data.get("departments"),
            request.data.get("employees"),
        )
        return Response(result)

    # ---- reporting ----

    @action(
        detail=True,
        methods=["get"],
        permission_classes=[permissions.IsAuthenticated, SurveyManagerPermission],
    )
    def report(self, request, pk=None):
        survey = self.get_object()
        return Response(reports.survey_report(request.user, survey))

    @action(
        detail=True,
        methods=["get"],
        permission_classes=[permissions.IsAuthenticated, SurveyManagerPermission],
    )
    def participation(self, request, pk=None):
        survey = self.get_object()
        return Response(reports.participation(survey))

    @action(
        detail=True,
        methods=["get"],
        permission_classes=[permissions.IsAuthenticated, SurveyManagerPermission],
    )
    def responses(self, request, pk=None):
        survey = self.get_object()
        return Response(reports.survey_responses(request.user, survey))

    @action(
        detail=True,
        methods=["get"],
        url_path="notifications",
        permission_classes=[permissions.IsAuthenticated, SurveyManagerPermission],
    )
    def notification_summary(self, request, pk=None):
        survey = self.get_object()
        return Response(survey_notifications(request.user, survey))

    @action(
        detail=True,
        methods=["get"],
        url_path=r"responses/users/(?P<user_id>\d+)",
        permission_classes=[permissions.IsAuthenticated],
    )
    def user_responses(self, request, pk=None, user_id=None):
        survey = get_object_or_404(Survey, pk=pk)
        subject = get_object_or_404(User, pk=user_id)
        return Response(reports.user_report(request.user, survey, subject))


# -------------------- public consent & participation --------------------


@api_view(["GET", "POST"])
@permission_classes([permissions.AllowAny])
def consent_detail(request, token):
    """GET describes a consent request; POST records the decision once."""
    ledger = services()["consent"]
    if request.method == "GET":
        info = ledger.verify(token)
        record = info.pop("record")
        info["survey"] = {
            "id": record.survey_id,
            "name": record.survey.name,
            "description": record.survey.description,
            "publish_date": record.survey.publish_date,
            "end_date": record.survey.end_date,
        }
        return Response(info)
    ser = ConsentDecisionSerializer(data=request.data)
    if not ser.is_valid():
        raise InvalidInput(
            "invalid_decision", "consent_given must be true or false.", errors=ser.errors
        )
    result = ledger.decide(token, ser.validated_data["consent_given"], **client_meta(request))
    return Response(result)


@api_view(["POST"])
@permission_classes([permissions.AllowAny])
def participate_with_token(request):
    """Start an attempt with a personal access token or an employee token."""
    survey_id = request.data.get("survey_id")
    if not survey_id:
        raise InvalidInput("missing_survey", "survey_id is required.")
    meta = client_meta(request)
    if request.data.get("token"):
        identity = ParticipantIdentity.for_access_token(request.data["token"], **meta)
    elif request.data.get("employee_token"):
        identity = ParticipantIdentity.for_employee_token(
            request.data["employee_token"], **meta
        )
    else:
        raise InvalidInput("missing_token", "A token or employee_token is required.")
    result = services()["attempts"].start(survey_id, identity)
    return Response(
        attempt_payload(result.attempt, result.questions, result.resumed),
        status=status.HTTP_200_OK if result.resumed else status.HTTP_201_CREATED,
    )


@api_view(["GET", "POST"])
@permission_classes([permissions.AllowAny])
def anonymous_survey(request, anonymous_token):
    """Fully anonymous link.

    GET returns the survey and its questions. POST starts an attempt; when
    the body carries ``responses`` the answers are saved and the attempt
    completed in one step, or nothing is kept.
    """
    survey = get_object_or_404(Survey, anonymous_token=anonymous_token)
    if request.method == "GET":
        return Response(
            {
                "id": survey.pk,
                "name": survey.name,
                "description": survey.description,
                "current_status": survey.current_status(),
                "end_date": survey.end_date,
                "questions": QuestionSerializer(survey.questions.all(), many=True).data,
            }
        )
    svc = services()
    identity = ParticipantIdentity.anonymous(**client_meta(request))
    items = request.data.get("responses")
    with transaction.atomic():
        result = svc["attempts"].start(survey.pk, identity)
        if not items:
            return Response(
                attempt_payload(result.attempt, result.questions),
                status=status.HTTP_201_CREATED,
            )
        saved = svc["responses"].submit_bulk(result.attempt, items)
        attempt = svc["attempts"].complete(result.attempt)
    payload = attempt_payload(attempt)
    payload["saved_count"] = saved
    return Response(payload, status=status.HTTP_201_CREATED)


@api_view(["GET"])
@permission_classes([permissions.AllowAny])
def attempt_detail(request, attempt_ref):
    tracker = services()["attempts"]
    attempt = tracker.get_attempt(attempt_ref, request.user)
    data = attempt_payload(attempt, attempt.survey.questions.all())
    data.update(tracker.progress(attempt))
    return Response(data)


@api_view(["POST"])
@permission_classes([permissions.AllowAny])
def attempt_responses(request, attempt_ref):
    """Save one answer for an open attempt."""
    svc = services()
    attempt = svc["attempts"].get_attempt(attempt_ref, request.user)
    question_id = request.data.get("question_id")
    option = request.data.get("selected_option", request.data.get("answer"))
    if question_id in (None, "") or option in (None, ""):
        raise InvalidInput(
            "missing_fields", "question_id and selected_option are required."
        )
    response = svc["responses"].submit(
        attempt.survey_id,
        question_id,
        attempt,
        option,
        idempotency_key=request.data.get("idempotency_key"),
    )
    return Response(
        {
            "question_id": response.question_id,
            "selected_option": response.selected_option,
            "submitted_at": response.submitted_at,
        },
        status=status.HTTP_201_CREATED,
    )


@api_view(["POST"])
@permission_classes([permissions.AllowAny])
def attempt_responses_bulk(request, attempt_ref):
    svc = services()
    attempt = svc["attempts"].get_attempt(attempt_ref, request.user)
    payload = request.data
    items = payload if isinstance(payload, list) else payload.get("responses")
    saved = svc["responses"].submit_bulk(attempt, items)
    return Response({"saved_count": saved})


@api_view(["POST"])
@permission_classes([permissions.AllowAny])
def attempt_complete(request, attempt_ref):
    attempt = services()["attempts"].complete(attempt_ref, request.user)
    return Response(
        {"attempt_id": str(attempt.submission_id), "completed_at": attempt.completed_at}
    )


# -------------------- notifications & directory --------------------


class NotificationViewSet(
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    mixins.DestroyModelMixin,
    viewsets.GenericViewSet,
):
    serializer_class = NotificationSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        qs = Notification.objects.filter(user=self.request.user)
        if self.request.query_params.get("unread") in ("1", "true"):
            qs = qs.filter(read=False)
        return qs

    @action(detail=True, methods=["post"])
    def read(self, request, pk=None):
        notification = self.get_object()
        if not notification.read:
            notification.read = True
            notification.read_at = timezone.now()
            notification.save(update_fields=["read", "read_at"])
        return Response(self.get_serializer(notification).data)

    @action(detail=False, methods=["post"], url_path="read-all")
    def read_all(self, request):
        updated = Notification.objects.filter(user=request.user, read=False).update(
            read=True, read_at=timezone.now()
        )
        return Response({"updated": updated})


class DepartmentViewSet(viewsets.ModelViewSet):
    """Everyone reads active departments; administrators manage them."""

    serializer_class = DepartmentSerializer
    permission_classes = [permissions.IsAuthenticated, AdminOrReadOnlyPermission]

    def get_queryset(self):
        qs = Department.objects.select_related("parent")
        if is_survey_admin(self.request.user):
            return qs
        return qs.filter(is_active=True)

    def _save(self, instance=None, partial=False):
        ser = self.get_serializer(instance, data=self.request.data, partial=partial)
        if not ser.is_valid():
            raise InvalidInput(
                "invalid_department", "Department failed validation.", errors=ser.errors
            )
        return ser.save()

    def create(self, request, *args, **kwargs):
        department = self._save()
        return Response(
            self.get_serializer(department).data, status=status.HTTP_201_CREATED
        )

    def update(self, request, *args, **kwargs):
        department = self._save(self.get_object(), partial=kwargs.get("partial", False))
        return Response(self.get_serializer(department).data)

    def perform_destroy(self, instance):
        if instance.members.exists() or instance.children.exists():
            raise StateConflict(
                "department_in_use",
                "Reassign the employees and sub-departments first.",
            )
        instance.delete()

    @action(detail=False, methods=["get"])
    def tree(self, request):
        return Response(Department.tree())

    @action(detail=True, methods=["get"])
    def employees(self, request, pk=None):
        require_admin(request.user)
        department = self.get_object()
        users = (
            User.objects.filter(profile__department=department)
            .select_related("profile__department")
            .order_by("username")
        )
        return Response(EmployeeSerializer(users, many=True).data)


class EmployeeViewSet(viewsets.ReadOnlyModelViewSet):
    """Directory for choosing survey targets; non-admins only see themselves."""

    serializer_class = EmployeeSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        user = self.request.user
        qs = User.objects.filter(is_active=True).select_related(
            "profile__department"
        ).order_by("username")
        if not is_survey_admin(user):
            return qs.filter(pk=user.pk)
        department = self.request.query_params.get("department")
        if department:
            qs = qs.filter(profile__department__code=department)
        role = self.request.query_params.get("role")
        if role in EmployeeProfile.Role.values:
            qs = qs.filter(profile__role=role)
        return qs


@api_view(["GET"])
@permission_classes([permissions.AllowAny])
@throttle_classes([])
def healthcheck(request):
    return Response({"status": "ok"})
