from django.contrib.auth import authenticate, login, logout
from django.db.models import Count
from django.shortcuts import get_object_or_404
from django.utils import timezone
from django.utils.dateparse import parse_date

from rest_framework import permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.response import Response
from rest_framework.views import APIView

from classroom.analytics import dashboard_stats, records_with_counts, visible_subjects
from classroom.models import AttendanceRecord, Student
from recognition.api.serializers import (
    AttendanceRecordDetailSerializer,
    AttendanceRecordSerializer,
    SelectSubjectSerializer,
    StatsSerializer,
    StudentSerializer,
    SubjectSerializer,
    TemplateEnrollmentSerializer,
)
from recognition.registry import get_session_registry
from recognition.session import InvalidTransition
from recognition.tasks import enroll_student_template


class LoginView(APIView):
    """Start a Django session from a username and password."""

    permission_classes = [permissions.AllowAny]

    def post(self, request):
        user = authenticate(
            request,
            username=request.data.get("username", ""),
            password=request.data.get("password", ""),
        )
        if user is None:
            return Response({"detail": "Invalid credentials."}, status=status.HTTP_401_UNAUTHORIZED)
        login(request, user)
        return Response({"username": user.get_username(), "is_staff": user.is_staff})


class LogoutView(APIView):
    """End the Django session; the user's capture session is discarded with it."""

    def post(self, request):
        logout(request)
        return Response(status=status.HTTP_204_NO_CONTENT)


class SubjectViewSet(viewsets.ReadOnlyModelViewSet):
    """
    Subjects visible to the requesting user.
    """

    serializer_class = SubjectSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        return (
            visible_subjects(self.request.user)
            .select_related("professor")
            .annotate(enrolled_count=Count("enrollments"))
        )

    @action(detail=True, methods=["get"])
    def roster(self, request, pk=None):
        subject = self.get_object()
        students = Student.objects.filter(enrollments__subject=subject).order_by("roll_number")
        return Response(StudentSerializer(students, many=True).data)


class StudentViewSet(viewsets.ReadOnlyModelViewSet):
    """
    Students enrolled in the requesting user's subjects (all students for staff).
    """

    serializer_class = StudentSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        user = self.request.user
        if user.is_staff:
            return Student.objects.all()
        return Student.objects.filter(enrollments__subject__professor=user).distinct()

    @action(
        detail=True,
        methods=["post"],
        url_path="template",
        permission_classes=[permissions.IsAdminUser],
    )
    def template(self, request, pk=None):
        """Compute and store the student's face template from a photo."""

        student = self.get_object()
        serializer = TemplateEnrollmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = enroll_student_template.delay(student.pk, serializer.validated_data["image"])
        if not result.ready():
            return Response(
                {"task_id": result.id, "student_id": student.pk, "status": "pending"},
                status=status.HTTP_202_ACCEPTED,
            )
        if result.failed():
            return Response(
                {"task_id": result.id, "student_id": student.pk, "status": "failed", "detail": str(result.result)},
                status=status.HTTP_422_UNPROCESSABLE_ENTITY,
            )

        payload = result.get()
        code = status.HTTP_200_OK if payload["status"] == "enrolled" else status.HTTP_422_UNPROCESSABLE_ENTITY
        return Response({"task_id": result.id, **payload}, status=code)


class AttendanceRecordViewSet(viewsets.ReadOnlyModelViewSet):
    """
    Stored attendance records, newest first, with their summaries.
    """

    permission_classes = [permissions.IsAuthenticated]

    def get_serializer_class(self):
        if self.action == "retrieve":
            return AttendanceRecordDetailSerializer
        return AttendanceRecordSerializer

    def get_queryset(self):
        records = AttendanceRecord.objects.filter(
            subject__in=visible_subjects(self.request.user)
        ).select_related("subject", "subject__professor", "marked_by")

        subject = self.request.query_params.get("subject")
        if subject:
            records = records.filter(subject_id=subject)

        raw_date = self.request.query_params.get("date")
        if raw_date:
            try:
                day = parse_date(raw_date)
            except ValueError:
                day = None
            if day is None:
                raise ValidationError({"date": "Use the YYYY-MM-DD format."})
            records = records.filter(date=day)

        if self.action == "retrieve":
            records = records.prefetch_related("entries__student")
        return records_with_counts(records)

    @action(detail=False, methods=["get"])
    def stats(self, request):
        """
        Dashboard statistics across the subjects visible to the user.
        """
        serializer = StatsSerializer(dashboard_stats(request.user))
        return Response(serializer.data)


class CaptureSessionViewSet(viewsets.ViewSet):
    """
    The requesting user's capture session.

    ``GET`` returns the current state; each action fires one session event
    and returns the resulting state. Events fired in a state that does not
    accept them are answered with ``409 Conflict``.
    """

    permission_classes = [permissions.IsAuthenticated]

    def _session(self, request):
        return get_session_registry().get(request.user.pk)

    def _fire(self, request, event, *args, **kwargs):
        session = self._session(request)
        try:
            outcome = getattr(session, event)(*args, **kwargs)
        except InvalidTransition as exc:
            return Response(
                {"detail": str(exc), **session.describe()}, status=status.HTTP_409_CONFLICT
            )
        # Matching and confirming continue in the background; poll for the result.
        code = status.HTTP_202_ACCEPTED if event in ("begin_matching", "confirm") and outcome else status.HTTP_200_OK
        return Response(session.describe(), status=code)

    def list(self, request):
        return Response(self._session(request).describe())

    @action(detail=False, methods=["post"], url_path="select-subject")
    def select_subject(self, request):
        serializer = SelectSubjectSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        subject = get_object_or_404(
            visible_subjects(request.user), pk=serializer.validated_data["subject"]
        )
        return self._fire(
            request,
            "select_subject",
            subject.pk,
            marked_by=request.user.pk,
            date=serializer.validated_data.get("date") or timezone.localdate(),
        )

    @action(detail=False, methods=["post"], url_path="start-capture")
    def start_capture(self, request):
        return self._fire(request, "start_capture")

    @action(detail=False, methods=["post"], url_path="cancel-capture")
    def cancel_capture(self, request):
        return self._fire(request, "cancel_capture")

    @action(detail=False, methods=["post"])
    def capture(self, request):
        return self._fire(request, "capture_image")

    @action(detail=False, methods=["post"])
    def match(self, request):
        return self._fire(request, "begin_matching")

    @action(detail=False, methods=["post"])
    def retake(self, request):
        return self._fire(request, "retake")

    @action(detail=False, methods=["post"])
    def confirm(self, request):
        return self._fire(request, "confirm")

    @action(detail=False, methods=["post"], url_path="start-over")
    def start_over(self, request):
        return self._fire(request, "start_over")
