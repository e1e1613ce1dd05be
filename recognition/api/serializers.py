import base64
import binascii

from django.conf import settings

from rest_framework import serializers

from classroom.analytics import record_summary
from classroom.models import AttendanceEntry, AttendanceRecord, Student, Subject


class SubjectSerializer(serializers.ModelSerializer):
    """Serializer for subjects visible to the requesting user."""

    professor = serializers.SerializerMethodField()
    enrolled_count = serializers.SerializerMethodField()

    class Meta:
        model = Subject
        fields = ["id", "name", "code", "department", "professor", "enrolled_count"]

    def get_professor(self, obj):
        return obj.professor.get_username() if obj.professor else None

    def get_enrolled_count(self, obj):
        annotated = getattr(obj, "enrolled_count", None)
        return annotated if annotated is not None else obj.enrollments.count()


class StudentSerializer(serializers.ModelSerializer):
    has_template = serializers.BooleanField(read_only=True)

    class Meta:
        model = Student
        fields = ["id", "name", "roll_number", "email", "department", "has_template", "template_updated_at"]
        read_only_fields = ["template_updated_at"]


class AttendanceEntrySerializer(serializers.ModelSerializer):
    student_id = serializers.IntegerField(source="student.id", read_only=True)
    name = serializers.CharField(source="student.name", read_only=True)
    roll_number = serializers.CharField(source="student.roll_number", read_only=True)

    class Meta:
        model = AttendanceEntry
        fields = ["student_id", "name", "roll_number", "status"]


class AttendanceRecordSerializer(serializers.ModelSerializer):
    """Serializer for stored attendance records with their summary."""

    subject = SubjectSerializer(read_only=True)
    marked_by = serializers.SerializerMethodField()
    summary = serializers.SerializerMethodField()

    class Meta:
        model = AttendanceRecord
        fields = ["id", "subject", "date", "marked_by", "created_at", "summary"]

    def get_marked_by(self, obj):
        return obj.marked_by.get_username() if obj.marked_by else None

    def get_summary(self, obj):
        return record_summary(obj).as_dict()


class AttendanceRecordDetailSerializer(AttendanceRecordSerializer):
    entries = AttendanceEntrySerializer(many=True, read_only=True)

    class Meta(AttendanceRecordSerializer.Meta):
        fields = AttendanceRecordSerializer.Meta.fields + ["entries"]


class Base64ImageField(serializers.CharField):
    """Accept a base64 (or data URL) encoded image and return the clean base64 text."""

    def to_internal_value(self, data):
        value = super().to_internal_value(data).strip()
        if value.startswith("data:"):
            _, _, value = value.partition(",")

        max_size = int(getattr(settings, "RECOGNITION_MAX_UPLOAD_SIZE", 5 * 1024 * 1024))
        # base64 is ~4/3 larger than the decoded payload
        if len(value) > max_size * 1.4:
            raise serializers.ValidationError("Image payload exceeds maximum allowed size.")

        try:
            decoded = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise serializers.ValidationError("Invalid base64-encoded image payload supplied.") from exc
        if not decoded:
            raise serializers.ValidationError("Image payload is empty.")
        if len(decoded) > max_size:
            raise serializers.ValidationError(
                f"Decoded image size {len(decoded)} bytes exceeds maximum allowed size of {max_size} bytes."
            )
        return value


class TemplateEnrollmentSerializer(serializers.Serializer):
    image = Base64ImageField(help_text="Base64 encoded photo of the student")


class SelectSubjectSerializer(serializers.Serializer):
    subject = serializers.IntegerField()
    date = serializers.DateField(required=False)


class StatsSerializer(serializers.Serializer):
    """Serializer for dashboard statistics."""

    total_subjects = serializers.IntegerField()
    total_enrollments = serializers.IntegerField()
    total_sessions = serializers.IntegerField()
    average_attendance = serializers.IntegerField()
