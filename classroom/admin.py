"""
Admin site configuration for the classroom app.

Subjects, students and attendance records are managed through the Django
admin. Face templates are never shown; only whether one exists.
"""

from django.contrib import admin

from .models import AttendanceEntry, AttendanceRecord, Student, Subject, SubjectEnrollment


class SubjectEnrollmentInline(admin.TabularInline):
    model = SubjectEnrollment
    extra = 0
    autocomplete_fields = ("student",)


@admin.register(Subject)
class SubjectAdmin(admin.ModelAdmin):
    list_display = ("code", "name", "department", "professor")
    list_filter = ("department",)
    search_fields = ("code", "name")
    inlines = [SubjectEnrollmentInline]


@admin.register(Student)
class StudentAdmin(admin.ModelAdmin):
    list_display = ("roll_number", "name", "department", "has_face_template", "template_updated_at")
    search_fields = ("roll_number", "name", "email")
    readonly_fields = ("template_updated_at",)

    @admin.display(boolean=True, description="Face template")
    def has_face_template(self, obj):
        return obj.has_template


class AttendanceEntryInline(admin.TabularInline):
    model = AttendanceEntry
    extra = 0
    readonly_fields = ("student", "status")
    can_delete = False


@admin.register(AttendanceRecord)
class AttendanceRecordAdmin(admin.ModelAdmin):
    list_display = ("subject", "date", "marked_by", "created_at")
    list_filter = ("date", "subject")
    readonly_fields = ("created_at",)
    inlines = [AttendanceEntryInline]
