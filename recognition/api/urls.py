from django.urls import include, path

from rest_framework.routers import DefaultRouter

from .views import (
    AttendanceRecordViewSet,
    CaptureSessionViewSet,
    LoginView,
    LogoutView,
    StudentViewSet,
    SubjectViewSet,
)

router = DefaultRouter()
router.register(r"subjects", SubjectViewSet, basename="subject")
router.register(r"students", StudentViewSet, basename="student")
router.register(r"attendance-records", AttendanceRecordViewSet, basename="attendance-record")
router.register(r"capture-session", CaptureSessionViewSet, basename="capture-session")

urlpatterns = [
    # Auth endpoints
    path("auth/login/", LoginView.as_view(), name="api-login"),
    path("auth/logout/", LogoutView.as_view(), name="api-logout"),
    # Router endpoints
    path("", include(router.urls)),
]
