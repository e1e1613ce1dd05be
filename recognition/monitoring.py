"""Prometheus metrics for the camera, the face model and capture sessions."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


def _build_metrics() -> None:
    global REGISTRY
    global CAMERA_START_COUNTER
    global CAMERA_STOP_COUNTER
    global CAMERA_RUNNING_GAUGE
    global MODEL_LOAD_LATENCY
    global SESSION_TRANSITION_COUNTER
    global DISCARDED_RESULT_COUNTER
    global MATCHING_LATENCY
    global PERSISTENCE_COUNTER
    global ACTIVE_SESSIONS_GAUGE

    REGISTRY = CollectorRegistry(auto_describe=True)

    CAMERA_START_COUNTER = Counter(
        "capture_camera_start",
        "Total camera start attempts",
        labelnames=("status",),
        registry=REGISTRY,
    )
    CAMERA_STOP_COUNTER = Counter(
        "capture_camera_stop",
        "Total camera shutdown attempts",
        labelnames=("status",),
        registry=REGISTRY,
    )
    CAMERA_RUNNING_GAUGE = Gauge(
        "capture_camera_running",
        "Whether the shared camera stream is running",
        registry=REGISTRY,
    )
    MODEL_LOAD_LATENCY = Histogram(
        "capture_model_load_seconds",
        "Face model load time in seconds",
        buckets=(0.5, 1.0, 2.0, 4.0, 8.0, 16.0, 32.0),
        registry=REGISTRY,
    )
    SESSION_TRANSITION_COUNTER = Counter(
        "capture_session_transition",
        "Capture session state transitions",
        labelnames=("source", "target"),
        registry=REGISTRY,
    )
    DISCARDED_RESULT_COUNTER = Counter(
        "capture_session_discarded_result",
        "Asynchronous results dropped because the session moved on",
        labelnames=("stage",),
        registry=REGISTRY,
    )
    MATCHING_LATENCY = Histogram(
        "capture_matching_seconds",
        "Time spent extracting and matching faces for one photo",
        buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
        registry=REGISTRY,
    )
    PERSISTENCE_COUNTER = Counter(
        "capture_persistence",
        "Attendance save attempts",
        labelnames=("status",),
        registry=REGISTRY,
    )
    ACTIVE_SESSIONS_GAUGE = Gauge(
        "capture_active_sessions",
        "Capture sessions held by the registry",
        registry=REGISTRY,
    )


_build_metrics()


def reset_for_tests() -> None:
    """Rebuild every metric on a fresh registry (intended for test suites)."""

    _build_metrics()


def metric_value(name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
    """Return the current value of a sample from the private registry."""

    labels = labels or {}
    sample = REGISTRY.get_sample_value(name, labels)
    if sample is None and not name.endswith("_total"):
        sample = REGISTRY.get_sample_value(f"{name}_total", labels)
    return sample


def record_camera_start(success: bool, latency: Optional[float] = None) -> None:
    status = "success" if success else "failure"
    CAMERA_START_COUNTER.labels(status=status).inc()
    CAMERA_RUNNING_GAUGE.set(1 if success else 0)
    logger.info(
        "Camera start %s",
        status,
        extra={"event": "camera_start", "status": status, "latency_seconds": latency},
    )


def record_camera_stop(success: bool) -> None:
    status = "success" if success else "failure"
    CAMERA_STOP_COUNTER.labels(status=status).inc()
    CAMERA_RUNNING_GAUGE.set(0)


def record_model_load(latency: float) -> None:
    MODEL_LOAD_LATENCY.observe(latency)


def record_transition(source: str, target: str) -> None:
    SESSION_TRANSITION_COUNTER.labels(source=source, target=target).inc()


def record_discarded_result(stage: str) -> None:
    DISCARDED_RESULT_COUNTER.labels(stage=stage).inc()


def observe_matching(duration: float) -> None:
    MATCHING_LATENCY.observe(duration)


def record_persistence(success: bool) -> None:
    PERSISTENCE_COUNTER.labels(status="success" if success else "failure").inc()


def set_active_sessions(count: int) -> None:
    ACTIVE_SESSIONS_GAUGE.set(count)


def export_metrics() -> bytes:
    """Serialise the Prometheus metrics registry."""

    return generate_latest(REGISTRY)


def prometheus_content_type() -> str:
    return CONTENT_TYPE_LATEST


__all__ = [
    "export_metrics",
    "metric_value",
    "observe_matching",
    "prometheus_content_type",
    "record_camera_start",
    "record_camera_stop",
    "record_discarded_result",
    "record_model_load",
    "record_persistence",
    "record_transition",
    "reset_for_tests",
    "set_active_sessions",
]
