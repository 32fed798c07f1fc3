"""
Prometheus Metrics for Observability

Tracks pipeline performance, job outcomes and HTTP traffic.
Exposes /api/v1/metrics endpoint for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_latency_seconds = Histogram(
    "pipeline_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# Total Pipeline Duration
pipeline_total_duration = Histogram(
    "pipeline_total_duration_seconds",
    "Total time for complete pipeline execution",
    labelnames=["status"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0]
)

# Jobs Counter
jobs_total = Counter(
    "imagelift_jobs_total",
    "Total number of enhancement jobs by terminal outcome",
    labelnames=["status", "failure_stage"]
)

jobs_submitted_total = Counter(
    "imagelift_jobs_submitted_total",
    "Total number of enhancement jobs submitted"
)

# Active Jobs
active_jobs_gauge = Gauge(
    "imagelift_active_jobs",
    "Number of currently processing jobs"
)

render_failures_total = Counter(
    "imagelift_render_failures_total",
    "Render stage failures by stage label and error code",
    labelnames=["stage", "error_code"]
)

source_releases_total = Counter(
    "imagelift_source_releases_total",
    "Deletions of uploaded source images",
    labelnames=["status"]
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "imagelift_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("4K"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        duration = time.time() - start
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(duration)


@contextmanager
def track_active_job():
    """Count a job as active for the duration of the block, however it ends."""
    active_jobs_gauge.inc()
    try:
        yield
    finally:
        active_jobs_gauge.dec()


def record_job_completion(status: str, failure_stage: str = "none", duration_seconds: float = None):
    """Record a job reaching a terminal state."""
    jobs_total.labels(status=status, failure_stage=failure_stage).inc()
    if duration_seconds is not None:
        pipeline_total_duration.labels(status=status).observe(duration_seconds)


def record_render_failure(stage: str, error_code: str):
    """Record a failed render stage."""
    render_failures_total.labels(stage=stage, error_code=error_code).inc()


def record_source_release(success: bool):
    """Record the outcome of deleting an uploaded source."""
    source_releases_total.labels(status="success" if success else "error").inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


# Initialize app info on module load
set_app_info(version="1.0.0", environment="development")
