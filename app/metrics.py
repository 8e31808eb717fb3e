from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)

WEBHOOKS_RECEIVED = Counter(
    "stackpipe_webhooks_received_total",
    "Webhook deliveries by provider and outcome",
    ["provider", "outcome"],
)
BUILDS_TOTAL = Counter(
    "stackpipe_builds_total",
    "Finished builds by final deployment status",
    ["status"],
)
BUILD_DURATION = Histogram(
    "stackpipe_build_duration_seconds",
    "Wall-clock duration of finished builds",
    ["status"],
    buckets=(5, 15, 30, 60, 120, 300, 600, 1200, 1800, 3600, 7200),
)
BUILD_QUEUE_DEPTH = Gauge(
    "stackpipe_build_queue_depth",
    "Builds waiting in this process's queue",
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)


def observe_build(status: str, duration: float) -> None:
    BUILDS_TOTAL.labels(status=status).inc()
    BUILD_DURATION.labels(status=status).observe(duration)


def observe_webhook(provider: str, outcome: str) -> None:
    WEBHOOKS_RECEIVED.labels(provider=provider, outcome=outcome).inc()
