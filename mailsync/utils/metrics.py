from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest

# Create a custom registry for better control
registry = CollectorRegistry()

# Define metrics
api_requests = Counter(
    'api_requests_total',
    'Total API requests',
    ['method', 'endpoint', 'status_code'],
    registry=registry
)

webhook_notifications = Counter(
    'email_webhook_notifications_total',
    'Inbound push notifications by provider and outcome',
    ['provider', 'outcome'],
    registry=registry
)

sync_jobs = Counter(
    'email_sync_jobs_total',
    'Sync jobs by final status',
    ['status'],
    registry=registry
)

sync_duration = Histogram(
    'email_sync_duration_seconds',
    'Time spent in one sync run',
    ['provider'],
    registry=registry
)

messages_ingested = Counter(
    'email_messages_ingested_total',
    'Newly stored message metadata records',
    ['provider'],
    registry=registry
)

subscription_renewals = Counter(
    'email_subscription_renewals_total',
    'Subscription renewal attempts by outcome',
    ['provider', 'outcome'],
    registry=registry
)

imap_monitors = Gauge(
    'email_imap_monitors_active',
    'Running IMAP monitors by mode',
    ['mode'],
    registry=registry
)


class MetricsCollector:
    """Helper class for collecting application metrics."""

    @staticmethod
    def increment_api_requests(method: str, endpoint: str, status_code: int):
        """Increment API request counter."""
        api_requests.labels(method=method, endpoint=endpoint, status_code=status_code).inc()

    @staticmethod
    def record_webhook(provider: str, outcome: str):
        webhook_notifications.labels(provider=provider, outcome=outcome).inc()

    @staticmethod
    def record_sync_job(status: str):
        sync_jobs.labels(status=status).inc()

    @staticmethod
    def record_sync_duration(provider: str, duration: float):
        sync_duration.labels(provider=provider).observe(duration)

    @staticmethod
    def record_messages_ingested(provider: str, count: int):
        if count:
            messages_ingested.labels(provider=provider).inc(count)

    @staticmethod
    def record_renewal(provider: str, outcome: str):
        subscription_renewals.labels(provider=provider, outcome=outcome).inc()

    @staticmethod
    def set_imap_monitors(mode: str, count: int):
        imap_monitors.labels(mode=mode).set(count)

    @staticmethod
    def export() -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(registry)
