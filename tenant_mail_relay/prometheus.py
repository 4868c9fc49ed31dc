"""Prometheus metrics exposed by the mail relay."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest

class MailMetrics:
    """Wrapper around the Prometheus registry used by the relay."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("relay_sent_total", "Total relayed emails", ["domain", "path"], registry=self.registry)
        self.errors = Counter("relay_errors_total", "Total failed delivery attempts", ["domain"], registry=self.registry)
        self.culled = Counter("relay_culled_total", "Total archive rows removed by the culler", registry=self.registry)
        self.queued = Gauge("relay_queue_messages", "Messages waiting in the delivery queue", registry=self.registry)
        self.archived = Gauge("relay_archive_messages", "Messages held in the archive", registry=self.registry)

    def inc_sent(self, domain: str, path: str = "queued"):
        """Increase the ``sent`` counter for a sender domain and delivery path."""
        self.sent.labels(domain=domain or "unknown", path=path).inc()

    def inc_error(self, domain: str):
        """Increase the ``errors`` counter for a sender domain."""
        self.errors.labels(domain=domain or "unknown").inc()

    def inc_culled(self, count: int):
        """Add ``count`` to the culled rows counter."""
        if count > 0:
            self.culled.inc(count)

    def set_queue_size(self, value: int):
        """Update the gauge tracking queued messages."""
        self.queued.set(value)

    def set_archive_size(self, value: int):
        """Update the gauge tracking archived messages."""
        self.archived.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
