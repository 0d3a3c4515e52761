"""Prometheus metrics for the cert-manager CSI operator."""

from prometheus_client import Counter, Histogram, start_http_server


class CsiOperatorMetrics:
    """Prometheus metrics collector for the cert-manager CSI operator."""

    def __init__(self):
        # Webhook metrics
        self.webhook_requests = Counter(
            "csi_operator_webhook_requests_total", "Total admission webhook requests", ["kind", "status"]
        )

        self.webhook_duration = Histogram(
            "csi_operator_webhook_duration_seconds",
            "Admission webhook handling time in seconds",
            ["kind"],
            buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1],
        )

        # Mutation metrics
        self.mutations_total = Counter(
            "csi_operator_mutations_total", "Workloads checked for mutation", ["kind", "managed"]
        )

        # Error metrics
        self.errors_total = Counter("csi_operator_errors_total", "Total operator errors", ["error_type", "component"])

        # Operator health metrics
        self.operator_restarts = Counter("csi_operator_restarts_total", "Total operator restarts")

    def record_webhook_request(self, kind: str, status: str, duration: float):
        """Record a handled admission request."""
        self.webhook_requests.labels(kind=kind, status=status).inc()
        self.webhook_duration.labels(kind=kind).observe(duration)

    def record_mutation(self, kind: str, managed: bool):
        """Record the managed decision for a workload."""
        self.mutations_total.labels(kind=kind, managed=str(managed).lower()).inc()

    def record_error(self, error_type: str, component: str):
        """Record operator error."""
        self.errors_total.labels(error_type=error_type, component=component).inc()

    def record_operator_restart(self):
        """Record operator restart."""
        self.operator_restarts.inc()

    def start_metrics_server(self, port: int = 8081):
        """Start Prometheus metrics HTTP server."""
        start_http_server(port)


# Global metrics instance
metrics = CsiOperatorMetrics()
