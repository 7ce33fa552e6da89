from prometheus_client import Counter, Histogram

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
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP 5xx responses",
    ["method", "path", "status"],
)

INVOICES_CREATED = Counter(
    "billing_invoices_created_total",
    "Invoices created",
    ["invoice_type"],
)
PAYMENT_ATTEMPTS = Counter(
    "billing_payment_attempts_total",
    "Payment attempts by method and outcome",
    ["method", "status"],
)
REFUNDS = Counter(
    "billing_refunds_total",
    "Refund attempts by outcome",
    ["status"],
)
STATUS_TRANSITIONS = Counter(
    "billing_invoice_status_transitions_total",
    "Invoice status transitions",
    ["from_status", "to_status"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)
