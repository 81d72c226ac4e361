from prometheus_client import Counter, Histogram, Gauge

REQUEST_COUNT = Counter(
    "discount_requests_total",
    "Total protocol requests",
    ["request_type", "outcome"],
)
REQUEST_LATENCY = Histogram(
    "discount_request_duration_seconds",
    "Protocol request latency",
    ["request_type"],
)
OPEN_CONNECTIONS = Gauge(
    "discount_open_connections",
    "Client connections currently open",
)
CODES_GENERATED = Counter(
    "discount_codes_generated_total",
    "Discount codes generated",
)


def get_outcome_name(value) -> str:
    name = getattr(value, "name", None)
    if name:
        return name.lower()
    return str(value)
