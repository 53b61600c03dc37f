from prometheus_client import Counter, Histogram
# Prometheus metrics definitions

# AI chat requests by final status (ok, denied, failed, intent, refused)
ai_requests_total = Counter(
    "ai_requests_total", "Total AI chat requests", ["status"]
)

# Quota rejects by deny reason
quota_reject_total = Counter(
    "quota_reject_total", "Number of quota rejected requests", ["reason"]
)

# One sample per provider attempt inside a chain
provider_attempts_total = Counter(
    "provider_attempts_total",
    "Provider attempts by outcome",
    ["provider", "outcome"],
)

_provider_latency_buckets = (
    0.25,
    0.5,
    1.0,
    2.0,
    4.0,
    6.0,
    12.0,
    25.0,
)

provider_latency_seconds = Histogram(
    "provider_latency_seconds",
    "Provider call latency",
    ["provider"],
    buckets=_provider_latency_buckets,
)

# Usage increments and audit appends that failed after the reply was sent
background_write_fail_total = Counter(
    "background_write_fail_total",
    "Failed fire-and-forget writes",
    ["kind"],
)

# Eligibility checks that fell back to a zeroed record
quota_store_fail_open_total = Counter(
    "quota_store_fail_open_total",
    "Quota reads served from a zeroed record after a store failure",
)

__all__ = [
    "ai_requests_total",
    "quota_reject_total",
    "provider_attempts_total",
    "provider_latency_seconds",
    "background_write_fail_total",
    "quota_store_fail_open_total",
]
