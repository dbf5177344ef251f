"""Prometheus metric definitions for BeOut.

Single source of truth for all custom metrics. Import from here in API code.
"""

from prometheus_client import Counter, Histogram

# --- Login metrics ---

logins_total = Counter(
    "beout_logins_total",
    "Login attempts by provider, flow and outcome",
    ["provider", "flow", "outcome"],
)

provider_request_duration_seconds = Histogram(
    "beout_provider_request_duration_seconds",
    "Duration of calls to identity provider endpoints",
    ["provider", "endpoint"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# --- OAuth session store ---

oauth_sessions_total = Counter(
    "beout_oauth_sessions_total",
    "OAuth session store lifecycle events",
    ["event"],
)

users_created_total = Counter(
    "beout_users_created_total",
    "Users created or linked during social login",
    ["provider", "action"],
)
