from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Core counters / histograms
ANNOTATIONS_RECEIVED = Counter(
    "skema_annotations_received_total",
    "Annotations submitted to the store (including re-submissions)",
    ["kind"],
)

ANNOTATION_TRANSITIONS = Counter(
    "skema_annotation_transitions_total",
    "Lifecycle events applied to annotations",
    ["event"],
)

AGENT_RUNS = Counter(
    "skema_agent_runs_total",
    "Agent process runs by provider and outcome",
    ["provider", "outcome"],
)

AGENT_RUN_SECONDS = Histogram(
    "skema_agent_run_seconds",
    "Wall-clock duration of agent process runs",
    ["provider"],
    buckets=(1, 5, 15, 30, 60, 120, 300, 600),
)

REVERTS = Counter(
    "skema_reverts_total",
    "Revert requests by result",
    ["result"],
)


def metrics_endpoint(request=None):
    """FastAPI route handler for /metrics (scraped by Prometheus)."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
