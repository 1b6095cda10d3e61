"""Prometheus metrics for LLM Doctor."""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

# Generation endpoint traffic
requests_total = Counter(
    'llm_doctor_requests_total', 'Total tracked API requests', ['endpoint']
)

# HTTP request metrics
http_request_duration_seconds = Histogram(
    'llm_doctor_http_request_duration_seconds',
    'HTTP request duration',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0],
)

# Upstream forwarding, outcome is one of ok/fallback
passthrough_attempts_total = Counter(
    'llm_doctor_passthrough_attempts_total',
    'Passthrough attempts to the upstream provider',
    ['endpoint', 'outcome'],
)

simulated_faults_total = Counter(
    'llm_doctor_simulated_faults_total', 'Requests answered with a simulated fault', ['kind']
)

stream_aborts_total = Counter(
    'llm_doctor_stream_aborts_total', 'Streaming responses abandoned by the client'
)

tokens_total = Counter(
    'llm_doctor_tokens_total', 'Tokens accounted across responses', ['direction']
)


def get_metrics() -> tuple[bytes, str]:
    """Get Prometheus metrics in the exposition format."""
    return generate_latest(), CONTENT_TYPE_LATEST
