"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name: str, documentation: str, labelnames=()):
    """Create a counter, reusing the registered one when the module is re-imported"""
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Transformation metrics
transformations_counter = _counter(
    'timelens_transformations_total',
    'Total number of transformation requests by outcome',
    ['status']
)

quota_rejections_counter = _counter(
    'timelens_quota_rejections_total',
    'Total number of transformations rejected because the daily quota was used up',
    ['plan']
)

generation_attempts_counter = _counter(
    'timelens_generation_attempts_total',
    'Total number of calls to the image provider by outcome kind',
    ['outcome']
)

compensation_deletes_counter = _counter(
    'timelens_compensation_deletes_total',
    'Total number of staged assets deleted during compensation',
    ['status']
)

# Billing metrics
webhook_events_counter = _counter(
    'timelens_webhook_events_total',
    'Total number of billing webhook events received',
    ['event_type', 'status']
)

# Reconciliation metrics
reconciliation_runs_counter = _counter(
    'timelens_reconciliation_runs_total',
    'Total number of quota reconciliation runs',
    ['status']
)

reconciliation_repairs_counter = _counter(
    'timelens_reconciliation_repairs_total',
    'Total number of usage counters raised to match persisted results'
)

quota_overage_counter = _counter(
    'timelens_quota_overage_total',
    'Total number of usage counters found above their daily limit'
)

# Auth metrics
login_attempts_counter = _counter(
    'timelens_login_attempts_total',
    'Total number of login attempts',
    ['status']
)
