"""Prometheus metrics for the notification pipeline"""
from prometheus_client import Counter, Gauge, REGISTRY


def _counter(name, documentation, labelnames=()):
    # Modules can be re-imported by test runners; reuse the registered collector
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


def _gauge(name, documentation, labelnames=()):
    try:
        return Gauge(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Webhook metrics
webhook_events_counter = _counter(
    'webq_webhook_events_total',
    'Total number of payment webhook deliveries by outcome',
    ['outcome']
)

# Enqueue metrics
notifications_enqueued_counter = _counter(
    'webq_notifications_enqueued_total',
    'Total number of notification requests by path (queue or fallback)',
    ['path']
)

# Queue processor metrics
queue_runs_counter = _counter(
    'webq_queue_runs_total',
    'Total number of notification queue processor runs',
    ['status']
)

queue_items_counter = _counter(
    'webq_queue_items_total',
    'Total number of queue items processed by outcome',
    ['outcome']
)

queue_depth_gauge = _gauge(
    'webq_queue_items',
    'Number of notification queue items per status',
    ['status']
)

# Transport metrics
email_send_attempts_counter = _counter(
    'webq_email_send_attempts_total',
    'Total number of provider send calls by result',
    ['result']
)

# Escalation metrics
escalation_alerts_counter = _counter(
    'webq_escalation_alerts_total',
    'Total number of consecutive-failure alerts by result',
    ['result']
)

# Cleanup metrics
cleanup_runs_counter = _counter(
    'webq_cleanup_runs_total',
    'Total number of cleanup job runs',
    ['status']
)

cleanup_rows_removed_counter = _counter(
    'webq_cleanup_rows_removed_total',
    'Total number of rows removed by cleanup',
    ['table']
)
