"""
Prometheus metrics for the change stream tailer.
"""

import logging

from prometheus_client import Counter, start_http_server

logger = logging.getLogger(__name__)

cdc_events_delivered = Counter(
    'changetail_events_delivered_total',
    'Change events handed to the output sink',
    ['collection', 'operation']
)

cdc_sink_errors_total = Counter(
    'changetail_sink_errors_total',
    'Change events that could not be written to the output sink',
    ['collection']
)

cdc_stream_errors_total = Counter(
    'changetail_stream_errors_total',
    'Errors that ended the delivery loop',
    ['collection', 'error_type']
)

checkpoint_saves_total = Counter(
    'changetail_checkpoint_saves_total',
    'Resume token saves',
    ['status']
)

checkpoint_loads_total = Counter(
    'changetail_checkpoint_loads_total',
    'Resume token loads',
    ['status']
)


def start_metrics_server(port: int) -> bool:
    """
    Expose metrics over HTTP.

    Args:
        port: Listen port, 0 disables the exporter

    Returns:
        True if the exporter is running
    """
    if port <= 0:
        return False
    try:
        start_http_server(port)
    except OSError as e:
        logger.warning(f"Failed to start metrics server on port {port}: {e}")
        return False
    logger.info(f"Metrics server listening on port {port}", extra={"metrics_port": port})
    return True
