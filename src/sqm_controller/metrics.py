"""
Prometheus metrics for SQM controller status

Gauges are labelled by WAN interface so several SqmManager instances can
share one exporter process.
"""

from prometheus_client import Counter, Gauge, Info, start_http_server

rate_limit_gauge = Gauge(
    'sqm_rate_limit_mbps',
    'Download rate limit currently applied to the uplink',
    ['interface']
)

latency_gauge = Gauge(
    'sqm_latency_ms',
    'Last ping latency used for a rate adjustment',
    ['interface']
)

calibration_gauge = Gauge(
    'sqm_last_speedtest_mbps',
    'Download speed measured by the last calibration speedtest',
    ['interface']
)

baseline_speed_gauge = Gauge(
    'sqm_baseline_speed_mbps',
    'Learned baseline (median) speed for the current hour of the week',
    ['interface']
)

learning_progress_gauge = Gauge(
    'sqm_learning_progress_percent',
    'Share of the 168 hour-of-week slots that hold baseline data',
    ['interface']
)

adjustments_counter = Counter(
    'sqm_rate_adjustments',
    'Rate adjustments by control branch',
    ['interface', 'branch']
)

controller_info = Info(
    'sqm_controller',
    'SQM controller configuration'
)


def start_metrics_server(port: int) -> None:
    start_http_server(port)


def publish_config(cfg) -> None:
    controller_info.info({
        'interface': cfg.interface,
        'connection_type': cfg.connection_type.value,
        'min_rate_mbps': f"{cfg.min_rate:g}",
        'max_rate_mbps': f"{cfg.max_rate:g}",
        'absolute_max_rate_mbps': f"{cfg.absolute_max_rate:g}",
        'baseline_latency_ms': f"{cfg.baseline_latency_ms:g}",
        'latency_threshold_ms': f"{cfg.latency_threshold_ms:g}",
    })


def publish_status(interface: str, status) -> None:
    """Copy an EngineStatus snapshot into the gauges."""
    rate_limit_gauge.labels(interface=interface).set(status.current_rate)
    learning_progress_gauge.labels(interface=interface).set(status.learning_progress)
    if status.current_latency is not None:
        latency_gauge.labels(interface=interface).set(status.current_latency)
    if status.last_calibration_mbps is not None:
        calibration_gauge.labels(interface=interface).set(status.last_calibration_mbps)
    if status.baseline_speed is not None:
        baseline_speed_gauge.labels(interface=interface).set(status.baseline_speed)


def record_adjustment(interface: str, branch: str) -> None:
    adjustments_counter.labels(interface=interface, branch=branch).inc()
