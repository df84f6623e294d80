"""
Speedtest calibration

Turns an Ookla-style speedtest JSON result into a validated baseline
sample and an effective rate limit. Nothing here mutates the baseline:
the SqmManager commits the returned sample.
"""

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Mapping, Optional, Tuple, Union

from .baseline import BaselineModel, CalibrationSample
from .config import SAFETY_CAP, SqmConfig
from .errors import ParseError, ValidationError

logger = logging.getLogger(__name__)

# Plausibility limits for a single result
MIN_PLAUSIBLE_DOWNLOAD_MBPS = 1.0
MAX_PLAUSIBLE_DOWNLOAD_MBPS = 10000.0
MAX_PLAUSIBLE_LATENCY_MS = 5000.0

RawResult = Union[str, bytes, Mapping[str, Any]]


@dataclass(frozen=True)
class PingInfo:
    latency: float
    jitter: float = 0.0
    low: float = 0.0
    high: float = 0.0


@dataclass(frozen=True)
class BandwidthInfo:
    """bandwidth is bytes/sec as reported by the speedtest CLI"""
    bandwidth: float
    bytes: float = 0.0
    elapsed_ms: float = 0.0


@dataclass(frozen=True)
class ServerInfo:
    id: Optional[int] = None
    host: str = ""
    name: str = ""
    location: str = ""
    country: str = ""


@dataclass(frozen=True)
class SpeedtestResult:
    timestamp: datetime
    ping: PingInfo
    download: BandwidthInfo
    upload: BandwidthInfo
    packet_loss: float = 0.0
    isp: str = ""
    interface_name: str = ""
    external_ip: str = ""
    server: ServerInfo = field(default_factory=ServerInfo)

    @property
    def download_mbps(self) -> float:
        return bytes_per_sec_to_mbps(self.download.bandwidth)

    @property
    def upload_mbps(self) -> float:
        return bytes_per_sec_to_mbps(self.upload.bandwidth)


def bytes_per_sec_to_mbps(bytes_per_sec: float) -> float:
    return bytes_per_sec * 8.0 / 1_000_000.0


def variance_percent(measured: float, baseline: float) -> float:
    """Deviation of a measurement from the baseline, in percent."""
    if baseline == 0:
        return 0.0
    return (measured - baseline) / baseline * 100.0


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_timestamp(value: Any) -> datetime:
    """ISO 8601 timestamp as naive local time."""
    if not isinstance(value, str) or not value.strip():
        raise ValueError(value)
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _block(doc: Mapping, name: str) -> Mapping:
    block = doc.get(name)
    return block if isinstance(block, Mapping) else {}


def _optional_number(block: Mapping, key: str, default: float = 0.0) -> float:
    value = block.get(key, default)
    return float(value) if _is_number(value) else default


def parse(raw: RawResult) -> SpeedtestResult:
    """
    Parse a speedtest result. Every missing or non-numeric required field
    is reported in a single ParseError. Extra fields are ignored.
    """
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            doc = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ParseError([f"invalid JSON: {e}"]) from e
    else:
        doc = raw

    if not isinstance(doc, Mapping):
        raise ParseError(["speedtest result must be a JSON object"])

    problems: List[str] = []
    ping = _block(doc, 'ping')
    download = _block(doc, 'download')
    upload = _block(doc, 'upload')

    required = [
        ('ping.latency', ping.get('latency')),
        ('download.bandwidth', download.get('bandwidth')),
        ('upload.bandwidth', upload.get('bandwidth')),
    ]
    for name, value in required:
        if value is None:
            problems.append(f"missing {name}")
        elif not _is_number(value):
            problems.append(f"{name} is not numeric: {value!r}")

    timestamp = None
    if doc.get('timestamp') is None:
        problems.append("missing timestamp")
    else:
        try:
            timestamp = _parse_timestamp(doc['timestamp'])
        except (TypeError, ValueError):
            problems.append(f"timestamp is not ISO 8601: {doc['timestamp']!r}")

    if problems:
        raise ParseError(problems)

    server = _block(doc, 'server')
    interface = _block(doc, 'interface')
    server_id = server.get('id')

    return SpeedtestResult(
        timestamp=timestamp,
        ping=PingInfo(
            latency=float(ping['latency']),
            jitter=_optional_number(ping, 'jitter'),
            low=_optional_number(ping, 'low'),
            high=_optional_number(ping, 'high'),
        ),
        download=BandwidthInfo(
            bandwidth=float(download['bandwidth']),
            bytes=_optional_number(download, 'bytes'),
            elapsed_ms=_optional_number(download, 'elapsed'),
        ),
        upload=BandwidthInfo(
            bandwidth=float(upload['bandwidth']),
            bytes=_optional_number(upload, 'bytes'),
            elapsed_ms=_optional_number(upload, 'elapsed'),
        ),
        packet_loss=_optional_number(doc, 'packetLoss'),
        isp=str(doc.get('isp') or ""),
        interface_name=str(interface.get('name') or ""),
        external_ip=str(interface.get('externalIp') or ""),
        server=ServerInfo(
            id=int(server_id) if _is_number(server_id) else None,
            host=str(server.get('host') or ""),
            name=str(server.get('name') or ""),
            location=str(server.get('location') or ""),
            country=str(server.get('country') or ""),
        ),
    )


def violations(result: SpeedtestResult) -> List[str]:
    """Reasons the result must not reach the baseline (empty list = usable)."""
    problems = []
    if not math.isfinite(result.download.bandwidth) or result.download.bandwidth <= 0:
        problems.append("download bandwidth must be a positive number")
    if not math.isfinite(result.upload.bandwidth) or result.upload.bandwidth <= 0:
        problems.append("upload bandwidth must be a positive number")
    if not math.isfinite(result.ping.latency) or result.ping.latency <= 0:
        problems.append("latency must be a positive number")
    elif result.ping.latency > MAX_PLAUSIBLE_LATENCY_MS:
        problems.append(f"latency {result.ping.latency:.1f}ms is implausible "
                        f"(> {MAX_PLAUSIBLE_LATENCY_MS:.0f}ms)")

    download_mbps = result.download_mbps
    if math.isfinite(download_mbps) and download_mbps > 0 and not (
            MIN_PLAUSIBLE_DOWNLOAD_MBPS <= download_mbps <= MAX_PLAUSIBLE_DOWNLOAD_MBPS):
        problems.append(f"download {download_mbps:.1f} Mbps outside "
                        f"{MIN_PLAUSIBLE_DOWNLOAD_MBPS:.0f}-{MAX_PLAUSIBLE_DOWNLOAD_MBPS:.0f} Mbps")
    return problems


def validate(result: SpeedtestResult) -> bool:
    return not violations(result)


def effective_rate(measured_mbps: float, overhead: float, floor: float,
                   absolute_ceiling: float) -> float:
    """
    clamp(measured * overhead, floor, absolute_ceiling * 0.95),
    rounded to one decimal.
    """
    cap = absolute_ceiling * SAFETY_CAP
    rate = max(min(measured_mbps * overhead, cap), floor)
    rate = round(rate, 1)

    # Rounding must not push the result outside [floor, cap]
    if rate > cap:
        rate = math.floor(cap * 10) / 10
    elif rate < floor:
        rate = math.ceil(floor * 10) / 10
    return rate


class CalibrationProcessor:
    """Applies an uplink's configuration to speedtest results"""

    def __init__(self, config: SqmConfig):
        self.config = config

    def effective_rate(self, measured_mbps: float) -> float:
        return effective_rate(measured_mbps, self.config.overhead_multiplier,
                              self.config.min_rate, self.config.absolute_max_rate)

    def process(self, result: SpeedtestResult,
                baseline: BaselineModel) -> Tuple[float, CalibrationSample]:
        """
        Blend the measured download with the baseline for the result's own
        hour-of-week and derive the effective rate.

        Returns (effective_rate, sample). The sample carries the raw
        measurement and is for the caller to add to the baseline.
        """
        problems = violations(result)
        if problems:
            raise ValidationError(problems)

        measured = result.download_mbps
        sample = CalibrationSample.at(
            result.timestamp,
            download_mbps=measured,
            upload_mbps=result.upload_mbps,
            latency_ms=result.ping.latency,
        )

        baseline_speed = baseline.baseline_speed(result.timestamp)
        if baseline_speed is not None:
            speed = baseline.blended_speed(
                measured,
                baseline_speed,
                within_weight=self.config.blending_weight_within,
                below_weight=self.config.blending_weight_below,
            )
            logger.info(f"Speedtest {measured:.1f}Mbps vs baseline {baseline_speed:.1f}Mbps "
                        f"({variance_percent(measured, baseline_speed):+.1f}%) -> blended {speed:.1f}Mbps")
        else:
            speed = measured
            logger.info(f"Speedtest {measured:.1f}Mbps, no baseline for "
                        f"{sample.day_of_week}_{sample.hour} yet")

        return self.effective_rate(speed), sample
