"""
Uplink SQM configuration

SqmConfig is immutable. Changes go through SqmManager.configure() or the
learning-mode toggles, which swap in a new instance.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional, Tuple

from . import cron, profiles
from .profiles import ConnectionType

DEFAULT_CALIBRATION_SCHEDULE: Tuple[str, ...] = ("0 6 * * *", "30 18 * * *")

# Upper bounds accepted by validate_config
MAX_OVERHEAD_MULTIPLIER = 1.2
MAX_INCREASE_FACTOR = 1.2

NUMERIC_FIELDS = (
    "min_rate", "max_rate", "absolute_max_rate", "overhead_multiplier",
    "baseline_latency_ms", "latency_threshold_ms", "decrease_factor", "increase_factor",
    "blending_weight_within", "blending_weight_below", "adjustment_interval_minutes",
)

# Applied rate never exceeds this fraction of absolute_max_rate
SAFETY_CAP = 0.95


@dataclass(frozen=True)
class SqmConfig:
    """Configuration for one WAN uplink (download direction)"""
    interface: str = "eth2"
    connection_type: ConnectionType = ConnectionType.DOCSIS_CABLE
    connection_name: str = ""
    nominal_download_mbps: int = 300
    nominal_upload_mbps: int = 35

    # Rate limits (Mbps)
    min_rate: float = 190
    max_rate: float = 280
    absolute_max_rate: float = 280
    overhead_multiplier: float = 1.05

    # Latency control
    ping_host: str = "1.1.1.1"
    baseline_latency_ms: float = 17.9
    latency_threshold_ms: float = 2.2
    decrease_factor: float = 0.97
    increase_factor: float = 1.04

    # Baseline weight used when blending a speedtest with the learned baseline
    blending_weight_within: float = 0.60
    blending_weight_below: float = 0.80

    # Scheduling hints for the external scheduler
    calibration_schedule: Tuple[str, ...] = DEFAULT_CALIBRATION_SCHEDULE
    adjustment_interval_minutes: int = 5
    preferred_speedtest_server_id: Optional[str] = None

    learning_mode: bool = False
    learning_mode_started: Optional[datetime] = field(default=None, compare=False)

    @property
    def ifb_device(self) -> str:
        return f"ifb{self.interface}"

    @property
    def safety_cap_rate(self) -> float:
        return self.absolute_max_rate * SAFETY_CAP

    @classmethod
    def from_profile(cls, connection_type, nominal_download_mbps: int,
                     nominal_upload_mbps: int = 0, **overrides) -> "SqmConfig":
        """
        Derive a configuration from the connection type's tuning row.
        Keyword overrides replace derived values.
        """
        ctype = ConnectionType.parse(connection_type)
        row = profiles.profile_for(ctype)
        min_rate, max_rate, absolute_max = profiles.speed_limits(ctype, nominal_download_mbps)

        derived = dict(
            connection_type=ctype,
            nominal_download_mbps=nominal_download_mbps,
            nominal_upload_mbps=nominal_upload_mbps,
            min_rate=min_rate,
            max_rate=max_rate,
            absolute_max_rate=absolute_max,
            overhead_multiplier=row.overhead,
            baseline_latency_ms=row.baseline_latency_ms,
            latency_threshold_ms=row.latency_threshold_ms,
            decrease_factor=row.decrease_factor,
            increase_factor=row.increase_factor,
            blending_weight_within=profiles.blending_ratios(ctype, True)[0],
            blending_weight_below=profiles.blending_ratios(ctype, False)[0],
            preferred_speedtest_server_id=row.speedtest_server_id,
        )
        derived.update(overrides)
        return cls(**derived)

    def with_learning_mode(self, active: bool, started: Optional[datetime] = None) -> "SqmConfig":
        return replace(self, learning_mode=active,
                       learning_mode_started=started if active else self.learning_mode_started)

    def parameter_summary(self) -> str:
        name = f" ({self.connection_name})" if self.connection_name else ""
        return "\n".join([
            f"Connection: {profiles.display_name(self.connection_type)}{name}",
            f"Interface: {self.interface} (IFB: {self.ifb_device})",
            f"Nominal Speed: {self.nominal_download_mbps}/{self.nominal_upload_mbps} Mbps (down/up)",
            f"Speed Range: {self.min_rate:g}-{self.max_rate:g} Mbps (floor-ceiling)",
            f"Absolute Max: {self.absolute_max_rate:g} Mbps",
            f"Overhead: {(self.overhead_multiplier - 1) * 100:.0f}%",
            f"Latency: {self.baseline_latency_ms:g}ms baseline, {self.latency_threshold_ms:g}ms threshold",
            f"Rate Adjust: -{(1 - self.decrease_factor) * 100:.0f}% / "
            f"+{(self.increase_factor - 1) * 100:.0f}%",
        ])


def _non_finite(cfg: SqmConfig) -> List[str]:
    errors = []
    for name in NUMERIC_FIELDS:
        value = getattr(cfg, name)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            errors.append(f"{name} must be a finite number, got {value!r}")
    return errors


def _range_violations(cfg: SqmConfig) -> List[str]:
    errors = []

    if cfg.min_rate <= 0:
        errors.append("min_rate must be greater than 0")
    if cfg.max_rate <= 0:
        errors.append("max_rate must be greater than 0")
    if cfg.absolute_max_rate <= 0:
        errors.append("absolute_max_rate must be greater than 0")
    if cfg.min_rate > cfg.max_rate:
        errors.append(f"min_rate ({cfg.min_rate:g}) must not exceed max_rate ({cfg.max_rate:g})")
    if cfg.max_rate > cfg.absolute_max_rate:
        errors.append(f"max_rate ({cfg.max_rate:g}) must not exceed "
                      f"absolute_max_rate ({cfg.absolute_max_rate:g})")
    if cfg.min_rate > cfg.safety_cap_rate:
        errors.append(f"min_rate ({cfg.min_rate:g}) must not exceed 95% of "
                      f"absolute_max_rate ({cfg.safety_cap_rate:.1f})")

    if not 1.0 <= cfg.overhead_multiplier <= MAX_OVERHEAD_MULTIPLIER:
        errors.append("overhead_multiplier must be between 1.0 and 1.2 (0-20% overhead)")

    if cfg.baseline_latency_ms <= 0:
        errors.append("baseline_latency_ms must be greater than 0")
    if cfg.latency_threshold_ms <= 0:
        errors.append("latency_threshold_ms must be greater than 0")
    if not 0.0 < cfg.decrease_factor < 1.0:
        errors.append("decrease_factor must be between 0 and 1 (e.g. 0.97 for a 3% decrease)")
    if not 1.0 < cfg.increase_factor <= MAX_INCREASE_FACTOR:
        errors.append("increase_factor must be above 1.0 and at most 1.2 (e.g. 1.04 for a 4% increase)")

    for name in ("blending_weight_within", "blending_weight_below"):
        weight = getattr(cfg, name)
        if not 0.0 <= weight <= 1.0:
            errors.append(f"{name} must be between 0 and 1")

    if cfg.adjustment_interval_minutes < 1:
        errors.append("adjustment_interval_minutes must be at least 1 minute")
    return errors


def validate_config(cfg: SqmConfig) -> List[str]:
    """Check every constraint and return all violations (empty list = valid)."""
    errors = []

    if not cfg.interface or not str(cfg.interface).strip():
        errors.append("interface is required")
    if not cfg.ping_host or not str(cfg.ping_host).strip():
        errors.append("ping_host is required")

    # Range checks need every numeric field to be finite
    non_finite = _non_finite(cfg)
    errors.extend(non_finite or _range_violations(cfg))

    if not cfg.calibration_schedule:
        errors.append("calibration_schedule needs at least one entry")
    for entry in cfg.calibration_schedule:
        if not cron.is_valid(entry):
            errors.append(f"calibration_schedule entry {entry!r} is not a valid 5-field cron expression")

    return errors
