"""
Connection Profiles

Per-connection-type tuning constants. Each connection type is one row of
the table below; adding a type means adding a row. All derived values are
pure functions of (connection type, nominal speed).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from .baseline import DAYS_PER_WEEK, HOURS_PER_DAY, BaselineModel

logger = logging.getLogger(__name__)


class ConnectionType(str, Enum):
    DOCSIS_CABLE = "docsis_cable"
    STARLINK = "starlink"
    FIBER = "fiber"
    DSL = "dsl"
    FIXED_WIRELESS = "fixed_wireless"
    CELLULAR_HOME = "cellular_home"

    @classmethod
    def parse(cls, value) -> "ConnectionType":
        """Accept an enum member, its value, or its name in any case."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower().replace('-', '_').replace(' ', '_')
        for member in cls:
            if text in (member.value, member.name.lower()):
                return member
        raise ValueError(f"Unknown connection type: {value!r}")


@dataclass(frozen=True)
class ProfileRow:
    """Tuning constants for one connection type"""
    display_name: str
    description: str
    ceiling: float           # max rate as fraction of nominal
    floor: float             # min rate as fraction of nominal
    absolute_ceiling: float  # absolute max achievable as fraction of nominal
    overhead: float          # speedtest overhead multiplier
    baseline_latency_ms: float
    latency_threshold_ms: float
    decrease_factor: float
    increase_factor: float
    blend_within: Tuple[float, float]  # (baseline, measured) near baseline
    blend_below: Tuple[float, float]   # (baseline, measured) well below baseline
    daily_shape: Tuple[float, ...]     # 24 fractions of nominal speed
    day_overrides: Dict[int, Tuple[float, ...]] = field(default_factory=dict)
    speedtest_server_id: Optional[str] = None


# Shapes are fractions of nominal download speed for hours 0-23.
_CABLE_WEEKDAY = (0.87, 0.87, 0.87, 0.87, 0.87, 0.87, 0.85, 0.85, 0.85, 0.85, 0.85, 0.85,
                  0.85, 0.85, 0.85, 0.85, 0.85, 0.85, 0.75, 0.75, 0.75, 0.75, 0.87, 0.87)
# Sunday evening congestion is a little lighter
_CABLE_SUNDAY = (0.87, 0.87, 0.87, 0.87, 0.87, 0.87, 0.85, 0.85, 0.85, 0.85, 0.85, 0.85,
                 0.85, 0.85, 0.85, 0.85, 0.85, 0.85, 0.77, 0.77, 0.77, 0.79, 0.85, 0.87)

# Starlink varies day by day; normalized from ~400 Mbps nominal observations
_STARLINK_WEEK = {
    0: (0.75, 0.77, 0.47, 0.46, 0.44, 0.44, 0.41, 0.91, 0.66, 0.42, 0.41, 0.38,
        0.80, 0.76, 0.73, 0.71, 0.68, 0.65, 0.42, 0.85, 0.51, 0.48, 0.43, 0.38),
    1: (0.90, 0.98, 0.78, 0.84, 0.86, 0.73, 0.89, 0.79, 0.87, 0.85, 0.72, 0.74,
        0.74, 0.68, 0.58, 0.84, 0.64, 0.70, 0.49, 0.66, 0.62, 0.59, 0.56, 0.75),
    2: (0.64, 0.65, 0.56, 0.47, 0.40, 0.42, 0.55, 0.68, 0.73, 0.43, 0.44, 0.38,
        1.04, 0.76, 0.61, 0.94, 0.79, 0.65, 0.54, 0.69, 0.73, 0.64, 0.63, 0.80),
    3: (0.72, 0.80, 0.67, 0.50, 0.49, 0.55, 0.48, 0.50, 0.57, 0.88, 0.86, 0.84,
        0.82, 0.80, 0.78, 0.65, 0.67, 0.68, 0.66, 0.64, 0.49, 0.39, 0.57, 0.75),
    4: (0.59, 0.73, 0.74, 0.59, 0.45, 0.43, 0.44, 0.68, 0.80, 0.55, 0.48, 0.55,
        0.45, 0.55, 0.65, 0.60, 0.40, 0.77, 0.77, 0.77, 1.01, 0.74, 0.54, 0.73),
    5: (0.64, 0.56, 0.85, 0.76, 0.69, 0.58, 0.53, 0.54, 0.41, 0.62, 0.40, 0.53,
        0.66, 0.80, 0.81, 0.74, 0.68, 0.61, 0.55, 0.45, 0.85, 0.74, 0.66, 0.51),
    6: (0.77, 0.75, 0.79, 0.67, 0.49, 0.44, 0.41, 0.43, 0.52, 0.87, 0.71, 0.55,
        0.60, 0.51, 0.66, 0.77, 0.72, 0.71, 0.71, 0.70, 0.70, 0.48, 0.41, 0.62),
}


PROFILE_TABLE: Dict[ConnectionType, ProfileRow] = {
    ConnectionType.DOCSIS_CABLE: ProfileRow(
        display_name="DOCSIS Cable",
        description="Stable with peak-hour congestion (190-285 Mbps typical for 300 Mbps plan)",
        ceiling=0.95, floor=0.65, absolute_ceiling=0.98, overhead=1.05,
        baseline_latency_ms=18.0, latency_threshold_ms=2.5,
        decrease_factor=0.97, increase_factor=1.04,
        blend_within=(0.60, 0.40), blend_below=(0.80, 0.20),
        daily_shape=_CABLE_WEEKDAY,
        day_overrides={6: _CABLE_SUNDAY},
    ),
    ConnectionType.STARLINK: ProfileRow(
        display_name="Starlink",
        description="Variable speeds (50-300+ Mbps), weather-sensitive, 20-80ms latency",
        ceiling=1.10, floor=0.35, absolute_ceiling=1.15, overhead=1.15,
        baseline_latency_ms=25.0, latency_threshold_ms=4.0,
        decrease_factor=0.97, increase_factor=1.04,
        blend_within=(0.50, 0.50), blend_below=(0.70, 0.30),
        daily_shape=_STARLINK_WEEK[0],
        day_overrides=_STARLINK_WEEK,
        # BBR-enabled server near common Starlink PoPs
        speedtest_server_id="59762",
    ),
    ConnectionType.FIBER: ProfileRow(
        display_name="Fiber (FTTH)",
        description="Very stable, low latency (~5ms), typically exceeds advertised speeds",
        ceiling=1.05, floor=0.90, absolute_ceiling=1.02, overhead=1.02,
        baseline_latency_ms=5.0, latency_threshold_ms=2.0,
        decrease_factor=0.98, increase_factor=1.03,
        blend_within=(0.70, 0.30), blend_below=(0.85, 0.15),
        daily_shape=(0.98, 0.98, 0.98, 0.98, 0.98, 0.98, 0.97, 0.97, 0.97, 0.97, 0.97, 0.97,
                     0.97, 0.97, 0.97, 0.97, 0.97, 0.97, 0.95, 0.95, 0.95, 0.95, 0.98, 0.98),
    ),
    ConnectionType.DSL: ProfileRow(
        display_name="DSL",
        description="Stable but speed limited by distance from DSLAM, 10-100 Mbps typical",
        ceiling=0.95, floor=0.85, absolute_ceiling=0.98, overhead=1.03,
        baseline_latency_ms=20.0, latency_threshold_ms=3.0,
        decrease_factor=0.97, increase_factor=1.03,
        blend_within=(0.65, 0.35), blend_below=(0.80, 0.20),
        daily_shape=(0.92, 0.92, 0.92, 0.92, 0.92, 0.92, 0.90, 0.90, 0.90, 0.90, 0.90, 0.90,
                     0.90, 0.90, 0.90, 0.90, 0.90, 0.90, 0.85, 0.85, 0.85, 0.85, 0.92, 0.92),
    ),
    ConnectionType.FIXED_WIRELESS: ProfileRow(
        display_name="Fixed Wireless (WISP)",
        description="Variable (25-500 Mbps), weather and interference sensitive",
        ceiling=1.10, floor=0.50, absolute_ceiling=1.15, overhead=1.10,
        baseline_latency_ms=15.0, latency_threshold_ms=4.0,
        decrease_factor=0.96, increase_factor=1.05,
        blend_within=(0.50, 0.50), blend_below=(0.65, 0.35),
        daily_shape=(0.85, 0.85, 0.85, 0.85, 0.85, 0.85, 0.80, 0.80, 0.80, 0.75, 0.75, 0.75,
                     0.75, 0.75, 0.75, 0.70, 0.70, 0.70, 0.65, 0.65, 0.65, 0.70, 0.80, 0.85),
    ),
    ConnectionType.CELLULAR_HOME: ProfileRow(
        display_name="Fixed LTE/5G",
        description="Variable (100-1000 Mbps), cell congestion affects speeds",
        ceiling=1.20, floor=0.40, absolute_ceiling=1.25, overhead=1.12,
        baseline_latency_ms=35.0, latency_threshold_ms=5.0,
        decrease_factor=0.95, increase_factor=1.05,
        blend_within=(0.50, 0.50), blend_below=(0.65, 0.35),
        daily_shape=(0.90, 0.90, 0.90, 0.90, 0.90, 0.85, 0.75, 0.70, 0.70, 0.75, 0.75, 0.75,
                     0.70, 0.70, 0.70, 0.70, 0.65, 0.60, 0.55, 0.55, 0.60, 0.70, 0.80, 0.85),
    ),
}


def profile_for(connection_type) -> ProfileRow:
    return PROFILE_TABLE[ConnectionType.parse(connection_type)]


def scaled_speed(nominal_mbps: float, fraction: float) -> int:
    """Fraction of nominal speed, truncated to whole Mbps."""
    return int(nominal_mbps * fraction)


def speed_limits(connection_type, nominal_download_mbps: float) -> Tuple[int, int, int]:
    """
    (min_rate, max_rate, absolute_max_rate) for a nominal speed.
    Types whose ceiling factor exceeds the absolute ceiling (fiber) get
    max_rate capped at absolute_max_rate.
    """
    row = profile_for(connection_type)
    absolute_max = scaled_speed(nominal_download_mbps, row.absolute_ceiling)
    max_rate = min(scaled_speed(nominal_download_mbps, row.ceiling), absolute_max)
    min_rate = scaled_speed(nominal_download_mbps, row.floor)
    return min_rate, max_rate, absolute_max


def blending_ratios(connection_type, within_threshold: bool) -> Tuple[float, float]:
    """(baseline_weight, measured_weight) for blending; weights sum to 1.0."""
    row = profile_for(connection_type)
    return row.blend_within if within_threshold else row.blend_below


def hourly_pattern(connection_type) -> List[List[float]]:
    """7x24 fractions of nominal speed, day 0 = Monday."""
    row = profile_for(connection_type)
    pattern = []
    for day in range(DAYS_PER_WEEK):
        shape: Sequence[float] = row.day_overrides.get(day, row.daily_shape)
        if len(shape) != HOURS_PER_DAY:
            raise ValueError(f"{row.display_name}: day {day} shape has {len(shape)} hours")
        pattern.append(list(shape))
    return pattern


def seed_baseline(connection_type, nominal_download_mbps: float,
                  retention: Optional[int] = None,
                  when: Optional[datetime] = None) -> BaselineModel:
    """
    BaselineModel with every slot seeded from the profile's hourly shape.
    Each seeded speed is kept as one sample, so real measurements outvote
    it as they accumulate.
    """
    pattern = hourly_pattern(connection_type)
    flat = {}
    for day in range(DAYS_PER_WEEK):
        for hour in range(HOURS_PER_DAY):
            speed = scaled_speed(nominal_download_mbps, pattern[day][hour])
            if speed > 0:
                flat[f"{day}_{hour}"] = speed

    model = BaselineModel(retention) if retention else BaselineModel()
    model.import_flat(flat, when=when)
    logger.info(f"Seeded {profile_for(connection_type).display_name} baseline "
                f"for {nominal_download_mbps} Mbps nominal ({len(flat)} slots)")
    return model


def display_name(connection_type) -> str:
    return profile_for(connection_type).display_name


def description(connection_type) -> str:
    return profile_for(connection_type).description


def default_speedtest_server(connection_type) -> Optional[str]:
    return profile_for(connection_type).speedtest_server_id
