"""
Latency-driven rate control law

Given the current ping latency and the applied rate, computes the next
rate. Three mutually exclusive branches, checked in this order:

  1. HIGH LATENCY   latency >= baseline + threshold
     rate * decrease^ceil((latency - baseline) / threshold), floored at min_rate
  2. LATENCY REDUCED   latency < baseline - 0.4
     below 92% of absolute max: rate * increase^2
     below 94%: snap to 94%
     otherwise hold
  3. NORMAL   everything else; only acts when latency - baseline <= 0.3
     below 90% of absolute max: rate * increase
     below 92%: snap to 92%
     otherwise hold

Every result is capped at min(95% of absolute max, max_rate) and rounded
to one decimal. The comparison operators are part of the tuning and must
stay as they are.
"""

import math
import re
from dataclasses import dataclass
from typing import Optional, Tuple

from .config import SAFETY_CAP, SqmConfig

# Latency bands (ms) around the baseline latency
REDUCED_LATENCY_MARGIN_MS = 0.4
NORMAL_LATENCY_MARGIN_MS = 0.3

# Fractions of absolute max rate
RECOVERY_LOWER_BOUND = 0.92
RECOVERY_MID_BOUND = 0.94
NORMAL_LOWER_BOUND = 0.90
NORMAL_MID_BOUND = 0.92

_PING_SUMMARY = re.compile(r"(?:rtt|round-trip) min/avg/max/(?:mdev|stddev) = ([\d.]+)/([\d.]+)/")


@dataclass(frozen=True)
class RateFactors:
    """Inputs to the control law taken from the uplink configuration"""
    baseline_latency_ms: float
    latency_threshold_ms: float
    decrease_factor: float
    increase_factor: float
    min_rate: float
    max_rate: float

    @classmethod
    def from_config(cls, cfg: SqmConfig) -> "RateFactors":
        return cls(
            baseline_latency_ms=cfg.baseline_latency_ms,
            latency_threshold_ms=cfg.latency_threshold_ms,
            decrease_factor=cfg.decrease_factor,
            increase_factor=cfg.increase_factor,
            min_rate=cfg.min_rate,
            max_rate=cfg.max_rate,
        )


def cap_rate(rate: float, absolute_max: float, max_rate: float) -> float:
    """Apply the 95% safety cap and the configured ceiling."""
    return round(min(rate, absolute_max * SAFETY_CAP, max_rate), 1)


def deviation_count(latency: float, factors: RateFactors) -> int:
    """Number of threshold widths the latency sits above the baseline."""
    return math.ceil((latency - factors.baseline_latency_ms) / factors.latency_threshold_ms)


def decrease_multiplier(deviations: int, factors: RateFactors) -> float:
    return factors.decrease_factor ** deviations


def increase_multiplier(steps: int, factors: RateFactors) -> float:
    return factors.increase_factor ** steps


def is_latency_high(latency: float, factors: RateFactors) -> bool:
    return latency >= factors.baseline_latency_ms + factors.latency_threshold_ms


def needs_recovery(current_rate: float, absolute_max: float) -> bool:
    return current_rate < absolute_max * RECOVERY_LOWER_BOUND


def rate_bounds(absolute_max: float, factors: RateFactors) -> Tuple[float, float, float]:
    """(min_rate, optimal_rate, max_rate) the controller steers between."""
    return (
        factors.min_rate,
        absolute_max * RECOVERY_MID_BOUND,
        min(absolute_max * SAFETY_CAP, factors.max_rate),
    )


def adjust(latency: float, current_rate: float, absolute_max: float,
           factors: RateFactors) -> Tuple[float, str]:
    """
    Compute the next rate from a latency reading.

    Pure function: the same inputs always give the same (rate, reason).
    Callers without a latency reading skip the cycle instead of calling this.
    """
    baseline = factors.baseline_latency_ms
    threshold_latency = baseline + factors.latency_threshold_ms

    # 1. High latency: exponential backoff per threshold width exceeded
    if latency >= threshold_latency:
        deviations = deviation_count(latency, factors)
        multiplier = decrease_multiplier(deviations, factors)
        new_rate = max(current_rate * multiplier, factors.min_rate)
        reason = (f"High latency: {latency:.1f}ms (threshold: {threshold_latency:.1f}ms), "
                  f"decreased by {(1 - multiplier) * 100:.1f}% ({deviations} deviations): "
                  f"{current_rate:.1f} -> {new_rate:.1f} Mbps")
        return cap_rate(new_rate, absolute_max, factors.max_rate), reason

    # 2. Latency below baseline: link has headroom, recover quickly
    if latency < baseline - REDUCED_LATENCY_MARGIN_MS:
        lower = absolute_max * RECOVERY_LOWER_BOUND
        mid = absolute_max * RECOVERY_MID_BOUND

        if needs_recovery(current_rate, absolute_max):
            new_rate = current_rate * increase_multiplier(2, factors)
            reason = (f"Latency reduced: {latency:.1f}ms, rate {current_rate:.1f} below "
                      f"{lower:.1f} Mbps, applying 2x increase")
        elif current_rate < mid:
            new_rate = mid
            reason = (f"Latency reduced: {latency:.1f}ms, normalizing to optimal "
                      f"bandwidth {mid:.1f} Mbps")
        else:
            new_rate = current_rate
            reason = f"Latency reduced: {latency:.1f}ms, keeping current rate {current_rate:.1f} Mbps"
        return cap_rate(new_rate, absolute_max, factors.max_rate), reason

    # 3. Normal latency: nudge up only when within 0.3ms of baseline
    lower_normal = absolute_max * NORMAL_LOWER_BOUND
    mid_normal = absolute_max * NORMAL_MID_BOUND
    latency_diff = latency - baseline
    is_normal = latency_diff <= NORMAL_LATENCY_MARGIN_MS

    if current_rate < lower_normal and is_normal:
        new_rate = current_rate * factors.increase_factor
        reason = (f"Normal latency: {latency:.1f}ms (within {NORMAL_LATENCY_MARGIN_MS}ms), "
                  f"rate {current_rate:.1f} below {lower_normal:.1f} Mbps, applying increase")
    elif current_rate < mid_normal and is_normal:
        new_rate = mid_normal
        reason = (f"Normal latency: {latency:.1f}ms (within {NORMAL_LATENCY_MARGIN_MS}ms), "
                  f"normalizing to optimal bandwidth {mid_normal:.1f} Mbps")
    else:
        new_rate = current_rate
        reason = f"Normal latency: {latency:.1f}ms, maintaining current rate {current_rate:.1f} Mbps"
    return cap_rate(new_rate, absolute_max, factors.max_rate), reason


def parse_ping_output(output: str) -> Optional[float]:
    """
    Average RTT from the summary line of `ping -q`, e.g.
    "rtt min/avg/max/mdev = 10.123/12.456/15.789/2.345 ms".
    Returns None when no summary is present (probe failed).
    """
    match = _PING_SUMMARY.search(output or "")
    if not match:
        return None
    return float(match.group(2))


def branch_for(latency: float, factors: RateFactors) -> str:
    """Name of the control branch adjust() takes for this latency."""
    if is_latency_high(latency, factors):
        return "high_latency"
    if latency < factors.baseline_latency_ms - REDUCED_LATENCY_MARGIN_MS:
        return "latency_reduced"
    return "normal"
