"""
168-Hour Baseline Model

Keeps a rolling window of speedtest download results for every
(day-of-week, hour) slot of the week and derives the statistics used as
"normal" throughput for that slot. The median is the authoritative value.

Day 0 is Monday, day 6 is Sunday (datetime.weekday()).
"""

import logging
import math
import statistics
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, Dict, Iterator, List, Mapping, Optional, Tuple

from .errors import ValidationError

logger = logging.getLogger(__name__)

DAYS_PER_WEEK = 7
HOURS_PER_DAY = 24
TOTAL_BUCKETS = DAYS_PER_WEEK * HOURS_PER_DAY

# Samples kept per bucket. Older samples fall out of the median.
DEFAULT_RETENTION = 30

# Measured speeds within 10% of the baseline count as "close to normal"
BLEND_THRESHOLD_PERCENT = 0.1
BLEND_WEIGHT_WITHIN = 0.6
BLEND_WEIGHT_BELOW = 0.8

Bucket = Tuple[int, int]


@dataclass(frozen=True)
class CalibrationSample:
    """Single speedtest measurement folded into the baseline"""
    timestamp: datetime
    day_of_week: int
    hour: int
    download_mbps: float
    upload_mbps: float
    latency_ms: float

    @classmethod
    def at(cls, timestamp: datetime, download_mbps: float,
           upload_mbps: float = 0.0, latency_ms: float = 0.0) -> "CalibrationSample":
        day, hour = bucket_for(timestamp)
        return cls(
            timestamp=timestamp,
            day_of_week=day,
            hour=hour,
            download_mbps=download_mbps,
            upload_mbps=upload_mbps,
            latency_ms=latency_ms,
        )

    @property
    def bucket(self) -> Bucket:
        return (self.day_of_week, self.hour)


@dataclass(frozen=True)
class HourlyBaseline:
    """Statistics for one hour-of-week slot (Mbps)"""
    day_of_week: int
    hour: int
    mean: float
    std_dev: float
    min: float
    max: float
    median: float
    sample_count: int
    last_updated: datetime

    @property
    def key(self) -> str:
        return bucket_key(self.day_of_week, self.hour)


def bucket_for(when: datetime) -> Bucket:
    """Map a timestamp to its (day_of_week, hour) slot."""
    return when.weekday(), when.hour


def bucket_key(day_of_week: int, hour: int) -> str:
    """Flat "day_hour" key used by the persistence format."""
    return f"{day_of_week}_{hour}"


def _check_bucket(day_of_week: int, hour: int) -> List[str]:
    problems = []
    if not 0 <= day_of_week < DAYS_PER_WEEK:
        problems.append(f"day_of_week must be 0-6, got {day_of_week}")
    if not 0 <= hour < HOURS_PER_DAY:
        problems.append(f"hour must be 0-23, got {hour}")
    return problems


def calculate_baseline(day_of_week: int, hour: int, speeds: List[float],
                       last_updated: datetime) -> HourlyBaseline:
    """
    Compute mean/stddev/min/max/median over a bucket's retained speeds.
    Standard deviation is the population deviation (a single sample gives 0).
    """
    if not speeds:
        raise ValueError(f"no samples for bucket {bucket_key(day_of_week, hour)}")

    return HourlyBaseline(
        day_of_week=day_of_week,
        hour=hour,
        mean=statistics.fmean(speeds),
        std_dev=statistics.pstdev(speeds),
        min=min(speeds),
        max=max(speeds),
        median=statistics.median(speeds),
        sample_count=len(speeds),
        last_updated=last_updated,
    )


def blended_speed(measured: float, baseline_median: float,
                  within_weight: float = BLEND_WEIGHT_WITHIN,
                  below_weight: float = BLEND_WEIGHT_BELOW,
                  threshold_percent: float = BLEND_THRESHOLD_PERCENT) -> float:
    """
    Two-tier blend of a live measurement with the learned baseline.

    measured >= baseline * (1 - threshold): baseline*within + measured*(1-within)
    otherwise:                              baseline*below  + measured*(1-below)

    A single congested reading moves the result only a little, a reading
    near or above normal moves it more.
    """
    threshold = baseline_median * (1.0 - threshold_percent)
    if measured >= threshold:
        return baseline_median * within_weight + measured * (1.0 - within_weight)
    return baseline_median * below_weight + measured * (1.0 - below_weight)


class BaselineModel:
    """
    Fixed 7x24 grid of bounded sample windows plus the statistics derived
    from them. Not thread-safe: the owning SqmManager serializes writes.
    """

    def __init__(self, retention: int = DEFAULT_RETENTION):
        if retention < 1:
            raise ValueError("retention must be at least 1 sample per bucket")
        self.retention = retention
        self._reset()

    def _reset(self) -> None:
        self._windows: List[List[Deque[float]]] = [
            [deque(maxlen=self.retention) for _ in range(HOURS_PER_DAY)]
            for _ in range(DAYS_PER_WEEK)
        ]
        self._stats: List[List[Optional[HourlyBaseline]]] = [
            [None] * HOURS_PER_DAY for _ in range(DAYS_PER_WEEK)
        ]
        self.collection_started: Optional[datetime] = None
        self.last_updated: Optional[datetime] = None

    def __len__(self) -> int:
        return self.populated_buckets()

    def __iter__(self) -> Iterator[HourlyBaseline]:
        for day in range(DAYS_PER_WEEK):
            for hour in range(HOURS_PER_DAY):
                stats = self._stats[day][hour]
                if stats is not None:
                    yield stats

    # --- Learning ---

    def add_sample(self, sample: CalibrationSample) -> HourlyBaseline:
        """Append a sample to its bucket and recompute that bucket."""
        problems = _check_bucket(sample.day_of_week, sample.hour)
        if problems:
            raise ValidationError(problems)
        return self._record(sample.day_of_week, sample.hour,
                            sample.download_mbps, sample.timestamp)

    def _record(self, day: int, hour: int, speed: float, when: datetime) -> HourlyBaseline:
        window = self._windows[day][hour]
        window.append(float(speed))
        stats = calculate_baseline(day, hour, list(window), when)
        self._stats[day][hour] = stats

        if self.collection_started is None or when < self.collection_started:
            self.collection_started = when
        if self.last_updated is None or when > self.last_updated:
            self.last_updated = when

        logger.debug(f"Baseline {stats.key}: median={stats.median:.1f}Mbps "
                     f"(n={stats.sample_count}, stddev={stats.std_dev:.1f})")
        return stats

    def blended_speed(self, measured: float, baseline_median: float,
                      within_weight: float = BLEND_WEIGHT_WITHIN,
                      below_weight: float = BLEND_WEIGHT_BELOW) -> float:
        return blended_speed(measured, baseline_median, within_weight, below_weight)

    # --- Queries ---

    def get(self, day_of_week: int, hour: int) -> Optional[HourlyBaseline]:
        if _check_bucket(day_of_week, hour):
            return None
        return self._stats[day_of_week][hour]

    def lookup(self, when: datetime) -> Optional[HourlyBaseline]:
        """Baseline for the slot containing `when`, or None if never sampled."""
        return self.get(*bucket_for(when))

    def baseline_speed(self, when: datetime) -> Optional[float]:
        stats = self.lookup(when)
        return stats.median if stats is not None else None

    def populated_buckets(self) -> int:
        return sum(1 for _ in self)

    def learning_progress(self) -> float:
        """Percentage of the 168 slots holding at least one sample."""
        return self.populated_buckets() / TOTAL_BUCKETS * 100.0

    def is_complete(self) -> bool:
        return self.populated_buckets() == TOTAL_BUCKETS

    def table(self) -> Dict[Bucket, HourlyBaseline]:
        return {(b.day_of_week, b.hour): b for b in self}

    # --- Persistence format ---

    def export_flat(self) -> Dict[str, float]:
        """Median per populated slot as {"day_hour": speed}."""
        return {b.key: b.median for b in self}

    def import_flat(self, flat: Mapping[str, object], when: Optional[datetime] = None) -> None:
        """
        Replace the whole table from {"day_hour": speed}. Each imported speed
        becomes the single retained sample of its slot. Every malformed entry
        is reported and nothing changes if any is found.
        """
        when = when or datetime.now()
        parsed: Dict[Bucket, float] = {}
        problems: List[str] = []

        for key, value in flat.items():
            parts = str(key).split('_')
            if len(parts) != 2:
                problems.append(f"{key!r}: key must look like 'day_hour'")
                continue
            try:
                day, hour = int(parts[0]), int(parts[1])
            except ValueError:
                problems.append(f"{key!r}: day and hour must be integers")
                continue
            bucket_problems = _check_bucket(day, hour)
            if bucket_problems:
                problems.extend(f"{key!r}: {p}" for p in bucket_problems)
                continue
            try:
                speed = float(value)
            except (TypeError, ValueError):
                problems.append(f"{key!r}: speed {value!r} is not a number")
                continue
            if not math.isfinite(speed):
                problems.append(f"{key!r}: speed must be a finite number, got {value!r}")
                continue
            if speed <= 0:
                problems.append(f"{key!r}: speed must be positive, got {speed}")
                continue
            parsed[(day, hour)] = speed

        if problems:
            raise ValidationError(problems)

        # Build the replacement aside and swap it in whole
        staged = BaselineModel(self.retention)
        for (day, hour), speed in parsed.items():
            staged._record(day, hour, speed, when)
        self._windows = staged._windows
        self._stats = staged._stats
        self.collection_started = staged.collection_started
        self.last_updated = staged.last_updated

        logger.info(f"Imported baseline with {len(parsed)} slots "
                    f"({self.learning_progress():.1f}% coverage)")
