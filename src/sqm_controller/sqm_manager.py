"""
SQM Manager

One instance per uplink. Owns the configuration, the baseline model and
the engine status, and is the only writer of all three.

Lifecycle:
  UNCONFIGURED --configure()--> MONITORING <--start/stop_learning_mode()--> LEARNING

Every public mutation validates its input first and commits under the
instance lock, so a rejected input leaves the baseline and status as
they were.
"""

import logging
import math
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Mapping, Optional, Tuple

from . import calibration, metrics, profiles, rate_controller
from .baseline import BaselineModel, HourlyBaseline
from .calibration import CalibrationProcessor, RawResult
from .config import SqmConfig, validate_config
from .errors import ProbeUnavailable, StateError, ValidationError
from .rate_controller import RateFactors

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    UNCONFIGURED = "unconfigured"
    MONITORING = "monitoring"
    LEARNING = "learning"


@dataclass(frozen=True)
class EngineStatus:
    """Read-only snapshot of an uplink's controller state"""
    state: EngineState = EngineState.UNCONFIGURED
    current_rate: float = 0.0
    last_calibration_mbps: Optional[float] = None
    last_calibration_time: Optional[datetime] = None
    current_latency: Optional[float] = None
    baseline_speed: Optional[float] = None
    learning_mode_active: bool = False
    learning_progress: float = 0.0
    last_adjustment: Optional[datetime] = None
    last_adjustment_reason: Optional[str] = None


class SqmManager:
    """Adaptive rate controller for a single WAN uplink"""

    def __init__(self, config: Optional[SqmConfig] = None,
                 baseline: Optional[BaselineModel] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 export_metrics: bool = True):
        self._lock = threading.RLock()
        self._clock = clock
        self._export_metrics = export_metrics
        self._baseline = baseline if baseline is not None else BaselineModel()
        self._config: Optional[SqmConfig] = None
        self._processor: Optional[CalibrationProcessor] = None
        self._factors: Optional[RateFactors] = None
        self._status = EngineStatus(learning_progress=self._baseline.learning_progress())

        if config is not None:
            self.configure(config)

    # --- Lifecycle ---

    @property
    def config(self) -> Optional[SqmConfig]:
        return self._config

    @property
    def state(self) -> EngineState:
        if self._config is None:
            return EngineState.UNCONFIGURED
        return EngineState.LEARNING if self._config.learning_mode else EngineState.MONITORING

    def _require_configured(self, operation: str) -> SqmConfig:
        if self._config is None:
            raise StateError(f"{operation} requires a configured uplink (call configure() first)")
        return self._config

    def configure(self, config: SqmConfig) -> None:
        """
        Validate and activate a configuration. All violations are reported
        in one ValidationError and the previous configuration stays active.
        """
        if config.learning_mode and config.learning_mode_started is None:
            config = config.with_learning_mode(True, self._clock())

        errors = validate_config(config)
        if errors:
            for error in errors:
                logger.error(f"Invalid configuration: {error}")
            raise ValidationError(errors)

        with self._lock:
            previous = self._config
            self._config = config
            self._processor = CalibrationProcessor(config)
            self._factors = RateFactors.from_config(config)

            ceiling = min(config.max_rate, config.safety_cap_rate)
            if previous is None or self._status.current_rate <= 0:
                current_rate = ceiling
            else:
                current_rate = max(config.min_rate, min(self._status.current_rate, ceiling))

            self._update_status(current_rate=round(current_rate, 1))

        logger.info(f"Configured {config.interface}:")
        for line in config.parameter_summary().splitlines():
            logger.info(f"  {line}")
        if self._export_metrics:
            metrics.publish_config(config)

    def start_learning_mode(self) -> None:
        """Flag the uplink as learning. The baseline table is kept as is."""
        with self._lock:
            cfg = self._require_configured("start_learning_mode")
            if cfg.learning_mode:
                raise StateError(f"{cfg.interface} is already in learning mode")
            self._config = cfg.with_learning_mode(True, self._clock())
            self._update_status()
        logger.info(f"Learning mode started on {cfg.interface} "
                    f"({self._baseline.learning_progress():.1f}% of baseline collected)")

    def stop_learning_mode(self) -> None:
        with self._lock:
            cfg = self._require_configured("stop_learning_mode")
            if not cfg.learning_mode:
                raise StateError(f"{cfg.interface} is not in learning mode")
            self._config = cfg.with_learning_mode(False)
            self._update_status()
        logger.info(f"Learning mode stopped on {cfg.interface} "
                    f"({self._baseline.learning_progress():.1f}% of baseline collected)")

    # --- Operations ---

    def process_calibration(self, raw: RawResult) -> float:
        """
        Fold a speedtest result into the baseline and return the new
        effective rate. ParseError/ValidationError leave all state untouched.
        """
        cfg = self._require_configured("process_calibration")

        result = calibration.parse(raw)
        problems = calibration.violations(result)
        if problems:
            logger.warning(f"Rejected speedtest on {cfg.interface}: {'; '.join(problems)}")
            raise ValidationError(problems)

        with self._lock:
            effective, sample = self._processor.process(result, self._baseline)
            self._baseline.add_sample(sample)

            measured = result.download_mbps
            self._update_status(
                current_rate=effective,
                last_calibration_mbps=measured,
                last_calibration_time=result.timestamp,
                last_adjustment=self._clock(),
                last_adjustment_reason=f"Speedtest: {measured:.0f} Mbps -> {effective:.0f} Mbps",
            )

        logger.info(f"CALIBRATION {cfg.interface}: measured {measured:.1f}Mbps -> "
                    f"effective {effective:.1f}Mbps "
                    f"(baseline {self._baseline.learning_progress():.1f}% complete)")
        if cfg.learning_mode and self._baseline.is_complete():
            logger.info(f"Baseline for {cfg.interface} covers all 168 hours; learning can be stopped")
        return effective

    def adjust_rate(self, latency: Optional[float],
                    current_rate: Optional[float] = None) -> Tuple[float, str]:
        """
        Run the latency control law once. latency=None means the probe
        failed: ProbeUnavailable is raised and the current rate stands.
        """
        cfg = self._require_configured("adjust_rate")

        if latency is None:
            logger.warning(f"No latency reading for {cfg.interface} - skipping adjustment cycle")
            raise ProbeUnavailable(f"latency probe for {cfg.interface} returned no reading")

        problems = []
        if not math.isfinite(latency) or latency < 0:
            problems.append(f"latency must be a finite, non-negative number of ms, got {latency!r}")
        if current_rate is not None and (not math.isfinite(current_rate) or current_rate <= 0):
            problems.append(f"current_rate must be a positive number of Mbps, got {current_rate!r}")
        if problems:
            raise ValidationError(problems)

        with self._lock:
            rate = self._status.current_rate if current_rate is None else current_rate
            now = self._clock()
            baseline_speed = self._baseline.baseline_speed(now)
            branch = rate_controller.branch_for(latency, self._factors)

            new_rate, reason = rate_controller.adjust(
                latency, rate, cfg.absolute_max_rate, self._factors)

            self._update_status(
                current_rate=new_rate,
                current_latency=latency,
                last_adjustment=now,
                last_adjustment_reason=reason,
            )

        if branch == "high_latency":
            logger.warning(f"ADJUST {cfg.interface}: {reason}")
        else:
            logger.info(f"ADJUST {cfg.interface}: {rate:.1f}M -> {new_rate:.1f}M | {reason}")
        if baseline_speed is not None:
            logger.debug(f"Baseline for this hour: {baseline_speed:.1f}Mbps")
        if self._export_metrics:
            metrics.record_adjustment(cfg.interface, branch)
        return new_rate, reason

    def status(self) -> EngineStatus:
        """Snapshot of the current status, refreshed for the current hour."""
        with self._lock:
            return replace(
                self._status,
                baseline_speed=self._baseline.baseline_speed(self._clock()),
                learning_progress=self._baseline.learning_progress(),
            )

    # --- Baseline pass-through ---

    def export_baseline(self) -> Dict[str, float]:
        with self._lock:
            return self._baseline.export_flat()

    def import_baseline(self, flat: Mapping[str, object]) -> None:
        """Replace the baseline from {"day_hour": speed}; all-or-nothing."""
        with self._lock:
            self._baseline.import_flat(flat, when=self._clock())
            self._update_status()

    def seed_baseline_from_profile(self) -> None:
        """Replace the baseline with the connection type's typical weekly shape."""
        with self._lock:
            cfg = self._require_configured("seed_baseline_from_profile")
            seeded = profiles.seed_baseline(cfg.connection_type, cfg.nominal_download_mbps,
                                            when=self._clock())
            self._baseline.import_flat(seeded.export_flat(), when=self._clock())
            self._update_status()

    def baseline_table(self) -> Dict[Tuple[int, int], HourlyBaseline]:
        with self._lock:
            return self._baseline.table()

    def baseline_for(self, when: datetime) -> Optional[HourlyBaseline]:
        with self._lock:
            return self._baseline.lookup(when)

    def learning_progress(self) -> float:
        with self._lock:
            return self._baseline.learning_progress()

    def is_learning_complete(self) -> bool:
        with self._lock:
            return self._baseline.is_complete()

    def rate_bounds(self) -> Tuple[float, float, float]:
        cfg = self._require_configured("rate_bounds")
        return rate_controller.rate_bounds(cfg.absolute_max_rate, self._factors)

    # --- Internals ---

    def _update_status(self, **changes) -> None:
        """Swap in a new status snapshot; caller holds the lock."""
        cfg = self._config
        self._status = replace(
            self._status,
            state=self.state,
            learning_mode_active=bool(cfg and cfg.learning_mode),
            learning_progress=self._baseline.learning_progress(),
            baseline_speed=self._baseline.baseline_speed(self._clock()),
            **changes,
        )
        if self._export_metrics and cfg is not None:
            metrics.publish_status(cfg.interface, self._status)
