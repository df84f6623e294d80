#!/usr/bin/env python3
"""
SQM Control Loop

Drives one SqmManager on a fixed cadence:
  - every adjustment interval: ping probe -> adjust_rate -> apply
  - on each calibration cron slot: speedtest -> process_calibration -> apply, persist

Probe execution, rate application and persistence are collaborators handed
in by the caller. A failed probe skips the cycle and the applied rate stays.
main() runs the Ookla CLI for calibration and keeps the baseline in
$SQM_BASELINE_DIR/baseline_<interface>.json. Rates are applied in dry-run mode.
"""

import os
import sys
import json
import logging
import subprocess
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, List, Mapping, Optional

from . import metrics
from .calibration import RawResult
from .config_loader import ConfigLoader
from .cron import CronExpression
from .errors import ParseError, ProbeUnavailable, ValidationError
from .rate_controller import parse_ping_output
from .sqm_manager import SqmManager

logger = logging.getLogger(__name__)

TICK_SECONDS = 30
ERROR_BACKOFF_SECONDS = 60
PING_COUNT = 5
PING_TIMEOUT_SECONDS = 15
SPEEDTEST_TIMEOUT_SECONDS = 120
DEFAULT_BASELINE_DIR = "/var/lib/sqm-controller"


class LatencyProbe(ABC):
    """Returns average RTT in ms, or None when no reading could be taken"""

    @abstractmethod
    def measure(self) -> Optional[float]:
        ...


class SpeedtestRunner(ABC):
    """Runs a bandwidth test and returns its raw JSON result"""

    @abstractmethod
    def run(self) -> RawResult:
        ...


class RateApplier(ABC):
    """Pushes a download rate limit to the queueing discipline"""

    @abstractmethod
    def apply(self, interface: str, rate_mbps: float) -> None:
        ...


class BaselineStore(ABC):
    """Persists the flat {"day_hour": speed} baseline per interface"""

    @abstractmethod
    def load(self, interface: str) -> Optional[Mapping[str, float]]:
        ...

    @abstractmethod
    def save(self, interface: str, flat: Mapping[str, float]) -> None:
        ...


class PingProbe(LatencyProbe):
    """Latency from the system ping binary"""

    def __init__(self, host: str, count: int = PING_COUNT,
                 timeout: float = PING_TIMEOUT_SECONDS, interface: Optional[str] = None):
        self.host = host
        self.count = count
        self.timeout = timeout
        self.interface = interface

    def command(self) -> List[str]:
        cmd = ["ping", "-c", str(self.count), "-q"]
        if self.interface:
            cmd += ["-I", self.interface]
        return cmd + [self.host]

    def measure(self) -> Optional[float]:
        try:
            result = subprocess.run(self.command(), capture_output=True, text=True,
                                    timeout=self.timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Ping to {self.host} timed out after {self.timeout}s")
            return None
        except FileNotFoundError:
            logger.error("ping binary not found")
            return None

        latency = parse_ping_output(result.stdout)
        if latency is None:
            logger.warning(f"No ping summary from {self.host} (exit code {result.returncode})")
        return latency


class LoggingRateApplier(RateApplier):
    """Dry-run applier: logs the tc command instead of running it"""

    def __init__(self):
        self.applied: List[tuple] = []

    def apply(self, interface: str, rate_mbps: float) -> None:
        self.applied.append((interface, rate_mbps))
        logger.info(f"[DRY RUN] tc class change dev ifb{interface} parent 1: classid 1:1 "
                    f"htb rate {rate_mbps:.1f}mbit")


class OoklaSpeedtest(SpeedtestRunner):
    """Runs the Ookla speedtest CLI and returns its JSON output"""

    def __init__(self, interface: Optional[str] = None, server_id: Optional[str] = None,
                 timeout: float = SPEEDTEST_TIMEOUT_SECONDS):
        self.interface = interface
        self.server_id = server_id
        self.timeout = timeout

    def command(self) -> List[str]:
        cmd = ["speedtest", "--accept-license", "--accept-gdpr", "--format=json"]
        if self.interface:
            cmd.append(f"--interface={self.interface}")
        if self.server_id:
            cmd.append(f"--server-id={self.server_id}")
        return cmd

    def run(self) -> RawResult:
        result = subprocess.run(self.command(), capture_output=True, text=True,
                                timeout=self.timeout)
        if result.returncode != 0:
            raise RuntimeError(f"speedtest exited with {result.returncode}: "
                               f"{result.stderr.strip()}")
        return result.stdout


class JsonFileStore(BaselineStore):
    """One baseline_<interface>.json file per uplink in a directory"""

    def __init__(self, directory: str):
        self.directory = directory

    def path_for(self, interface: str) -> str:
        return os.path.join(self.directory, f"baseline_{interface}.json")

    def load(self, interface: str) -> Optional[Mapping[str, float]]:
        path = self.path_for(interface)
        if not os.path.exists(path):
            return None
        with open(path, 'r') as f:
            try:
                return json.load(f)
            except json.JSONDecodeError as e:
                logger.error(f"Baseline file {path} is not valid JSON: {e}")
                return None

    def save(self, interface: str, flat: Mapping[str, float]) -> None:
        os.makedirs(self.directory, exist_ok=True)
        path = self.path_for(interface)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, 'w') as f:
            json.dump(dict(flat), f, indent=2, sort_keys=True)
        os.replace(tmp_path, path)


class ControlLoop:
    """Cadence and collaborator wiring around one SqmManager"""

    def __init__(self, manager: SqmManager, probe: LatencyProbe, applier: RateApplier,
                 speedtest: Optional[SpeedtestRunner] = None,
                 store: Optional[BaselineStore] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 sleep: Optional[Callable[[float], object]] = None,
                 tick_seconds: float = TICK_SECONDS,
                 error_backoff_seconds: float = ERROR_BACKOFF_SECONDS):
        config = manager.config
        if config is None:
            raise ValueError("ControlLoop needs a configured SqmManager")

        self.manager = manager
        self.probe = probe
        self.applier = applier
        self.speedtest = speedtest
        self.store = store
        self.clock = clock
        self.tick_seconds = tick_seconds
        self.error_backoff_seconds = error_backoff_seconds

        self._stop = threading.Event()
        self._sleep = sleep or self._stop.wait
        self._schedule = [CronExpression.parse(entry) for entry in config.calibration_schedule]
        self._interval = timedelta(minutes=config.adjustment_interval_minutes)
        self._next_adjustment: Optional[datetime] = None
        self._last_calibration_slot: Optional[datetime] = None
        self._applied_rate: Optional[float] = None

    @property
    def interface(self) -> str:
        return self.manager.config.interface

    @property
    def applied_rate(self) -> Optional[float]:
        return self._applied_rate

    def stop(self) -> None:
        self._stop.set()

    # --- Cycles ---

    def restore_baseline(self) -> bool:
        """Load a persisted baseline into the manager. False if none was usable."""
        if self.store is None:
            return False
        try:
            flat = self.store.load(self.interface)
        except OSError as e:
            logger.error(f"Failed to load baseline for {self.interface}: {e}")
            return False
        if not flat:
            return False

        try:
            self.manager.import_baseline(flat)
        except ValidationError as e:
            logger.error(f"Stored baseline for {self.interface} rejected: {e}")
            return False

        logger.info(f"Restored baseline for {self.interface}: "
                    f"{self.manager.learning_progress():.1f}% of hours populated")
        return True

    def adjustment_cycle(self) -> Optional[float]:
        """One latency check. Returns the new rate, or None if the cycle was skipped."""
        try:
            latency = self.probe.measure()
        except Exception as e:
            logger.error(f"Latency probe failed on {self.interface}: {e}")
            latency = None

        try:
            new_rate, _ = self.manager.adjust_rate(latency)
        except ProbeUnavailable:
            return None

        self._apply(new_rate)
        return new_rate

    def calibration_cycle(self) -> Optional[float]:
        """One speedtest. Returns the new effective rate, or None if it was skipped."""
        if self.speedtest is None:
            return None

        try:
            raw = self.speedtest.run()
        except Exception as e:
            logger.error(f"Speedtest failed on {self.interface}: {e}")
            return None

        try:
            rate = self.manager.process_calibration(raw)
        except (ParseError, ValidationError) as e:
            logger.warning(f"Speedtest result discarded for {self.interface}: {e}")
            return None

        self._apply(rate)
        if self.store is not None:
            try:
                self.store.save(self.interface, self.manager.export_baseline())
            except OSError as e:
                logger.error(f"Failed to persist baseline for {self.interface}: {e}")
        return rate

    def calibration_due(self, now: datetime) -> bool:
        slot = now.replace(second=0, microsecond=0)
        if slot == self._last_calibration_slot:
            return False
        return any(entry.matches(slot) for entry in self._schedule)

    def run_once(self, now: Optional[datetime] = None) -> None:
        """Run whatever is due at `now`."""
        now = now or self.clock()

        if self.calibration_due(now):
            self._last_calibration_slot = now.replace(second=0, microsecond=0)
            logger.info(f"Calibration slot reached for {self.interface}")
            self.calibration_cycle()

        if self._next_adjustment is None or now >= self._next_adjustment:
            self._next_adjustment = now + self._interval
            self.adjustment_cycle()

    def run(self, max_ticks: Optional[int] = None, restore: bool = True) -> None:
        cfg = self.manager.config
        logger.info("=" * 60)
        logger.info(f"Starting SQM control loop for {cfg.interface}")
        logger.info(f"Adjustment every {cfg.adjustment_interval_minutes} min, "
                    f"calibration at {', '.join(cfg.calibration_schedule)}")
        logger.info("=" * 60)

        if restore:
            self.restore_baseline()
        self._apply(self.manager.status().current_rate)

        ticks = 0
        while not self._stop.is_set():
            if max_ticks is not None and ticks >= max_ticks:
                break
            ticks += 1
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Control loop error on {cfg.interface}: {e}", exc_info=True)
                self._sleep(self.error_backoff_seconds)
                continue
            self._sleep(self.tick_seconds)

        logger.info(f"SQM control loop for {cfg.interface} stopped")

    def _apply(self, rate: float) -> None:
        if rate == self._applied_rate:
            return
        self.applier.apply(self.interface, rate)
        self._applied_rate = rate


def main():
    """Entry point"""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - [%(name)s] %(message)s'
    )

    try:
        metrics_port = int(os.getenv('METRICS_PORT', '8001'))
        metrics.start_metrics_server(metrics_port)
        logger.info(f"Started Prometheus metrics server on port {metrics_port}")

        config = ConfigLoader.load()
        if not ConfigLoader.validate(config):
            logger.error("Configuration validation failed")
            sys.exit(1)

        manager = SqmManager(config)
        store = JsonFileStore(os.getenv('SQM_BASELINE_DIR', DEFAULT_BASELINE_DIR))
        speedtest = OoklaSpeedtest(config.interface, config.preferred_speedtest_server_id)
        loop = ControlLoop(manager, PingProbe(config.ping_host), LoggingRateApplier(),
                           speedtest=speedtest, store=store)

        if not loop.restore_baseline():
            manager.seed_baseline_from_profile()
            logger.info(f"Seeded baseline from {config.connection_type.value} profile")

        loop.run(restore=False)

    except KeyboardInterrupt:
        logger.info("Shutting down SQM controller")
    except Exception as e:
        logger.error(f"Controller startup failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
