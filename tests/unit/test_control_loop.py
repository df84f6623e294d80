#!/usr/bin/env python3
"""
Tests for the control loop cadence and collaborator handling
"""

import json
import subprocess
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from sqm_controller.config import SqmConfig
from sqm_controller.control_loop import (
    BaselineStore,
    ControlLoop,
    LatencyProbe,
    JsonFileStore,
    LoggingRateApplier,
    OoklaSpeedtest,
    PingProbe,
    RateApplier,
    SpeedtestRunner,
)
from sqm_controller.sqm_manager import SqmManager


class FakeProbe(LatencyProbe):
    def __init__(self, readings):
        self.readings = list(readings)

    def measure(self):
        reading = self.readings.pop(0)
        if isinstance(reading, Exception):
            raise reading
        return reading


class RecordingApplier(RateApplier):
    def __init__(self):
        self.applied = []

    def apply(self, interface, rate_mbps):
        self.applied.append((interface, rate_mbps))


class FakeSpeedtest(SpeedtestRunner):
    def __init__(self, result):
        self.result = result
        self.runs = 0

    def run(self):
        self.runs += 1
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class MemoryStore(BaselineStore):
    def __init__(self, initial=None):
        self.tables = dict(initial or {})

    def load(self, interface):
        return self.tables.get(interface)

    def save(self, interface, flat):
        self.tables[interface] = dict(flat)


@pytest.fixture
def applier():
    return RecordingApplier()


def make_loop(manager, clock, probe, applier, **kwargs):
    return ControlLoop(manager, probe, applier, clock=clock, sleep=lambda seconds: None, **kwargs)


class TestAdjustmentCycle:
    def test_applies_new_rate(self, manager, clock, applier):
        loop = make_loop(manager, clock, FakeProbe([22.5]), applier)
        manager.adjust_rate(18.5, 265)
        assert loop.adjustment_cycle() == pytest.approx(241.9)
        assert applier.applied == [("eth2", pytest.approx(241.9))]

    def test_probe_failure_skips_cycle(self, manager, clock, applier):
        loop = make_loop(manager, clock, FakeProbe([None, RuntimeError("no route")]), applier)
        before = manager.status()
        assert loop.adjustment_cycle() is None
        assert loop.adjustment_cycle() is None
        assert applier.applied == []
        assert manager.status() == before

    def test_unchanged_rate_not_reapplied(self, manager, clock, applier):
        # 266 is already at the cap: normal latency holds
        loop = make_loop(manager, clock, FakeProbe([18.0, 18.0]), applier)
        loop.adjustment_cycle()
        loop.adjustment_cycle()
        assert applier.applied == [("eth2", 266.0)]


class TestCalibrationCycle:
    def test_speedtest_applied_and_persisted(self, manager, clock, applier, speedtest_result):
        store = MemoryStore()
        loop = make_loop(manager, clock, FakeProbe([]), applier,
                         speedtest=FakeSpeedtest(speedtest_result), store=store)
        assert loop.calibration_cycle() == pytest.approx(262.5)
        assert applier.applied == [("eth2", pytest.approx(262.5))]
        assert store.tables["eth2"] == {"0_18": pytest.approx(250.0)}

    def test_bad_result_discarded(self, manager, clock, applier, speedtest_result):
        del speedtest_result["ping"]
        store = MemoryStore()
        loop = make_loop(manager, clock, FakeProbe([]), applier,
                         speedtest=FakeSpeedtest(speedtest_result), store=store)
        assert loop.calibration_cycle() is None
        assert applier.applied == []
        assert store.tables == {}

    def test_runner_failure(self, manager, clock, applier):
        loop = make_loop(manager, clock, FakeProbe([]), applier,
                         speedtest=FakeSpeedtest(TimeoutError("speedtest hung")))
        assert loop.calibration_cycle() is None

    def test_no_runner(self, manager, clock, applier):
        assert make_loop(manager, clock, FakeProbe([]), applier).calibration_cycle() is None


class TestCadence:
    def test_calibration_once_per_slot(self, clock, applier, speedtest_result):
        manager = SqmManager(SqmConfig(calibration_schedule=("30 18 * * *",)),
                             clock=clock, export_metrics=False)
        speedtest = FakeSpeedtest(speedtest_result)
        loop = make_loop(manager, clock, FakeProbe([18.0] * 10), applier, speedtest=speedtest)

        # clock starts at Monday 18:30
        assert loop.calibration_due(clock.now)
        loop.run_once()
        loop.run_once(clock.now + timedelta(seconds=30))
        assert speedtest.runs == 1
        loop.run_once(clock.now + timedelta(minutes=1))
        assert speedtest.runs == 1

    def test_adjustment_interval(self, manager, clock, applier):
        probe = FakeProbe([18.0] * 10)
        loop = make_loop(manager, clock, probe, applier)
        start = clock.now.replace(minute=1)
        for minute in range(11):
            loop.run_once(start + timedelta(minutes=minute))
        # minutes 0, 5 and 10 with a 5 minute interval
        assert len(probe.readings) == 7

    def test_run_restores_baseline_and_stops(self, manager, clock, applier):
        store = MemoryStore({"eth2": {"0_18": 240}})
        loop = make_loop(manager, clock, FakeProbe([18.0] * 5), applier, store=store)
        loop.run(max_ticks=3)
        assert manager.export_baseline() == {"0_18": 240.0}
        assert applier.applied[0] == ("eth2", 266.0)

    def test_run_without_restore(self, manager, clock, applier):
        manager.import_baseline({"3_6": 280})
        store = MemoryStore({"eth2": {"0_18": 240}})
        loop = make_loop(manager, clock, FakeProbe([18.0] * 5), applier, store=store)
        loop.run(max_ticks=1, restore=False)
        assert manager.export_baseline() == {"3_6": 280.0}

    def test_rejected_store_keeps_empty_baseline(self, manager, clock, applier):
        store = MemoryStore({"eth2": {"99_99": 1}})
        loop = make_loop(manager, clock, FakeProbe([]), applier, store=store)
        assert loop.restore_baseline() is False
        assert manager.export_baseline() == {}

    def test_non_finite_store_entry_rejected(self, manager, clock, applier):
        manager.import_baseline({"0_17": 230})
        store = MemoryStore({"eth2": {"0_18": 240, "0_19": float("nan")}})
        loop = make_loop(manager, clock, FakeProbe([18.0] * 3), applier, store=store)
        loop.run(max_ticks=1)
        assert manager.export_baseline() == {"0_17": 230.0}
        assert applier.applied == [("eth2", 266.0)]

    def test_error_backoff(self, manager, clock, applier):
        sleeps = []
        loop = ControlLoop(manager, FakeProbe([]), applier, clock=clock,
                           sleep=sleeps.append, error_backoff_seconds=60, tick_seconds=30)
        loop.run_once = MagicMock(side_effect=[KeyError("boom"), None])
        loop.run(max_ticks=2)
        assert sleeps == [60, 30]

    def test_stop(self, manager, clock, applier):
        loop = make_loop(manager, clock, FakeProbe([18.0] * 5), applier)
        loop.run_once = MagicMock(side_effect=loop.stop)
        loop.run()
        assert loop.run_once.call_count == 1

    def test_needs_configured_manager(self, clock, applier):
        with pytest.raises(ValueError):
            ControlLoop(SqmManager(clock=clock, export_metrics=False), FakeProbe([]), applier)


class TestCollaborators:
    def test_ping_command(self):
        probe = PingProbe("1.1.1.1", count=3, interface="eth2")
        assert probe.command() == ["ping", "-c", "3", "-q", "-I", "eth2", "1.1.1.1"]

    def test_ping_measure(self, monkeypatch):
        completed = subprocess.CompletedProcess(
            args=[], returncode=0,
            stdout="rtt min/avg/max/mdev = 16.9/18.2/20.4/1.2 ms\n", stderr="")
        monkeypatch.setattr(subprocess, "run", lambda *a, **kw: completed)
        assert PingProbe("1.1.1.1").measure() == pytest.approx(18.2)

    def test_ping_timeout(self, monkeypatch):
        def timeout(*args, **kwargs):
            raise subprocess.TimeoutExpired(cmd="ping", timeout=15)
        monkeypatch.setattr(subprocess, "run", timeout)
        assert PingProbe("1.1.1.1").measure() is None

    def test_logging_applier(self):
        applier = LoggingRateApplier()
        applier.apply("eth2", 250.0)
        assert applier.applied == [("eth2", 250.0)]

    def test_speedtest_command(self):
        runner = OoklaSpeedtest("eth2", server_id="59762")
        assert runner.command() == ["speedtest", "--accept-license", "--accept-gdpr",
                                    "--format=json", "--interface=eth2", "--server-id=59762"]

    def test_speedtest_output_parsed(self, monkeypatch, manager, speedtest_result):
        completed = subprocess.CompletedProcess(
            args=[], returncode=0, stdout=json.dumps(speedtest_result), stderr="")
        monkeypatch.setattr(subprocess, "run", lambda *a, **kw: completed)
        raw = OoklaSpeedtest("eth2").run()
        assert manager.process_calibration(raw) == pytest.approx(262.5)

    def test_speedtest_failure_raises(self, monkeypatch):
        completed = subprocess.CompletedProcess(
            args=[], returncode=2, stdout="", stderr="No servers found")
        monkeypatch.setattr(subprocess, "run", lambda *a, **kw: completed)
        with pytest.raises(RuntimeError, match="No servers found"):
            OoklaSpeedtest().run()


class TestJsonFileStore:
    def test_missing_file(self, tmp_path):
        assert JsonFileStore(str(tmp_path)).load("eth2") is None

    def test_save_and_load(self, tmp_path):
        store = JsonFileStore(str(tmp_path / "state"))
        store.save("eth2", {"0_18": 250.0, "3_6": 280.0})
        assert (tmp_path / "state" / "baseline_eth2.json").exists()
        assert store.load("eth2") == {"0_18": 250.0, "3_6": 280.0}
        assert store.load("eth1") is None

    def test_corrupt_file(self, tmp_path):
        (tmp_path / "baseline_eth2.json").write_text("{not json")
        assert JsonFileStore(str(tmp_path)).load("eth2") is None

    def test_stored_nan_rejected_on_restore(self, tmp_path, manager, clock, applier):
        (tmp_path / "baseline_eth2.json").write_text('{"0_18": 240, "0_19": NaN}')
        loop = make_loop(manager, clock, FakeProbe([]), applier,
                         store=JsonFileStore(str(tmp_path)))
        assert loop.restore_baseline() is False
        assert manager.export_baseline() == {}

    def test_calibration_persists_to_file(self, tmp_path, manager, clock, applier,
                                          speedtest_result):
        store = JsonFileStore(str(tmp_path))
        loop = make_loop(manager, clock, FakeProbe([]), applier,
                         speedtest=FakeSpeedtest(speedtest_result), store=store)
        loop.calibration_cycle()
        assert JsonFileStore(str(tmp_path)).load("eth2") == {"0_18": pytest.approx(250.0)}
