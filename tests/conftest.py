"""Shared fixtures for SQM controller tests"""

import copy
from datetime import datetime

import pytest

from sqm_controller.baseline import BaselineModel
from sqm_controller.config import SqmConfig
from sqm_controller.rate_controller import RateFactors
from sqm_controller.sqm_manager import SqmManager

# Monday 18:30 -> bucket (0, 18)
MONDAY_EVENING = datetime(2024, 1, 15, 18, 30)

SPEEDTEST_RESULT = {
    "type": "result",
    "timestamp": "2024-01-15T18:30:00",
    "ping": {"jitter": 0.8, "latency": 18.2, "low": 17.1, "high": 20.4},
    "download": {"bandwidth": 31250000, "bytes": 350000000, "elapsed": 11000},
    "upload": {"bandwidth": 4375000, "bytes": 52000000, "elapsed": 12000},
    "packetLoss": 0,
    "isp": "Example Cable",
    "interface": {"internalIp": "192.168.1.2", "name": "eth2", "isVpn": False,
                  "externalIp": "203.0.113.7"},
    "server": {"id": 59762, "host": "speedtest.example.net", "port": 8080,
               "name": "Example", "location": "Dallas, TX", "country": "United States"},
    "result": {"id": "abc", "url": "https://example.net/result/abc"},
}


class FixedClock:
    """Callable clock the tests can move by hand"""

    def __init__(self, now: datetime = MONDAY_EVENING):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def speedtest_result():
    return copy.deepcopy(SPEEDTEST_RESULT)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def config():
    return SqmConfig()


@pytest.fixture
def factors():
    """Cable tuning used by the worked examples (280 Mbps absolute max)"""
    return RateFactors(
        baseline_latency_ms=17.9,
        latency_threshold_ms=2.2,
        decrease_factor=0.97,
        increase_factor=1.04,
        min_rate=190,
        max_rate=280,
    )


@pytest.fixture
def baseline():
    return BaselineModel()


@pytest.fixture
def manager(config, clock):
    return SqmManager(config, clock=clock, export_metrics=False)
