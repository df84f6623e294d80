"""
Adaptive SQM Controller

Learns a weekly throughput baseline for an uplink, recalibrates it from
speedtests and nudges the applied rate limit from live latency.
"""

from .errors import ParseError, ProbeUnavailable, SqmError, StateError, ValidationError
from .profiles import ConnectionType, seed_baseline
from .config import SqmConfig, validate_config
from .config_loader import ConfigLoader
from .sqm_manager import EngineState, EngineStatus, SqmManager
from .control_loop import ControlLoop

__version__ = "0.1.0"

__all__ = [
    "ConfigLoader",
    "ConnectionType",
    "ControlLoop",
    "EngineState",
    "EngineStatus",
    "ParseError",
    "ProbeUnavailable",
    "SqmConfig",
    "SqmError",
    "SqmManager",
    "StateError",
    "ValidationError",
    "seed_baseline",
    "validate_config",
]
