#!/usr/bin/env python3
"""
Uplink Configuration Loader
Parses uplink.yaml and builds the SqmConfig for an SqmManager
"""

import os
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import yaml

from .config import SqmConfig, validate_config
from .errors import ValidationError
from .profiles import ConnectionType

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/sqm-controller/uplink.yaml"

# (yaml section, yaml key) -> (SqmConfig field, converter)
_FIELD_MAP: Dict[tuple, tuple] = {
    ('uplink', 'interface'): ('interface', str),
    ('uplink', 'connection_name'): ('connection_name', str),
    ('uplink', 'ping_host'): ('ping_host', str),
    ('uplink', 'speedtest_server_id'): ('preferred_speedtest_server_id', str),
    ('rates', 'min_rate'): ('min_rate', float),
    ('rates', 'max_rate'): ('max_rate', float),
    ('rates', 'absolute_max_rate'): ('absolute_max_rate', float),
    ('rates', 'overhead_multiplier'): ('overhead_multiplier', float),
    ('latency', 'baseline_ms'): ('baseline_latency_ms', float),
    ('latency', 'threshold_ms'): ('latency_threshold_ms', float),
    ('latency', 'decrease_factor'): ('decrease_factor', float),
    ('latency', 'increase_factor'): ('increase_factor', float),
    ('blending', 'within_weight'): ('blending_weight_within', float),
    ('blending', 'below_weight'): ('blending_weight_below', float),
    ('schedule', 'adjustment_interval_minutes'): ('adjustment_interval_minutes', int),
    ('learning', 'enabled'): ('learning_mode', bool),
}


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class ConfigLoader:
    """Loads and validates uplink.yaml configuration"""

    @staticmethod
    def load(config_path: Optional[str] = None) -> SqmConfig:
        """Load configuration from YAML file"""
        config_path = config_path or os.getenv('SQM_CONFIG_PATH', DEFAULT_CONFIG_PATH)
        try:
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f)

            logger.info(f"Loaded configuration from {config_path}")
            return ConfigLoader._parse_config(config or {})

        except FileNotFoundError:
            logger.error(f"Config file not found: {config_path}")
            raise
        except yaml.YAMLError as e:
            logger.error(f"YAML parsing error: {e}")
            raise

    @staticmethod
    def loads(text: str) -> SqmConfig:
        """Parse configuration from a YAML string"""
        return ConfigLoader._parse_config(yaml.safe_load(text) or {})

    @staticmethod
    def _parse_config(config: dict) -> SqmConfig:
        """
        Build SqmConfig from the parsed YAML document.

        If uplink.connection_type is set the profile supplies every tuning
        value and explicit keys override it. Otherwise SqmConfig defaults
        are the starting point. Conversion problems are collected and
        raised together.
        """
        if not isinstance(config, dict):
            raise ValidationError(["configuration document must be a mapping"])

        problems: List[str] = []
        overrides: Dict[str, Any] = {}

        for (section, key), (field_name, convert) in _FIELD_MAP.items():
            block = config.get(section) or {}
            if key not in block:
                continue
            try:
                overrides[field_name] = ConfigLoader._convert(block[key], convert)
            except (TypeError, ValueError):
                problems.append(f"{section}.{key}: cannot interpret {block[key]!r} as {convert.__name__}")

        learning = config.get('learning') or {}
        if learning.get('started') is not None:
            try:
                overrides['learning_mode_started'] = _parse_timestamp(learning['started'])
            except (TypeError, ValueError):
                problems.append(f"learning.started: {learning['started']!r} is not an ISO timestamp")

        schedule = (config.get('schedule') or {}).get('calibration')
        if schedule is not None:
            if isinstance(schedule, str):
                schedule = [schedule]
            overrides['calibration_schedule'] = tuple(str(entry) for entry in schedule)

        uplink = config.get('uplink') or {}
        nominal_down = nominal_up = None
        for key in ('nominal_download_mbps', 'nominal_upload_mbps'):
            if key in uplink:
                try:
                    value = int(uplink[key])
                except (TypeError, ValueError):
                    problems.append(f"uplink.{key}: cannot interpret {uplink[key]!r} as int")
                    continue
                if key == 'nominal_download_mbps':
                    nominal_down = value
                else:
                    nominal_up = value

        connection_type = None
        if 'connection_type' in uplink:
            try:
                connection_type = ConnectionType.parse(uplink['connection_type'])
            except ValueError as e:
                problems.append(f"uplink.connection_type: {e}")

        if connection_type is not None and nominal_down is None:
            problems.append("uplink.nominal_download_mbps is required with connection_type")

        if problems:
            raise ValidationError(problems)

        if connection_type is not None:
            return SqmConfig.from_profile(connection_type, nominal_down, nominal_up or 0, **overrides)

        if nominal_down is not None:
            overrides['nominal_download_mbps'] = nominal_down
        if nominal_up is not None:
            overrides['nominal_upload_mbps'] = nominal_up
        return SqmConfig(**overrides)

    @staticmethod
    def _convert(value: Any, convert: Callable) -> Any:
        if convert is bool and isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ('true', 'yes', 'on', '1'):
                return True
            if lowered in ('false', 'no', 'off', '0'):
                return False
            raise ValueError(value)
        if convert is str and value is None:
            raise TypeError(value)
        return convert(value)

    @staticmethod
    def validate(config: SqmConfig) -> bool:
        """Validate configuration consistency, logging every violation"""
        errors = validate_config(config)
        for error in errors:
            logger.error(f"Invalid configuration: {error}")

        if errors:
            return False

        logger.info("Configuration validation passed")
        return True
