#!/usr/bin/env python3
"""
Configuration management for Windrow.

Settings come from dataclass defaults, then environment variables, then
the first JSON config file found:

    ~/.windrow/config.json
    ./windrow.json
    $WINDROW_CONFIG_FILE
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("table", "jsonl")


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, 'true' if default else 'false').lower() == 'true'


@dataclass
class RunnerConfig:
    """Direct runner tuning."""
    partitions: int = 4
    combiner_lifting: bool = True


@dataclass
class OperationalConfig:
    """Operational configuration."""
    log_level: str = "INFO"
    enable_metrics: bool = True
    output_format: str = "table"


@dataclass
class WindrowConfig:
    """Main Windrow configuration."""
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    operational: OperationalConfig = field(default_factory=OperationalConfig)

    def __post_init__(self):
        """Load configuration from environment and files."""
        self._load_from_environment()
        self._load_from_config_files()

    def _load_from_environment(self):
        """Load configuration from environment variables."""
        # Runner
        self.runner.partitions = int(os.getenv('WINDROW_PARTITIONS', self.runner.partitions))
        self.runner.combiner_lifting = _env_bool('WINDROW_COMBINER_LIFTING', self.runner.combiner_lifting)

        # Operational
        self.operational.log_level = os.getenv('WINDROW_LOG_LEVEL', self.operational.log_level)
        self.operational.enable_metrics = _env_bool('WINDROW_ENABLE_METRICS', self.operational.enable_metrics)
        self.operational.output_format = os.getenv('WINDROW_OUTPUT_FORMAT', self.operational.output_format)

    def _load_from_config_files(self):
        """Load configuration from the first config file that exists."""
        config_paths = [
            Path.home() / '.windrow' / 'config.json',
            Path.cwd() / 'windrow.json',
        ]
        env_path = os.getenv('WINDROW_CONFIG_FILE')
        if env_path:
            config_paths.append(Path(env_path))

        for config_path in config_paths:
            if config_path.is_file():
                try:
                    with open(config_path, 'r') as f:
                        config_data = json.load(f)
                except (OSError, json.JSONDecodeError) as e:
                    logger.warning(f"Failed to load config from {config_path}: {e}")
                    continue

                self._update_from_dict(config_data)
                logger.debug(f"Loaded configuration from {config_path}")
                break

    def _update_from_dict(self, data: Dict[str, Any]):
        """Update configuration from dictionary."""
        for section_name in ('runner', 'operational'):
            section = getattr(self, section_name)
            for key, value in data.get(section_name, {}).items():
                if hasattr(section, key):
                    setattr(section, key, value)
                else:
                    logger.warning(f"Ignoring unknown config key {section_name}.{key}")

    def validate(self) -> None:
        """Raise ValueError for settings the runner cannot use."""
        if self.runner.partitions < 1:
            raise ValueError(f"runner.partitions must be at least 1, got {self.runner.partitions}")
        if self.operational.output_format not in OUTPUT_FORMATS:
            raise ValueError(
                f"operational.output_format must be one of {OUTPUT_FORMATS}, "
                f"got {self.operational.output_format!r}"
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            'runner': {
                'partitions': self.runner.partitions,
                'combiner_lifting': self.runner.combiner_lifting,
            },
            'operational': {
                'log_level': self.operational.log_level,
                'enable_metrics': self.operational.enable_metrics,
                'output_format': self.operational.output_format,
            },
        }

    def save_to_file(self, path: Path):
        """Save configuration to file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


# Global configuration instance
_config: Optional[WindrowConfig] = None


def get_config() -> WindrowConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = WindrowConfig()
    return _config


def reload_config() -> WindrowConfig:
    """Rebuild the global configuration from environment and files."""
    global _config
    _config = WindrowConfig()
    return _config
