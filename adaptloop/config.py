"""
Configuration Management
========================

Handles loading configuration from environment variables and config files.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, fields, asdict
from typing import Any, Dict

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Default configuration values
DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
CONFIG_FILENAME = "adaptloop_config.json"
ENV_PREFIX = "ADAPTLOOP_"


@dataclass
class LoopConfig:
    """AdaptLoop Configuration."""

    # Completion service
    model: str = DEFAULT_MODEL
    completion_timeout_seconds: float = 30.0
    max_tokens: int = 4000

    # Relational store (base directory or async SQLAlchemy URL)
    database_url: str = "."

    # Rate limiter
    rate_limit_max_requests: int = 10
    rate_limit_window_seconds: float = 60.0
    rate_limit_audit: bool = True

    # Scheduled improvement loop
    improvement_window_days: int = 7
    min_sample_size: int = 50
    healthy_success_rate: float = 0.90
    failure_sample_size: int = 30
    artifact_snippet_chars: int = 300
    candidate_cooldown_hours: float = 24.0

    @classmethod
    def load(cls, config_path: Path = None) -> "LoopConfig":
        """
        Load configuration from multiple sources in precedence order:
        1. Environment variables (ADAPTLOOP_*, .env supported)
        2. Local config file (adaptloop_config.json)
        3. Default values
        """
        load_dotenv()

        # Start with defaults
        config: Dict[str, Any] = asdict(cls())

        # Load from config file if exists
        config_path = Path(config_path or CONFIG_FILENAME)
        if config_path.exists():
            try:
                with open(config_path, "r", encoding="utf-8") as f:
                    file_config = json.load(f)
                config.update({k: v for k, v in file_config.items() if k in config})
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Failed to load config file %s: %s", config_path, e)

        # Override with environment variables
        for f in fields(cls):
            raw = os.environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None:
                continue
            try:
                config[f.name] = _coerce(raw, f.type)
            except ValueError:
                logger.warning("Ignoring invalid %s%s=%r", ENV_PREFIX, f.name.upper(), raw)

        return cls(**config)


def _coerce(raw: str, target: type) -> Any:
    if target is bool:
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if target is int:
        return int(raw)
    if target is float:
        return float(raw)
    return raw
