from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .models import ServiceSettings

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "PRODUCTION_SUITE_CONFIG"

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [parent / "config/config.yaml" for parent in _HERE.parents[:4]]

DEFAULTS: Dict[str, Any] = {
    "database": {
        "path": "data/production_suite.db",
        "timeout_seconds": 30.0,
    },
    "scheduler": {
        "enabled": True,
        "interval_seconds": 900,
        "run_on_start": True,
    },
    "durations": {
        "enabled": True,
        "print_machine_id": None,
    },
}

# Environment variable -> dotted config key
ENV_OVERRIDES = {
    "PRODUCTION_SUITE_DB_PATH": "database.path",
    "PRODUCTION_SUITE_SWEEP_INTERVAL": "scheduler.interval_seconds",
    "PRODUCTION_SUITE_SCHEDULER_ENABLED": "scheduler.enabled",
}


def find_config_path() -> Optional[Path]:
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise FileNotFoundError(f"Config file set in {CONFIG_ENV_VAR} not found at {path}")
        return path
    return next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    base = OmegaConf.create(DEFAULTS)
    config_path = find_config_path()
    if config_path is None:
        logger.info("No config.yaml found; using built-in defaults")
        return base
    logger.info(f"Loading configuration from {config_path}")
    return DictConfig(OmegaConf.merge(base, OmegaConf.load(config_path)))


def _environment_overrides() -> DictConfig:
    dotlist = [f"{key}={os.environ[name]}" for name, key in ENV_OVERRIDES.items() if os.environ.get(name)]
    return OmegaConf.from_dotlist(dotlist)


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Merge defaults, config.yaml, environment and explicit overrides, in that order.

    The base is struct-locked so a misspelled override key fails instead of
    being silently ignored.
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    merged = OmegaConf.merge(base, _environment_overrides(), OmegaConf.create(overrides or {}))
    return DictConfig(merged)


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> ServiceSettings:
    config = make_runtime_config(overrides)
    return ServiceSettings(
        database_path=str(config.database.path),
        database_timeout_seconds=config.database.timeout_seconds,
        scheduler_enabled=config.scheduler.enabled,
        scheduler_interval_seconds=config.scheduler.interval_seconds,
        scheduler_run_on_start=config.scheduler.run_on_start,
        durations_enabled=config.durations.enabled,
        print_machine_id=config.durations.print_machine_id,
    )
