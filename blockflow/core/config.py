"""Engine configuration loaded from `.blockflow/config.yaml`.

Example:
    max_parallel: 8
    max_subworkflow_depth: 10
    scheduler:
      max_consecutive_failures: 3
      usage_retry_hours: 24
      poll_interval: 60
"""

from __future__ import annotations

from pathlib import Path

import pydantic
import yaml
from pydantic import BaseModel, Field

from blockflow.core.errors import ConfigError

DEFAULT_CONFIG_PATH = Path(".blockflow") / "config.yaml"


class SchedulerConfig(BaseModel):
    max_consecutive_failures: int = Field(default=3, ge=1)
    usage_retry_hours: float = Field(default=24, gt=0)  # Cooldown when usage is exceeded
    fallback_retry_hours: float = Field(default=24, gt=0)  # When next run cannot be computed
    batch_limit: int = Field(default=10, ge=1)  # Due schedules per poll cycle
    poll_interval: float = Field(default=60, gt=0)  # Seconds between worker polls


class EngineConfig(BaseModel):
    model_config = {"extra": "forbid"}

    max_parallel: int = Field(default=4, ge=1)
    max_subworkflow_depth: int = Field(default=10, ge=1)
    db_path: str = ".blockflow/state.db"
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)


def load_config(path: str | Path | None = None) -> EngineConfig:
    """
    Load configuration; a missing file yields defaults.

    Raises:
        ConfigError: If the file is not valid YAML or does not match the schema.
    """
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        return EngineConfig()

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if data is None:
        return EngineConfig()
    if not isinstance(data, dict):
        raise ConfigError(
            f"Invalid config in {config_path}: expected a mapping, got {type(data).__name__}"
        )

    try:
        return EngineConfig.model_validate(data)
    except pydantic.ValidationError as e:
        err = e.errors()[0]
        loc = ".".join(str(x) for x in err["loc"])
        raise ConfigError(f"Invalid config in {config_path}: {loc}: {err['msg']}") from e
