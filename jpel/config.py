from __future__ import annotations

import os
from typing import Dict, Optional

import yaml
from pydantic import BaseModel

ENV_PREFIX = "JPEL_ENV_"


class HttpConfig(BaseModel):
    """Settings for outbound calls made by api activities."""

    timeout: float = 30.0
    verify: bool = True


class JpelConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "WARNING"
    environment: Dict[str, str] = {}
    http: HttpConfig = HttpConfig()


def load_config(path: Optional[str] = None) -> JpelConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to JPEL_CONFIG env
            variable or 'config.yaml' in the current directory.

    Variables named ``JPEL_ENV_<NAME>`` are exposed to scripts as
    ``env:<NAME>``; values from the file win over the process environment.
    """

    config_path = path or os.getenv("JPEL_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = JpelConfig(**data)
    else:
        config = JpelConfig()

    env_db_url = os.getenv("JPEL_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url

    imported = {
        key[len(ENV_PREFIX):]: value
        for key, value in os.environ.items()
        if key.startswith(ENV_PREFIX) and len(key) > len(ENV_PREFIX)
    }
    config.environment = {**imported, **config.environment}
    return config
