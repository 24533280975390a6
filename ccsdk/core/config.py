from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, field_validator

log = logging.getLogger("ccsdk.config")

CONFIG_PATH = Path("configs/client.yaml")

ENV_OVERRIDES = {
    "CCSDK_HOST": "host",
    "CCSDK_PRIVATE_KEY": "private_key",
    "CCSDK_TIMEOUT": "timeout_s",
}


class ClientConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    host: str
    private_key: str
    client: str = "ccsdk"
    timeout_s: float = 10.0
    scheme: str = "https"

    @field_validator("host")
    @classmethod
    def _strip_host(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if "://" in v:
            v = v.split("://", 1)[1]
        return v


def load_config(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> ClientConfig:
    """YAML file values, overridden by ``CCSDK_*`` environment variables."""

    env = os.environ if env is None else env
    config_path = Path(path) if path else CONFIG_PATH

    data: Dict[str, Any] = {}
    if config_path.exists():
        data = yaml.safe_load(config_path.read_text()) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{config_path}: expected a mapping at the top level")
    elif path:
        raise ValueError(f"config file {config_path} does not exist")
    else:
        log.debug("no config at %s; using environment only", config_path)

    for var, key in ENV_OVERRIDES.items():
        if env.get(var):
            data[key] = env[var]

    missing = [key for key in ("host", "private_key") if not data.get(key)]
    if missing:
        raise ValueError(f"missing required config value(s): {', '.join(missing)}")
    return ClientConfig.model_validate(data)


__all__ = ["ClientConfig", "load_config", "CONFIG_PATH"]
