import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://eth.llamarpc.com"
DEFAULT_CHAIN_ID = 11155111
DEFAULT_DB_PATH = "indexer.db"

# environment variable -> config field
ENV_OVERRIDES = {
    "RPC_URL": "rpc_url",
    "CHAIN_ID": "chain_id",
    "START_BLOCK": "start_block",
    "DATABASE_URL": "database_url",
    "TOKEN_ADDRESS": "token_address",
    "POLL_INTERVAL": "poll_interval",
    "MAX_BATCH_SPAN": "max_batch_span",
}


class RetryConfig(BaseModel):
    """Bounded retry policy for single RPC requests"""

    max_attempts: int = Field(default=5, ge=1)
    base_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=10.0, ge=0)


class BackoffConfig(BaseModel):
    """Unbounded pipeline-level backoff after a failed cycle"""

    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=60.0, ge=0)


class IndexerConfig(BaseModel):
    rpc_url: str = DEFAULT_RPC_URL
    chain_id: int = Field(default=DEFAULT_CHAIN_ID, ge=0)
    start_block: int = Field(default=0, ge=0)
    database_url: str = f"sqlite:///{DEFAULT_DB_PATH}"
    token_address: Optional[str] = None
    poll_interval: float = Field(default=12.0, ge=0)
    max_batch_span: int = Field(default=100, ge=1)
    request_timeout: float = Field(default=30.0, gt=0)
    log_queue_size: int = Field(default=10_000, ge=1)
    batch_queue_size: int = Field(default=4, ge=1)
    verify_chain_id: bool = True
    fetch_retry: RetryConfig = Field(default_factory=RetryConfig)
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)

    @field_validator("token_address")
    @classmethod
    def check_token_address(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        body = v[2:] if v.startswith("0x") else v
        if len(body) != 40:
            raise ValueError(f"token address must be 20 bytes, got {v}")
        try:
            bytes.fromhex(body)
        except ValueError as e:
            raise ValueError(f"token address is not hex: {v}") from e
        return "0x" + body.lower()

    @model_validator(mode="after")
    def check_delays(self) -> "IndexerConfig":
        if self.fetch_retry.base_delay > self.fetch_retry.max_delay:
            raise ValueError("fetch_retry.base_delay must not exceed fetch_retry.max_delay")
        if self.backoff.base_delay > self.backoff.max_delay:
            raise ValueError("backoff.base_delay must not exceed backoff.max_delay")
        return self


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Collect config values from the environment.

    DB_PATH is shorthand for a SQLite database file; DATABASE_URL wins when
    both are set.
    """
    environ = os.environ if environ is None else environ
    out: Dict[str, Any] = {}

    db_path = environ.get("DB_PATH")
    if db_path:
        out["database_url"] = f"sqlite:///{db_path}"

    for var, name in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is not None and value != "":
            out[name] = value

    return out


def load_config(
    path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> IndexerConfig:
    """Build the config from an optional YAML file, the environment and explicit overrides.

    Later sources win: file < environment < overrides.
    """
    if environ is None:
        load_dotenv()

    raw: Dict[str, Any] = {}

    if path is not None:
        try:
            with open(path, "r") as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error reading config file {path}: {e}")
            raise ConfigError(f"failed to read config file {path}: {e}") from e

        if not isinstance(raw, dict):
            raise ConfigError(f"config file {path} must contain a mapping")

    raw.update(env_overrides(environ))
    raw.update({k: v for k, v in (overrides or {}).items() if v is not None})

    try:
        config = IndexerConfig(**raw)
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        raise ConfigError(str(e)) from e

    logger.info(f"Loaded configuration for chain {config.chain_id}")

    return config


__all__ = [
    "RetryConfig",
    "BackoffConfig",
    "IndexerConfig",
    "env_overrides",
    "load_config",
]
