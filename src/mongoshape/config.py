"""Configuration for mongoshape databases."""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from mongoshape.errors import ConfigError
from mongoshape.log import parse_level

CONFIG_FILE = "mongoshape_config.json"
ENV_PREFIX = "MONGOSHAPE_"
TRANSACTION_MODES = ("auto", "transactional", "optimistic")


@dataclass
class MongoShapeConfig:
    """Configuration for a mongoshape Database."""

    mongo_uri: str = "mongodb://localhost:27017"
    backup_dir: str = "./mongoshape/backups"
    log_level: str = "info"
    min_pool_size: int = 6
    max_pool_size: int = 10
    transform_max_retries: int = 3
    transaction_mode: str = "auto"
    detection_collection: str = "__mongoshape_txn_check"

    def __post_init__(self) -> None:
        try:
            parse_level(self.log_level)
        except ValueError as e:
            raise ConfigError(str(e)) from e
        if self.transaction_mode not in TRANSACTION_MODES:
            raise ConfigError(
                f"transaction_mode must be one of {TRANSACTION_MODES}, "
                f"got '{self.transaction_mode}'"
            )
        if self.transform_max_retries < 1:
            raise ConfigError("transform_max_retries must be at least 1")
        if self.min_pool_size > self.max_pool_size:
            raise ConfigError("min_pool_size must not exceed max_pool_size")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> MongoShapeConfig:
        """Build config from MONGOSHAPE_* keys, ignoring unrelated keys."""
        kwargs: dict[str, Any] = {}
        for f in fields(cls):
            key = ENV_PREFIX + f.name.upper()
            if key not in values or values[key] in (None, ""):
                continue
            raw = values[key]
            if f.type == "int":
                try:
                    kwargs[f.name] = int(raw)
                except (TypeError, ValueError):
                    raise ConfigError(f"{key} must be an integer, got {raw!r}") from None
            else:
                kwargs[f.name] = str(raw)
        return cls(**kwargs)


def load_config(
    path: str | os.PathLike[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> MongoShapeConfig:
    """Load config from a JSON file when present, else from the environment."""
    config_path = Path(path) if path is not None else Path(CONFIG_FILE)
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a JSON object")
        return MongoShapeConfig.from_mapping(data)
    if path is not None:
        raise ConfigError(f"Config file not found: {config_path}")
    return MongoShapeConfig.from_mapping(os.environ if environ is None else environ)
