"""Block store configuration and factory."""

import os
from pathlib import Path
from typing import Literal, Optional, Tuple, Union

import platformdirs
import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .store.base import BlockStore
from .store.file import DEFAULT_LOCK_TIMEOUT, DEFAULT_SHARD_WIDTHS, FileBlockStore
from .store.memory import MemoryBlockStore

ROOT_ENV_VAR = "CAS_BLOCKS_ROOT"


def default_store_root() -> Path:
    """Get the platform-appropriate default directory for a file store."""
    return Path(platformdirs.user_data_dir("cas-blocks", "cas-blocks")) / "blocks"


class StoreConfig(BaseModel):
    """
    Configuration for a block store.

    Providers:
    - "file" (default): FileBlockStore rooted at ``root``
    - "memory": MemoryBlockStore; ``root`` and shard settings are ignored
    """
    provider: Literal["memory", "file"] = "file"
    root: Optional[Path] = None
    shard_widths: Tuple[int, int] = DEFAULT_SHARD_WIDTHS
    lock_timeout: float = Field(DEFAULT_LOCK_TIMEOUT, gt=0)

    @field_validator("shard_widths")
    @classmethod
    def validate_shard_widths(cls, v: Tuple[int, int]) -> Tuple[int, int]:
        if any(w < 1 for w in v):
            raise ValueError(f"Shard widths must be positive, got {v}")
        return v

    @model_validator(mode="after")
    def default_file_root(self):
        """File stores without a root use the platform data directory."""
        if self.provider == "file" and self.root is None:
            self.root = default_store_root()
        return self


def load_store_config(path: Optional[Union[str, Path]] = None) -> StoreConfig:
    """Load store configuration from a YAML file.

    The settings may sit at the top level or under a ``store`` key. A missing
    file gives the default configuration. The ``CAS_BLOCKS_ROOT`` environment
    variable overrides the configured root.

    Raises:
        ValueError: If the file is not valid YAML or fails validation
    """
    data = {}
    if path is not None and Path(path).exists():
        try:
            data = yaml.safe_load(Path(path).read_text()) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in store config {path}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Store config {path} must be a mapping")
        data = data.get("store", data)

    env_root = os.environ.get(ROOT_ENV_VAR)
    if env_root:
        data = {**data, "root": env_root}

    return StoreConfig(**data)


def make_block_store(config: Optional[StoreConfig] = None) -> BlockStore:
    """
    Create a block store from configuration.

    Args:
        config: Store configuration (defaults to StoreConfig())

    Returns:
        BlockStore instance

    Raises:
        NotImplementedError: If the provider is not supported
        StorageIOError: If a file store root cannot be used
    """
    config = config or StoreConfig()

    if config.provider == "memory":
        return MemoryBlockStore()

    elif config.provider == "file":
        return FileBlockStore(
            config.root,
            shard_widths=config.shard_widths,
            lock_timeout=config.lock_timeout,
        )

    else:
        raise NotImplementedError(f"Provider {config.provider} not supported")
