"""
Configuration loading for the advisory backend.

Defaults live in the packaged ``defaults.yaml``; environment variables are
pulled in through ``oc.env`` interpolations after a ``.env`` file (if any)
has been loaded. Callers may layer overrides on top, which is how tests
point the service at temporary databases and short timeouts.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

load_dotenv()

DEFAULTS_PATH = Path(__file__).resolve().parent / "defaults.yaml"

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not DEFAULTS_PATH.exists():  # pragma: no cover - broken install
        raise FileNotFoundError(f"Default config not found at {DEFAULTS_PATH}")
    return OmegaConf.load(DEFAULTS_PATH)


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build the resolved runtime configuration.

    Args:
        overrides: Nested mapping merged over the defaults. Keys that do not
            exist in ``defaults.yaml`` are rejected.

    Returns:
        A fully resolved DictConfig.
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    merged = DictConfig(OmegaConf.merge(base, OmegaConf.create(overrides or {})))
    OmegaConf.resolve(merged)
    return merged


@dataclass(frozen=True)
class ExportSettings:
    """Tunables consumed by the export pipeline."""

    bucket: str = "documents"
    timeout_seconds: float = 300
    error_max_length: int = 500
    compression_level: int = 6
    max_archive_bytes: int = 500 * 1024 * 1024
    max_documents_per_export: int = 50
    stale_timeout_multiplier: float = 2

    @property
    def stale_after_seconds(self) -> float:
        return self.timeout_seconds * self.stale_timeout_multiplier

    @classmethod
    def from_config(cls, config: DictConfig) -> "ExportSettings":
        export = config.export
        return cls(
            bucket=config.storage.bucket,
            timeout_seconds=export.timeout_seconds,
            error_max_length=export.error_max_length,
            compression_level=export.compression_level,
            max_archive_bytes=export.max_archive_bytes,
            max_documents_per_export=export.max_documents_per_export,
            stale_timeout_multiplier=export.stale_timeout_multiplier,
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
