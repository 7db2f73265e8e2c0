"""
Configuration: environment settings plus a typed, file-backed config.

Two layers:

* :class:`Settings`: where things live and which model to load, read from
  ``CORTEX_*`` environment variables.
* :class:`CortexConfig`: behaviour knobs stored as JSON in
  ``<data_dir>/config.json``.  The file is overlaid on compiled-in defaults
  one section at a time; unknown keys are ignored and an unreadable file
  means "use the defaults".
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .embeddings import DEFAULT_DIMENSION, DEFAULT_MODEL_NAME

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Process settings loaded from ``CORTEX_*`` environment variables."""

    data_dir: Path = Field(default_factory=lambda: Path.home() / ".cortex")
    model_name: str = DEFAULT_MODEL_NAME
    embedding_dimension: int = DEFAULT_DIMENSION
    log_level: str = "WARNING"

    model_config = SettingsConfigDict(env_prefix="CORTEX_", extra="ignore")

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.json"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "memory.db"


# ---------------------------------------------------------------------------
# Typed config
# ---------------------------------------------------------------------------


class ArchiveConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    auto_on_compact: bool = True
    project_scope: bool = True
    min_content_length: int = Field(default=50, ge=1)


class SearchConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    limit: int = Field(default=5, ge=1)
    rrf_k: int = Field(default=60, ge=1)
    half_life_days: float = Field(default=7.0, gt=0)
    candidate_limit: int = Field(default=50, ge=1)


class EmbeddingConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    batch_size: int = Field(default=32, ge=1)


class CortexConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)


def overlay_config(base: CortexConfig, overrides: Any) -> CortexConfig:
    """
    Return *base* with the recognised fields of *overrides* applied.

    Sections are merged independently.  A section whose merged values fail
    validation keeps its *base* values.
    """
    if not isinstance(overrides, dict):
        return base

    sections: dict[str, BaseModel] = {}
    for name in CortexConfig.model_fields:
        current: BaseModel = getattr(base, name)
        raw = overrides.get(name)
        if not isinstance(raw, dict):
            sections[name] = current
            continue
        known = {key: value for key, value in raw.items() if key in type(current).model_fields}
        try:
            sections[name] = type(current).model_validate({**current.model_dump(), **known})
        except ValidationError as exc:
            logger.warning("Ignoring invalid %r config section: %s", name, exc)
            sections[name] = current
    return CortexConfig(**sections)


def load_config(path: str | Path) -> CortexConfig:
    """Load config from *path*, falling back to defaults on any problem."""
    path = Path(path)
    if not path.exists():
        return CortexConfig()
    try:
        loaded = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Could not read config %s, using defaults: %s", path, exc)
        return CortexConfig()
    return overlay_config(CortexConfig(), loaded)


def save_config(config: CortexConfig, path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(config.model_dump_json(indent=2), encoding="utf-8")


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------

PRESETS: dict[str, dict[str, Any]] = {
    "full": {
        "archive": {"auto_on_compact": True, "project_scope": True, "min_content_length": 50},
    },
    "essential": {
        "archive": {"auto_on_compact": True, "project_scope": True, "min_content_length": 100},
    },
    "minimal": {
        "archive": {"auto_on_compact": False, "project_scope": True, "min_content_length": 50},
    },
}


def apply_preset(name: str, path: str | Path) -> CortexConfig:
    """Write the named preset (over the defaults) to *path* and return it."""
    if name not in PRESETS:
        raise ValueError(f"unknown preset {name!r}; choose from {', '.join(PRESETS)}")
    config = overlay_config(CortexConfig(), PRESETS[name])
    save_config(config, path)
    return config


def project_id_for(cwd: str | Path | None) -> str | None:
    """Project scope tag for a working directory: its final path component."""
    if not cwd:
        return None
    return Path(cwd).name or None
