"""Run manifest: resolved configuration plus the discovered task list.

Written once by the host before a run and read once by the worker at startup.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from storyshot.errors import ConfigError
from storyshot.models.config import RunConfig
from storyshot.models.task import TestTask

logger = logging.getLogger(__name__)


class RunManifest(BaseModel):
    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    )
    config: RunConfig = Field(default_factory=RunConfig)
    tasks: list[TestTask] = Field(default_factory=list)


def write_manifest(manifest: RunManifest, path: str | Path) -> Path:
    """Atomically write the manifest as JSON."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w") as f:
        f.write(manifest.model_dump_json(indent=2))
    os.replace(tmp_path, path)
    logger.debug("Wrote run manifest %s (%d tasks)", path, len(manifest.tasks))
    return path


def read_manifest(path: str | Path) -> RunManifest:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Run manifest not found: {path}")
    try:
        with open(path) as f:
            data = json.load(f)
        return RunManifest.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as e:
        raise ConfigError(f"Invalid run manifest {path}: {e}") from e
