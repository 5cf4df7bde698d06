"""Configuration models for storyshot runs."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from storyshot.errors import ConfigError

BrowserName = Literal["chromium", "firefox", "webkit"]
LogLevel = Literal["silent", "error", "warn", "info", "debug"]

LOG_LEVELS = {
    "silent": logging.CRITICAL + 1,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


class ViewportConfig(BaseModel):
    name: str = "desktop"
    width: int = 1024
    height: int = 768


class RunConfig(BaseModel):
    # Target
    url: str = "http://localhost:6006"

    # Output layout (relative paths resolve against project_root)
    output_dir: str = "visual-regression"
    project_root: str = "."

    # Browsers and viewports
    browsers: list[BrowserName] = Field(default_factory=lambda: ["chromium"])
    viewports: list[ViewportConfig] = Field(
        default_factory=lambda: [
            ViewportConfig(name="mobile", width=375, height=667),
            ViewportConfig(name="tablet", width=768, height=1024),
            ViewportConfig(name="desktop", width=1024, height=768),
        ]
    )

    # Execution limits
    workers: int = 4
    max_failures: Optional[int] = 2  # None or 0 disables fail-fast
    retries: int = 0  # navigation/transport failures
    mismatch_retries: int = 0  # screenshot mismatches
    test_timeout_ms: int = 60000
    request_timeout_ms: int = 30000
    worker_ready_timeout_ms: int = 30000

    # Comparison
    threshold: float = 0.2  # percent of pixels allowed to differ
    max_diff_pixels: int = 0
    full_page: bool = False
    snapshot_delay_ms: int = 0

    # Selection
    grep: Optional[str] = None
    include: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)
    failed_only: bool = False
    missing_only: bool = False

    # Baselines
    update: bool = False
    strict_missing: bool = False

    log_level: LogLevel = "info"

    @field_validator("workers")
    @classmethod
    def positive_workers(cls, v: int) -> int:
        if v < 1:
            raise ValueError("workers must be at least 1")
        return v

    @field_validator("retries", "mismatch_retries", "max_diff_pixels", "snapshot_delay_ms")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("threshold")
    @classmethod
    def threshold_range(cls, v: float) -> float:
        if not 0 <= v <= 100:
            raise ValueError("threshold is a percentage between 0 and 100")
        return v

    @field_validator("grep")
    @classmethod
    def compilable_grep(cls, v: Optional[str]) -> Optional[str]:
        if v:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"invalid grep pattern: {e}") from e
        return v

    @field_validator("include", "exclude", mode="before")
    @classmethod
    def split_patterns(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [p.strip() for p in v.split(",") if p.strip()]
        return v

    @field_validator("viewports")
    @classmethod
    def unique_viewports(cls, v: list[ViewportConfig]) -> list[ViewportConfig]:
        names = [vp.name for vp in v]
        if len(names) != len(set(names)):
            raise ValueError("viewport names must be unique")
        return v

    @property
    def logging_level(self) -> int:
        return LOG_LEVELS[self.log_level]

    @property
    def fail_fast_enabled(self) -> bool:
        return bool(self.max_failures and self.max_failures > 0)

    def resolved(self) -> "RunConfig":
        """Copy with ``project_root`` made absolute against the current directory.

        A worker runs with the project root as its cwd, so configs handed to
        it must not carry paths relative to the host.
        """
        return self.model_copy(update={"project_root": str(Path(self.project_root).resolve())})

    def resolve_path(self, *parts: str) -> Path:
        """Resolve a path under the output directory."""
        root = Path(self.project_root) / self.output_dir
        return root.joinpath(*parts)

    @property
    def snapshot_dir(self) -> Path:
        return self.resolve_path("snapshots")

    @property
    def results_dir(self) -> Path:
        return self.resolve_path("results")

    @property
    def reports_dir(self) -> Path:
        return self.resolve_path("reports")

    @property
    def manifest_path(self) -> Path:
        return self.resolve_path(".cache", "run-manifest.json")

    def merged(self, overrides: dict[str, Any] | None) -> "RunConfig":
        """Return a validated copy with ``overrides`` applied."""
        if not overrides:
            return self.model_copy(deep=True)
        data = self.model_dump()
        data.update(overrides)
        return self.validate_data(data)

    @classmethod
    def validate_data(cls, data: dict[str, Any]) -> "RunConfig":
        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid run configuration: {e}") from e

    @classmethod
    def load(cls, path: str | Path) -> "RunConfig":
        """Load config from a JSON file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigError(f"Invalid JSON at {path}: {e}") from e
        return cls.validate_data(data)

    def save(self, path: str | Path) -> None:
        """Save config to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.model_dump(), f, indent=2)
