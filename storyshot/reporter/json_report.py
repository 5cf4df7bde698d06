"""JSON report output."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from storyshot.errors import ConfigError
from storyshot.models.task import RunReport


def write_json_report(report: RunReport, output_dir: Path) -> Path:
    """Write a machine-readable JSON report and return its path."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    data = report.model_dump()
    data["failures"] = [
        {
            "story_id": r.story_id,
            "browser": r.browser,
            "viewport_name": r.viewport_name,
            "error": r.outcome.error,
            "error_type": r.outcome.error_type,
            "diff": r.outcome.artifact_paths.get("diff"),
        }
        for r in report.records
        if r.outcome.failed
    ]

    path = output_dir / f"report_{report.run_id}.json"
    with open(path, "w") as f:
        json.dump(data, f, indent=2, default=str)
    return path


def latest_report(output_dir: Path) -> Optional[Path]:
    """The most recently written report in ``output_dir``, if any."""
    reports = sorted(Path(output_dir).glob("report_*.json"), key=lambda p: p.stat().st_mtime)
    return reports[-1] if reports else None


def load_json_report(path: Path) -> RunReport:
    try:
        with open(path) as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError("expected a JSON object")
        data.pop("failures", None)
        return RunReport.model_validate(data)
    except (ValueError, ValidationError) as e:
        raise ConfigError(f"Invalid run report {path}: {e}") from e
