"""Tests for the run manifest."""

import json

import pytest

from conftest import make_task
from storyshot.errors import ConfigError
from storyshot.manifest import RunManifest, read_manifest, write_manifest


class TestManifest:
    """Tests for writing and reading run manifests."""

    def test_defaults(self):
        """Test a manifest gets a run id and creation time."""
        manifest = RunManifest()
        assert len(manifest.run_id) == 12
        assert manifest.created_at.endswith("Z")
        assert manifest.tasks == []

    def test_run_ids_unique(self):
        """Test each manifest has its own run id."""
        assert RunManifest().run_id != RunManifest().run_id

    def test_write_and_read(self, tmp_path, run_config):
        """Test the worker reads back exactly what the host wrote."""
        manifest = RunManifest(config=run_config, tasks=[make_task("a--one"), make_task("b--two", browser="firefox")])
        path = write_manifest(manifest, tmp_path / ".cache" / "run-manifest.json")

        loaded = read_manifest(path)
        assert loaded.run_id == manifest.run_id
        assert loaded.config == run_config
        assert [t.key for t in loaded.tasks] == [t.key for t in manifest.tasks]

    def test_write_is_atomic(self, tmp_path):
        """Test no temporary file remains after writing."""
        path = write_manifest(RunManifest(), tmp_path / "m.json")
        assert [p.name for p in tmp_path.iterdir()] == ["m.json"]
        assert json.loads(path.read_text())["run_id"]

    def test_missing_manifest(self, tmp_path):
        """Test reading a missing manifest raises ConfigError."""
        with pytest.raises(ConfigError, match="not found"):
            read_manifest(tmp_path / "nope.json")

    def test_invalid_manifest(self, tmp_path):
        """Test a corrupt manifest raises ConfigError."""
        path = tmp_path / "m.json"
        path.write_text('{"tasks": [{"story_id": 1}]}')
        with pytest.raises(ConfigError, match="Invalid run manifest"):
            read_manifest(path)
