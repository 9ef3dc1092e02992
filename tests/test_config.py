"""Tests for goldfish.config module."""

from pathlib import Path

import pytest
import yaml

from goldfish.config import DEFAULT_EMBEDDING_COMMAND, GoldfishConfig, get_root


class TestGetRoot:
    def test_env_override(self, monkeypatch, tmp_path: Path):
        """GOLDFISH_HOME overrides the default root."""
        monkeypatch.setenv("GOLDFISH_HOME", str(tmp_path / "store"))
        assert get_root() == tmp_path / "store"

    def test_default(self, monkeypatch):
        """Without GOLDFISH_HOME the root is under the home directory."""
        monkeypatch.delenv("GOLDFISH_HOME", raising=False)
        assert get_root() == Path.home() / ".goldfish"


class TestLoad:
    @pytest.fixture(autouse=True)
    def _clean_env(self, monkeypatch):
        for name in ("GOLDFISH_EMBEDDING_BACKEND", "GOLDFISH_DISTILL_PROVIDER"):
            monkeypatch.delenv(name, raising=False)

    def test_defaults_without_file(self, tmp_path: Path):
        """A missing config file yields defaults."""
        config = GoldfishConfig.load(tmp_path)

        assert config.root == tmp_path
        assert config.default_limit == 10
        assert config.default_days == 2
        assert config.embedding_command == DEFAULT_EMBEDDING_COMMAND
        assert config.index_path == tmp_path / "index.db"

    def test_reads_yaml_and_ignores_unknown_keys(self, tmp_path: Path):
        """Known keys are read and unknown keys ignored."""
        (tmp_path / "config.yaml").write_text(
            yaml.safe_dump({"default_limit": 25, "embedding_timeout": 5, "bogus": 1, "root": "/etc"})
        )

        config = GoldfishConfig.load(tmp_path)

        assert config.default_limit == 25
        assert config.embedding_timeout == 5
        assert config.root == tmp_path
        assert not hasattr(config, "bogus")

    def test_env_overrides_file(self, tmp_path: Path, monkeypatch):
        """Environment variables beat the config file."""
        (tmp_path / "config.yaml").write_text("embedding_backend: command\n")
        monkeypatch.setenv("GOLDFISH_EMBEDDING_BACKEND", "none")
        monkeypatch.setenv("GOLDFISH_DISTILL_PROVIDER", "gemini")

        config = GoldfishConfig.load(tmp_path)

        assert config.embedding_backend == "none"
        assert config.distill_provider == "gemini"

    def test_invalid_backend_rejected(self, tmp_path: Path):
        """An unknown embedding backend is rejected."""
        (tmp_path / "config.yaml").write_text("embedding_backend: magic\n")
        with pytest.raises(ValueError, match="embedding_backend"):
            GoldfishConfig.load(tmp_path)

    def test_empty_file(self, tmp_path: Path):
        """An empty config file yields defaults."""
        (tmp_path / "config.yaml").write_text("")
        assert GoldfishConfig.load(tmp_path).default_limit == 10

    def test_non_mapping_rejected(self, tmp_path: Path):
        """A YAML list at the top level is a ValueError, not a crash."""
        (tmp_path / "config.yaml").write_text("- default_limit\n- 5\n")
        with pytest.raises(ValueError, match="mapping"):
            GoldfishConfig.load(tmp_path)

    def test_malformed_yaml_rejected(self, tmp_path: Path):
        """Unparseable YAML surfaces as ValueError naming the file."""
        (tmp_path / "config.yaml").write_text("default_limit: [1, 2\n")
        with pytest.raises(ValueError, match="config.yaml"):
            GoldfishConfig.load(tmp_path)


class TestSave:
    def test_saves_only_non_defaults(self, tmp_path: Path):
        """Only changed settings are written."""
        config = GoldfishConfig(root=tmp_path, default_days=5)

        path = config.save()

        assert yaml.safe_load(path.read_text()) == {"default_days": 5}
        assert GoldfishConfig.load(tmp_path).default_days == 5

    def test_marker_when_all_defaults(self, tmp_path: Path):
        """An all-default config writes only the version marker."""
        path = GoldfishConfig(root=tmp_path).save()
        assert yaml.safe_load(path.read_text()) == {"_version": 1}
