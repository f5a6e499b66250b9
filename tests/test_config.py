import pytest
from pathlib import Path

from resize_pipeline.config import load_yaml, merge_dicts, resolve_config
from resize_pipeline.errors import ConfigError
from resize_pipeline.models import PipelineConfig

from conftest import REPO_ROOT


@pytest.fixture(autouse=True)
def repo_cwd(monkeypatch):
    """config/default.yaml is resolved relative to the working directory."""
    monkeypatch.chdir(REPO_ROOT)


def test_default_config_loads():
    """Test default.yaml loads without errors."""
    config = resolve_config()
    assert isinstance(config, PipelineConfig)
    assert config.queue.backend == "sqlite"
    assert config.queue.queue_key == "resize-queue"
    assert config.status.ttl_s == 86400
    assert config.worker.poll_interval_s == 2.0
    assert config.resolution_table() == {
        "thumbnail": (150, 150),
        "small": (480, 480),
        "medium": (1024, 1024),
        "large": (1920, 1920),
    }


def test_cli_override_workers():
    """Test CLI args override YAML defaults."""
    config = resolve_config({"workers": 8})
    assert config.worker.workers == 8


def test_cli_override_poll_interval_and_log_level():
    """Test several CLI overrides work together."""
    config = resolve_config({"poll_interval": 0.5, "log_level": "debug", "db": "other.db"})
    assert config.worker.poll_interval_s == 0.5
    assert config.logging.level == "DEBUG"
    assert config.database.path == "other.db"


def test_cli_none_values_ignored():
    """Test None CLI values leave YAML values untouched."""
    config = resolve_config({"workers": None, "bucket": None})
    assert config.worker.workers == 2
    assert config.storage.bucket == "images"


def test_explicit_config_file_merges_over_defaults(tmp_path):
    """Test --config file overrides default.yaml section by section."""
    override = tmp_path / "custom.yaml"
    override.write_text(
        "queue:\n  backend: redis\nresolutions:\n  banner: {width: 1200, height: 400}\n"
    )
    config = resolve_config(config_path=override)

    assert config.queue.backend == "redis"
    # Untouched keys in the same section keep their defaults
    assert config.queue.visibility_timeout_s == 600
    assert config.resolution_table()["banner"] == (1200, 400)
    assert "thumbnail" in config.resolutions


def test_missing_explicit_config_raises(tmp_path):
    """Test an explicit config path that doesn't exist is an error."""
    with pytest.raises(ConfigError):
        resolve_config(config_path=tmp_path / "missing.yaml")


def test_invalid_yaml_raises(tmp_path):
    """Test malformed YAML surfaces as ConfigError."""
    bad = tmp_path / "bad.yaml"
    bad.write_text("queue: [unclosed\n")
    with pytest.raises(ConfigError):
        resolve_config(config_path=bad)


def test_invalid_values_raise_config_error(tmp_path):
    """Test validation failures are wrapped as ConfigError."""
    bad = tmp_path / "bad.yaml"
    bad.write_text("resolutions:\n  original: {width: 10, height: 10}\n")
    with pytest.raises(ConfigError, match="original"):
        resolve_config(config_path=bad)


def test_missing_yaml_returns_empty_dict():
    """Test graceful handling of missing config files."""
    assert load_yaml(Path("nonexistent.yaml")) == {}


def test_merge_dicts_recursive():
    """Test nested dicts merge while scalars are replaced."""
    base = {"worker": {"workers": 2, "poll_interval_s": 2.0}, "queue": {"backend": "sqlite"}}
    override = {"worker": {"workers": 4}, "queue": "flat"}
    merged = merge_dicts(base, override)

    assert merged == {"worker": {"workers": 4, "poll_interval_s": 2.0}, "queue": "flat"}
    # Inputs untouched
    assert base["worker"]["workers"] == 2
