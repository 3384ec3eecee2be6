import pytest
from pathlib import Path

import pydantic

from thumbforge.config import load_yaml, merge_dicts, resolve_config
from thumbforge.models import LoggingConfig, QueueConfig, ThumbforgeConfig, ThumbnailConfig
from thumbforge.queue.models import EnqueueOptions

DEFAULT_YAML = Path(__file__).resolve().parent.parent / "config" / "default.yaml"
NO_LOCAL = Path("nonexistent-local.yaml")


def _resolve(cli_args=None):
    return resolve_config(cli_args, default_path=DEFAULT_YAML, local_path=NO_LOCAL)


def test_default_config_loads():
    """Test default.yaml loads without errors."""
    config = _resolve()
    assert isinstance(config, ThumbforgeConfig)
    assert config.queue.max_attempts == 3
    assert config.queue.backoff_base_s == 2.0
    assert config.thumbnail.size == (128, 128)
    assert config.thumbnail.jpeg_quality == 80
    assert config.ffmpeg.ffmpeg_path is None


def test_yaml_matches_model_defaults():
    """default.yaml and the model defaults describe the same config."""
    assert _resolve() == ThumbforgeConfig()


def test_cli_override_workers():
    config = _resolve({"workers": 6})
    assert config.worker.workers == 6


def test_cli_override_data_dir():
    """--data-dir relocates every storage path."""
    config = _resolve({"data_dir": "/srv/thumbs/"})
    assert config.storage.upload_dir == "/srv/thumbs/uploads"
    assert config.storage.output_dir == "/srv/thumbs/thumbnails"
    assert config.storage.jobs_db == "/srv/thumbs/jobs.sqlite"
    assert config.storage.queue_db == "/srv/thumbs/queue.sqlite"


def test_cli_override_log_level_and_server():
    config = _resolve({"log_level": "debug", "host": "0.0.0.0", "port": 9000})
    assert config.logging.level == "DEBUG"
    assert config.api.host == "0.0.0.0"
    assert config.api.port == 9000


def test_none_overrides_ignored():
    """argparse leaves unset flags as None; they must not clobber YAML."""
    config = _resolve({"workers": None, "max_attempts": None, "data_dir": None})
    assert config.worker.workers == 2
    assert config.queue.max_attempts == 3


def test_invalid_override_rejected():
    with pytest.raises(pydantic.ValidationError):
        _resolve({"max_attempts": 0})


def test_zero_backoff_rejected():
    """Retries always wait; a zero base would make every delay zero."""
    with pytest.raises(pydantic.ValidationError):
        QueueConfig(backoff_base_s=0)
    with pytest.raises(pydantic.ValidationError):
        EnqueueOptions(backoff_base_s=0.0)
    assert EnqueueOptions(backoff_base_s=0.001).backoff_base_s == 0.001


def test_local_override_file(tmp_path):
    """A config file passed via config_path overrides default.yaml."""
    local = tmp_path / "local.yaml"
    local.write_text("queue:\n  max_attempts: 7\nthumbnail:\n  width: 256\n")

    config = _resolve({"config_path": str(local)})

    assert config.queue.max_attempts == 7
    assert config.thumbnail.width == 256
    assert config.thumbnail.height == 128


def test_cli_beats_local_file(tmp_path):
    local = tmp_path / "local.yaml"
    local.write_text("worker:\n  workers: 4\n")

    config = _resolve({"config_path": str(local), "workers": 8})

    assert config.worker.workers == 8


def test_missing_yaml_returns_empty_dict():
    """Test graceful handling of missing config files."""
    assert load_yaml(Path("nonexistent.yaml")) == {}


def test_empty_yaml_returns_empty_dict(tmp_path):
    empty = tmp_path / "empty.yaml"
    empty.write_text("")
    assert load_yaml(empty) == {}


def test_merge_dicts_recursive():
    base = {"queue": {"max_attempts": 3, "priority": 1}, "worker": {"workers": 2}}
    override = {"queue": {"max_attempts": 5}}

    merged = merge_dicts(base, override)

    assert merged == {"queue": {"max_attempts": 5, "priority": 1}, "worker": {"workers": 2}}
    assert base["queue"]["max_attempts"] == 3


def test_extensions_normalized():
    config = ThumbnailConfig(image_extensions=["PNG", ".JPG"])
    assert config.image_extensions == [".png", ".jpg"]


def test_logging_level_case_insensitive():
    assert LoggingConfig(level="warning").level == "WARNING"
    with pytest.raises(pydantic.ValidationError):
        LoggingConfig(level="chatty")


def test_non_mapping_yaml_rejected(tmp_path):
    listing = tmp_path / "list.yaml"
    listing.write_text("- workers\n- 4\n")
    with pytest.raises(ValueError):
        load_yaml(listing)
