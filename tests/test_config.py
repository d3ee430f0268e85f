"""Tests for slicerd.daemon.config module."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from slicerd.daemon.config import (
    QueueConfig,
    SlicerConfig,
    WorkerConfig,
    load_config,
)


class TestQueueConfig:
    """Tests for queue URL expansion and lease validation."""

    def test_defaults(self):
        config = QueueConfig()

        assert config.lease_seconds == 60
        assert config.renew_interval_seconds < config.lease_seconds
        assert config.requeue_delay_seconds == 0
        assert config.max_receive_count is None

    def test_names_expanded_to_urls(self):
        config = QueueConfig(region="eu-west-1", account="111122223333", queue_low="low")

        assert config.low_priority_url == "https://sqs.eu-west-1.amazonaws.com/111122223333/low"

    def test_full_urls_kept(self):
        url = "http://localhost:9324/000000000000/high"

        assert QueueConfig(queue_high=url).high_priority_url == url

    def test_renewal_must_be_shorter_than_lease(self):
        with pytest.raises(ValidationError, match="renew_interval_seconds"):
            QueueConfig(lease_seconds=30, renew_interval_seconds=30)


class TestSlicerConfig:
    def test_template_syntax_checked(self):
        with pytest.raises(ValidationError, match="invalid slicer command template"):
            SlicerConfig(command="slice {{ stl ")

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            SlicerConfig(timeout_seconds=0)


class TestWorkerConfig:
    def test_defaults(self):
        config = WorkerConfig()

        assert config.max_concurrent_jobs == 4
        assert config.perms is None
        assert config.http.enabled is True
        assert config.storage.backend == "s3"

    def test_rejects_unknown_storage_backend(self):
        with pytest.raises(ValidationError):
            WorkerConfig.model_validate({"storage": {"backend": "ftp"}})


class TestLoadConfig:
    """Tests for load_config."""

    def test_none_returns_defaults(self):
        assert load_config(None) == WorkerConfig()

    def test_missing_file_returns_defaults(self, tmp_path: Path):
        assert load_config(tmp_path / "absent.yaml").config_file is None

    def test_empty_file_returns_defaults(self, tmp_path: Path):
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")

        config = load_config(config_file)

        assert config.max_concurrent_jobs == 4
        assert config.config_file == config_file.resolve()

    def test_nested_values(self, tmp_path: Path):
        config_file = tmp_path / "slicerd.yaml"
        config_file.write_text(
            "queue:\n"
            "  lease_seconds: 120\n"
            "  renew_interval_seconds: 60\n"
            "  max_receive_count: 5\n"
            "slicer:\n"
            "  command: 'prusa-slicer --load {{ config }} -o {{ gcode }} {{ stl }}'\n"
            "  timeout_seconds: 600\n"
            "perms:\n"
            "  uid: 1000\n"
            "  gid: 1000\n"
            "storage:\n"
            "  backend: local\n"
            "  local_root: /srv/objects\n"
        )

        config = load_config(config_file)

        assert config.queue.lease_seconds == 120
        assert config.queue.max_receive_count == 5
        assert config.slicer.timeout_seconds == 600
        assert config.perms is not None and config.perms.uid == 1000
        assert config.storage.local_root == Path("/srv/objects")

    def test_invalid_values_raise(self, tmp_path: Path):
        config_file = tmp_path / "slicerd.yaml"
        config_file.write_text("http:\n  port: 70000\n")

        with pytest.raises(ValidationError):
            load_config(config_file)
