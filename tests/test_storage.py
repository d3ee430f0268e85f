"""Tests for slicerd.backends.storage module."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from slicerd.backends.storage import LocalObjectStorage, S3ObjectStorage
from slicerd.daemon.exceptions import TransientError


def _client_error(code: str = "404") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": "Not Found"}}, "HeadObject")


# ─── Local backend ─────────────────────────────────────────────────────


class TestLocalObjectStorage:
    """Tests for the directory-backed storage."""

    @pytest.mark.asyncio
    async def test_upload_then_download(self, tmp_path: Path):
        storage = LocalObjectStorage(tmp_path / "root")
        source = tmp_path / "part.gcode"
        source.write_text("G1 X10\n")

        await storage.upload(source, "results", "jobs/1/part.gcode")
        target = tmp_path / "copy.gcode"
        await storage.download("results", "jobs/1/part.gcode", target)

        assert (tmp_path / "root" / "results" / "jobs" / "1" / "part.gcode").exists()
        assert target.read_text() == "G1 X10\n"

    @pytest.mark.asyncio
    async def test_missing_object_is_transient(self, tmp_path: Path):
        storage = LocalObjectStorage(tmp_path)

        with pytest.raises(TransientError, match="download of models/absent.stl failed"):
            await storage.download("models", "absent.stl", tmp_path / "x.stl")

    @pytest.mark.asyncio
    async def test_key_escaping_root_rejected(self, tmp_path: Path):
        storage = LocalObjectStorage(tmp_path / "root")

        with pytest.raises(TransientError, match="escapes storage root"):
            await storage.download("models", "../../etc/passwd", tmp_path / "x")


# ─── S3 backend ────────────────────────────────────────────────────────


class TestS3ObjectStorage:
    """Tests for the boto3-backed storage with a mocked client."""

    @pytest.mark.asyncio
    async def test_download_calls_client(self, tmp_path: Path):
        client = MagicMock()
        storage = S3ObjectStorage("us-east-1", client=client)

        await storage.download("models", "a/part.stl", tmp_path / "part.stl")

        client.download_file.assert_called_once_with("models", "a/part.stl", str(tmp_path / "part.stl"))

    @pytest.mark.asyncio
    async def test_upload_calls_client(self, tmp_path: Path):
        client = MagicMock()
        storage = S3ObjectStorage("us-east-1", client=client)

        await storage.upload(tmp_path / "part.gcode", "results", "part.gcode")

        client.upload_file.assert_called_once_with(str(tmp_path / "part.gcode"), "results", "part.gcode")

    @pytest.mark.asyncio
    async def test_client_error_is_transient(self, tmp_path: Path):
        client = MagicMock()
        client.download_file.side_effect = _client_error()
        storage = S3ObjectStorage("us-east-1", client=client)

        with pytest.raises(TransientError, match="s3://models/part.stl"):
            await storage.download("models", "part.stl", tmp_path / "part.stl")

    @pytest.mark.asyncio
    async def test_local_write_error_is_transient(self, tmp_path: Path):
        client = MagicMock()
        client.upload_file.side_effect = FileNotFoundError("no such file")
        storage = S3ObjectStorage("us-east-1", client=client)

        with pytest.raises(TransientError):
            await storage.upload(tmp_path / "missing.gcode", "results", "k")
