"""Local workspace for downloaded and generated files.

Resource URLs use the path-style object-storage convention
``scheme://host/bucket-name/key...``; virtual-hosted URLs with the bucket
in the hostname are not recognised.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from pathlib import Path, PurePosixPath
from urllib.parse import unquote, urlsplit

from slicerd.core.logging import get_logger
from slicerd.daemon.exceptions import RequestValidationError
from slicerd.slicing.models import ResourceRef

_logger = get_logger("slicing.workspace")


class Workspace:
    """Derives bucket/key/local-path triples and removes local files."""

    def __init__(self, work_dir: Path) -> None:
        self._work_dir = work_dir

    @property
    def work_dir(self) -> Path:
        return self._work_dir

    def ensure(self) -> None:
        """Create the working directory if it is missing."""
        self._work_dir.mkdir(parents=True, exist_ok=True)

    def resolve(self, url: object) -> ResourceRef:
        """Parse ``url`` into a ResourceRef with a unique local path.

        Raises:
            RequestValidationError: If the URL has no bucket or no key.
        """
        if not isinstance(url, str) or not url.strip():
            raise RequestValidationError(f"cannot parse URL {url!r}: not a non-empty string")
        try:
            parts = urlsplit(url)
        except ValueError as exc:
            raise RequestValidationError(f"cannot parse URL {url!r}: {exc}") from exc
        if not parts.scheme or not parts.netloc:
            raise RequestValidationError(f"cannot parse URL {url!r}: missing scheme or host")

        segments = [s for s in unquote(parts.path).split("/") if s]
        if len(segments) < 2:
            raise RequestValidationError(f"cannot parse URL {url!r}: expected /bucket/key")
        bucket = segments[0]
        key = "/".join(segments[1:])
        basename = PurePosixPath(key).name
        if basename in ("", ".", ".."):
            raise RequestValidationError(f"cannot parse URL {url!r}: key has no file name")

        local_path = self._work_dir / f"{uuid.uuid4().hex}-{basename}"
        return ResourceRef(url=url, bucket=bucket, key=key, local_path=local_path)

    def remove_files(self, paths: Iterable[Path | None], *, job_id: str | None = None) -> None:
        """Delete local files; missing files and removal errors are ignored."""
        for path in paths:
            if path is None:
                continue
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                _logger.debug("workspace.remove_failed", path=str(path), error=str(exc))
            else:
                _logger.debug("workspace.removed", path=str(path), job_id=job_id)


__all__ = ["Workspace"]
