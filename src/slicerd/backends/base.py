"""Abstract bases for the worker's external collaborators.

The worker talks to three systems it does not own:

- a two-priority message queue with visibility leases (``QueueTransport``)
- object storage holding inputs and results (``ObjectStorage``)
- a document store holding job status and stats (``DocumentStore``)

Implementations translate their library's retryable failures into
``TransientError`` so the pipeline can classify them uniformly.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any


@dataclass
class ReceivedMessage:
    """A message as delivered by the queue transport."""

    receipt: str
    """Opaque token used to delete or change the visibility of the message."""

    body: str
    """Raw message body (JSON text for slicing requests)."""

    receive_count: int = 1
    """How many times the queue has delivered this message, when known."""


class QueueTransport(ABC):
    """Wire-level access to lease-based queues, addressed by queue URL."""

    @abstractmethod
    async def receive(
        self,
        queue_url: str,
        *,
        visibility_seconds: int,
        wait_seconds: int = 0,
    ) -> ReceivedMessage | None:
        """Claim at most one message, hiding it for ``visibility_seconds``.

        Returns None when the queue is momentarily empty.
        """

    @abstractmethod
    async def delete(self, queue_url: str, receipt: str) -> None:
        """Delete a message permanently."""

    @abstractmethod
    async def change_visibility(self, queue_url: str, receipt: str, seconds: int) -> None:
        """Set the remaining invisibility of a claimed message."""

    @abstractmethod
    async def depth(self, queue_url: str) -> int:
        """Approximate number of visible messages in the queue."""


class ObjectStorage(ABC):
    """Byte-level transfer between object storage and local files."""

    @abstractmethod
    async def download(self, bucket: str, key: str, local_path: Path) -> None:
        """Copy ``bucket/key`` to ``local_path``."""

    @abstractmethod
    async def upload(self, local_path: Path, bucket: str, key: str) -> None:
        """Copy ``local_path`` to ``bucket/key``."""


class DocumentStore(ABC):
    """Job status and stats documents."""

    @abstractmethod
    async def update_job_status(
        self,
        job_record_id: str,
        slicing: dict[str, Any],
        gcode_file: str,
    ) -> int:
        """Overwrite the ``slicing`` sub-document and ``gcode_file`` field.

        Returns:
            Number of matched job records; 0 means the record no longer exists.
        """

    @abstractmethod
    async def increment_stats(self, key: str, increments: dict[str, float]) -> None:
        """Upsert the stats document ``key`` and add each increment."""


__all__ = [
    "DocumentStore",
    "ObjectStorage",
    "QueueTransport",
    "ReceivedMessage",
]
