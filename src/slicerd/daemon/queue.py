"""Two-priority queue consumer with visibility-lease tracking.

Messages are claimed with a short visibility lease. While a job is being
processed its handle sits in the lease set and a periodic sweep extends
the lease; a crashed worker therefore holds a message hidden for at most
one lease duration.

The lease set is only touched from the event loop thread, so mutual
exclusion holds between suspension points. The sweep re-checks
membership immediately before each renewal call; a handle removed while
the call is in flight may see that call fail, which is expected and
logged at debug level only.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from slicerd.backends.base import QueueTransport
from slicerd.core.logging import get_logger
from slicerd.daemon.config import QueueConfig
from slicerd.daemon.task_utils import log_task_exception

_logger = get_logger("daemon.queue")


class Priority(str, Enum):
    """Queue a message was claimed from."""

    HIGH = "high"
    LOW = "low"


@dataclass
class QueueMessage:
    """A claimed message with its decoded payload."""

    handle: str
    priority: Priority
    payload: dict[str, Any]
    receive_count: int = 1


@dataclass
class LeaseEntry:
    """A tracked lease, renewed on every sweep until untracked."""

    handle: str
    priority: Priority
    claimed_at: float = field(default_factory=time.monotonic)


@dataclass
class _Claim:
    queue_url: str
    priority: Priority
    receive_count: int


def decode_body(body: str) -> dict[str, Any]:
    """Decode a message body; anything but a JSON object yields ``{}``."""
    try:
        decoded = json.loads(body)
    except (TypeError, ValueError):
        _logger.warning("queue.body_not_json", body=body[:200] if isinstance(body, str) else None)
        return {}
    if not isinstance(decoded, dict):
        _logger.warning("queue.body_not_object", body_type=type(decoded).__name__)
        return {}
    return decoded


class QueueManager:
    """Claims, tracks, renews, removes and requeues queue messages.

    Usage::

        queue = QueueManager(transport, config.queue)
        queue.start_renewal()
        message = await queue.claim_next()
        ...
        await queue.stop_renewal()
    """

    def __init__(self, transport: QueueTransport, config: QueueConfig) -> None:
        self._transport = transport
        self._config = config
        self._urls = {
            Priority.HIGH: config.high_priority_url,
            Priority.LOW: config.low_priority_url,
        }
        self._claims: dict[str, _Claim] = {}
        self._leases: dict[str, LeaseEntry] = {}
        self._in_flight = 0
        self._renewals = 0
        self._renewal_failures = 0
        self._renewal_task: asyncio.Task[None] | None = None

    # ─── Claiming ─────────────────────────────────────────────────────

    async def claim_next(self) -> QueueMessage | None:
        """Claim one message, high priority first.

        Returns None when both queues are momentarily empty or
        unreachable.
        """
        polls = (
            (Priority.HIGH, 0),
            (Priority.LOW, self._config.poll_wait_seconds),
        )
        for priority, wait in polls:
            url = self._urls[priority]
            try:
                received = await self._transport.receive(
                    url,
                    visibility_seconds=self._config.lease_seconds,
                    wait_seconds=wait,
                )
            except Exception as exc:
                _logger.warning("queue.receive_failed", priority=priority.value, error=str(exc))
                continue
            if received is None:
                continue

            handle = received.receipt
            payload = decode_body(received.body)
            payload["handle"] = handle
            self._claims[handle] = _Claim(
                queue_url=url,
                priority=priority,
                receive_count=received.receive_count,
            )
            _logger.debug(
                "queue.claimed",
                priority=priority.value,
                receive_count=received.receive_count,
            )
            return QueueMessage(
                handle=handle,
                priority=priority,
                payload=payload,
                receive_count=received.receive_count,
            )
        return None

    # ─── Lease set ────────────────────────────────────────────────────

    def track(self, handle: str) -> None:
        """Add a claimed handle to the lease set. No-op if already tracked."""
        if handle in self._leases:
            return
        claim = self._claims.get(handle)
        if claim is None:
            _logger.warning("queue.track_unclaimed", handle=handle)
            return
        self._leases[handle] = LeaseEntry(handle=handle, priority=claim.priority)

    def is_tracked(self, handle: str) -> bool:
        return handle in self._leases

    @property
    def tracked(self) -> list[LeaseEntry]:
        return list(self._leases.values())

    async def renew_all(self) -> int:
        """Extend the lease of every tracked handle by one lease duration.

        Returns:
            Number of successful renewals.
        """
        renewed = 0
        for handle in list(self._leases):
            if handle not in self._leases:
                continue
            claim = self._claims.get(handle)
            if claim is None:
                continue
            try:
                await self._transport.change_visibility(
                    claim.queue_url, handle, self._config.lease_seconds,
                )
            except Exception as exc:
                if handle not in self._leases:
                    _logger.debug("queue.renew_after_untrack", error=str(exc))
                    continue
                self._renewal_failures += 1
                _logger.warning("queue.renew_failed", priority=claim.priority.value, error=str(exc))
                continue
            renewed += 1
            self._renewals += 1
        if renewed:
            _logger.debug("queue.renewed", count=renewed)
        return renewed

    def _untrack(self, handle: str) -> _Claim | None:
        self._leases.pop(handle, None)
        return self._claims.pop(handle, None)

    # ─── Disposition ──────────────────────────────────────────────────

    async def remove(self, handle: str) -> None:
        """Delete the message permanently and untrack it. Idempotent."""
        claim = self._untrack(handle)
        if claim is None:
            _logger.debug("queue.remove_unknown_handle")
            return
        try:
            await self._transport.delete(claim.queue_url, handle)
        except Exception as exc:
            _logger.warning("queue.remove_failed", priority=claim.priority.value, error=str(exc))
            return
        _logger.debug("queue.removed", priority=claim.priority.value)

    async def requeue(self, handle: str) -> None:
        """Make the message visible again and untrack it.

        Once ``max_receive_count`` deliveries have been reached the
        message is removed instead.
        """
        claim = self._untrack(handle)
        if claim is None:
            _logger.debug("queue.requeue_unknown_handle")
            return
        limit = self._config.max_receive_count
        if limit is not None and claim.receive_count >= limit:
            _logger.warning(
                "queue.retries_exhausted",
                receive_count=claim.receive_count,
                max_receive_count=limit,
            )
            try:
                await self._transport.delete(claim.queue_url, handle)
            except Exception as exc:
                _logger.warning("queue.remove_failed", priority=claim.priority.value, error=str(exc))
            return
        try:
            await self._transport.change_visibility(
                claim.queue_url, handle, self._config.requeue_delay_seconds,
            )
        except Exception as exc:
            _logger.warning("queue.requeue_failed", priority=claim.priority.value, error=str(exc))
            return
        _logger.debug(
            "queue.requeued",
            priority=claim.priority.value,
            delay_seconds=self._config.requeue_delay_seconds,
        )

    # ─── In-flight counter ────────────────────────────────────────────

    def adjust_in_flight(self, delta: int) -> int:
        self._in_flight += delta
        return self._in_flight

    @property
    def in_flight(self) -> int:
        return self._in_flight

    # ─── Renewal sweep ────────────────────────────────────────────────

    def start_renewal(self) -> None:
        """Start the periodic renewal sweep. No-op if already running."""
        if self._renewal_task is not None:
            return
        self._renewal_task = asyncio.create_task(self._renewal_loop(), name="queue-renewal")
        self._renewal_task.add_done_callback(self._on_renewal_done)
        _logger.info(
            "queue.renewal_started",
            interval=self._config.renew_interval_seconds,
            lease_seconds=self._config.lease_seconds,
        )

    async def stop_renewal(self) -> None:
        if self._renewal_task is None:
            return
        self._renewal_task.cancel()
        try:
            await self._renewal_task
        except asyncio.CancelledError:
            pass
        self._renewal_task = None
        _logger.info("queue.renewal_stopped")

    async def _renewal_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.renew_interval_seconds)
            try:
                await self.renew_all()
            except Exception:
                _logger.exception("queue.renew_sweep_failed")

    def _on_renewal_done(self, task: asyncio.Task[None]) -> None:
        log_task_exception(task, _logger, "queue.renewal_loop_died")

    # ─── Stats ────────────────────────────────────────────────────────

    async def _depth(self, priority: Priority) -> int | None:
        try:
            return await self._transport.depth(self._urls[priority])
        except Exception as exc:
            _logger.debug("queue.depth_failed", priority=priority.value, error=str(exc))
            return None

    async def stats(self) -> dict[str, Any]:
        high, low = await asyncio.gather(
            self._depth(Priority.HIGH), self._depth(Priority.LOW),
        )
        return {
            "highPriorityDepth": high,
            "lowPriorityDepth": low,
            "inFlight": self._in_flight,
            "tracked": len(self._leases),
            "claimed": len(self._claims),
            "renewals": self._renewals,
            "renewalFailures": self._renewal_failures,
        }


__all__ = [
    "LeaseEntry",
    "Priority",
    "QueueManager",
    "QueueMessage",
    "decode_body",
]
