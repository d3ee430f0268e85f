"""Amazon SQS queue transport.

boto3 clients are synchronous; every call runs in a worker thread via
``asyncio.to_thread`` so a slow SQS round trip never stalls the event
loop (and with it, the lease-renewal sweep).
"""

from __future__ import annotations

import asyncio
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from slicerd.backends.base import QueueTransport, ReceivedMessage
from slicerd.core.logging import get_logger
from slicerd.daemon.exceptions import TransientError

_logger = get_logger("backends.sqs")


class SQSTransport(QueueTransport):
    """QueueTransport over Amazon SQS.

    Args:
        region: AWS region of the queues.
        endpoint_url: Optional endpoint override (local emulators).
        client: Pre-built boto3 SQS client; built lazily when omitted.
    """

    def __init__(
        self,
        region: str,
        *,
        endpoint_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        self._region = region
        self._endpoint_url = endpoint_url
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client(
                "sqs",
                region_name=self._region,
                endpoint_url=self._endpoint_url,
            )
        return self._client

    async def _call(self, operation: str, **params: Any) -> dict[str, Any]:
        method = getattr(self.client, operation)
        try:
            result: dict[str, Any] = await asyncio.to_thread(method, **params)
        except (BotoCoreError, ClientError) as exc:
            raise TransientError(f"SQS {operation} failed: {exc}") from exc
        return result

    async def receive(
        self,
        queue_url: str,
        *,
        visibility_seconds: int,
        wait_seconds: int = 0,
    ) -> ReceivedMessage | None:
        response = await self._call(
            "receive_message",
            QueueUrl=queue_url,
            MaxNumberOfMessages=1,
            VisibilityTimeout=visibility_seconds,
            WaitTimeSeconds=wait_seconds,
            AttributeNames=["ApproximateReceiveCount"],
        )
        messages = response.get("Messages") or []
        if not messages:
            return None
        raw = messages[0]
        attributes = raw.get("Attributes") or {}
        try:
            receive_count = int(attributes.get("ApproximateReceiveCount", 1))
        except (TypeError, ValueError):
            receive_count = 1
        return ReceivedMessage(
            receipt=raw["ReceiptHandle"],
            body=raw.get("Body", ""),
            receive_count=receive_count,
        )

    async def delete(self, queue_url: str, receipt: str) -> None:
        await self._call("delete_message", QueueUrl=queue_url, ReceiptHandle=receipt)

    async def change_visibility(self, queue_url: str, receipt: str, seconds: int) -> None:
        await self._call(
            "change_message_visibility",
            QueueUrl=queue_url,
            ReceiptHandle=receipt,
            VisibilityTimeout=seconds,
        )

    async def depth(self, queue_url: str) -> int:
        response = await self._call(
            "get_queue_attributes",
            QueueUrl=queue_url,
            AttributeNames=["ApproximateNumberOfMessages"],
        )
        value = response.get("Attributes", {}).get("ApproximateNumberOfMessages", 0)
        return int(value)


__all__ = ["SQSTransport"]
