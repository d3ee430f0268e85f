"""Tests for slicerd.backends.sqs module with a mocked boto3 client."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from slicerd.backends.sqs import SQSTransport
from slicerd.daemon.exceptions import TransientError

URL = "https://sqs.us-east-1.amazonaws.com/123456789012/slicing-low"


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def transport(client: MagicMock) -> SQSTransport:
    return SQSTransport("us-east-1", client=client)


class TestReceive:
    """Tests for SQSTransport.receive."""

    @pytest.mark.asyncio
    async def test_parses_message(self, transport, client):
        client.receive_message.return_value = {
            "Messages": [{
                "ReceiptHandle": "AQEB-receipt",
                "Body": '{"job_id": "P3D-1"}',
                "Attributes": {"ApproximateReceiveCount": "3"},
            }],
        }

        message = await transport.receive(URL, visibility_seconds=60, wait_seconds=10)

        assert message is not None
        assert message.receipt == "AQEB-receipt"
        assert message.body == '{"job_id": "P3D-1"}'
        assert message.receive_count == 3
        kwargs = client.receive_message.call_args.kwargs
        assert kwargs["QueueUrl"] == URL
        assert kwargs["MaxNumberOfMessages"] == 1
        assert kwargs["VisibilityTimeout"] == 60
        assert kwargs["WaitTimeSeconds"] == 10

    @pytest.mark.asyncio
    async def test_empty_queue(self, transport, client):
        client.receive_message.return_value = {}

        assert await transport.receive(URL, visibility_seconds=60) is None

    @pytest.mark.asyncio
    async def test_missing_receive_count_defaults_to_one(self, transport, client):
        client.receive_message.return_value = {
            "Messages": [{"ReceiptHandle": "r", "Body": "{}"}],
        }

        message = await transport.receive(URL, visibility_seconds=60)

        assert message.receive_count == 1

    @pytest.mark.asyncio
    async def test_endpoint_error_is_transient(self, transport, client):
        client.receive_message.side_effect = EndpointConnectionError(endpoint_url=URL)

        with pytest.raises(TransientError, match="receive_message"):
            await transport.receive(URL, visibility_seconds=60)


class TestLeaseOperations:
    """Tests for delete, change_visibility and depth."""

    @pytest.mark.asyncio
    async def test_delete(self, transport, client):
        await transport.delete(URL, "r-1")

        client.delete_message.assert_called_once_with(QueueUrl=URL, ReceiptHandle="r-1")

    @pytest.mark.asyncio
    async def test_change_visibility(self, transport, client):
        await transport.change_visibility(URL, "r-1", 0)

        client.change_message_visibility.assert_called_once_with(
            QueueUrl=URL, ReceiptHandle="r-1", VisibilityTimeout=0,
        )

    @pytest.mark.asyncio
    async def test_stale_receipt_is_transient(self, transport, client):
        client.change_message_visibility.side_effect = ClientError(
            {"Error": {"Code": "ReceiptHandleIsInvalid", "Message": "stale"}},
            "ChangeMessageVisibility",
        )

        with pytest.raises(TransientError):
            await transport.change_visibility(URL, "r-1", 60)

    @pytest.mark.asyncio
    async def test_depth(self, transport, client):
        client.get_queue_attributes.return_value = {
            "Attributes": {"ApproximateNumberOfMessages": "12"},
        }

        assert await transport.depth(URL) == 12
