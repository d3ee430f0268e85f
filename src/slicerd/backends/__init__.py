"""Backends for the worker's external collaborators."""

from slicerd.backends.base import DocumentStore, ObjectStorage, QueueTransport, ReceivedMessage

__all__ = [
    "DocumentStore",
    "ObjectStorage",
    "QueueTransport",
    "ReceivedMessage",
]
