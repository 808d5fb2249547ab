"""Sink publishers for downstream observability targets."""

from github_audit.publishers.base import (
    ELASTICSEARCH,
    KAFKA_REST,
    Publisher,
    PublishError,
    UnknownPublisherType,
    new_publisher,
)

__all__ = [
    "ELASTICSEARCH",
    "KAFKA_REST",
    "Publisher",
    "PublishError",
    "UnknownPublisherType",
    "new_publisher",
]
