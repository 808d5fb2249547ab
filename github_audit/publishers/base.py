"""Publisher interface, factory and the shared HTTP session."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Mapping, Sequence

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger("audit.publisher")

KAFKA_REST = "kafka-rest"
ELASTICSEARCH = "elasticsearch"


class UnknownPublisherType(ValueError):
    """Raised when a target's ``type`` has no publisher."""


class PublishError(RuntimeError):
    """Raised when a sink rejects a batch."""


class Publisher(ABC):
    """Delivers ordered batches of output documents to one target.

    Delivery is at-least-once: a batch may be re-sent after a restart, so
    sinks must tolerate duplicates.
    """

    @abstractmethod
    def publish(self, records: Sequence[dict[str, Any]]) -> None:
        """Send ``records``; raise on failure."""


def http_session_with_retry() -> requests.Session:
    """Session that retries a failed request once after a short wait."""
    retry = Retry(
        total=1,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=None,
        raise_on_status=False,
    )
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def new_publisher(pub_type: str, config: Mapping[str, str]) -> Publisher:
    """Return a publisher for ``pub_type`` configured from ``config``."""
    kind = (pub_type or "").strip().lower()
    if kind == KAFKA_REST:
        from github_audit.publishers.kafka_rest import KafkaRestPublisher

        return KafkaRestPublisher.from_config(config)
    if kind == ELASTICSEARCH:
        from github_audit.publishers.elasticsearch import ElasticsearchPublisher

        return ElasticsearchPublisher.from_config(config)
    raise UnknownPublisherType(f"unknown publisher type: {pub_type!r}")
