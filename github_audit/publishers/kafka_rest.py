"""Kafka REST proxy publisher."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

import requests

from github_audit.publishers.base import (
    Publisher,
    PublishError,
    http_session_with_retry,
)

logger = logging.getLogger("audit.publisher.kafka_rest")

REQUEST_TIMEOUT_SECONDS = 15


@dataclass
class KafkaRestPublisher(Publisher):
    host: str
    topic: str
    port: str = "8082"
    protocol: str = "http"
    path: str = ""
    username: str = ""
    password: str = ""
    token: str = ""
    session: Optional[requests.Session] = None

    @classmethod
    def from_config(cls, config: Mapping[str, str]) -> KafkaRestPublisher:
        return cls(
            host=config.get("host", ""),
            topic=config.get("topic", ""),
            port=config.get("port", "8082"),
            protocol=(config.get("protocol") or "http").lower(),
            path=config.get("path", ""),
            username=config.get("user", ""),
            password=config.get("password", ""),
            token=config.get("token", ""),
        )

    @property
    def url(self) -> str:
        base = f"{self.protocol}://{self.host}:{self.port}"
        if self.path:
            base = f"{base}/{self.path.strip('/')}"
        return f"{base}/topics/{self.topic}"

    @staticmethod
    def records_body(records: Sequence[dict[str, Any]]) -> dict[str, Any]:
        return {"records": [{"value": doc} for doc in records]}

    def publish(self, records: Sequence[dict[str, Any]]) -> None:
        if not records:
            return
        session = self.session or http_session_with_retry()
        headers = {
            "Content-Type": "application/vnd.kafka.json.v2+json",
            "Accept": "application/vnd.kafka.v2+json",
        }
        if self.token:
            headers["Authorization"] = self.token
        auth = (self.username, self.password) if self.username and self.password else None

        try:
            resp = session.post(
                self.url,
                data=json.dumps(self.records_body(records)).encode("utf-8"),
                headers=headers,
                auth=auth,
                timeout=REQUEST_TIMEOUT_SECONDS,
                verify=False,
            )
        except (requests.RequestException, TypeError, ValueError) as exc:
            raise PublishError(f"kafka rest request to {self.url} failed: {exc}") from exc

        try:
            body = resp.json()
        except ValueError:
            body = None

        if isinstance(body, dict) and body.get("error_code"):
            logger.error(
                "Kafka REST reported error %s: %s", body.get("error_code"), body.get("message")
            )
            return

        if resp.status_code in (200, 201):
            logger.info(
                "Sent %d records to %s", len(records), self.url,
                extra={"records": len(records)},
            )
            return
        raise PublishError(f"kafka rest status code: {resp.status_code}, error: {resp.reason}")
