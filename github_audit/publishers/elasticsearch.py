"""Elasticsearch / OpenSearch bulk publisher."""

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

logger = logging.getLogger("audit.publisher.elasticsearch")

REQUEST_TIMEOUT_SECONDS = 10

_BULK_ACTION = json.dumps({"index": {}})
_TRUTHY = {"1", "t", "true", "yes", "y"}


@dataclass
class ElasticsearchPublisher(Publisher):
    host: str
    port: str = "9200"
    protocol: str = "http"
    index: str = ""
    path: str = ""
    username: str = ""
    password: str = ""
    old_es: str = ""
    session: Optional[requests.Session] = None

    @classmethod
    def from_config(cls, config: Mapping[str, str]) -> ElasticsearchPublisher:
        return cls(
            host=config.get("host", ""),
            port=config.get("port", "9200"),
            protocol=(config.get("protocol") or "http").lower(),
            index=config.get("index", ""),
            path=config.get("path", ""),
            username=config.get("username", ""),
            password=config.get("password", ""),
            old_es=config.get("old_es", ""),
        )

    @property
    def url(self) -> str:
        """Write alias URL, e.g. ``http://es:9200/metric-<index>-<path>-$_write/_doc/``."""
        doc_type = "doc" if self.old_es.strip().lower() in _TRUTHY else "_doc"
        alias = f"metric-{self.index}-{self.path}-$_write"
        return f"{self.protocol}://{self.host}:{self.port}/{alias}/{doc_type}/"

    @staticmethod
    def bulk_body(records: Sequence[dict[str, Any]]) -> str:
        lines = []
        for doc in records:
            try:
                encoded = json.dumps(doc)
            except (TypeError, ValueError) as exc:
                logger.error("Skipping document that cannot be encoded: %s", exc)
                continue
            lines.append(_BULK_ACTION)
            lines.append(encoded)
        return "\n".join(lines) + "\n"

    def publish(self, records: Sequence[dict[str, Any]]) -> None:
        if not records:
            return
        session = self.session or http_session_with_retry()
        auth = (self.username, self.password) if self.username and self.password else None
        req_url = f"{self.url}_bulk/"

        try:
            resp = session.post(
                req_url,
                data=self.bulk_body(records).encode("utf-8"),
                headers={"Content-Type": "application/json"},
                auth=auth,
                timeout=REQUEST_TIMEOUT_SECONDS,
                verify=False,
            )
        except requests.RequestException as exc:
            raise PublishError(f"elasticsearch request to {req_url} failed: {exc}") from exc

        try:
            body = resp.json()
        except ValueError:
            body = None

        if resp.status_code in (200, 201):
            if isinstance(body, dict) and body.get("errors"):
                failed = [
                    (item.get("index") or {}).get("error", {}).get("reason")
                    for item in body.get("items") or []
                    if (item.get("index") or {}).get("status", 200) > 299
                ]
                logger.error(
                    "Elasticsearch rejected %d documents: %s", len(failed), failed[:5]
                )
                return
            logger.info(
                "Sent %d documents to %s", len(records), self.url,
                extra={"records": len(records)},
            )
            return

        reason = resp.reason
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            reason = body["error"].get("reason") or reason
        raise PublishError(f"elasticsearch status code: {resp.status_code}, error: {reason}")
