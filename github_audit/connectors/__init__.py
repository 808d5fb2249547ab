"""Source connectors for code-hosting providers."""

from github_audit.connectors.base import (
    SourceConnector,
    UnknownRepositoryType,
    new_source_connector,
)

__all__ = ["SourceConnector", "UnknownRepositoryType", "new_source_connector"]
