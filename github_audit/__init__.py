"""github-audit: incremental GitHub activity relay.

Polls repositories for new commits, pull requests and issues on a per-job
cadence, transforms them into documents and publishes them to
Elasticsearch or Kafka REST targets, keeping checkpoints so each run
fetches only new activity.
"""

__version__ = "0.1.0"
