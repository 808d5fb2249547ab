# tests/test_config.py

from __future__ import annotations

import base64
import dataclasses
from datetime import timedelta

import pytest

from github_audit.config import (
    DEFAULT_BRANCH,
    AuditJob,
    ConfigError,
    load_config,
    parse_config,
    parse_polling_interval,
)
from github_audit.secrets import CredentialError, decode_access_token

from .fakes import CONFIG_YAML


def _job(**overrides) -> dict:
    job = {
        "name": "job1",
        "polling_interval": "30s",
        "repo_type": "github",
        "repo_name": "repo",
        "repo_owner": "acme",
        "output": {"target_name": ["es"]},
        "repo_config": {
            "repo_url": "https://github.com/acme/repo",
            "credentials": {"username": "octocat", "access_token": "dG9rZW4="},
        },
    }
    job.update(overrides)
    return job


def _data(*jobs: dict) -> dict:
    return {
        "auditJobs": list(jobs) or [_job()],
        "targets": [{"name": "es", "type": "elasticsearch", "config": {"host": "es"}}],
    }


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in ("job1", "GITHUB_AUDIT_LOG_LEVEL", "GITHUB_AUDIT_CHECKPOINT_FILE",
                 "GITHUB_AUDIT_CONFIG"):
        monkeypatch.delenv(name, raising=False)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("10s", timedelta(seconds=10)),
        ("5m", timedelta(minutes=5)),
        ("2h", timedelta(hours=2)),
        ("1d", timedelta(days=1)),
        ("1.5m", timedelta(seconds=90)),
        (" 30S ", timedelta(seconds=30)),
    ],
)
def test_parse_polling_interval(value, expected) -> None:
    assert parse_polling_interval(value) == expected


@pytest.mark.parametrize("value", ["", "10", "m", "10x", "ten minutes", "-5s"])
def test_parse_polling_interval_rejects_bad_values(value) -> None:
    with pytest.raises(ConfigError):
        parse_polling_interval(value)


def test_load_config_from_yaml(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG_YAML, encoding="utf-8")

    config = load_config(str(path))

    assert config.loglevel == "debug"
    assert config.checkpoint_file == "state/taskStats.json"
    job = config.audit_jobs[0]
    assert job.repo_owner == "acme"  # derived from the URL
    assert job.branches == ["main", "dev"]
    assert job.tags == {"team": "platform", "tier": "1"}
    assert job.target_names == ["es-local", "kafka"]
    assert job.credentials.username == "octocat"
    assert [t.name for t in config.targets] == ["es-local", "kafka"]
    assert config.targets[0].config["port"] == "9200"


def test_load_config_path_from_environment(tmp_path, monkeypatch) -> None:
    path = tmp_path / "audit.yaml"
    path.write_text(CONFIG_YAML, encoding="utf-8")
    monkeypatch.setenv("GITHUB_AUDIT_CONFIG", str(path))

    assert load_config().audit_jobs[0].name == "job1"


def test_load_config_missing_file(tmp_path) -> None:
    with pytest.raises(ConfigError, match="failed to read"):
        load_config(str(tmp_path / "nope.yaml"))


def test_load_config_empty_file(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("", encoding="utf-8")
    with pytest.raises(ConfigError, match="empty"):
        load_config(str(path))


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("GITHUB_AUDIT_LOG_LEVEL", "warning")
    monkeypatch.setenv("GITHUB_AUDIT_CHECKPOINT_FILE", "/var/lib/audit.json")

    config = parse_config(_data())
    assert config.loglevel == "warning"
    assert config.checkpoint_file == "/var/lib/audit.json"


def test_job_env_var_overrides_token(monkeypatch) -> None:
    monkeypatch.setenv("job1", "b3ZlcnJpZGU=")
    config = parse_config(_data())
    assert config.audit_jobs[0].credentials.access_token == "b3ZlcnJpZGU="


def test_job_env_var_satisfies_missing_token(monkeypatch) -> None:
    monkeypatch.setenv("job1", "dG9rZW4=")
    job = _job(repo_config={
        "repo_url": "https://github.com/acme/repo",
        "credentials": {"username": "octocat"},
    })
    assert parse_config(_data(job)).audit_jobs[0].credentials.access_token == "dG9rZW4="


def test_defaults() -> None:
    config = parse_config(_data())
    job = config.audit_jobs[0]
    assert job.branches == [DEFAULT_BRANCH]
    assert job.tags == {}
    assert job.api_base_url == "https://api.github.com"
    assert config.checkpoint_file == "taskStats.json"
    assert config.loglevel == "info"


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"name": ""}, "missing audit job name"),
        ({"repo_name": ""}, "missing repository name"),
        ({"repo_type": ""}, "missing repository type"),
        ({"polling_interval": ""}, "missing polling interval"),
        ({"polling_interval": "often"}, "polling interval format"),
        ({"output": {}}, "missing target name"),
        ({"repo_config": {"credentials": {"username": "u", "access_token": "x"}}},
         "missing repository URL"),
        ({"repo_config": {"repo_url": "https://github.com/acme/repo",
                          "credentials": {"access_token": "x"}}},
         "missing username or email"),
        ({"repo_config": {"repo_url": "https://github.com/acme/repo",
                          "credentials": {"username": "u"}}},
         "missing access token"),
    ],
)
def test_validation_errors(overrides, message) -> None:
    with pytest.raises(ConfigError, match=message):
        parse_config(_data(_job(**overrides)))


def test_owner_required_when_url_has_no_path() -> None:
    job = _job(repo_owner="", repo_config={
        "repo_url": "https://github.com",
        "credentials": {"username": "u", "access_token": "x"},
    })
    with pytest.raises(ConfigError, match="repository owner"):
        parse_config(_data(job))


def test_email_is_enough_without_username() -> None:
    job = _job(repo_config={
        "repo_url": "https://github.com/acme/repo",
        "credentials": {"email": "dev@example.com", "access_token": "x"},
    })
    assert parse_config(_data(job)).audit_jobs[0].credentials.email == "dev@example.com"


def test_no_jobs_or_targets() -> None:
    with pytest.raises(ConfigError, match="no audit job"):
        parse_config({"auditJobs": [], "targets": [{"name": "t", "type": "x"}]})
    with pytest.raises(ConfigError, match="no target"):
        parse_config({"auditJobs": [_job()], "targets": []})


def test_target_requires_type() -> None:
    data = _data()
    data["targets"] = [{"name": "es"}]
    with pytest.raises(ConfigError, match="missing target type"):
        parse_config(data)


def test_decode_access_token() -> None:
    encoded = base64.b64encode(b"ghp_secret").decode()
    assert decode_access_token(encoded) == "ghp_secret"
    assert decode_access_token("") == ""


def test_decode_access_token_rejects_invalid_base64() -> None:
    with pytest.raises(CredentialError):
        decode_access_token("not base64!")


def test_unknown_job_keys_are_ignored() -> None:
    job = _job(metadata={"owner": "platform"})
    parsed = parse_config(_data(job)).audit_jobs[0]

    assert parsed.name == "job1"
    assert "metadata" not in {f.name for f in dataclasses.fields(AuditJob)}
