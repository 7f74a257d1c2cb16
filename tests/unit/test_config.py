"""Tests for configuration loading."""

from auditflow.config import load_config
from auditflow.persistence import SQLiteRepository, get_repository
import auditflow.persistence as persistence


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
log_level: INFO
retry:
  seed_delays: [0.1, 0.2]
audits:
  title_min_length: 5
  require_published_templates: true
"""
    )
    monkeypatch.setenv("AUDITFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("AUDITFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.log_level == "INFO"
    assert config.retry.seed_policy().delays == (0.1, 0.2)
    assert config.retry.visibility_policy().attempts == 3
    assert config.audits.title_min_length == 5
    assert config.audits.require_published_templates is True
    assert config.database_url is None


def test_missing_config_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("AUDITFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("AUDITFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.retry.seed_policy().delays == (0.2, 0.45, 0.9)
    assert config.audits.title_max_length == 200


def test_database_url_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite://ignored.db\n")
    monkeypatch.setenv("AUDITFLOW_CONFIG", str(config_path))
    monkeypatch.setenv("AUDITFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'audits.db'}")

    assert load_config().database_url == f"sqlite://{tmp_path / 'audits.db'}"


def test_get_repository_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(f"database_url: sqlite://{tmp_path / 'audits.db'}\n")
    monkeypatch.setenv("AUDITFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("AUDITFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setattr(persistence, "_repository_instance", None)

    repo = get_repository(config=load_config())
    assert isinstance(repo, SQLiteRepository)
    assert repo.db_path == str(tmp_path / "audits.db")
    repo.close()
