import json
import logging

import pytest

from apps.codespaces.config import DEFAULT_HEALTH_SERVICES, Settings
from apps.codespaces.errors import ConfigError
from apps.codespaces.models.rollback_models import RollbackConfig, TriggerKind


def test_defaults_match_documented_values():
    config = RollbackConfig()

    health = config.triggers.health_check_failure
    assert (health.threshold, health.window_seconds) == (3, 60)
    assert (config.triggers.error_rate_threshold.threshold, config.triggers.error_rate_threshold.window_seconds) == (5, 300)
    assert config.triggers.response_time_threshold.threshold == 2000
    assert config.triggers.manual_trigger.allowed_roles == ("admin", "super_admin")
    assert config.procedures.files.exclude_patterns == ("*.log", "*.cache", "*.tmp")
    assert config.procedures.database.max_retries == 3
    assert config.recovery.enabled is False
    assert config.audit.retention.days == 90
    assert config.logging.retention.days == 30


def test_empty_path_gives_defaults():
    assert RollbackConfig.from_file("") == RollbackConfig()


def test_load_wrapped_document(tmp_path):
    path = tmp_path / "rollback.json"
    path.write_text(
        json.dumps(
            {
                "rollback": {
                    "triggers": {
                        "health_check_failure": {"enabled": True, "threshold": 5, "interval": 30},
                        "error_rate_threshold": {"enabled": False, "threshold": 10, "window": 600},
                    },
                    "procedures": {"files": {"max_retries": 1, "target_path": "/var/www"}},
                }
            }
        )
    )

    config = RollbackConfig.from_file(str(path))

    health = config.triggers.get(TriggerKind.HEALTH_CHECK_FAILURE)
    assert (health.threshold, health.window_seconds) == (5, 30)
    assert config.triggers.error_rate_threshold.enabled is False
    assert config.triggers.error_rate_threshold.window_seconds == 600
    assert config.procedures.files.max_retries == 1
    assert config.procedures.files.target_path == "/var/www"
    # Untouched sections keep their defaults.
    assert config.triggers.response_time_threshold.threshold == 2000


@pytest.mark.parametrize(
    "document",
    [
        {"triggers": {"health_check_failure": {"threshold": 0, "interval": 60}}},
        {"triggers": {"error_rate_threshold": {"threshold": 5, "window": -1}}},
        {"procedures": {"database": {"max_retries": -1}}},
        {"logging": {"level": "loud"}},
        {"notifications": {"channels": {"slack": {"severity": "urgent"}}}},
    ],
)
def test_invalid_values_are_rejected(tmp_path, document):
    path = tmp_path / "rollback.json"
    path.write_text(json.dumps(document))

    with pytest.raises(ConfigError):
        RollbackConfig.from_file(str(path))


def test_missing_or_malformed_file(tmp_path):
    with pytest.raises(ConfigError):
        RollbackConfig.from_file(str(tmp_path / "nope.json"))

    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(ConfigError):
        RollbackConfig.from_file(str(bad))


def test_snapshots_are_frozen():
    config = RollbackConfig()

    with pytest.raises(Exception):
        config.enabled = False


def test_health_services_from_environment(monkeypatch):
    monkeypatch.setenv("CODESPACES_HEALTH_SERVICES", '{"database": "tcp://db:5432"}')

    assert Settings().HEALTH_SERVICES == {"database": "tcp://db:5432"}


def test_malformed_health_services_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("CODESPACES_HEALTH_SERVICES", "database=tcp://db:5432")

    assert Settings().HEALTH_SERVICES == DEFAULT_HEALTH_SERVICES


def test_logging_level_maps_to_stdlib_level():
    config = RollbackConfig.model_validate({"logging": {"level": "WARNING"}})

    assert config.logging.level == "warning"
    assert config.logging.log_level == logging.WARNING
