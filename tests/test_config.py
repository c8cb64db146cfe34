from __future__ import annotations

import textwrap

import pytest

from mintwatch.config import TrackerSettings, load_settings
from mintwatch.tracking.errors import ConfigurationError
from mintwatch.tracking.ledger import PUMP_FUN_PROGRAM_ID
from mintwatch.tracking.policy import HOUR, MINUTE
from mintwatch.tracking.types import Phase


def test_defaults_without_file() -> None:
    settings = load_settings(env={})
    assert settings.poller.program_id == PUMP_FUN_PROGRAM_ID
    assert settings.poller.signature_limit == 25
    table = settings.policy_table()
    assert table[Phase.INTENSIVE].interval == 2 * MINUTE
    assert table.evaluation_age == 24 * HOUR
    assert table.extended_until == 168 * HOUR
    assert settings.scoring.weights().extended_cutoff == 80.0


def test_toml_file(tmp_path) -> None:
    path = tmp_path / "mintwatch.toml"
    path.write_text(
        textwrap.dedent(
            """
            [poller]
            rpc_url = "https://rpc.example.org/"
            signature_limit = 50

            [scoring]
            extended_cutoff = 70

            [logging]
            level = "DEBUG"
            json_logs = true
            """
        )
    )
    settings = load_settings(path, env={})
    assert settings.poller.rpc_url == "https://rpc.example.org"
    assert settings.poller.signature_limit == 50
    assert settings.scoring.extended_cutoff == 70
    assert settings.logging.json_logs is True


def test_yaml_file_with_phase_table(tmp_path) -> None:
    path = tmp_path / "mintwatch.yaml"
    path.write_text(
        textwrap.dedent(
            """
            collector:
              requests_per_second: 4
              count_holders: false
            phases:
              intensive: {interval: 60, alert_threshold: 5, retention: 7200, starts_at: 0, ends_at: 3600}
              active: {interval: 600, alert_threshold: 15, retention: 43200, starts_at: 3600, ends_at: 43200}
              evaluation: {interval: 1800, alert_threshold: 20, retention: 86400, starts_at: 43200, ends_at: 86400}
              extended: {interval: 7200, alert_threshold: 25, retention: 604800, starts_at: 86400, ends_at: 604800}
            """
        )
    )
    settings = load_settings(path, env={})
    assert settings.collector.requests_per_second == 4
    assert not settings.collector.count_holders
    table = settings.policy_table()
    assert table[Phase.INTENSIVE].interval == 60
    assert table[Phase.ACTIVE].starts_at == 3600


def test_config_path_from_environment(tmp_path) -> None:
    path = tmp_path / "conf.yml"
    path.write_text("alerts:\n  buffer_size: 10\n")
    settings = load_settings(env={"MINTWATCH_CONFIG": str(path)})
    assert settings.alerts.buffer_size == 10


def test_environment_overrides_file(tmp_path) -> None:
    path = tmp_path / "mintwatch.toml"
    path.write_text("[poller]\nsignature_limit = 50\n")
    env = {
        "MINTWATCH_SIGNATURE_LIMIT": "7",
        "MINTWATCH_RPC_URL": "http://localhost:8899",
        "MINTWATCH_LOG_LEVEL": "warning",
        "MINTWATCH_BACKOFF_BASE": " ",
    }
    settings = load_settings(path, env=env)
    assert settings.poller.signature_limit == 7
    assert settings.poller.rpc_url == "http://localhost:8899"
    assert settings.logging.level == "warning"
    assert settings.poller.backoff_base == 1.0


@pytest.mark.parametrize(
    "env",
    [
        {"MINTWATCH_SIGNATURE_LIMIT": "many"},
        {"MINTWATCH_SIGNATURE_LIMIT": "0"},
        {"MINTWATCH_RPC_URL": "ftp://node"},
        {"MINTWATCH_BACKOFF_BASE": "10", "MINTWATCH_BACKOFF_CEILING": "5"},
    ],
)
def test_invalid_environment_values(env) -> None:
    with pytest.raises(ConfigurationError):
        load_settings(env=env)


def test_missing_file(tmp_path) -> None:
    with pytest.raises(ConfigurationError, match="not found"):
        load_settings(tmp_path / "absent.toml", env={})


def test_unsupported_format(tmp_path) -> None:
    path = tmp_path / "mintwatch.ini"
    path.write_text("[poller]\n")
    with pytest.raises(ConfigurationError, match="unsupported"):
        load_settings(path, env={})


def test_unparseable_file(tmp_path) -> None:
    path = tmp_path / "mintwatch.toml"
    path.write_text("[poller\nsignature_limit = ")
    with pytest.raises(ConfigurationError, match="cannot parse"):
        load_settings(path, env={})


def test_unknown_top_level_key(tmp_path) -> None:
    path = tmp_path / "mintwatch.yaml"
    path.write_text("pollr:\n  signature_limit: 5\n")
    with pytest.raises(ConfigurationError):
        load_settings(path, env={})


def test_partial_phase_table_is_rejected() -> None:
    with pytest.raises(ValueError, match="missing phase policy"):
        TrackerSettings.model_validate(
            {
                "phases": {
                    "intensive": {
                        "interval": 60,
                        "alert_threshold": 5,
                        "retention": 60,
                        "starts_at": 0,
                        "ends_at": 60,
                    }
                }
            }
        )


def test_phase_window_must_be_ordered(tmp_path) -> None:
    path = tmp_path / "mintwatch.yaml"
    path.write_text(
        "phases:\n"
        "  intensive: {interval: 60, alert_threshold: 5, retention: 60, starts_at: 100, ends_at: 50}\n"
    )
    with pytest.raises(ConfigurationError):
        load_settings(path, env={})
