import logging

import pytest

import env_validation
from env_validation import EnvironmentError, get_env_bool, load_settings, validate_environment

_VARS = ("DB_PATH", "DB_MAX_CONNECTIONS", "GAP_RECOVERY_SCORE", "GAP_AUTO_RESOLVE", "SWEEP_MAX_WORKERS", "LOG_LEVEL")


@pytest.fixture
def clean_env(monkeypatch):
    # setenv first so values written by validate_environment are undone too
    for var in _VARS:
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)
    return monkeypatch


def test_defaults_are_applied(clean_env, caplog):
    with caplog.at_level(logging.INFO, logger="env_validation"):
        validate_environment()

    settings = load_settings()
    assert settings.db_path == "data.db"
    assert settings.db_max_connections == 10
    assert settings.gap_recovery_score == 75
    assert settings.gap_auto_resolve is True
    assert settings.sweep_max_workers == 4
    assert settings.log_level == "INFO"
    assert "GAP_RECOVERY_SCORE" in caplog.text


@pytest.mark.parametrize(
    "var, value",
    [
        ("GAP_RECOVERY_SCORE", "101"),
        ("SWEEP_MAX_WORKERS", "0"),
        ("DB_MAX_CONNECTIONS", "many"),
        ("LOG_LEVEL", "LOUD"),
    ],
)
def test_invalid_values_raise(clean_env, var, value):
    clean_env.setenv(var, value)

    with pytest.raises(EnvironmentError):
        validate_environment()


def test_env_bool(clean_env):
    clean_env.setenv("GAP_AUTO_RESOLVE", "off")
    assert get_env_bool("GAP_AUTO_RESOLVE", True) is False
    clean_env.setenv("GAP_AUTO_RESOLVE", "Yes")
    assert get_env_bool("GAP_AUTO_RESOLVE") is True
    assert get_env_bool("UNSET_FLAG_FOR_TEST", True) is True


def test_configure_logging_sets_level(clean_env):
    root = logging.getLogger()
    previous = root.level
    try:
        env_validation.configure_logging("debug")
        assert root.level == logging.DEBUG
    finally:
        root.setLevel(previous)
