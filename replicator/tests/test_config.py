from __future__ import annotations

import logging

import pytest

from replicator.src.config import ConfigError, env_int, load_config, parse_bool


def test_defaults_with_only_namespace() -> None:
    cfg = load_config({"NAMESPACE": "src"})

    assert cfg.namespace == "src"
    assert cfg.exclude_namespace_label == ""
    assert cfg.sync_interval_minutes == 15
    assert cfg.debounce_seconds == 5
    assert cfg.rate_limit == 10
    assert cfg.metrics_port == 9090
    assert cfg.enable_secret_watcher is True
    assert cfg.enable_namespace_watcher is True
    assert cfg.prune_orphans is False
    assert cfg.debug is False
    assert cfg.log_level == "INFO"


@pytest.mark.parametrize("env", [{}, {"NAMESPACE": ""}, {"NAMESPACE": "   "}])
def test_missing_namespace_is_fatal(env: dict[str, str]) -> None:
    with pytest.raises(ConfigError, match="NAMESPACE"):
        load_config(env)


def test_reads_every_setting() -> None:
    cfg = load_config(
        {
            "NAMESPACE": "src",
            "EXCLUDE_NAMESPACE_LABEL": "skip",
            "SYNC_INTERVAL": "30",
            "SECRET_SYNC_DEBOUNCE_SECONDS": "10",
            "SECRET_SYNC_RATE_LIMIT": "50",
            "METRICS_PORT": "8080",
            "ENABLE_SECRET_WATCHER": "false",
            "ENABLE_NAMESPACE_WATCHER": "0",
            "PRUNE_ORPHANS": "true",
            "DEBUG": "yes",
        }
    )

    assert cfg.exclude_namespace_label == "skip"
    assert cfg.sync_interval_minutes == 30
    assert cfg.debounce_seconds == 10
    assert cfg.rate_limit == 50
    assert cfg.metrics_port == 8080
    assert cfg.enable_secret_watcher is False
    assert cfg.enable_namespace_watcher is False
    assert cfg.prune_orphans is True
    assert cfg.debug is True


@pytest.mark.parametrize(
    ("name", "value", "expected"),
    [
        ("SECRET_SYNC_DEBOUNCE_SECONDS", "0", 5),
        ("SECRET_SYNC_DEBOUNCE_SECONDS", "61", 5),
        ("SECRET_SYNC_DEBOUNCE_SECONDS", "60", 60),
        ("SECRET_SYNC_RATE_LIMIT", "0", 10),
        ("SECRET_SYNC_RATE_LIMIT", "101", 10),
        ("SECRET_SYNC_RATE_LIMIT", "1", 1),
        ("SYNC_INTERVAL", "0", 15),
        ("SYNC_INTERVAL", "1441", 15),
        ("SYNC_INTERVAL", "abc", 15),
    ],
)
def test_out_of_range_values_fall_back_to_default(name: str, value: str, expected: int) -> None:
    cfg = load_config({"NAMESPACE": "src", name: value})
    values = {
        "SECRET_SYNC_DEBOUNCE_SECONDS": cfg.debounce_seconds,
        "SECRET_SYNC_RATE_LIMIT": cfg.rate_limit,
        "SYNC_INTERVAL": cfg.sync_interval_minutes,
    }
    assert values[name] == expected


def test_fallback_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="replicator.src.config"):
        assert env_int({"X": "500"}, "X", 7, minimum=1, maximum=100) == 7

    assert "out of valid range" in caplog.text


class TestParseBool:
    def test_default_when_unset(self) -> None:
        assert parse_bool(None) is False
        assert parse_bool("", default=True) is True

    @pytest.mark.parametrize("value", ["true", "True", "TRUE", "1", "yes", "on", "  true  "])
    def test_truthy_values(self, value: str) -> None:
        assert parse_bool(value) is True

    @pytest.mark.parametrize("value", ["false", "False", "0", "no", "off"])
    def test_falsy_values(self, value: str) -> None:
        assert parse_bool(value, default=True) is False


@pytest.mark.parametrize(
    ("env", "expected"),
    [
        ({"LOG_LEVEL": "warning"}, "WARNING"),
        ({"LOG_LEVEL": "ERROR", "DEBUG": "true"}, "DEBUG"),
        ({"LOG_LEVEL": "chatty"}, "INFO"),
        ({"LOG_LEVEL": "  "}, "INFO"),
    ],
)
def test_log_level(env: dict[str, str], expected: str) -> None:
    assert load_config({"NAMESPACE": "src", **env}).log_level == expected
