"""Tests for command-line and environment configuration."""

import pytest

from settings import CHAIN_ID, LISTEN_PORT, PING_INTERVAL_SECONDS, ProxySettings, load_settings
from routing import DEFAULT_PROBE_ADDRESS


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("BACKENDS", "HOST", "PORT", "PING_INTERVAL", "CHAIN_ID", "PROBE_ADDRESS", "STATUS_PORT", "LOG_LEVEL"):
        monkeypatch.delenv(f"ARCHIVE_PROXY_{name}", raising=False)


def test_defaults_match_reference_deployment() -> None:
    s = load_settings(["ws://127.0.0.1:1234", "ws://127.0.0.1:1235"])
    assert s.endpoints == ["ws://127.0.0.1:1234", "ws://127.0.0.1:1235"]
    assert s.listen_port == LISTEN_PORT == 13714
    assert s.ping_interval_seconds == PING_INTERVAL_SECONDS == 30.0
    assert s.chain_id == CHAIN_ID == "0x38"
    assert s.probe_address == DEFAULT_PROBE_ADDRESS
    assert s.status_port == 0
    assert s.log_level == "INFO"


def test_flags_override_defaults() -> None:
    s = load_settings([
        "http://node:8545",
        "--port", "9000",
        "--ping-interval", "5",
        "--chain-id", "0x1",
        "--status-port", "9001",
        "--log-level", "debug",
    ])
    assert (s.listen_port, s.ping_interval_seconds, s.chain_id, s.status_port) == (9000, 5.0, "0x1", 9001)
    assert s.log_level == "DEBUG"


def test_environment_fallbacks(monkeypatch) -> None:
    monkeypatch.setenv("ARCHIVE_PROXY_BACKENDS", "ws://a:1, ws://b:2,")
    monkeypatch.setenv("ARCHIVE_PROXY_PORT", "7000")
    s = load_settings([])
    assert s.endpoints == ["ws://a:1", "ws://b:2"]
    assert s.listen_port == 7000
    # Positional arguments win over the environment.
    assert load_settings(["ws://c:3"]).endpoints == ["ws://c:3"]


@pytest.mark.parametrize(
    "argv",
    [
        [],
        ["ws://a", "--ping-interval", "0"],
        ["ws://a", "--chain-id", "56"],
        ["ws://a", "--port", "70000"],
        ["ws://a", "--port", "9000", "--status-port", "9000"],
        ["ws://a", "--log-level", "chatty"],
    ],
)
def test_invalid_settings_exit(argv) -> None:
    with pytest.raises(SystemExit):
        load_settings(argv)


def test_validate_direct() -> None:
    with pytest.raises(ValueError):
        ProxySettings(endpoints=[]).validate()
    assert ProxySettings(endpoints=["ws://a"]).validate().log_level == "INFO"
