from __future__ import annotations

from pathlib import Path

import pytest

from studioflow.config import STUDIO_PLUGIN_PORT, StudioFlowConfig, load_config
from studioflow.errors import ConfigError


def test_defaults() -> None:
    config = load_config(environ={})
    assert config == StudioFlowConfig()
    assert config.host == "127.0.0.1"
    assert config.port == STUDIO_PLUGIN_PORT
    assert config.retry.max_attempts == 3


def test_yaml_then_env_then_overrides(tmp_path: Path) -> None:
    path = tmp_path / "studioflow.yaml"
    path.write_text(
        "port: 9000\nlease_ttl_s: 10\nretry:\n  max_attempts: 5\n  initial_backoff_s: 0.1\n",
        encoding="utf-8",
    )

    config = load_config(
        path,
        environ={"STUDIOFLOW_LEASE_TTL_S": "12.5", "STUDIOFLOW_RETRY_MAX_ATTEMPTS": "4"},
        overrides={"port": 9100, "host": None},
    )

    assert config.port == 9100
    assert config.host == "127.0.0.1"
    assert config.lease_ttl_s == 12.5
    assert config.retry.max_attempts == 4
    assert config.retry.initial_backoff_s == 0.1


def test_empty_yaml_file(tmp_path: Path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(path, environ={}) == StudioFlowConfig()


@pytest.mark.parametrize(
    ("content", "environ"),
    [
        ("- not\n- a mapping\n", {}),
        ("port: [unclosed\n", {}),
        ("", {"STUDIOFLOW_LEASE_TTL_S": "-1"}),
        ("retry:\n  initial_backoff_s: 5\n  max_backoff_s: 1\n", {}),
    ],
)
def test_invalid_config_raises(tmp_path: Path, content: str, environ: dict[str, str]) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(path, environ=environ)


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yaml", environ={})


def test_plan_history_from_env() -> None:
    config = load_config(environ={"STUDIOFLOW_PLAN_HISTORY": "4"})
    assert config.plan_history == 4

    with pytest.raises(ConfigError):
        load_config(environ={"STUDIOFLOW_PLAN_HISTORY": "0"})
