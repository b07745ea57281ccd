from __future__ import annotations

import stat
from pathlib import Path

import pytest

from agent_relay.shared.settings import (
    DEFAULT_AGENT_COMMAND,
    RelaySettings,
    get_relay_settings,
    load_config_file,
)


def test_defaults_live_under_project_state_dir(tmp_path: Path) -> None:
    settings = get_relay_settings(project_root=tmp_path, env={})

    assert settings.state_dir == tmp_path.resolve() / ".relay"
    assert settings.db_path == settings.state_dir / "relay.db"
    assert settings.lock_dir == settings.state_dir / "locks"
    assert settings.agent.command == DEFAULT_AGENT_COMMAND
    assert settings.reviews_dir == tmp_path.resolve() / "docs" / "development" / "reviews"
    assert settings.quality_gates == ()
    assert stat.S_IMODE(settings.log_dir.stat().st_mode) == 0o700


def test_env_overrides_locations(tmp_path: Path) -> None:
    env = {
        "RELAY_HOME": str(tmp_path / "state"),
        "RELAY_DB_PATH": str(tmp_path / "db" / "runs.db"),
        "RELAY_AGENT_TIMEOUT": "42",
    }
    settings = RelaySettings.from_env(env, project_root=tmp_path)

    assert settings.state_dir == tmp_path / "state"
    assert settings.db_path == tmp_path / "db" / "runs.db"
    assert settings.log_dir == tmp_path / "state" / "logs"
    assert settings.agent.timeout_seconds == 42.0


def test_config_file_is_overlaid_and_env_wins(tmp_path: Path) -> None:
    (tmp_path / "relay.yaml").write_text(
        """
agent:
  command: [my-agent, run, "{prompt}"]
  author_model: big-model
  reviewer_model: careful-model
  timeout_seconds: 120
viewer:
  url: http://127.0.0.1:4096
quality_gates:
  - ruff check .
  - pytest -q
max_review_iterations: 3
reviews_dir: notes/reviews
""",
        encoding="utf-8",
    )
    settings = get_relay_settings(project_root=tmp_path, env={"RELAY_AUTHOR_MODEL": "env-model"})

    assert settings.agent.command == ("my-agent", "run", "{prompt}")
    assert settings.agent.author_model == "env-model"
    assert settings.agent.reviewer_model == "careful-model"
    assert settings.agent.timeout_seconds == 120
    assert settings.quality_gates == ("ruff check .", "pytest -q")
    assert settings.max_review_iterations == 3
    assert settings.max_quality_retries == 3
    assert settings.viewer_url == "http://127.0.0.1:4096"
    assert settings.reviews_dir == tmp_path.resolve() / "notes" / "reviews"


def test_empty_config_file_uses_defaults(tmp_path: Path) -> None:
    path = tmp_path / "relay.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config_file(path).quality_gates is None
    assert load_config_file(tmp_path / "missing.yaml").agent.command is None


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("agent:\n  comand: [x]\n", "comand"),
        ("max_review_iterations: 0\n", "max_review_iterations"),
        ("- just\n- a list\n", "expected a mapping"),
        ("agent: [unclosed\n", "invalid YAML"),
    ],
)
def test_invalid_config_raises_value_error(tmp_path: Path, text: str, message: str) -> None:
    path = tmp_path / "relay.yaml"
    path.write_text(text, encoding="utf-8")
    with pytest.raises(ValueError, match=message):
        load_config_file(path)
