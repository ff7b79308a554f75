"""Shared pytest fixtures and factory functions for agent-orchestrator tests."""

from __future__ import annotations

import json
import stat
import sys
from pathlib import Path
from typing import Any, Callable

import pytest

from agent_orchestrator.config import OrchestratorConfig, PathsConfig
from agent_orchestrator.db import Database
from agent_orchestrator.models import AgentTask

FakeAgentFactory = Callable[..., Path]


@pytest.fixture()
def db() -> Database:
	"""In-memory Database with schema initialized."""
	return Database(":memory:")


@pytest.fixture()
def config(tmp_path: Path) -> OrchestratorConfig:
	"""Config rooted in tmp_path with a fast poll interval."""
	cfg = OrchestratorConfig()
	cfg.paths = PathsConfig(data_dir=str(tmp_path / "data"))
	cfg.supervisor.poll_interval = 0.05
	cfg.dashboard.autostart = False
	return cfg


@pytest.fixture()
def project_root(tmp_path: Path) -> Path:
	"""A project tree with two agent roles."""
	root = tmp_path / "shop"
	agents = root / ".claude" / "agents"
	agents.mkdir(parents=True)
	(agents / "database.md").write_text("You are the database specialist.\n")
	(agents / "api.md").write_text("You are the API specialist.\n")
	return root


@pytest.fixture()
def fake_agent(tmp_path: Path, config: OrchestratorConfig) -> FakeAgentFactory:
	"""Install an executable that prints transcript lines and exits.

	Returns a factory taking (lines, exit_code=0, sleep=0.0); the config's
	agent executable is pointed at the generated script.
	"""

	def _make(lines: list[Any] | None = None, exit_code: int = 0, sleep: float = 0.0) -> Path:
		rendered = [line if isinstance(line, str) else json.dumps(line) for line in (lines or [])]
		script = tmp_path / "fake_claude"
		script.write_text(
			f"#!{sys.executable}\n"
			"import sys, time\n"
			f"for line in {rendered!r}:\n"
			"    print(line, flush=True)\n"
			f"time.sleep({sleep!r})\n"
			f"sys.exit({exit_code!r})\n"
		)
		script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
		config.supervisor.executable = str(script)
		return script

	return _make


def make_task(**overrides: Any) -> AgentTask:
	"""Create an AgentTask with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"id": "t1",
		"agent_name": "database",
		"task": "list tables",
		"mode": "investigate",
		"log_file": "/nonexistent/t1.log",
	}
	defaults.update(overrides)
	return AgentTask(**defaults)


def result_line(text: str, input_tokens: int = 120, output_tokens: int = 45) -> dict[str, Any]:
	return {
		"type": "result",
		"subtype": "success",
		"result": text,
		"duration_ms": 2400,
		"total_cost_usd": 0.0123,
		"num_turns": 2,
		"usage": {
			"input_tokens": input_tokens,
			"output_tokens": output_tokens,
			"cache_read_input_tokens": 300,
			"cache_creation_input_tokens": 0,
		},
	}
