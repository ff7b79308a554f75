"""Tests for role lookup and prompt assembly."""

from __future__ import annotations

from pathlib import Path

import pytest

from agent_orchestrator.errors import AgentNotFound, InvalidMode
from agent_orchestrator.models import TaskMode
from agent_orchestrator.roles import RoleCatalog, build_prompt, parse_mode


@pytest.fixture
def catalog(project_root: Path) -> RoleCatalog:
	return RoleCatalog(project_root / ".claude" / "agents")


class TestRoleCatalog:
	def test_available_sorted(self, catalog: RoleCatalog) -> None:
		(catalog.agents_dir / "notes.txt").write_text("ignored")
		assert catalog.available() == ["api", "database"]

	def test_missing_dir(self, tmp_path: Path) -> None:
		assert RoleCatalog(tmp_path / "nowhere").available() == []

	def test_read(self, catalog: RoleCatalog) -> None:
		assert catalog.read("database").startswith("You are the database specialist")

	def test_unknown_role(self, catalog: RoleCatalog) -> None:
		with pytest.raises(AgentNotFound) as exc_info:
			catalog.read("frontend")
		assert exc_info.value.available == ["api", "database"]
		assert "api, database" in str(exc_info.value)

	@pytest.mark.parametrize("name", ["../secret", "/etc/passwd", "", ".hidden", "a/b"])
	def test_names_cannot_escape(self, catalog: RoleCatalog, name: str) -> None:
		(catalog.agents_dir.parent / "secret.md").write_text("nope")
		with pytest.raises(AgentNotFound):
			catalog.read(name)


class TestPrompt:
	def test_parse_mode(self) -> None:
		assert parse_mode("investigate") is TaskMode.INVESTIGATE
		assert parse_mode("implement") is TaskMode.IMPLEMENT
		with pytest.raises(InvalidMode):
			parse_mode("Implement")

	def test_investigate_prompt(self) -> None:
		prompt = build_prompt("You are the DB agent.", "list tables", TaskMode.INVESTIGATE)
		assert prompt.startswith("# Agent Context\n\nYou are the DB agent.")
		assert "INVESTIGATION (Read-Only)" in prompt
		assert "# Assigned Task\n\nlist tables" in prompt

	def test_implement_prompt(self) -> None:
		prompt = build_prompt("role", "add index", TaskMode.IMPLEMENT)
		assert "## MODE: IMPLEMENTATION" in prompt
		assert "Read-Only" not in prompt
