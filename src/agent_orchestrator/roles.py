"""Agent role definitions and prompt assembly."""

from __future__ import annotations

import re
from pathlib import Path

from agent_orchestrator.errors import AgentNotFound, InvalidMode
from agent_orchestrator.models import TaskMode

ROLE_SUFFIX = ".md"

_ROLE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

_MODE_INSTRUCTIONS = {
	TaskMode.INVESTIGATE: (
		"## MODE: INVESTIGATION (Read-Only)\n"
		"\n"
		"IMPORTANT: You are in investigation mode. You CANNOT modify files.\n"
		"- You can only READ and ANALYZE code\n"
		"- Do NOT use Edit, Write, or Bash to modify anything\n"
		"- Your goal is to investigate and report findings\n"
		"- Be concise and direct in your response"
	),
	TaskMode.IMPLEMENT: (
		"## MODE: IMPLEMENTATION\n"
		"\n"
		"You are in implementation mode. You can modify files.\n"
		"- Implement the changes according to the agreed plan\n"
		"- Be concise and update progress as you go"
	),
}

_PROMPT_TEMPLATE = """# Agent Context

{role}

{mode_instructions}

# Assigned Task

{task}

# Final Instructions

1. Execute the assigned task within your scope
2. If you find something outside your scope, report it but don't modify it
3. Be concise and direct in your response"""


def parse_mode(mode: str) -> TaskMode:
	try:
		return TaskMode(mode)
	except ValueError:
		raise InvalidMode(mode) from None


class RoleCatalog:
	"""Role definitions stored as ``<agents_dir>/<name>.md``."""

	def __init__(self, agents_dir: Path) -> None:
		self.agents_dir = agents_dir

	def available(self) -> list[str]:
		if not self.agents_dir.is_dir():
			return []
		return sorted(p.stem for p in self.agents_dir.glob(f"*{ROLE_SUFFIX}") if p.is_file())

	def read(self, name: str) -> str:
		"""Return the role definition text. Raises AgentNotFound."""
		# Names come from callers; never let them escape the agents dir.
		if not _ROLE_NAME_RE.match(name):
			raise AgentNotFound(name, self.available())
		path = self.agents_dir / f"{name}{ROLE_SUFFIX}"
		if not path.is_file():
			raise AgentNotFound(name, self.available())
		return path.read_text(encoding="utf-8")


def build_prompt(role_text: str, task: str, mode: TaskMode) -> str:
	return _PROMPT_TEMPLATE.format(
		role=role_text,
		mode_instructions=_MODE_INSTRUCTIONS[mode],
		task=task,
	)
