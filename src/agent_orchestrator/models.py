"""Data models for agent-orchestrator state."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
	return uuid4().hex[:12]


def _new_task_id() -> str:
	return uuid4().hex[:8]


class TaskStatus(str, Enum):
	RUNNING = "running"
	COMPLETED = "completed"
	FAILED = "failed"

	@property
	def is_terminal(self) -> bool:
		return self is not TaskStatus.RUNNING


class TaskMode(str, Enum):
	"""Capability set granted to a spawned agent."""

	INVESTIGATE = "investigate"
	IMPLEMENT = "implement"


class SessionStatus(str, Enum):
	ACTIVE = "active"
	ENDED = "ended"


# Exit code recorded for tasks terminated through kill(); the real code is
# never observed because the supervisor does not wait for the signal to land.
KILLED_EXIT_CODE = -15


@dataclass
class Project:
	"""One source tree agents are spawned for."""

	id: int | None = None
	name: str = ""
	path: str = ""
	first_seen_at: str = field(default_factory=_now_iso)
	last_activity_at: str = field(default_factory=_now_iso)
	active_agents: int = 0


@dataclass
class Session:
	"""One lifetime of a supervisor for a project."""

	id: str = field(default_factory=_new_id)
	project_id: int | None = None
	started_at: str = field(default_factory=_now_iso)
	ended_at: str | None = None
	status: str = SessionStatus.ACTIVE.value
	agent_count: int = 0
	running_count: int = 0
	project_name: str = ""


@dataclass
class AgentTask:
	"""A single spawned agent subprocess and its lifecycle."""

	id: str = field(default_factory=_new_task_id)
	project_id: int | None = None
	session_id: str | None = None
	agent_name: str = ""
	task: str = ""
	mode: str = TaskMode.INVESTIGATE.value
	status: str = TaskStatus.RUNNING.value  # running/completed/failed
	pid: int | None = None
	log_file: str = ""
	started_at: str = field(default_factory=_now_iso)
	completed_at: str | None = None
	exit_code: int | None = None
	input_tokens: int = 0
	output_tokens: int = 0
	project_name: str = ""

	@property
	def is_running(self) -> bool:
		return self.status == TaskStatus.RUNNING.value

	def duration_ms(self, now: datetime | None = None) -> int:
		"""Wall-clock runtime so far, or total runtime once completed."""
		try:
			start = datetime.fromisoformat(self.started_at)
		except ValueError:
			return 0
		if self.completed_at:
			try:
				end = datetime.fromisoformat(self.completed_at)
			except ValueError:
				return 0
		else:
			end = now or datetime.now(timezone.utc)
		return max(0, int((end - start).total_seconds() * 1000))

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)
