"""Exceptions raised by the supervisor and store layers."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
	from agent_orchestrator.models import AgentTask


class OrchestratorError(Exception):
	"""Base class for recoverable orchestrator errors."""


class AgentNotFound(OrchestratorError):
	def __init__(self, agent_name: str, available: list[str]) -> None:
		self.agent_name = agent_name
		self.available = available
		listing = ", ".join(available) if available else "(none)"
		super().__init__(f"Agent '{agent_name}' not found. Available agents: {listing}")


class TaskNotFound(OrchestratorError):
	def __init__(self, task_id: str) -> None:
		self.task_id = task_id
		super().__init__(f"Task '{task_id}' not found")


class NotRunning(OrchestratorError):
	def __init__(self, task_id: str) -> None:
		self.task_id = task_id
		super().__init__(f"Task '{task_id}' is not running")


class InvalidMode(OrchestratorError):
	def __init__(self, mode: str) -> None:
		self.mode = mode
		super().__init__(f"Invalid mode '{mode}'. Valid modes: investigate, implement")


class InvalidPattern(OrchestratorError):
	def __init__(self, pattern: str, reason: str) -> None:
		self.pattern = pattern
		super().__init__(f"Invalid search pattern {pattern!r}: {reason}")


class SpawnFailure(OrchestratorError):
	"""The agent executable could not be launched.

	The task has already been recorded as failed by the time this is raised.
	"""

	def __init__(self, task: AgentTask, cause: BaseException) -> None:
		self.task = task
		self.cause = cause
		super().__init__(f"Failed to spawn agent '{task.agent_name}' (task {task.id}): {cause}")
