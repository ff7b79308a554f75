"""Process supervisor -- spawn, observe and terminate detached agent subprocesses."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from agent_orchestrator.config import OrchestratorConfig, subprocess_env
from agent_orchestrator.db import Database
from agent_orchestrator.errors import InvalidPattern, NotRunning, SpawnFailure, TaskNotFound
from agent_orchestrator.launcher import _pid_alive
from agent_orchestrator.models import (
	KILLED_EXIT_CODE,
	AgentTask,
	Project,
	Session,
	TaskStatus,
	_now_iso,
)
from agent_orchestrator.roles import RoleCatalog, build_prompt, parse_mode
from agent_orchestrator.transcript import (
	ActivityPage,
	TranscriptEvent,
	compile_pattern,
	filter_events,
	paginate,
	parse_token_usage,
	parse_transcript,
	search_events,
)

logger = logging.getLogger(__name__)

NO_OUTPUT_MARKER = "(no output yet)"


@dataclass(frozen=True)
class ProcessExited:
	"""Posted to the supervisor's event queue when an agent process exits."""

	task_id: str
	returncode: int


@dataclass
class StatusResult:
	task: AgentTask
	# True when a blocking wait gave up; the task may still finish later.
	timed_out: bool = False


def _single_line(text: str) -> str:
	return " ".join(text.split())


def header_block(task: AgentTask) -> str:
	return (
		"---\n"
		f"Agent: {task.agent_name}\n"
		f"Task ID: {task.id}\n"
		f"Mode: {task.mode}\n"
		f"Task: {_single_line(task.task)}\n"
		f"Started: {task.started_at}\n"
		"---\n\n"
	)


def footer_block(finished_at: str, returncode: int) -> str:
	return f"\n---\nFinished: {finished_at}\nExit Code: {returncode}\n---\n"


def error_block(message: str) -> str:
	return f"\n---\nError: {_single_line(message)}\n---\n"


def _append(path: str, text: str) -> None:
	try:
		with open(path, "a", encoding="utf-8") as f:
			f.write(text)
	except OSError as exc:
		logger.warning("Could not append to log %s: %s", path, exc)


class AgentSupervisor:
	"""Owns the agent tasks spawned by one orchestrator process.

	Task state lives in ``self._tasks`` and is the source of truth for every
	query this class answers; the shared store is a best-effort mirror.
	Exit notifications from watcher tasks are queued and applied by a single
	dispatch loop, so state transitions never interleave.
	"""

	def __init__(
		self,
		config: OrchestratorConfig,
		db: Database | None = None,
		project_root: Path | None = None,
	) -> None:
		self.config = config
		self.db = db
		self.project_root = (project_root or Path.cwd()).resolve()
		self.project_name = self.project_root.name
		self.roles = RoleCatalog(config.paths.resolved_agents_dir(self.project_root))
		self.logs_dir = config.paths.resolved_logs_dir / self.project_name
		self.project: Project | None = None
		self.session: Session | None = None
		self._tasks: dict[str, AgentTask] = {}
		self._procs: dict[str, asyncio.subprocess.Process] = {}
		self._watchers: dict[str, asyncio.Task[None]] = {}
		self._finalized: set[str] = set()
		self._events: asyncio.Queue[ProcessExited] | None = None
		self._dispatch_task: asyncio.Task[None] | None = None

	# -- Lifecycle --

	@property
	def started(self) -> bool:
		return self._dispatch_task is not None

	async def start(self) -> None:
		"""Register the project, open a session and start the dispatch loop."""
		if self.started:
			return
		self._events = asyncio.Queue()
		self._dispatch_task = asyncio.create_task(self._dispatch_loop())
		self.project = self._mirror("upsert project", "upsert_project", self.project_name, str(self.project_root))
		if self.project is not None and self.project.id is not None:
			self.session = self._mirror("create session", "create_session", self.project.id)
		logger.info(
			"Supervisor started for project %s (session %s)",
			self.project_name, self.session.id if self.session else "-",
		)

	async def stop(self) -> None:
		"""Close the session. Running agents are detached and keep running."""
		if not self.started:
			return
		for watcher in list(self._watchers.values()):
			watcher.cancel()
		if self._watchers:
			await asyncio.gather(*self._watchers.values(), return_exceptions=True)
		self._watchers.clear()

		assert self._events is not None
		while not self._events.empty():
			self._apply_safely(self._events.get_nowait())

		if self._dispatch_task is not None:
			self._dispatch_task.cancel()
			try:
				await self._dispatch_task
			except asyncio.CancelledError:
				pass
			self._dispatch_task = None

		if self.session is not None:
			self._mirror("end session", "end_session", self.session.id)
		logger.info("Supervisor stopped for project %s", self.project_name)

	async def __aenter__(self) -> AgentSupervisor:
		await self.start()
		return self

	async def __aexit__(self, *args: object) -> None:
		await self.stop()

	def _mirror(self, action: str, method: str, *args: Any) -> Any:
		"""Run a store write; a failing store never breaks the supervisor."""
		if self.db is None:
			return None
		fn: Callable[..., Any] = getattr(self.db, method)
		try:
			return fn(*args)
		except sqlite3.Error as exc:
			logger.warning("Store write failed (%s): %s", action, exc)
			return None

	# -- Spawn --

	def available_agents(self) -> list[str]:
		return self.roles.available()

	async def spawn(self, agent_name: str, task: str, mode: str) -> AgentTask:
		"""Launch an agent as a detached subprocess and return its running record."""
		await self.start()
		task_mode = parse_mode(mode)
		role_text = self.roles.read(agent_name)

		project = self._mirror("upsert project", "upsert_project", self.project_name, str(self.project_root))
		if project is not None:
			self.project = project

		record = AgentTask(
			project_id=self.project.id if self.project else None,
			session_id=self.session.id if self.session else None,
			agent_name=agent_name,
			task=task,
			mode=task_mode.value,
			project_name=self.project_name,
		)
		stamp = record.started_at.replace(":", "-").replace(".", "-")
		self.logs_dir.mkdir(parents=True, exist_ok=True)
		log_path = self.logs_dir / f"{agent_name}_{stamp}_{record.id}.log"
		record.log_file = str(log_path)
		log_path.write_text(header_block(record), encoding="utf-8")

		sc = self.config.supervisor
		cmd = [
			sc.executable,
			"-p", build_prompt(role_text, task, task_mode),
			"--allowedTools", self.config.tools.for_mode(task_mode.value),
			"--output-format", sc.output_format,
		]
		if sc.output_format == "stream-json":
			cmd.append("--verbose")

		self._tasks[record.id] = record
		log_fd = open(log_path, "ab")
		try:
			proc = await asyncio.create_subprocess_exec(
				*cmd,
				stdin=asyncio.subprocess.DEVNULL,
				stdout=log_fd,
				stderr=asyncio.subprocess.STDOUT,
				cwd=str(self.project_root),
				env=subprocess_env(self.config),
				start_new_session=True,
			)
		except OSError as exc:
			self._record_spawn_failure(record, exc)
			raise SpawnFailure(record, exc) from exc
		finally:
			# The child holds its own copy of the descriptor
			log_fd.close()

		record.pid = proc.pid
		self._procs[record.id] = proc
		self._mirror("insert task", "insert_task", record)
		self._watchers[record.id] = asyncio.create_task(self._watch(record.id, proc))
		logger.info(
			"Spawned agent %s (task %s, mode %s, PID %d)",
			agent_name, record.id, record.mode, proc.pid,
		)
		return record

	def _record_spawn_failure(self, record: AgentTask, exc: BaseException) -> None:
		record.status = TaskStatus.FAILED.value
		record.completed_at = _now_iso()
		_append(record.log_file, error_block(str(exc)))
		self._finalized.add(record.id)
		self._mirror("insert task", "insert_task", record)
		logger.error("Failed to spawn agent %s (task %s): %s", record.agent_name, record.id, exc)

	# -- Exit handling --

	async def _watch(self, task_id: str, proc: asyncio.subprocess.Process) -> None:
		returncode = await proc.wait()
		assert self._events is not None
		await self._events.put(ProcessExited(task_id, returncode))

	async def _dispatch_loop(self) -> None:
		assert self._events is not None
		while True:
			message = await self._events.get()
			try:
				self._apply_safely(message)
			finally:
				self._events.task_done()

	def _apply_safely(self, message: ProcessExited) -> None:
		try:
			self._apply(message)
		except Exception:
			logger.exception("Failed to apply exit of task %s", message.task_id)

	def _apply(self, message: ProcessExited) -> None:
		"""Finalize an exited task: status, footer, token usage. Runs once per task."""
		task = self._tasks.get(message.task_id)
		if task is None or message.task_id in self._finalized:
			return
		self._finalized.add(message.task_id)
		self._procs.pop(message.task_id, None)
		self._watchers.pop(message.task_id, None)

		finished_at = _now_iso()
		if task.is_running:
			task.status = (TaskStatus.COMPLETED if message.returncode == 0 else TaskStatus.FAILED).value
			task.exit_code = message.returncode
			task.completed_at = finished_at
			self._mirror(
				"update status", "update_task_status",
				task.id, task.status, task.exit_code, task.completed_at,
			)
		_append(task.log_file, footer_block(finished_at, message.returncode))

		usage = parse_token_usage(self._read_raw(task))
		if usage.reported:
			task.input_tokens = max(task.input_tokens, usage.input_tokens)
			task.output_tokens = max(task.output_tokens, usage.output_tokens)
			self._mirror("update tokens", "update_task_tokens", task.id, task.input_tokens, task.output_tokens)

		logger.info(
			"Agent %s (task %s) exited with code %d -> %s",
			task.agent_name, task.id, message.returncode, task.status,
		)

	# -- Queries --

	def _get(self, task_id: str) -> AgentTask:
		task = self._tasks.get(task_id)
		if task is None:
			raise TaskNotFound(task_id)
		return task

	def _refresh(self, task: AgentTask) -> None:
		if not task.is_running:
			return
		proc = self._procs.get(task.id)
		if proc is not None:
			if proc.returncode is not None:
				self._apply_safely(ProcessExited(task.id, proc.returncode))
			return
		# No handle to ask; a failed probe means the process is gone.
		if task.pid is None or not _pid_alive(task.pid):
			task.status = TaskStatus.COMPLETED.value
			task.completed_at = _now_iso()
			self._mirror(
				"update status", "update_task_status",
				task.id, task.status, task.exit_code, task.completed_at,
			)

	async def get_status(
		self,
		task_id: str,
		block: bool = False,
		timeout_ms: int | None = None,
	) -> StatusResult:
		"""Current state of a task, optionally waiting for it to finish.

		A blocking wait that runs out of time returns the still-running task
		with ``timed_out`` set; it does not touch the process.
		"""
		task = self._get(task_id)
		self._refresh(task)
		if not block or not task.is_running:
			return StatusResult(task)

		if timeout_ms is None:
			timeout_ms = self.config.supervisor.default_timeout_ms
		loop = asyncio.get_running_loop()
		deadline = loop.time() + max(0, timeout_ms) / 1000
		interval = self.config.supervisor.poll_interval
		while task.is_running:
			remaining = deadline - loop.time()
			if remaining <= 0:
				return StatusResult(task, timed_out=True)
			await asyncio.sleep(min(interval, remaining))
			self._refresh(task)
		return StatusResult(task)

	def list_tasks(self) -> list[AgentTask]:
		return list(self._tasks.values())

	def kill(self, task_id: str) -> AgentTask:
		"""Send SIGTERM to a running agent and mark it failed without waiting."""
		task = self._get(task_id)
		self._refresh(task)
		if not task.is_running or task.pid is None:
			raise NotRunning(task_id)
		try:
			os.killpg(task.pid, signal.SIGTERM)
		except ProcessLookupError:
			logger.info("Agent process %d for task %s already gone", task.pid, task_id)
		task.status = TaskStatus.FAILED.value
		task.exit_code = KILLED_EXIT_CODE
		task.completed_at = _now_iso()
		self._mirror(
			"update status", "update_task_status",
			task.id, task.status, task.exit_code, task.completed_at,
		)
		logger.info("Killed agent %s (task %s)", task.agent_name, task_id)
		return task

	# -- Transcript views --

	@staticmethod
	def _read_raw(task: AgentTask) -> str:
		try:
			return Path(task.log_file).read_text(encoding="utf-8", errors="replace")
		except FileNotFoundError:
			return ""

	def read_log(self, task_id: str) -> str:
		raw = self._read_raw(self._get(task_id))
		return raw or NO_OUTPUT_MARKER

	def read_activity(
		self,
		task_id: str,
		kind: str | None = None,
		offset: int = 0,
		limit: int = 50,
	) -> ActivityPage:
		events = parse_transcript(self._read_raw(self._get(task_id)))
		return paginate(filter_events(events, kind), offset, limit)

	def search_activity(
		self,
		task_id: str,
		pattern: str,
		kind: str | None = None,
		limit: int = 50,
	) -> list[TranscriptEvent]:
		task = self._get(task_id)
		try:
			regex = compile_pattern(pattern)
		except re.error as exc:
			raise InvalidPattern(pattern, str(exc)) from exc
		return search_events(parse_transcript(self._read_raw(task)), regex, kind, limit)
