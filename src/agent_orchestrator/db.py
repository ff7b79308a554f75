"""SQLite store shared by every supervisor and the dashboard."""

from __future__ import annotations

import logging
import re
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Generator

from agent_orchestrator.models import (
	AgentTask,
	Project,
	Session,
	SessionStatus,
	TaskStatus,
	_now_iso,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS projects (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	name TEXT NOT NULL UNIQUE,
	path TEXT NOT NULL,
	first_seen_at TEXT NOT NULL,
	last_activity_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
	id TEXT PRIMARY KEY,
	project_id INTEGER NOT NULL,
	started_at TEXT NOT NULL,
	ended_at TEXT,
	status TEXT NOT NULL DEFAULT 'active',
	FOREIGN KEY (project_id) REFERENCES projects(id)
);

CREATE TABLE IF NOT EXISTS agents (
	id TEXT PRIMARY KEY,
	project_id INTEGER NOT NULL,
	agent_name TEXT NOT NULL,
	task TEXT NOT NULL DEFAULT '',
	mode TEXT NOT NULL,
	status TEXT NOT NULL DEFAULT 'running',
	pid INTEGER,
	log_file TEXT NOT NULL DEFAULT '',
	started_at TEXT NOT NULL,
	completed_at TEXT,
	exit_code INTEGER,
	FOREIGN KEY (project_id) REFERENCES projects(id)
);

CREATE INDEX IF NOT EXISTS idx_agents_project ON agents(project_id);
CREATE INDEX IF NOT EXISTS idx_agents_status ON agents(status);
CREATE INDEX IF NOT EXISTS idx_agents_started ON agents(started_at DESC);
CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_id);
"""


@dataclass(frozen=True)
class Migration:
	"""One additive column migration, identified by its schema version."""

	version: int
	table: str
	column: str
	definition: str


# Append-only. Never edit or reorder an entry once released.
MIGRATIONS: list[Migration] = [
	Migration(1, "agents", "input_tokens", "INTEGER NOT NULL DEFAULT 0"),
	Migration(2, "agents", "output_tokens", "INTEGER NOT NULL DEFAULT 0"),
	Migration(3, "agents", "session_id", "TEXT"),
]

SCHEMA_VERSION = MIGRATIONS[-1].version

_POST_MIGRATION_SQL = """
CREATE INDEX IF NOT EXISTS idx_agents_session ON agents(session_id);
"""

_TASK_SELECT = """
SELECT a.*, p.name AS project_name
FROM agents a LEFT JOIN projects p ON p.id = a.project_id
"""

_SESSION_SELECT = """
SELECT s.*, p.name AS project_name,
	(SELECT COUNT(*) FROM agents a WHERE a.session_id = s.id) AS agent_count,
	(SELECT COUNT(*) FROM agents a WHERE a.session_id = s.id AND a.status = 'running') AS running_count
FROM sessions s LEFT JOIN projects p ON p.id = s.project_id
"""


class Database:
	"""SQLite database for agent-orchestrator state.

	Every supervisor process and the dashboard open their own connection to
	the same file. WAL mode plus a busy timeout lets them write concurrently;
	every mutation is a single statement so no cross-process locking is needed.
	"""

	def __init__(self, path: str | Path = ":memory:", *, check_same_thread: bool = True) -> None:
		db_path = str(path)
		if db_path != ":memory:":
			Path(db_path).parent.mkdir(parents=True, exist_ok=True)
		self.path = db_path
		self.conn = sqlite3.connect(db_path, check_same_thread=check_same_thread)
		self.conn.row_factory = sqlite3.Row
		logger.debug("Opened database connection: %s", db_path)
		if db_path != ":memory:":
			self.conn.execute("PRAGMA journal_mode=WAL")
			self.conn.execute("PRAGMA busy_timeout=5000")
			logger.debug("WAL mode activated for %s", db_path)
		self.conn.execute("PRAGMA foreign_keys=ON")
		self._create_tables()

	@staticmethod
	def _validate_identifier(name: str) -> None:
		"""Validate a SQL identifier to prevent injection in dynamic ALTER TABLE statements."""
		if not name or len(name) > 64 or not re.match(r"^[a-zA-Z_][a-zA-Z0-9_]*$", name):
			raise ValueError(f"Invalid SQL identifier: {name!r}")

	def _create_tables(self) -> None:
		self.conn.executescript(SCHEMA_SQL)
		self._apply_migrations()
		self.conn.executescript(_POST_MIGRATION_SQL)

	def _has_column(self, table: str, column: str) -> bool:
		self._validate_identifier(table)
		rows = self.conn.execute(f"PRAGMA table_info({table})").fetchall()  # noqa: S608
		return any(r["name"] == column for r in rows)

	@property
	def schema_version(self) -> int:
		return int(self.conn.execute("PRAGMA user_version").fetchone()[0])

	def _apply_migrations(self) -> None:
		"""Bring the schema up to SCHEMA_VERSION.

		Runs under an immediate write lock so two processes opening an old
		file at once cannot both add the same column.
		"""
		if self.schema_version >= SCHEMA_VERSION:
			return
		self.conn.execute("BEGIN IMMEDIATE")
		try:
			current = self.schema_version
			for m in MIGRATIONS:
				if m.version <= current:
					continue
				self._validate_identifier(m.table)
				self._validate_identifier(m.column)
				if self._has_column(m.table, m.column):
					logger.debug("Migration %d: %s.%s already present", m.version, m.table, m.column)
				else:
					self.conn.execute(
						f"ALTER TABLE {m.table} ADD COLUMN {m.column} {m.definition}",  # noqa: S608
					)
					logger.debug("Migration %d: added column %s.%s", m.version, m.table, m.column)
				self.conn.execute(f"PRAGMA user_version = {int(m.version)}")
		except sqlite3.Error as exc:
			self.conn.rollback()
			logger.warning("Schema migration failed: %s", exc)
			raise
		else:
			self.conn.commit()

	def close(self) -> None:
		logger.debug("Closing database connection")
		self.conn.close()

	def __enter__(self) -> Database:
		return self

	def __exit__(self, *args: object) -> None:
		self.close()

	@contextmanager
	def transaction(self) -> Generator[sqlite3.Connection, None, None]:
		"""Context manager for explicit transactions.

		Commits on success, rolls back on exception.
		"""
		try:
			yield self.conn
		except Exception:
			self.conn.rollback()
			raise
		else:
			self.conn.commit()

	# -- Projects --

	def upsert_project(self, name: str, path: str) -> Project:
		now = _now_iso()
		self.conn.execute(
			"""INSERT INTO projects (name, path, first_seen_at, last_activity_at)
			VALUES (?, ?, ?, ?)
			ON CONFLICT(name) DO UPDATE SET
				path=excluded.path,
				last_activity_at=excluded.last_activity_at""",
			(name, path, now, now),
		)
		self.conn.commit()
		project = self.get_project_by_name(name)
		assert project is not None
		return project

	def get_project_by_name(self, name: str) -> Project | None:
		row = self.conn.execute("SELECT * FROM projects WHERE name=?", (name,)).fetchone()
		if row is None:
			return None
		return self._row_to_project(row)

	def list_projects(self) -> list[Project]:
		rows = self.conn.execute(
			"""SELECT p.*,
				(SELECT COUNT(*) FROM agents a
				 WHERE a.project_id = p.id AND a.status = 'running') AS active_agents
			FROM projects p
			ORDER BY p.last_activity_at DESC""",
		).fetchall()
		return [self._row_to_project(r) for r in rows]

	@staticmethod
	def _row_to_project(row: sqlite3.Row) -> Project:
		keys = row.keys()
		return Project(
			id=row["id"],
			name=row["name"],
			path=row["path"],
			first_seen_at=row["first_seen_at"],
			last_activity_at=row["last_activity_at"],
			active_agents=row["active_agents"] if "active_agents" in keys else 0,
		)

	# -- Sessions --

	def create_session(self, project_id: int) -> Session:
		session = Session(project_id=project_id)
		self.conn.execute(
			"INSERT INTO sessions (id, project_id, started_at, ended_at, status) VALUES (?, ?, ?, ?, ?)",
			(session.id, session.project_id, session.started_at, session.ended_at, session.status),
		)
		self.conn.commit()
		return session

	def end_session(self, session_id: str, ended_at: str | None = None) -> bool:
		cur = self.conn.execute(
			"UPDATE sessions SET status=?, ended_at=? WHERE id=? AND status=?",
			(SessionStatus.ENDED.value, ended_at or _now_iso(), session_id, SessionStatus.ACTIVE.value),
		)
		self.conn.commit()
		return cur.rowcount > 0

	def get_session(self, session_id: str) -> Session | None:
		row = self.conn.execute(_SESSION_SELECT + " WHERE s.id=?", (session_id,)).fetchone()
		if row is None:
			return None
		return self._row_to_session(row)

	def list_sessions(self, project_id: int | None = None, limit: int = 50) -> list[Session]:
		if project_id is not None:
			rows = self.conn.execute(
				_SESSION_SELECT + " WHERE s.project_id=? ORDER BY s.started_at DESC LIMIT ?",
				(project_id, limit),
			).fetchall()
		else:
			rows = self.conn.execute(
				_SESSION_SELECT + " ORDER BY s.started_at DESC LIMIT ?", (limit,),
			).fetchall()
		return [self._row_to_session(r) for r in rows]

	@staticmethod
	def _row_to_session(row: sqlite3.Row) -> Session:
		keys = row.keys()
		return Session(
			id=row["id"],
			project_id=row["project_id"],
			started_at=row["started_at"],
			ended_at=row["ended_at"],
			status=row["status"],
			agent_count=row["agent_count"] if "agent_count" in keys else 0,
			running_count=row["running_count"] if "running_count" in keys else 0,
			project_name=(row["project_name"] or "") if "project_name" in keys else "",
		)

	# -- Agent tasks --

	def insert_task(self, task: AgentTask) -> None:
		self.conn.execute(
			"""INSERT INTO agents
			(id, project_id, session_id, agent_name, task, mode, status, pid,
			 log_file, started_at, completed_at, exit_code, input_tokens, output_tokens)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
			(
				task.id, task.project_id, task.session_id, task.agent_name,
				task.task, task.mode, task.status, task.pid, task.log_file,
				task.started_at, task.completed_at, task.exit_code,
				task.input_tokens, task.output_tokens,
			),
		)
		self.conn.commit()

	def update_task_status(
		self,
		task_id: str,
		status: str,
		exit_code: int | None,
		completed_at: str | None,
	) -> bool:
		"""Move a running task to a terminal state.

		Status, exit code and completion time land in one statement. A task
		that already left ``running`` is never touched again.
		"""
		cur = self.conn.execute(
			"""UPDATE agents SET status=?, exit_code=?, completed_at=?
			WHERE id=? AND status=?""",
			(status, exit_code, completed_at, task_id, TaskStatus.RUNNING.value),
		)
		self.conn.commit()
		return cur.rowcount > 0

	def update_task_tokens(self, task_id: str, input_tokens: int, output_tokens: int) -> None:
		"""Record token usage. Counters only ever grow."""
		self.conn.execute(
			"""UPDATE agents SET
			input_tokens = MAX(COALESCE(input_tokens, 0), ?),
			output_tokens = MAX(COALESCE(output_tokens, 0), ?)
			WHERE id=?""",
			(max(0, input_tokens), max(0, output_tokens), task_id),
		)
		self.conn.commit()

	def get_task(self, task_id: str) -> AgentTask | None:
		row = self.conn.execute(_TASK_SELECT + " WHERE a.id=?", (task_id,)).fetchone()
		if row is None:
			return None
		return self._row_to_task(row)

	def list_tasks(
		self,
		project_id: int | None = None,
		status: str | None = None,
		session_id: str | None = None,
		limit: int | None = None,
	) -> list[AgentTask]:
		clauses: list[str] = []
		params: list[Any] = []
		if project_id is not None:
			clauses.append("a.project_id=?")
			params.append(project_id)
		if status is not None:
			clauses.append("a.status=?")
			params.append(status)
		if session_id is not None:
			clauses.append("a.session_id=?")
			params.append(session_id)
		sql = _TASK_SELECT
		if clauses:
			sql += " WHERE " + " AND ".join(clauses)
		sql += " ORDER BY a.started_at DESC"
		if limit is not None:
			sql += " LIMIT ?"
			params.append(limit)
		rows = self.conn.execute(sql, params).fetchall()
		return [self._row_to_task(r) for r in rows]

	@staticmethod
	def _row_to_task(row: sqlite3.Row) -> AgentTask:
		keys = row.keys()
		return AgentTask(
			id=row["id"],
			project_id=row["project_id"],
			session_id=row["session_id"],
			agent_name=row["agent_name"],
			task=row["task"],
			mode=row["mode"],
			status=row["status"],
			pid=row["pid"],
			log_file=row["log_file"],
			started_at=row["started_at"],
			completed_at=row["completed_at"],
			exit_code=row["exit_code"],
			input_tokens=row["input_tokens"] or 0,
			output_tokens=row["output_tokens"] or 0,
			project_name=(row["project_name"] or "") if "project_name" in keys else "",
		)

	# -- Aggregates & retention --

	def get_stats(self) -> dict[str, int]:
		row = self.conn.execute(
			"""SELECT
				COALESCE(SUM(CASE WHEN status='running' THEN 1 ELSE 0 END), 0) AS running,
				COALESCE(SUM(CASE WHEN status='completed' THEN 1 ELSE 0 END), 0) AS completed,
				COALESCE(SUM(CASE WHEN status='failed' THEN 1 ELSE 0 END), 0) AS failed,
				COUNT(*) AS total,
				COALESCE(SUM(input_tokens), 0) AS total_input_tokens,
				COALESCE(SUM(output_tokens), 0) AS total_output_tokens
			FROM agents""",
		).fetchone()
		projects = self.conn.execute("SELECT COUNT(*) FROM projects").fetchone()[0]
		stats = {key: int(row[key]) for key in row.keys()}
		stats["projects"] = int(projects)
		return stats

	def cleanup_old_tasks(self, days: int = 7, now: datetime | None = None) -> int:
		"""Delete finished tasks started more than ``days`` ago.

		Running tasks are kept regardless of age. Returns the number deleted.
		"""
		cutoff = ((now or datetime.now(timezone.utc)) - timedelta(days=days)).isoformat()
		with self.transaction() as conn:
			cur = conn.execute(
				"DELETE FROM agents WHERE started_at < ? AND status != ?",
				(cutoff, TaskStatus.RUNNING.value),
			)
		if cur.rowcount:
			logger.info("Retention cleanup removed %d task(s) older than %d days", cur.rowcount, days)
		return cur.rowcount
