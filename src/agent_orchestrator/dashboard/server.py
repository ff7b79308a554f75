"""Dashboard server -- REST queries over the shared store plus live SSE streams."""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse

from agent_orchestrator.config import OrchestratorConfig
from agent_orchestrator.dashboard.streaming import (
	SSE_HEADERS,
	LogCursor,
	WatchFactory,
	read_log_delta,
	sse_frame,
	stream_frames,
	watch_path,
)
from agent_orchestrator.db import Database
from agent_orchestrator.launcher import discover_dashboard, find_free_port, remove_markers, write_markers
from agent_orchestrator.models import AgentTask, Project, Session
from agent_orchestrator.transcript import filter_events, paginate, parse_transcript

logger = logging.getLogger(__name__)

_INDEX_HTML = """<!doctype html>
<html>
<head><meta charset="utf-8"><title>Agent Orchestrator</title></head>
<body>
<h1>Agent Orchestrator</h1>
<ul id="agents"></ul>
<script>
const list = document.getElementById("agents");
const source = new EventSource("/api/events");
source.addEventListener("agents", (e) => {
	list.innerHTML = "";
	for (const a of JSON.parse(e.data)) {
		const li = document.createElement("li");
		li.textContent = `${a.agent_name} [${a.status}] ${a.task}`;
		list.appendChild(li);
	}
});
</script>
</body>
</html>
"""


class DashboardServer:
	"""Read-only dashboard over the shared store.

	The store is the only source of truth here. Log changes on disk are the
	invalidation signal for pushed updates.
	"""

	def __init__(
		self,
		config: OrchestratorConfig,
		db: Database | None = None,
		watch: WatchFactory = watch_path,
	) -> None:
		self.config = config
		self._owns_db = db is None
		self.db = db if db is not None else Database(config.paths.resolved_db_path, check_same_thread=False)
		self.logs_dir = config.paths.resolved_logs_dir
		self.watch = watch
		self.active_streams: set[asyncio.Task[None]] = set()

		@asynccontextmanager
		async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
			self.logs_dir.mkdir(parents=True, exist_ok=True)
			self.db.cleanup_old_tasks(self.config.dashboard.retention_days)
			yield
			if self._owns_db:
				self.db.close()

		self.app = FastAPI(title="Agent Orchestrator", lifespan=_lifespan)
		self.app.add_middleware(
			CORSMiddleware,
			allow_origins=["http://127.0.0.1", "http://localhost"],
			allow_methods=["GET"],
			allow_headers=["Content-Type"],
		)

		@self.app.exception_handler(sqlite3.Error)
		async def _store_unavailable(request: Request, exc: sqlite3.Error) -> JSONResponse:
			logger.error("Store unavailable while serving %s: %s", request.url.path, exc)
			return JSONResponse(status_code=503, content={"error": f"Store unavailable: {exc}"})

		self._setup_routes()

	def _get_task_or_404(self, task_id: str) -> AgentTask:
		task = self.db.get_task(task_id)
		if task is None:
			raise HTTPException(status_code=404, detail="Agent not found")
		return task

	def _agents_payload(self, project_id: int | None, status: str | None = None) -> list[dict[str, Any]]:
		now = datetime.now(timezone.utc)
		return [_serialize_task(t, now) for t in self.db.list_tasks(project_id=project_id, status=status)]

	def _setup_routes(self) -> None:
		@self.app.get("/", response_class=HTMLResponse)
		async def index() -> HTMLResponse:
			return HTMLResponse(_INDEX_HTML)

		@self.app.get("/api/health")
		async def health() -> dict[str, Any]:
			return {"status": "ok", "pid": os.getpid()}

		@self.app.get("/api/projects")
		async def get_projects() -> list[dict[str, Any]]:
			return [_serialize_project(p) for p in self.db.list_projects()]

		@self.app.get("/api/agents")
		async def get_agents(
			project_id: int | None = None,
			status: str | None = None,
			session_id: str | None = None,
		) -> list[dict[str, Any]]:
			now = datetime.now(timezone.utc)
			tasks = self.db.list_tasks(project_id=project_id, status=status, session_id=session_id)
			return [_serialize_task(t, now) for t in tasks]

		@self.app.get("/api/agents/{task_id}")
		async def get_agent(task_id: str) -> dict[str, Any]:
			return _serialize_task(self._get_task_or_404(task_id))

		@self.app.get("/api/agents/{task_id}/log")
		async def get_agent_log(task_id: str, offset: int = Query(default=0, ge=0)) -> dict[str, Any]:
			task = self._get_task_or_404(task_id)
			return read_log_delta(task.log_file, offset).to_dict()

		@self.app.get("/api/agents/{task_id}/activity")
		async def get_agent_activity(
			task_id: str,
			kind: str | None = None,
			offset: int = Query(default=0, ge=0),
			limit: int = Query(default=50, ge=1, le=500),
		) -> dict[str, Any]:
			task = self._get_task_or_404(task_id)
			try:
				raw = Path(task.log_file).read_text(encoding="utf-8", errors="replace")
			except FileNotFoundError:
				raw = ""
			try:
				events = filter_events(parse_transcript(raw), kind)
			except ValueError as exc:
				raise HTTPException(status_code=422, detail=str(exc)) from exc
			return paginate(events, offset, limit).to_dict()

		@self.app.get("/api/stats")
		async def get_stats() -> dict[str, int]:
			return self.db.get_stats()

		@self.app.get("/api/sessions")
		async def get_sessions(project_id: int | None = None) -> list[dict[str, Any]]:
			now = datetime.now(timezone.utc)
			return [_serialize_session(s, now) for s in self.db.list_sessions(project_id=project_id)]

		@self.app.get("/api/sessions/{session_id}/agents")
		async def get_session_agents(session_id: str) -> list[dict[str, Any]]:
			if self.db.get_session(session_id) is None:
				raise HTTPException(status_code=404, detail="Session not found")
			now = datetime.now(timezone.utc)
			return [_serialize_task(t, now) for t in self.db.list_tasks(session_id=session_id)]

		@self.app.get("/api/events")
		async def events(
			request: Request,
			project_id: int | None = None,
			agent_id: str | None = None,
		) -> StreamingResponse:
			if agent_id is not None:
				stream = self.log_stream(self._get_task_or_404(agent_id), request.is_disconnected)
			else:
				stream = self.agents_stream(project_id, request.is_disconnected)
			return StreamingResponse(stream, media_type="text/event-stream", headers=SSE_HEADERS)

	def agents_stream(
		self,
		project_id: int | None,
		is_disconnected: Callable[[], Awaitable[bool]],
	) -> AsyncIterator[str]:
		"""Full agent list now and after every change under the logs directory."""
		self.logs_dir.mkdir(parents=True, exist_ok=True)

		def frames() -> list[str]:
			return [sse_frame("agents", self._agents_payload(project_id))]

		return stream_frames(
			watch=self.watch,
			watch_target=self.logs_dir,
			keepalive_seconds=self.config.dashboard.keepalive_seconds,
			initial=frames,
			on_change=frames,
			is_disconnected=is_disconnected,
			active=self.active_streams,
		)

	def log_stream(
		self,
		task: AgentTask,
		is_disconnected: Callable[[], Awaitable[bool]],
	) -> AsyncIterator[str]:
		"""Snapshot of one task log, then only the bytes appended since."""
		log_path = Path(task.log_file)
		log_path.parent.mkdir(parents=True, exist_ok=True)
		cursor = LogCursor(log_path)

		def initial() -> list[str]:
			return [sse_frame("log", cursor.snapshot())]

		def on_change() -> list[str]:
			frame = cursor.advance()
			return [sse_frame("log", frame)] if frame is not None else []

		return stream_frames(
			watch=self.watch,
			watch_target=log_path,
			keepalive_seconds=self.config.dashboard.keepalive_seconds,
			initial=initial,
			on_change=on_change,
			is_disconnected=is_disconnected,
			active=self.active_streams,
		)


def _duration_ms(started_at: str, ended_at: str | None, now: datetime) -> int:
	try:
		start = datetime.fromisoformat(started_at)
		end = datetime.fromisoformat(ended_at) if ended_at else now
	except ValueError:
		return 0
	return max(0, int((end - start).total_seconds() * 1000))


def _serialize_task(t: AgentTask, now: datetime | None = None) -> dict[str, Any]:
	data = asdict(t)
	data["duration"] = t.duration_ms(now)
	return data


def _serialize_project(p: Project) -> dict[str, Any]:
	return asdict(p)


def _serialize_session(s: Session, now: datetime | None = None) -> dict[str, Any]:
	data = asdict(s)
	data["duration"] = _duration_ms(s.started_at, s.ended_at, now or datetime.now(timezone.utc))
	return data


def run_dashboard(
	config: OrchestratorConfig,
	host: str | None = None,
	base_port: int | None = None,
	max_port: int | None = None,
) -> int:
	"""Serve the dashboard on the first free port and record it for discovery."""
	paths = config.paths
	host = host or config.dashboard.host
	existing = discover_dashboard(paths, host)
	if existing is not None and existing.pid != os.getpid():
		logger.info("Dashboard already running at %s (PID %d)", existing.url, existing.pid)
		return 0

	port = find_free_port(
		host,
		base_port if base_port is not None else config.dashboard.base_port,
		max_port if max_port is not None else config.dashboard.max_port,
	)
	server = DashboardServer(config)
	write_markers(paths, port)
	logger.info("Dashboard listening on http://%s:%d", host, port)
	try:
		uvicorn.run(server.app, host=host, port=port, log_level="warning")
	finally:
		remove_markers(paths)
	return 0
