"""Dashboard client -- follow agent lists and task logs from a running dashboard."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Iterable, Iterator

import httpx

from agent_orchestrator.config import OrchestratorConfig
from agent_orchestrator.launcher import discover_dashboard
from agent_orchestrator.transcript import TranscriptEvent, parse_transcript

logger = logging.getLogger(__name__)


@dataclass
class SSEFrame:
	event: str = "message"
	data: str = ""

	def json(self) -> Any:
		return json.loads(self.data)


class SSEParser:
	"""Incremental parser for the text/event-stream format.

	Comment lines (keep-alives) are dropped. A frame is emitted at the blank
	line that terminates it.
	"""

	def __init__(self) -> None:
		self._event = ""
		self._data: list[str] = []

	def feed(self, line: str) -> SSEFrame | None:
		line = line.rstrip("\r\n")
		if not line:
			if not self._data and not self._event:
				return None
			frame = SSEFrame(event=self._event or "message", data="\n".join(self._data))
			self._event = ""
			self._data = []
			return frame
		if line.startswith(":"):
			return None
		name, _, value = line.partition(":")
		if value.startswith(" "):
			value = value[1:]
		if name == "event":
			self._event = value
		elif name == "data":
			self._data.append(value)
		return None


def iter_sse_frames(lines: Iterable[str]) -> Iterator[SSEFrame]:
	parser = SSEParser()
	for line in lines:
		frame = parser.feed(line)
		if frame is not None:
			yield frame


async def aiter_sse_frames(lines: AsyncIterable[str]) -> AsyncIterator[SSEFrame]:
	parser = SSEParser()
	async for line in lines:
		frame = parser.feed(line)
		if frame is not None:
			yield frame


class TranscriptBuffer:
	"""Reassembles a task log from possibly repeated or overlapping deltas.

	``position`` is the byte offset in the log file up to which text is held,
	always as reported by the server. The decoded text is never re-encoded to
	measure it, since undecodable bytes in the file come back as U+FFFD. A
	chunk that ends at or before ``position`` is already held and ignored. One
	that starts anywhere other than ``position`` leaves the buffer untouched
	and sets ``needs_resync``.
	"""

	def __init__(self) -> None:
		self._chunks: list[str] = []
		self.position = 0
		self.needs_resync = False

	@property
	def size(self) -> int:
		return self.position

	@property
	def text(self) -> str:
		return "".join(self._chunks)

	def reset(self, content: str = "", size: int = 0) -> None:
		self._chunks = [content] if content else []
		self.position = size
		self.needs_resync = False

	def _append_at(self, offset: int, end: int, content: str) -> bool:
		if end <= self.position:
			return False
		if offset != self.position:
			self.needs_resync = True
			return False
		self._chunks.append(content)
		self.position = end
		self.needs_resync = False
		return True

	def apply_frame(self, frame: dict[str, Any]) -> bool:
		"""Apply a ``log`` SSE payload. Returns True if the buffer changed."""
		content = str(frame.get("content", ""))
		offset = int(frame.get("offset", 0))
		end = int(frame.get("size", offset))
		if frame.get("reset"):
			changed = content != self.text or end != self.position
			self.reset(content, end)
			return changed
		return self._append_at(offset, end, content)

	def apply_delta(self, delta: dict[str, Any]) -> bool:
		"""Apply a response from the delta log endpoint."""
		content = str(delta.get("content", ""))
		offset = int(delta.get("offset", 0))
		size = int(delta.get("size", offset))
		if size < self.position:
			# The file shrank; start over from the next full read
			self.reset()
			self.needs_resync = True
			return True
		if offset == 0 and self.needs_resync:
			changed = content != self.text
			self.reset(content, size)
			return changed
		return self._append_at(offset, size, content)

	def events(self) -> list[TranscriptEvent]:
		return parse_transcript(self.text)


class DashboardClient:
	"""Async client for the dashboard HTTP API."""

	def __init__(self, base_url: str, client: httpx.AsyncClient | None = None) -> None:
		self.base_url = base_url.rstrip("/")
		self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=10.0)

	@classmethod
	def discover(cls, config: OrchestratorConfig) -> DashboardClient | None:
		info = discover_dashboard(config.paths, config.dashboard.host)
		if info is None:
			return None
		return cls(info.url)

	async def close(self) -> None:
		await self._client.aclose()

	async def __aenter__(self) -> DashboardClient:
		return self

	async def __aexit__(self, *args: object) -> None:
		await self.close()

	async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
		resp = await self._client.get(path, params={k: v for k, v in (params or {}).items() if v is not None})
		resp.raise_for_status()
		return resp.json()

	async def health(self) -> dict[str, Any]:
		return await self._get_json("/api/health")

	async def get_agents(self, project_id: int | None = None, status: str | None = None) -> list[dict[str, Any]]:
		return await self._get_json("/api/agents", {"project_id": project_id, "status": status})

	async def get_agent(self, task_id: str) -> dict[str, Any]:
		return await self._get_json(f"/api/agents/{task_id}")

	async def get_stats(self) -> dict[str, int]:
		return await self._get_json("/api/stats")

	async def get_log_delta(self, task_id: str, offset: int = 0) -> dict[str, Any]:
		return await self._get_json(f"/api/agents/{task_id}/log", {"offset": offset})

	async def poll_log(self, task_id: str, buffer: TranscriptBuffer) -> bool:
		"""Fetch whatever the buffer is missing through the delta endpoint."""
		delta = await self.get_log_delta(task_id, buffer.size)
		changed = buffer.apply_delta(delta)
		if buffer.needs_resync:
			changed = buffer.apply_delta(await self.get_log_delta(task_id, 0)) or changed
		return changed

	async def stream_events(self, params: dict[str, Any]) -> AsyncIterator[SSEFrame]:
		query = {k: v for k, v in params.items() if v is not None}
		async with self._client.stream("GET", "/api/events", params=query, timeout=None) as resp:
			resp.raise_for_status()
			async for frame in aiter_sse_frames(resp.aiter_lines()):
				yield frame

	async def stream_agents(self, project_id: int | None = None) -> AsyncIterator[list[dict[str, Any]]]:
		async for frame in self.stream_events({"project_id": project_id}):
			if frame.event == "agents":
				yield frame.json()

	async def stream_log(self, task_id: str, buffer: TranscriptBuffer) -> AsyncIterator[TranscriptBuffer]:
		"""Keep ``buffer`` in sync with a task log, yielding it after each change."""
		async for frame in self.stream_events({"agent_id": task_id}):
			if frame.event != "log":
				continue
			changed = buffer.apply_frame(frame.json())
			if buffer.needs_resync:
				logger.debug("Gap in log stream for %s, resynchronising", task_id)
				changed = await self.poll_log(task_id, buffer) or changed
			if changed:
				yield buffer

	async def follow_log(
		self,
		task_id: str,
		buffer: TranscriptBuffer,
		interval: float = 1.0,
	) -> AsyncIterator[TranscriptBuffer]:
		"""Polling fallback for when streaming is unavailable.

		Stops once the task has finished and the log has been read to the end.
		"""
		while True:
			if await self.poll_log(task_id, buffer):
				yield buffer
			agent = await self.get_agent(task_id)
			if agent.get("status") != "running":
				if await self.poll_log(task_id, buffer):
					yield buffer
				return
			await asyncio.sleep(interval)
