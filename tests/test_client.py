"""Tests for the dashboard client: SSE parsing, log reassembly, HTTP calls."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from agent_orchestrator.config import OrchestratorConfig
from agent_orchestrator.dashboard.client import (
	DashboardClient,
	SSEParser,
	TranscriptBuffer,
	iter_sse_frames,
)
from agent_orchestrator.dashboard.streaming import LogCursor, read_log_delta
from agent_orchestrator.launcher import write_markers

LOG = (
	"---\nAgent: database\n---\n\n"
	+ json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "Looking"}]}}) + "\n"
	+ json.dumps({"type": "result", "result": "Found 3 tables"}) + "\n"
)


def _sse(*frames: tuple[str, Any]) -> str:
	return "".join(f"event: {event}\ndata: {json.dumps(data)}\n\n" for event, data in frames)


def _delta(content: str, offset: int) -> dict[str, Any]:
	return {"content": content, "offset": offset, "size": offset + len(content.encode())}


def _client(handler: Any) -> DashboardClient:
	transport = httpx.MockTransport(handler)
	http = httpx.AsyncClient(transport=transport, base_url="http://dash")
	return DashboardClient("http://dash", client=http)


class TestSSEParser:
	def test_frames_and_comments(self) -> None:
		lines = [
			": keepalive",
			"",
			"event: agents",
			"data: [1, 2]",
			"",
			"data: first",
			"data: second",
			"",
		]
		frames = list(iter_sse_frames(lines))
		assert [(f.event, f.data) for f in frames] == [("agents", "[1, 2]"), ("message", "first\nsecond")]
		assert frames[0].json() == [1, 2]

	def test_crlf_and_no_space(self) -> None:
		parser = SSEParser()
		assert parser.feed("event:log\r\n") is None
		assert parser.feed('data:{"a":1}\r\n') is None
		frame = parser.feed("\r\n")
		assert frame is not None
		assert (frame.event, frame.json()) == ("log", {"a": 1})

	def test_unknown_fields_ignored(self) -> None:
		frames = list(iter_sse_frames(["id: 7", "retry: 1000", "data: x", ""]))
		assert [f.data for f in frames] == ["x"]


class TestTranscriptBuffer:
	def test_reset_then_append(self) -> None:
		buf = TranscriptBuffer()
		assert buf.apply_frame({"content": "abc", "reset": True, "offset": 0, "size": 3}) is True
		assert buf.apply_frame({"content": "def", "reset": False, "offset": 3, "size": 6}) is True
		assert buf.text == "abcdef"
		assert buf.size == 6

	def test_replayed_frame_is_idempotent(self) -> None:
		buf = TranscriptBuffer()
		buf.apply_frame({"content": "abc", "reset": True, "offset": 0, "size": 3})
		frame = {"content": "def", "reset": False, "offset": 3, "size": 6}
		buf.apply_frame(frame)
		assert buf.apply_frame(frame) is False
		assert buf.apply_frame({"content": "abc", "reset": True, "offset": 0, "size": 3}) is True
		assert buf.text == "abc"

	def test_partial_overlap_requests_resync(self) -> None:
		buf = TranscriptBuffer()
		buf.reset("abcd", 4)
		assert buf.apply_delta(_delta("cdef", 2)) is False
		assert buf.needs_resync is True
		assert buf.text == "abcd"
		assert buf.apply_delta(_delta("ef", 4)) is True
		assert buf.text == "abcdef"
		assert buf.needs_resync is False

	def test_gap_requests_resync(self) -> None:
		buf = TranscriptBuffer()
		buf.reset("abc", 3)
		assert buf.apply_frame({"content": "xyz", "reset": False, "offset": 10, "size": 13}) is False
		assert buf.needs_resync is True
		assert buf.text == "abc"

	def test_position_comes_from_server(self) -> None:
		buf = TranscriptBuffer()
		buf.apply_delta(_delta("✓", 0))
		assert buf.size == 3
		buf.apply_delta(_delta("ok", 3))
		assert buf.text == "✓ok"
		assert buf.size == 5

	def test_undecodable_bytes_keep_offsets_aligned(self, tmp_path: Path) -> None:
		log = tmp_path / "agent.log"
		log.write_bytes(b"---\nAgent: x\n---\n\xffstderr junk\n")
		cursor = LogCursor(log)
		buf = TranscriptBuffer()
		buf.apply_frame(cursor.snapshot())
		assert buf.size == log.stat().st_size

		result = json.dumps({"type": "result", "result": "Found 3 tables"}) + "\n"
		with open(log, "ab") as f:
			f.write(result.encode())
		frame = cursor.advance()
		assert frame is not None
		assert buf.apply_frame(frame) is True
		assert buf.text == log.read_bytes().decode("utf-8", errors="replace")
		assert buf.text.endswith(result)
		assert [e.content for e in buf.events() if e.kind == "result"] == ["Found 3 tables"]

	def test_polling_undecodable_log_is_stable(self, tmp_path: Path) -> None:
		log = tmp_path / "agent.log"
		log.write_bytes(b"head\n\xff\xfe tail\n")
		buf = TranscriptBuffer()
		assert buf.apply_delta(read_log_delta(log, buf.size).to_dict()) is True
		assert buf.apply_delta(read_log_delta(log, buf.size).to_dict()) is False
		assert buf.needs_resync is False
		assert buf.size == log.stat().st_size

	def test_shrunk_file_resets(self) -> None:
		buf = TranscriptBuffer()
		buf.reset("a long log", 10)
		assert buf.apply_delta({"content": "", "offset": 10, "size": 3}) is True
		assert buf.size == 0
		assert buf.needs_resync is True
		assert buf.apply_delta({"content": "a l", "offset": 0, "size": 3}) is True
		assert (buf.text, buf.needs_resync) == ("a l", False)

	def test_events(self) -> None:
		buf = TranscriptBuffer()
		buf.reset(LOG, len(LOG.encode()))
		assert [e.kind for e in buf.events()] == ["text", "result"]


class TestDashboardClient:
	@pytest.mark.asyncio
	async def test_queries(self) -> None:
		seen: list[httpx.URL] = []

		def handler(request: httpx.Request) -> httpx.Response:
			seen.append(request.url)
			if request.url.path == "/api/health":
				return httpx.Response(200, json={"status": "ok", "pid": 1})
			if request.url.path == "/api/agents":
				return httpx.Response(200, json=[{"id": "a"}])
			if request.url.path == "/api/stats":
				return httpx.Response(200, json={"running": 0})
			return httpx.Response(404, json={"detail": "Agent not found"})

		async with _client(handler) as client:
			assert (await client.health())["status"] == "ok"
			assert await client.get_agents(project_id=2) == [{"id": "a"}]
			assert await client.get_stats() == {"running": 0}
			with pytest.raises(httpx.HTTPStatusError):
				await client.get_agent("missing")
		assert seen[1].params.get("project_id") == "2"
		assert "status" not in seen[1].params

	@pytest.mark.asyncio
	async def test_poll_log_fetches_only_missing_bytes(self) -> None:
		offsets: list[int] = []

		def handler(request: httpx.Request) -> httpx.Response:
			offset = int(request.url.params["offset"])
			offsets.append(offset)
			return httpx.Response(200, json=_delta(LOG[offset:], offset))

		buf = TranscriptBuffer()
		buf.reset(LOG[:10], 10)
		async with _client(handler) as client:
			assert await client.poll_log("t1", buf) is True
			assert await client.poll_log("t1", buf) is False
		assert offsets == [10, len(LOG)]
		assert buf.text == LOG

	@pytest.mark.asyncio
	async def test_stream_agents(self) -> None:
		body = ": keepalive\n\n" + _sse(("agents", [{"id": "a"}]), ("agents", [{"id": "a"}, {"id": "b"}]))

		def handler(request: httpx.Request) -> httpx.Response:
			assert request.url.path == "/api/events"
			return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

		async with _client(handler) as client:
			lists = [agents async for agents in client.stream_agents()]
		assert [[a["id"] for a in agents] for agents in lists] == [["a"], ["a", "b"]]

	@pytest.mark.asyncio
	async def test_stream_log_resyncs_after_gap(self) -> None:
		head = LOG[:20]
		body = _sse(
			("log", {"content": head, "reset": True, "offset": 0, "size": 20}),
			("log", {"content": LOG[40:], "reset": False, "offset": 40, "size": len(LOG)}),
			("log", {"content": LOG[40:], "reset": False, "offset": 40, "size": len(LOG)}),
		)

		def handler(request: httpx.Request) -> httpx.Response:
			if request.url.path == "/api/events":
				assert request.url.params["agent_id"] == "t1"
				return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})
			offset = int(request.url.params["offset"])
			return httpx.Response(200, json=_delta(LOG[offset:], offset))

		buf = TranscriptBuffer()
		async with _client(handler) as client:
			snapshots = [b.text async for b in client.stream_log("t1", buf)]
		assert snapshots == [head, LOG]
		assert buf.needs_resync is False
		assert [e.content for e in buf.events()] == ["Looking", "Found 3 tables"]

	@pytest.mark.asyncio
	async def test_follow_log_stops_when_finished(self) -> None:
		polls = 0

		def handler(request: httpx.Request) -> httpx.Response:
			nonlocal polls
			if request.url.path == "/api/agents/t1":
				return httpx.Response(200, json={"id": "t1", "status": "completed"})
			polls += 1
			offset = int(request.url.params["offset"])
			return httpx.Response(200, json=_delta(LOG[offset:], offset))

		buf = TranscriptBuffer()
		async with _client(handler) as client:
			updates = [b.size async for b in client.follow_log("t1", buf, interval=0)]
		assert updates == [len(LOG.encode())]
		assert polls == 2


class TestDiscover:
	def test_none_without_markers(self, config: OrchestratorConfig) -> None:
		assert DashboardClient.discover(config) is None

	@pytest.mark.asyncio
	async def test_uses_recorded_port(self, config: OrchestratorConfig) -> None:
		write_markers(config.paths, 4123)
		client = DashboardClient.discover(config)
		assert client is not None
		assert client.base_url == "http://127.0.0.1:4123"
		await client.close()

	def test_stale_pid_ignored(self, config: OrchestratorConfig) -> None:
		write_markers(config.paths, 4123, pid=2**22 + 12345)
		assert DashboardClient.discover(config) is None
