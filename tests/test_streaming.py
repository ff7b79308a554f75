"""Tests for SSE frame helpers and byte-offset log reads."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from agent_orchestrator.dashboard.streaming import (
	LogCursor,
	complete_utf8_prefix,
	read_log_delta,
	sse_frame,
	watch_path,
)


class TestFrames:
	def test_sse_frame(self) -> None:
		frame = sse_frame("agents", [{"id": "a"}])
		assert frame == 'event: agents\ndata: [{"id": "a"}]\n\n'

	def test_multiline_data_stays_on_one_line(self) -> None:
		frame = sse_frame("log", {"content": "a\nb"})
		assert frame.count("\n") == 3
		assert json.loads(frame.split("data: ", 1)[1])["content"] == "a\nb"


class TestUtf8Prefix:
	def test_ascii_untouched(self) -> None:
		assert complete_utf8_prefix(b"hello") == b"hello"

	def test_complete_multibyte_untouched(self) -> None:
		data = "café ✓ \U0001f600".encode()
		assert complete_utf8_prefix(data) == data

	def test_partial_sequences_dropped(self) -> None:
		emoji = "\U0001f600".encode()
		for cut in (1, 2, 3):
			assert complete_utf8_prefix(b"ok" + emoji[:cut]) == b"ok"
		check = "✓".encode()
		assert complete_utf8_prefix(b"x" + check[:2]) == b"x"

	def test_empty(self) -> None:
		assert complete_utf8_prefix(b"") == b""


class TestReadLogDelta:
	def test_split_character_waits_for_rest(self, tmp_path: Path) -> None:
		path = tmp_path / "t.log"
		encoded = "ab✓".encode()
		path.write_bytes(encoded[:-1])

		first = read_log_delta(path, 0)
		assert first.content == "ab"
		assert first.size == 2

		path.write_bytes(encoded)
		second = read_log_delta(path, first.size)
		assert second.content == "✓"
		assert second.size == len(encoded)

	def test_negative_offset_treated_as_zero(self, tmp_path: Path) -> None:
		path = tmp_path / "t.log"
		path.write_text("abc")
		delta = read_log_delta(path, -5)
		assert (delta.content, delta.offset, delta.size) == ("abc", 0, 3)

	def test_missing(self, tmp_path: Path) -> None:
		delta = read_log_delta(tmp_path / "missing.log", 10)
		assert (delta.content, delta.offset, delta.size) == ("", 0, 0)


class TestLogCursor:
	def test_snapshot_advance(self, tmp_path: Path) -> None:
		path = tmp_path / "t.log"
		path.write_text("one\n")
		cursor = LogCursor(path)
		assert cursor.snapshot() == {"content": "one\n", "reset": True, "offset": 0, "size": 4}
		assert cursor.advance() is None

		with open(path, "a") as f:
			f.write("two\n")
		assert cursor.advance() == {"content": "two\n", "reset": False, "offset": 4, "size": 8}

	def test_file_created_later(self, tmp_path: Path) -> None:
		path = tmp_path / "late.log"
		cursor = LogCursor(path)
		assert cursor.snapshot()["content"] == ""
		path.write_text("hi")
		assert cursor.advance() == {"content": "hi", "reset": False, "offset": 0, "size": 2}

	def test_truncation_resets(self, tmp_path: Path) -> None:
		path = tmp_path / "t.log"
		path.write_text("a long first version\n")
		cursor = LogCursor(path)
		cursor.snapshot()
		path.write_text("short\n")
		frame = cursor.advance()
		assert frame is not None
		assert frame["reset"] is True
		assert frame["content"] == "short\n"


async def _first_change(watched: Path, target: Path, *others: Path) -> set[str]:
	"""Append to ``target`` (and ``others``) until the watcher reports something."""
	stop_event = asyncio.Event()

	async def consume() -> set[str]:
		async for changes in watch_path(watched, stop_event):
			return {changed for _change, changed in changes}
		return set()

	consumer = asyncio.create_task(consume())
	try:
		for _ in range(50):
			await asyncio.sleep(0.2)
			if consumer.done():
				break
			for path in (*others, target):
				with open(path, "a") as f:
					f.write("line\n")
		return await asyncio.wait_for(consumer, timeout=5.0)
	finally:
		stop_event.set()
		await asyncio.gather(consumer, return_exceptions=True)


class TestWatchPath:
	@pytest.mark.asyncio
	async def test_single_file_ignores_siblings(self, tmp_path: Path) -> None:
		target = tmp_path / "a.log"
		target.write_text("")
		changed = await _first_change(target, target, tmp_path / "b.log")
		assert changed == {str(target.resolve())}

	@pytest.mark.asyncio
	async def test_directory_is_recursive(self, tmp_path: Path) -> None:
		nested = tmp_path / "logs" / "day1"
		nested.mkdir(parents=True)
		target = nested / "a.log"
		changed = await _first_change(tmp_path / "logs", target)
		assert str(target.resolve()) in changed

	@pytest.mark.asyncio
	async def test_relative_file_path(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
		(tmp_path / "logs").mkdir()
		monkeypatch.chdir(tmp_path)
		relative = Path("logs") / "a.log"
		relative.write_text("")
		changed = await _first_change(relative, tmp_path / "logs" / "a.log")
		assert changed == {str((tmp_path / "logs" / "a.log").resolve())}
