"""Server-sent event plumbing: frames, log cursors and file watching."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

from watchfiles import Change, awatch

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ": keepalive\n\n"

SSE_HEADERS = {
	"Cache-Control": "no-cache",
	"Connection": "keep-alive",
	"X-Accel-Buffering": "no",
}

WatchFactory = Callable[[Path, asyncio.Event], AsyncIterator[Any]]


def sse_frame(event: str, data: Any) -> str:
	return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def complete_utf8_prefix(data: bytes) -> bytes:
	"""Drop a trailing, partially written multi-byte UTF-8 sequence."""
	for back in range(1, min(4, len(data)) + 1):
		byte = data[-back]
		if byte & 0xC0 == 0x80:
			continue  # continuation byte, keep looking for the lead
		if byte & 0x80 == 0:
			return data
		if byte >> 5 == 0b110:
			needed = 2
		elif byte >> 4 == 0b1110:
			needed = 3
		elif byte >> 3 == 0b11110:
			needed = 4
		else:
			return data
		return data if back >= needed else data[:-back]
	return data


@dataclass(frozen=True)
class LogDelta:
	"""Bytes of a log beyond ``offset``.

	``size`` is where the next read should start. It equals the file size
	unless the tail ends inside a multi-byte character still being written.
	"""

	content: str
	offset: int
	size: int

	def to_dict(self) -> dict[str, Any]:
		return {"content": self.content, "size": self.size, "offset": self.offset}


def read_log_delta(path: str | Path, offset: int) -> LogDelta:
	"""Read only the part of ``path`` past ``offset``."""
	offset = max(0, offset)
	try:
		f = open(path, "rb")
	except FileNotFoundError:
		return LogDelta(content="", offset=0, size=0)
	with f:
		size = os.fstat(f.fileno()).st_size
		if offset >= size:
			return LogDelta(content="", offset=offset, size=size)
		f.seek(offset)
		data = complete_utf8_prefix(f.read(size - offset))
	return LogDelta(
		content=data.decode("utf-8", errors="replace"),
		offset=offset,
		size=offset + len(data),
	)


class LogCursor:
	"""Per-subscription position in one log file."""

	def __init__(self, path: str | Path) -> None:
		self.path = Path(path)
		self.position = 0

	def snapshot(self) -> dict[str, Any]:
		"""Full content from the start; resets the cursor."""
		delta = read_log_delta(self.path, 0)
		self.position = delta.size
		return {"content": delta.content, "reset": True, "offset": 0, "size": delta.size}

	def advance(self) -> dict[str, Any] | None:
		"""Newly appended content, or None when nothing new was written."""
		try:
			size = self.path.stat().st_size
		except FileNotFoundError:
			size = 0
		if size < self.position:
			# Truncated or replaced underneath us
			return self.snapshot()
		delta = read_log_delta(self.path, self.position)
		if not delta.content:
			return None
		self.position = delta.size
		return {"content": delta.content, "reset": False, "offset": delta.offset, "size": delta.size}


def watch_path(path: Path, stop_event: asyncio.Event) -> AsyncIterator[set[tuple[Change, str]]]:
	"""Watch a directory tree, or a single file via its parent directory.

	The path is resolved first: change notifications carry absolute paths.
	"""
	path = path.resolve()
	if path.is_dir():
		return awatch(path, stop_event=stop_event, recursive=True)
	target = str(path)

	def _only_target(change: Change, changed: str) -> bool:
		return changed == target

	return awatch(path.parent, stop_event=stop_event, watch_filter=_only_target, recursive=False)


async def _pump(
	watch: WatchFactory,
	path: Path,
	stop_event: asyncio.Event,
	queue: asyncio.Queue[None],
) -> None:
	async for _changes in watch(path, stop_event):
		queue.put_nowait(None)


async def stream_frames(
	*,
	watch: WatchFactory,
	watch_target: Path,
	keepalive_seconds: float,
	initial: Callable[[], list[str]],
	on_change: Callable[[], list[str]],
	is_disconnected: Callable[[], Awaitable[bool]],
	active: set[asyncio.Task[None]] | None = None,
) -> AsyncIterator[str]:
	"""Yield SSE frames: the initial ones, then more on every watched change.

	The watcher is stopped and awaited when the consumer goes away, whether
	by disconnect, cancellation or an error while producing frames.
	"""
	queue: asyncio.Queue[None] = asyncio.Queue()
	stop_event = asyncio.Event()
	watcher = asyncio.create_task(_pump(watch, watch_target, stop_event, queue))
	if active is not None:
		active.add(watcher)
	try:
		for frame in initial():
			yield frame
		while True:
			if await is_disconnected():
				break
			try:
				await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
			except asyncio.TimeoutError:
				if watcher.done() and watcher.exception() is not None:
					logger.warning("Watcher for %s failed: %s", watch_target, watcher.exception())
					break
				yield KEEPALIVE_FRAME
				continue
			# Coalesce bursts of changes into one refresh
			while not queue.empty():
				queue.get_nowait()
			for frame in on_change():
				yield frame
	finally:
		stop_event.set()
		watcher.cancel()
		await asyncio.gather(watcher, return_exceptions=True)
		if active is not None:
			active.discard(watcher)
		logger.debug("Closed event stream for %s", watch_target)
