"""Parse raw agent transcripts into typed events.

A transcript is the full text of a task log: a ``---`` delimited header
written by the supervisor, the agent CLI's stream-json output, and a
footer appended on exit. Parsing is pure and always starts from scratch,
so any consumer (supervisor, dashboard, client) can re-derive the same
event sequence from the same bytes.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable

from agent_orchestrator.records import (
	AssistantRecord,
	ContentBlock,
	ContentBlockStartRecord,
	ErrorRecord,
	Record,
	ResultRecord,
	SystemRecord,
	UserRecord,
	parse_line,
)

HEADER_DELIMITER = "---"
MAX_TOOL_INPUT_CHARS = 100
DEFAULT_RESULT_TEXT = "Task completed"

EVENT_KINDS = ("text", "tool_call", "tool_result", "result", "error")

# Tool name -> input key that best summarises a call
_TOOL_INPUT_KEYS = {
	"Bash": "command",
	"Read": "file_path",
	"Edit": "file_path",
	"Write": "file_path",
	"Glob": "pattern",
	"Grep": "pattern",
	"WebFetch": "url",
	"WebSearch": "query",
}


@dataclass(frozen=True)
class ResultStats:
	duration_ms: float = 0
	total_cost_usd: float = 0.0
	input_tokens: int = 0
	output_tokens: int = 0
	cache_read_tokens: int = 0
	cache_creation_tokens: int = 0
	num_turns: int = 0


@dataclass(frozen=True)
class TranscriptEvent:
	kind: str  # text/tool_call/tool_result/result/error
	content: str
	tool_name: str | None = None
	tool_input: str | None = None
	is_error: bool = False
	stats: ResultStats | None = None

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)


@dataclass
class TokenUsage:
	"""Cumulative token usage reported in a transcript.

	``reported`` is False when the transcript carried no usage at all, which
	is distinct from a run that reported zero tokens.
	"""

	input_tokens: int = 0
	output_tokens: int = 0
	cache_read_tokens: int = 0
	cache_creation_tokens: int = 0
	reported: bool = False


@dataclass
class ActivityPage:
	events: list[TranscriptEvent] = field(default_factory=list)
	total: int = 0
	offset: int = 0
	limit: int = 50

	@property
	def has_more(self) -> bool:
		return self.offset + len(self.events) < self.total

	def to_dict(self) -> dict[str, Any]:
		return {
			"events": [e.to_dict() for e in self.events],
			"total": self.total,
			"offset": self.offset,
			"limit": self.limit,
			"has_more": self.has_more,
		}


def format_tool_input(tool_name: str, tool_input: dict[str, Any]) -> str:
	"""Render a tool call's input as a short one-line summary."""
	value: str = ""
	key = _TOOL_INPUT_KEYS.get(tool_name)
	if key and tool_input.get(key):
		value = str(tool_input[key])
	else:
		for candidate in tool_input.values():
			if isinstance(candidate, str) and candidate:
				value = candidate
				break
	if len(value) > MAX_TOOL_INPUT_CHARS:
		return value[:MAX_TOOL_INPUT_CHARS] + "..."
	return value


def _tool_call(block: ContentBlock) -> TranscriptEvent:
	name = block.name or ""
	return TranscriptEvent(
		kind="tool_call",
		content=name,
		tool_name=name,
		tool_input=format_tool_input(name, block.input) if block.input else None,
	)


def _find_final_result_text(lines: list[str]) -> str | None:
	final: str | None = None
	for line in lines:
		stripped = line.strip()
		if not stripped or stripped == HEADER_DELIMITER:
			continue
		record = parse_line(stripped)
		if isinstance(record, ResultRecord) and record.result:
			final = record.result
	return final


def _record_to_event(record: Record, final_text: str | None) -> TranscriptEvent | None:
	if isinstance(record, SystemRecord):
		return None

	if isinstance(record, ContentBlockStartRecord):
		block = record.content_block
		if block is not None and block.type == "tool_use" and block.name:
			return _tool_call(block)
		return None

	if isinstance(record, AssistantRecord):
		if record.message is None:
			return None
		for block in record.message.content:
			if block.type == "text" and block.text:
				if final_text is not None and block.text == final_text:
					return None
				return TranscriptEvent(kind="text", content=block.text)
			if block.type == "tool_use" and block.name:
				return _tool_call(block)
		return None

	if isinstance(record, UserRecord):
		if record.message is None:
			return None
		for block in record.message.content:
			if block.type == "tool_result" and block.content is not None:
				return TranscriptEvent(
					kind="tool_result",
					content=block.result_text(),
					is_error=block.is_error,
				)
		return None

	if isinstance(record, ResultRecord):
		usage = record.usage
		stats = ResultStats(
			duration_ms=record.duration_ms or 0,
			total_cost_usd=record.total_cost_usd or 0.0,
			input_tokens=usage.input_tokens if usage else 0,
			output_tokens=usage.output_tokens if usage else 0,
			cache_read_tokens=usage.cache_read_input_tokens if usage else 0,
			cache_creation_tokens=usage.cache_creation_input_tokens if usage else 0,
			num_turns=record.num_turns or 0,
		)
		return TranscriptEvent(
			kind="result",
			content=record.result or DEFAULT_RESULT_TEXT,
			is_error=bool(record.is_error),
			stats=stats,
		)

	if isinstance(record, ErrorRecord):
		return TranscriptEvent(kind="error", content=record.error_text(), is_error=True)

	return None


def parse_transcript(raw: str) -> list[TranscriptEvent]:
	"""Turn the full text of a task log into an ordered list of events.

	Lines that are not JSON, blank lines, header blocks and record kinds
	with no display meaning are dropped. An assistant text block that is
	identical to the final result text is dropped in favour of the result.
	"""
	lines = raw.split("\n")
	final_text = _find_final_result_text(lines)

	events: list[TranscriptEvent] = []
	in_header = False
	for line in lines:
		stripped = line.strip()
		if stripped == HEADER_DELIMITER:
			in_header = not in_header
			continue
		if in_header or not stripped:
			continue
		record = parse_line(stripped)
		if record is None:
			continue
		event = _record_to_event(record, final_text)
		if event is not None:
			events.append(event)
	return events


def parse_token_usage(raw: str) -> TokenUsage:
	"""Extract cumulative token usage from a transcript.

	The last ``result`` record with usage wins since its counts cover the
	whole run. Without one, per-message assistant usage is summed, counting
	each message id once. Malformed lines are skipped.
	"""
	result_usage = None
	by_message: dict[str, Any] = {}
	anonymous: list[Any] = []

	for line in raw.split("\n"):
		record = parse_line(line)
		if isinstance(record, ResultRecord) and record.usage is not None:
			result_usage = record.usage
		elif isinstance(record, AssistantRecord) and record.message and record.message.usage:
			if record.message.id:
				by_message[record.message.id] = record.message.usage
			else:
				anonymous.append(record.message.usage)

	if result_usage is not None:
		return TokenUsage(
			input_tokens=result_usage.input_tokens,
			output_tokens=result_usage.output_tokens,
			cache_read_tokens=result_usage.cache_read_input_tokens,
			cache_creation_tokens=result_usage.cache_creation_input_tokens,
			reported=True,
		)

	usages = list(by_message.values()) + anonymous
	if not usages:
		return TokenUsage()
	return TokenUsage(
		input_tokens=sum(u.input_tokens for u in usages),
		output_tokens=sum(u.output_tokens for u in usages),
		cache_read_tokens=sum(u.cache_read_input_tokens for u in usages),
		cache_creation_tokens=sum(u.cache_creation_input_tokens for u in usages),
		reported=True,
	)


# -- Activity views --

def _check_kind(kind: str | None) -> None:
	if kind is not None and kind not in EVENT_KINDS:
		raise ValueError(f"Invalid event kind '{kind}'. Valid kinds: {', '.join(EVENT_KINDS)}")


def filter_events(events: Iterable[TranscriptEvent], kind: str | None = None) -> list[TranscriptEvent]:
	_check_kind(kind)
	if kind is None:
		return list(events)
	return [e for e in events if e.kind == kind]


def paginate(events: list[TranscriptEvent], offset: int = 0, limit: int = 50) -> ActivityPage:
	offset = max(0, offset)
	limit = max(0, limit)
	return ActivityPage(
		events=events[offset:offset + limit],
		total=len(events),
		offset=offset,
		limit=limit,
	)


def compile_pattern(pattern: str) -> re.Pattern[str]:
	"""Compile a case-insensitive search pattern. Raises re.error on bad input."""
	return re.compile(pattern, re.IGNORECASE)


def search_events(
	events: Iterable[TranscriptEvent],
	regex: re.Pattern[str],
	kind: str | None = None,
	limit: int = 50,
) -> list[TranscriptEvent]:
	"""Events whose content, tool name or tool input match ``regex``."""
	matches: list[TranscriptEvent] = []
	for event in filter_events(events, kind):
		haystacks = (event.content, event.tool_name or "", event.tool_input or "")
		if any(regex.search(h) for h in haystacks):
			matches.append(event)
			if len(matches) >= limit:
				break
	return matches


# -- Display formatting --

def format_duration(ms: float) -> str:
	if ms < 1000:
		return f"{int(ms)}ms"
	if ms < 60000:
		return f"{ms / 1000:.1f}s"
	mins = int(ms // 60000)
	secs = int((ms % 60000) // 1000)
	return f"{mins}m {secs}s"


def format_cost(usd: float) -> str:
	if usd < 0.01:
		return f"${usd:.4f}"
	return f"${usd:.2f}"


def format_tokens(stats: ResultStats) -> str:
	total_input = stats.input_tokens + stats.cache_read_tokens + stats.cache_creation_tokens
	if stats.cache_read_tokens > 0 or stats.cache_creation_tokens > 0:
		parts: list[str] = []
		if stats.input_tokens > 0:
			parts.append(f"{stats.input_tokens:,} new")
		if stats.cache_read_tokens > 0:
			parts.append(f"{stats.cache_read_tokens:,} cached")
		return f"{total_input:,} in ({', '.join(parts)}) / {stats.output_tokens:,} out"
	return f"{total_input:,} in / {stats.output_tokens:,} out"
