"""Typed records of the agent CLI's stream-json transcript format.

Each line the agent writes is a JSON object with a ``type`` discriminator.
Known kinds validate into their own model; anything else (new kinds, or a
known kind whose payload does not validate) becomes an ``UnknownRecord`` so
that consumers can ignore it without special-casing.
"""

from __future__ import annotations

import json
from typing import Any, Literal, Union

from pydantic import BaseModel, ValidationError, field_validator


class Usage(BaseModel, extra="ignore"):
	input_tokens: int = 0
	output_tokens: int = 0
	cache_read_input_tokens: int = 0
	cache_creation_input_tokens: int = 0

	@field_validator("*", mode="before")
	@classmethod
	def _none_to_zero(cls, value: Any) -> Any:
		return 0 if value is None else value


class TextPart(BaseModel, extra="ignore"):
	type: str = ""
	text: str | None = None


class ContentBlock(BaseModel, extra="ignore"):
	"""One entry of a message's content array."""

	type: str = ""
	text: str | None = None
	name: str | None = None
	input: dict[str, Any] | None = None
	tool_use_id: str | None = None
	content: str | list[TextPart] | None = None
	is_error: bool = False

	@field_validator("is_error", mode="before")
	@classmethod
	def _none_to_false(cls, value: Any) -> Any:
		return False if value is None else value

	def result_text(self) -> str:
		"""Text of a tool_result block, joining the textual parts of a list payload."""
		if isinstance(self.content, str):
			return self.content
		if isinstance(self.content, list):
			return "\n".join(p.text for p in self.content if p.type == "text" and p.text)
		return ""


class Message(BaseModel, extra="ignore"):
	id: str | None = None
	content: list[ContentBlock] = []
	usage: Usage | None = None

	@field_validator("content", mode="before")
	@classmethod
	def _wrap_plain_text(cls, value: Any) -> Any:
		if value is None:
			return []
		if isinstance(value, str):
			return [{"type": "text", "text": value}]
		return value


class SystemRecord(BaseModel, extra="ignore"):
	type: Literal["system"]
	subtype: str | None = None


class AssistantRecord(BaseModel, extra="ignore"):
	type: Literal["assistant"]
	message: Message | None = None


class UserRecord(BaseModel, extra="ignore"):
	type: Literal["user"]
	message: Message | None = None


class ResultRecord(BaseModel, extra="ignore"):
	type: Literal["result"]
	subtype: str | None = None
	result: str | None = None
	is_error: bool | None = None
	duration_ms: float | None = None
	total_cost_usd: float | None = None
	num_turns: int | None = None
	usage: Usage | None = None


class ContentBlockStartRecord(BaseModel, extra="ignore"):
	type: Literal["content_block_start"]
	content_block: ContentBlock | None = None


class ErrorRecord(BaseModel, extra="ignore"):
	type: Literal["error"]
	error: dict[str, Any] | str | None = None
	message: str | None = None

	def error_text(self) -> str:
		if isinstance(self.error, dict):
			return str(self.error.get("message") or self.error.get("type") or "Unknown error")
		if isinstance(self.error, str) and self.error:
			return self.error
		return self.message or "Unknown error"


class UnknownRecord(BaseModel, extra="ignore"):
	type: str = ""


Record = Union[
	SystemRecord,
	AssistantRecord,
	UserRecord,
	ResultRecord,
	ContentBlockStartRecord,
	ErrorRecord,
	UnknownRecord,
]

_RECORD_TYPES: dict[str, type[BaseModel]] = {
	"system": SystemRecord,
	"assistant": AssistantRecord,
	"user": UserRecord,
	"result": ResultRecord,
	"content_block_start": ContentBlockStartRecord,
	"error": ErrorRecord,
}


def parse_record(data: dict[str, Any]) -> Record:
	"""Validate a decoded JSON object into its record variant."""
	kind = data.get("type")
	model = _RECORD_TYPES.get(kind) if isinstance(kind, str) else None
	if model is None:
		return UnknownRecord(type=kind if isinstance(kind, str) else "")
	try:
		return model.model_validate(data)  # type: ignore[return-value]
	except ValidationError:
		return UnknownRecord(type=kind)


def parse_line(line: str) -> Record | None:
	"""Decode one transcript line. Returns None for anything that is not a JSON object."""
	stripped = line.strip()
	if not stripped:
		return None
	try:
		data = json.loads(stripped)
	except (json.JSONDecodeError, ValueError, RecursionError):
		# Deeply nested artifacts overflow the decoder; treat them as plain text
		return None
	if not isinstance(data, dict):
		return None
	return parse_record(data)
