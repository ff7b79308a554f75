"""Textual viewer for agents and their live transcripts.

Subscribes to a running dashboard: the agent list on the left follows the
``agents`` stream, the right pane renders the parsed transcript of the
selected agent from its ``log`` stream.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from rich.markup import escape
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, VerticalScroll
from textual.reactive import reactive
from textual.widgets import Footer, Header, Static

from agent_orchestrator.dashboard.client import DashboardClient, TranscriptBuffer
from agent_orchestrator.transcript import (
	TranscriptEvent,
	format_cost,
	format_duration,
	format_tokens,
)

_STATUS_ICON = {
	"running": "[green]●[/green]",
	"completed": "[blue]✓[/blue]",
	"failed": "[red]✗[/red]",
}

_MAX_CONTENT_LINES = 12


def _fmt_time(iso_timestamp: str) -> str:
	"""Extract HH:MM:SS from an ISO timestamp."""
	try:
		dt = datetime.fromisoformat(iso_timestamp)
		return dt.strftime("%H:%M:%S")
	except (ValueError, TypeError):
		return "??:??:??"


def _clip(text: str, max_lines: int = _MAX_CONTENT_LINES) -> str:
	lines = text.splitlines()
	if len(lines) <= max_lines:
		return text
	hidden = len(lines) - max_lines
	return "\n".join(lines[:max_lines]) + f"\n... ({hidden} more lines)"


def render_agent_list(agents: list[dict[str, Any]], selected: int) -> str:
	if not agents:
		return "[dim]No agents yet[/dim]"
	lines = []
	for i, agent in enumerate(agents):
		icon = _STATUS_ICON.get(agent.get("status", ""), "?")
		marker = "[reverse]" if i == selected else ""
		end = "[/reverse]" if i == selected else ""
		lines.append(
			f"{marker}{icon} {escape(agent.get('agent_name', ''))} "
			f"[dim]{_fmt_time(agent.get('started_at', ''))} "
			f"{format_duration(agent.get('duration', 0))}[/dim]{end}"
		)
	return "\n".join(lines)


def render_event(event: TranscriptEvent) -> str:
	if event.kind == "text":
		return escape(_clip(event.content))
	if event.kind == "tool_call":
		detail = f" [dim]{escape(event.tool_input)}[/dim]" if event.tool_input else ""
		return f"[cyan]▸ {escape(event.tool_name or event.content)}[/cyan]{detail}"
	if event.kind == "tool_result":
		color = "red" if event.is_error else "dim"
		return f"[{color}]{escape(_clip(event.content, 4))}[/{color}]"
	if event.kind == "result":
		line = f"[bold green]✔ {escape(event.content)}[/bold green]"
		if event.stats is not None:
			s = event.stats
			line += (
				f"\n[dim]{format_duration(s.duration_ms)} | {format_cost(s.total_cost_usd)}"
				f" | {format_tokens(s)} | {s.num_turns} turns[/dim]"
			)
		return line
	return f"[bold red]✘ {escape(event.content)}[/bold red]"


def render_transcript(events: list[TranscriptEvent]) -> str:
	if not events:
		return "[dim]No activity yet[/dim]"
	return "\n\n".join(render_event(e) for e in events)


class AgentListPanel(Static):
	def render(self) -> str:
		app: LogViewerApp = self.app  # type: ignore[assignment]
		return render_agent_list(app.agents, app.selected)


class TranscriptPanel(Static):
	def render(self) -> str:
		app: LogViewerApp = self.app  # type: ignore[assignment]
		return render_transcript(app.transcript)


class LogViewerApp(App[None]):
	"""Live viewer for a dashboard's agents."""

	CSS = """
	#agents { width: 40; border: solid $primary; }
	#transcript-scroll { border: solid $secondary; }
	"""

	BINDINGS = [
		Binding("q", "quit", "Quit"),
		Binding("j,down", "next_agent", "Next"),
		Binding("k,up", "prev_agent", "Previous"),
	]

	agents: reactive[list[dict[str, Any]]] = reactive(list, always_update=True, init=False)
	selected: reactive[int] = reactive(0, init=False)
	transcript: reactive[list[TranscriptEvent]] = reactive(list, always_update=True, init=False)

	def __init__(self, client: DashboardClient, project_id: int | None = None) -> None:
		super().__init__()
		self.client = client
		self.project_id = project_id
		self._following: str | None = None

	def compose(self) -> ComposeResult:
		yield Header()
		with Horizontal():
			yield AgentListPanel(id="agents")
			with VerticalScroll(id="transcript-scroll"):
				yield TranscriptPanel(id="transcript")
		yield Footer()

	def on_mount(self) -> None:
		self.run_worker(self._follow_agents(), group="agents", exclusive=True)

	async def _follow_agents(self) -> None:
		async for agents in self.client.stream_agents(self.project_id):
			self.agents = agents
			self.selected = min(self.selected, max(0, len(agents) - 1))
			self._select_current()

	def _select_current(self) -> None:
		if not self.agents:
			return
		task_id = self.agents[self.selected]["id"]
		if task_id == self._following:
			return
		self._following = task_id
		self.transcript = []
		self.run_worker(self._follow_log(task_id), group="log", exclusive=True)

	async def _follow_log(self, task_id: str) -> None:
		buffer = TranscriptBuffer()
		async for buf in self.client.stream_log(task_id, buffer):
			self.transcript = buf.events()

	def watch_agents(self) -> None:
		self.query_one(AgentListPanel).refresh()

	def watch_selected(self) -> None:
		self.query_one(AgentListPanel).refresh()

	def watch_transcript(self) -> None:
		self.query_one(TranscriptPanel).refresh(layout=True)

	def action_next_agent(self) -> None:
		if self.agents and self.selected < len(self.agents) - 1:
			self.selected += 1
			self._select_current()

	def action_prev_agent(self) -> None:
		if self.selected > 0:
			self.selected -= 1
			self._select_current()

	async def on_unmount(self) -> None:
		await self.client.close()
