"""CLI interface for agent-orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from agent_orchestrator.config import OrchestratorConfig, load_config, validate_config
from agent_orchestrator.dashboard.client import DashboardClient, TranscriptBuffer
from agent_orchestrator.db import Database
from agent_orchestrator.roles import RoleCatalog
from agent_orchestrator.transcript import (
	TranscriptEvent,
	format_cost,
	format_duration,
	format_tokens,
)


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="orc",
		description="Agent orchestrator - supervise coding agents and watch their transcripts",
	)
	sub = parser.add_subparsers(dest="command")

	# orc mcp
	mcp = sub.add_parser("mcp", help="Run the MCP server on stdio")
	mcp.add_argument("--config", default=None, help="Config file path")
	mcp.add_argument("--project", default=None, help="Project root (default: current directory)")

	# orc dashboard
	dash = sub.add_parser("dashboard", help="Run the dashboard server")
	dash.add_argument("--config", default=None, help="Config file path")
	dash.add_argument("--host", default=None, help="Host to bind to (default: 127.0.0.1)")
	dash.add_argument("--base-port", type=int, default=None, help="First port to try (default: 4000)")
	dash.add_argument("--max-port", type=int, default=None, help="Last port to try (default: 4100)")

	# orc agents
	agents = sub.add_parser("agents", help="List available agent roles")
	agents.add_argument("--config", default=None, help="Config file path")
	agents.add_argument("--project", default=".", help="Project root (default: current directory)")

	# orc tasks
	tasks = sub.add_parser("tasks", help="List recorded agent tasks")
	tasks.add_argument("--config", default=None, help="Config file path")
	tasks.add_argument("--project", default=None, help="Filter by project name")
	tasks.add_argument("--status", choices=["running", "completed", "failed"], default=None)
	tasks.add_argument("--limit", type=int, default=20)

	# orc stats
	stats = sub.add_parser("stats", help="Show aggregate task statistics")
	stats.add_argument("--config", default=None, help="Config file path")

	# orc cleanup
	cleanup = sub.add_parser("cleanup", help="Delete finished tasks older than the retention horizon")
	cleanup.add_argument("--config", default=None, help="Config file path")
	cleanup.add_argument("--days", type=int, default=None, help="Retention in days (default: from config)")

	# orc tail
	tail = sub.add_parser("tail", help="Follow the parsed transcript of a task")
	tail.add_argument("task_id")
	tail.add_argument("--config", default=None, help="Config file path")
	tail.add_argument("--url", default=None, help="Dashboard URL (default: discovered)")
	tail.add_argument("--poll", action="store_true", help="Poll the delta endpoint instead of streaming")

	# orc watch
	watch = sub.add_parser("watch", help="Open the live terminal viewer")
	watch.add_argument("--config", default=None, help="Config file path")
	watch.add_argument("--url", default=None, help="Dashboard URL (default: discovered)")
	watch.add_argument("--project-id", type=int, default=None, help="Only show this project's agents")

	# orc validate-config
	vc = sub.add_parser("validate-config", help="Validate the configuration")
	vc.add_argument("--config", default=None, help="Config file path")

	return parser


def _open_db(config: OrchestratorConfig) -> Database:
	return Database(config.paths.resolved_db_path)


def _client_for(args: argparse.Namespace, config: OrchestratorConfig) -> DashboardClient | None:
	if args.url:
		return DashboardClient(args.url)
	client = DashboardClient.discover(config)
	if client is None:
		print("No running dashboard found. Start one with: orc dashboard")
	return client


def format_event_line(event: TranscriptEvent) -> str:
	if event.kind == "tool_call":
		detail = f" {event.tool_input}" if event.tool_input else ""
		return f"> {event.tool_name or event.content}{detail}"
	if event.kind == "tool_result":
		first = event.content.splitlines()[0] if event.content else ""
		prefix = "! " if event.is_error else "  "
		return f"{prefix}{first[:120]}"
	if event.kind == "result":
		line = f"= {event.content}"
		if event.stats is not None:
			s = event.stats
			line += (
				f"\n  ({format_duration(s.duration_ms)}, {format_cost(s.total_cost_usd)}, "
				f"{format_tokens(s)}, {s.num_turns} turns)"
			)
		return line
	if event.kind == "error":
		return f"! {event.content}"
	return event.content


def cmd_mcp(args: argparse.Namespace) -> int:
	"""Serve the supervisor over MCP stdio."""
	from agent_orchestrator.mcp_server import run_mcp_server

	run_mcp_server(args.config, args.project)
	return 0


def cmd_dashboard(args: argparse.Namespace) -> int:
	"""Run the dashboard server in the foreground."""
	from agent_orchestrator.dashboard.server import run_dashboard

	config = load_config(args.config)
	try:
		return run_dashboard(config, host=args.host, base_port=args.base_port, max_port=args.max_port)
	except RuntimeError as e:
		print(f"Error: {e}")
		return 1


def cmd_agents(args: argparse.Namespace) -> int:
	config = load_config(args.config)
	root = Path(args.project).resolve()
	catalog = RoleCatalog(config.paths.resolved_agents_dir(root))
	names = catalog.available()
	if not names:
		print(f"No agent roles found in {catalog.agents_dir}")
		return 0
	for name in names:
		print(name)
	return 0


def cmd_tasks(args: argparse.Namespace) -> int:
	config = load_config(args.config)
	with _open_db(config) as db:
		project_id = None
		if args.project:
			project = db.get_project_by_name(args.project)
			if project is None:
				print(f"Unknown project: {args.project}")
				return 1
			project_id = project.id
		tasks = db.list_tasks(project_id=project_id, status=args.status, limit=args.limit)

	if not tasks:
		print("No tasks recorded.")
		return 0
	for t in tasks:
		exit_code = "-" if t.exit_code is None else str(t.exit_code)
		print(
			f"{t.id}  {t.status:<9}  {t.project_name:<20}  {t.agent_name:<14}  "
			f"{t.mode:<11}  exit={exit_code:<4}  {format_duration(t.duration_ms())}  "
			f"{t.task[:60]}"
		)
	return 0


def cmd_stats(args: argparse.Namespace) -> int:
	config = load_config(args.config)
	with _open_db(config) as db:
		stats = db.get_stats()
	print(f"Projects:  {stats['projects']}")
	print(f"Running:   {stats['running']}")
	print(f"Completed: {stats['completed']}")
	print(f"Failed:    {stats['failed']}")
	print(f"Tokens:    {stats['total_input_tokens']:,} in / {stats['total_output_tokens']:,} out")
	return 0


def cmd_cleanup(args: argparse.Namespace) -> int:
	config = load_config(args.config)
	days = args.days if args.days is not None else config.dashboard.retention_days
	with _open_db(config) as db:
		removed = db.cleanup_old_tasks(days)
	print(f"Removed {removed} task(s) older than {days} days")
	return 0


async def _tail(client: DashboardClient, task_id: str, poll: bool) -> None:
	buffer = TranscriptBuffer()
	shown: list[TranscriptEvent] = []
	source = client.follow_log(task_id, buffer) if poll else client.stream_log(task_id, buffer)
	try:
		async for buf in source:
			events = buf.events()
			common = 0
			while common < min(len(shown), len(events)) and shown[common] == events[common]:
				common += 1
			for event in events[common:]:
				print(format_event_line(event), flush=True)
			shown = events
			if events and events[-1].kind in ("result", "error"):
				break
	finally:
		await client.close()


def cmd_tail(args: argparse.Namespace) -> int:
	config = load_config(args.config)
	client = _client_for(args, config)
	if client is None:
		return 1
	try:
		asyncio.run(_tail(client, args.task_id, args.poll))
	except KeyboardInterrupt:
		pass
	return 0


def cmd_watch(args: argparse.Namespace) -> int:
	"""Launch the Textual viewer against a running dashboard."""
	from agent_orchestrator.dashboard.tui import LogViewerApp

	config = load_config(args.config)
	client = _client_for(args, config)
	if client is None:
		return 1
	LogViewerApp(client, project_id=args.project_id).run()
	return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
	"""Validate the config file and report issues."""
	try:
		config = load_config(args.config)
	except FileNotFoundError as e:
		print(f"Error: {e}")
		return 1

	issues = validate_config(config)
	if not issues:
		print("Config OK")
		return 0

	has_errors = False
	for level, message in issues:
		print(f"[{level.upper()}] {message}")
		if level == "error":
			has_errors = True
	return 1 if has_errors else 0


COMMANDS = {
	"mcp": cmd_mcp,
	"dashboard": cmd_dashboard,
	"agents": cmd_agents,
	"tasks": cmd_tasks,
	"stats": cmd_stats,
	"cleanup": cmd_cleanup,
	"tail": cmd_tail,
	"watch": cmd_watch,
	"validate-config": cmd_validate_config,
}


def main(argv: list[str] | None = None) -> int:
	# Force line-buffered stderr for nohup/redirect scenarios
	if hasattr(sys.stderr, "reconfigure"):
		sys.stderr.reconfigure(line_buffering=True)  # type: ignore[union-attr]
	logging.basicConfig(
		level=logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
		datefmt="%H:%M:%S",
		force=True,
	)
	parser = build_parser()
	args = parser.parse_args(argv)

	if args.command is None:
		parser.print_help()
		return 0

	handler = COMMANDS.get(args.command)
	if handler is None:
		print(f"Unknown command: {args.command}")
		return 1

	return handler(args)


if __name__ == "__main__":
	sys.exit(main())
