"""MCP server exposing the agent supervisor to an orchestrating Claude session."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from agent_orchestrator.config import load_config
from agent_orchestrator.db import Database
from agent_orchestrator.errors import AgentNotFound, OrchestratorError, SpawnFailure
from agent_orchestrator.launcher import DashboardLauncher
from agent_orchestrator.models import AgentTask
from agent_orchestrator.supervisor import AgentSupervisor
from agent_orchestrator.transcript import EVENT_KINDS

logger = logging.getLogger(__name__)

_KIND_SCHEMA = {
	"type": "string",
	"enum": list(EVENT_KINDS),
	"description": "Only return events of this kind",
}

# -- Tool definitions --

TOOLS = [
	Tool(
		name="spawn_agent",
		description="Launch an agent to perform a task. Returns a task ID to monitor progress.",
		inputSchema={
			"type": "object",
			"properties": {
				"agent": {"type": "string", "description": "Name of the agent (e.g. 'database', 'api', 'frontend')"},
				"task": {"type": "string", "description": "The task/prompt for the agent to execute"},
				"mode": {
					"type": "string",
					"enum": ["investigate", "implement"],
					"description": "'investigate' (read-only) or 'implement' (can modify files)",
				},
			},
			"required": ["agent", "task", "mode"],
		},
	),
	Tool(
		name="get_agent_status",
		description=(
			"Get the status of an agent task. With block=true, wait until it finishes or the "
			"timeout passes; timedOut=true means the task is still running, not that it failed."
		),
		inputSchema={
			"type": "object",
			"properties": {
				"taskId": {"type": "string", "description": "The task ID returned by spawn_agent"},
				"block": {"type": "boolean", "description": "Wait for the task to finish"},
				"timeoutMs": {"type": "integer", "description": "Maximum wait in milliseconds (default 300000)"},
			},
			"required": ["taskId"],
		},
	),
	Tool(
		name="list_agents",
		description="List available agent roles and all agents spawned in this session.",
		inputSchema={"type": "object", "properties": {}},
	),
	Tool(
		name="kill_agent",
		description="Terminate a running agent.",
		inputSchema={
			"type": "object",
			"properties": {
				"taskId": {"type": "string", "description": "The task ID of the agent to kill"},
			},
			"required": ["taskId"],
		},
	),
	Tool(
		name="read_agent_log",
		description="Read the full raw log file of an agent task.",
		inputSchema={
			"type": "object",
			"properties": {
				"taskId": {"type": "string", "description": "The task ID to read logs for"},
			},
			"required": ["taskId"],
		},
	),
	Tool(
		name="read_agent_activity",
		description="Read the parsed activity of an agent task (text, tool calls, results), paginated.",
		inputSchema={
			"type": "object",
			"properties": {
				"taskId": {"type": "string", "description": "The task ID to read activity for"},
				"kind": _KIND_SCHEMA,
				"offset": {"type": "integer", "description": "Number of events to skip"},
				"limit": {"type": "integer", "description": "Maximum events to return (default 50)"},
			},
			"required": ["taskId"],
		},
	),
	Tool(
		name="search_agent_activity",
		description="Search an agent's parsed activity with a case-insensitive regular expression.",
		inputSchema={
			"type": "object",
			"properties": {
				"taskId": {"type": "string", "description": "The task ID to search"},
				"pattern": {"type": "string", "description": "Regular expression to match"},
				"kind": _KIND_SCHEMA,
				"limit": {"type": "integer", "description": "Maximum matches to return (default 50)"},
			},
			"required": ["taskId", "pattern"],
		},
	),
]


def create_server(supervisor: AgentSupervisor) -> Server:
	"""Build an MCP server bound to one supervisor."""
	server = Server("agent-orchestrator")

	@server.list_tools()
	async def list_tools() -> list[Tool]:
		return TOOLS

	@server.call_tool()
	async def call_tool(name: str, arguments: dict) -> list[TextContent]:
		try:
			result = await _dispatch(name, arguments or {}, supervisor)
			return [TextContent(type="text", text=json.dumps(result, indent=2))]
		except Exception as e:
			logger.exception("Tool %s failed", name)
			return [TextContent(type="text", text=json.dumps({"error": str(e)}))]

	return server


async def _dispatch(name: str, args: dict, supervisor: AgentSupervisor) -> dict:
	try:
		if name == "spawn_agent":
			return await _tool_spawn_agent(supervisor, args)
		elif name == "get_agent_status":
			return await _tool_get_agent_status(supervisor, args)
		elif name == "list_agents":
			return _tool_list_agents(supervisor)
		elif name == "kill_agent":
			return _tool_kill_agent(supervisor, args["taskId"])
		elif name == "read_agent_log":
			return {"taskId": args["taskId"], "log": supervisor.read_log(args["taskId"])}
		elif name == "read_agent_activity":
			return _tool_read_agent_activity(supervisor, args)
		elif name == "search_agent_activity":
			return _tool_search_agent_activity(supervisor, args)
		else:
			return {"error": f"Unknown tool: {name}"}
	except AgentNotFound as e:
		return {"error": str(e), "availableAgents": e.available}
	except SpawnFailure as e:
		return {"error": str(e), "taskId": e.task.id, "status": e.task.status}
	except (OrchestratorError, ValueError) as e:
		return {"error": str(e)}
	except KeyError as e:
		return {"error": f"Missing required argument: {e.args[0]}"}


def _task_summary(task: AgentTask) -> dict[str, Any]:
	return {
		"taskId": task.id,
		"agent": task.agent_name,
		"status": task.status,
		"mode": task.mode,
		"pid": task.pid,
		"startedAt": task.started_at,
		"completedAt": task.completed_at,
		"exitCode": task.exit_code,
		"inputTokens": task.input_tokens,
		"outputTokens": task.output_tokens,
		"logFile": task.log_file,
	}


async def _tool_spawn_agent(supervisor: AgentSupervisor, args: dict) -> dict:
	task = await supervisor.spawn(args["agent"], args["task"], args["mode"])
	return {
		"success": True,
		"taskId": task.id,
		"agent": task.agent_name,
		"mode": task.mode,
		"status": task.status,
		"logFile": task.log_file,
		"message": f"Agent '{task.agent_name}' spawned with task ID '{task.id}'. Use get_agent_status to check progress.",
	}


async def _tool_get_agent_status(supervisor: AgentSupervisor, args: dict) -> dict:
	timeout = args.get("timeoutMs")
	result = await supervisor.get_status(
		args["taskId"],
		block=bool(args.get("block", False)),
		timeout_ms=int(timeout) if timeout is not None else None,
	)
	summary = _task_summary(result.task)
	summary["timedOut"] = result.timed_out
	return summary


def _tool_list_agents(supervisor: AgentSupervisor) -> dict:
	spawned = []
	for t in supervisor.list_tasks():
		summary = t.task[:100] + ("..." if len(t.task) > 100 else "")
		spawned.append({
			"taskId": t.id,
			"agent": t.agent_name,
			"status": t.status,
			"mode": t.mode,
			"task": summary,
			"startedAt": t.started_at,
		})
	return {"availableAgents": supervisor.available_agents(), "spawnedAgents": spawned}


def _tool_kill_agent(supervisor: AgentSupervisor, task_id: str) -> dict:
	task = supervisor.kill(task_id)
	return {"success": True, "taskId": task.id, "status": task.status, "exitCode": task.exit_code}


def _tool_read_agent_activity(supervisor: AgentSupervisor, args: dict) -> dict:
	page = supervisor.read_activity(
		args["taskId"],
		kind=args.get("kind"),
		offset=int(args.get("offset", 0)),
		limit=int(args.get("limit", 50)),
	)
	result = page.to_dict()
	result["taskId"] = args["taskId"]
	return result


def _tool_search_agent_activity(supervisor: AgentSupervisor, args: dict) -> dict:
	matches = supervisor.search_activity(
		args["taskId"],
		args["pattern"],
		kind=args.get("kind"),
		limit=int(args.get("limit", 50)),
	)
	return {
		"taskId": args["taskId"],
		"pattern": args["pattern"],
		"matches": [e.to_dict() for e in matches],
		"count": len(matches),
	}


def _open_store(path: Path) -> Database | None:
	try:
		return Database(path)
	except (sqlite3.Error, OSError) as exc:
		logger.warning("Shared store unavailable at %s, continuing without it: %s", path, exc)
		return None


def run_mcp_server(config_path: str | None = None, project_root: str | None = None) -> None:
	"""Entry point for `orc mcp` CLI command."""
	config = load_config(config_path)

	async def _run() -> None:
		db = _open_store(config.paths.resolved_db_path)
		supervisor = AgentSupervisor(config, db, Path(project_root) if project_root else None)
		if config.dashboard.autostart:
			try:
				DashboardLauncher(config, config_path).ensure_running()
			except OSError as exc:
				logger.warning("Could not start dashboard: %s", exc)
		server = create_server(supervisor)
		try:
			async with supervisor:
				async with stdio_server() as (read_stream, write_stream):
					await server.run(read_stream, write_stream, server.create_initialization_options())
		finally:
			if db is not None:
				db.close()

	asyncio.run(_run())
