"""Tests for MCP server tool handlers."""

from __future__ import annotations

import pytest

pytest.importorskip("mcp", reason="mcp package not installed")

from conftest import result_line

from agent_orchestrator.supervisor import AgentSupervisor

TRANSCRIPT = [
	{"type": "assistant", "message": {"content": [
		{"type": "tool_use", "name": "Grep", "input": {"pattern": "CREATE TABLE"}},
	]}},
	{"type": "user", "message": {"content": [{"type": "tool_result", "content": "3 matches"}]}},
	result_line("Found 3 tables"),
]


@pytest.fixture
def supervisor(config, project_root):
	return AgentSupervisor(config, None, project_root)


class TestToolDefinitions:
	def test_tool_names(self):
		from agent_orchestrator.mcp_server import TOOLS
		assert [t.name for t in TOOLS] == [
			"spawn_agent",
			"get_agent_status",
			"list_agents",
			"kill_agent",
			"read_agent_log",
			"read_agent_activity",
			"search_agent_activity",
		]

	def test_spawn_requires_mode(self):
		from agent_orchestrator.mcp_server import TOOLS
		spawn = next(t for t in TOOLS if t.name == "spawn_agent")
		assert spawn.inputSchema["required"] == ["agent", "task", "mode"]
		assert spawn.inputSchema["properties"]["mode"]["enum"] == ["investigate", "implement"]


class TestMCPToolHandlers:
	"""Test the _dispatch function directly (no MCP transport)."""

	@pytest.mark.asyncio
	async def test_full_flow(self, supervisor, fake_agent):
		from agent_orchestrator.mcp_server import _dispatch
		fake_agent(TRANSCRIPT)
		async with supervisor:
			spawned = await _dispatch(
				"spawn_agent", {"agent": "database", "task": "list tables", "mode": "investigate"}, supervisor,
			)
			assert spawned["success"] is True
			task_id = spawned["taskId"]

			status = await _dispatch("get_agent_status", {"taskId": task_id, "block": True, "timeoutMs": 10000}, supervisor)
			assert status["status"] == "completed"
			assert status["exitCode"] == 0
			assert status["timedOut"] is False
			assert status["inputTokens"] == 120

			activity = await _dispatch("read_agent_activity", {"taskId": task_id, "kind": "tool_call"}, supervisor)
			assert activity["total"] == 1
			assert activity["events"][0]["tool_input"] == "CREATE TABLE"

			found = await _dispatch("search_agent_activity", {"taskId": task_id, "pattern": "create table"}, supervisor)
			assert found["count"] == 1

			log = await _dispatch("read_agent_log", {"taskId": task_id}, supervisor)
			assert "Exit Code: 0" in log["log"]

			listing = await _dispatch("list_agents", {}, supervisor)
			assert listing["availableAgents"] == ["api", "database"]
			assert [a["taskId"] for a in listing["spawnedAgents"]] == [task_id]

	@pytest.mark.asyncio
	async def test_unknown_agent_lists_available(self, supervisor):
		from agent_orchestrator.mcp_server import _dispatch
		async with supervisor:
			result = await _dispatch("spawn_agent", {"agent": "nope", "task": "x", "mode": "investigate"}, supervisor)
		assert "not found" in result["error"]
		assert result["availableAgents"] == ["api", "database"]

	@pytest.mark.asyncio
	async def test_invalid_mode(self, supervisor):
		from agent_orchestrator.mcp_server import _dispatch
		async with supervisor:
			result = await _dispatch("spawn_agent", {"agent": "database", "task": "x", "mode": "yolo"}, supervisor)
		assert "Invalid mode" in result["error"]

	@pytest.mark.asyncio
	async def test_timeout_is_not_an_error(self, supervisor, fake_agent):
		from agent_orchestrator.mcp_server import _dispatch
		fake_agent([], sleep=5.0)
		async with supervisor:
			spawned = await _dispatch(
				"spawn_agent", {"agent": "database", "task": "slow", "mode": "investigate"}, supervisor,
			)
			status = await _dispatch(
				"get_agent_status", {"taskId": spawned["taskId"], "block": True, "timeoutMs": 100}, supervisor,
			)
			assert "error" not in status
			assert status["timedOut"] is True
			assert status["status"] == "running"

			killed = await _dispatch("kill_agent", {"taskId": spawned["taskId"]}, supervisor)
			assert killed["success"] is True
			again = await _dispatch("kill_agent", {"taskId": spawned["taskId"]}, supervisor)
			assert "not running" in again["error"]

	@pytest.mark.asyncio
	async def test_unknown_task(self, supervisor):
		from agent_orchestrator.mcp_server import _dispatch
		result = await _dispatch("get_agent_status", {"taskId": "deadbeef"}, supervisor)
		assert result == {"error": "Task 'deadbeef' not found"}

	@pytest.mark.asyncio
	async def test_bad_pattern_and_kind(self, supervisor, fake_agent):
		from agent_orchestrator.mcp_server import _dispatch
		fake_agent(TRANSCRIPT)
		async with supervisor:
			spawned = await _dispatch(
				"spawn_agent", {"agent": "database", "task": "x", "mode": "investigate"}, supervisor,
			)
			task_id = spawned["taskId"]
			bad = await _dispatch("search_agent_activity", {"taskId": task_id, "pattern": "(["}, supervisor)
			assert "Invalid search pattern" in bad["error"]
			kind = await _dispatch("read_agent_activity", {"taskId": task_id, "kind": "nonsense"}, supervisor)
			assert "Invalid event kind" in kind["error"]
			await _dispatch("get_agent_status", {"taskId": task_id, "block": True, "timeoutMs": 10000}, supervisor)

	@pytest.mark.asyncio
	async def test_missing_argument(self, supervisor):
		from agent_orchestrator.mcp_server import _dispatch
		result = await _dispatch("kill_agent", {}, supervisor)
		assert result == {"error": "Missing required argument: taskId"}

	@pytest.mark.asyncio
	async def test_unknown_tool(self, supervisor):
		from agent_orchestrator.mcp_server import _dispatch
		result = await _dispatch("nonexistent", {}, supervisor)
		assert "Unknown tool" in result["error"]


class TestOpenStore:
	def test_opens_database(self, tmp_path):
		from agent_orchestrator.mcp_server import _open_store
		db = _open_store(tmp_path / "data" / "orchestrator.db")
		assert db is not None
		db.close()

	def test_unwritable_location_degrades(self, tmp_path):
		from agent_orchestrator.mcp_server import _open_store
		blocker = tmp_path / "blocker"
		blocker.write_text("not a directory")
		assert _open_store(blocker / "data" / "orchestrator.db") is None

	def test_corrupt_file_degrades(self, tmp_path):
		from agent_orchestrator.mcp_server import _open_store
		path = tmp_path / "orchestrator.db"
		path.write_bytes(b"this is not a sqlite database" * 100)
		assert _open_store(path) is None
