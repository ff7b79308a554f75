"""TOML configuration loader for agent-orchestrator."""

from __future__ import annotations

import os
import shutil
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

HOME_ENV_VAR = "ORCHESTRATOR_HOME"
CONFIG_FILENAME = "orchestrator.toml"

INVESTIGATE_TOOLS = ["Read", "Glob", "Grep", "LS", "WebFetch", "WebSearch"]
IMPLEMENT_TOOLS = ["Read", "Glob", "Grep", "LS", "Edit", "Write", "Bash", "WebFetch", "WebSearch"]


def default_data_dir() -> Path:
	override = os.environ.get(HOME_ENV_VAR)
	if override:
		return Path(override).expanduser()
	return Path.home() / ".claude-orchestrator"


@dataclass
class PathsConfig:
	"""Locations of the shared store, logs and role definitions."""

	data_dir: str = ""
	db_path: str = ""
	logs_dir: str = ""
	agents_dir: str = ".claude/agents"  # relative to the project root

	@property
	def resolved_data_dir(self) -> Path:
		if self.data_dir:
			return Path(self.data_dir).expanduser()
		return default_data_dir()

	@property
	def resolved_db_path(self) -> Path:
		if self.db_path:
			return Path(self.db_path).expanduser()
		return self.resolved_data_dir / "orchestrator.db"

	@property
	def resolved_logs_dir(self) -> Path:
		if self.logs_dir:
			return Path(self.logs_dir).expanduser()
		return self.resolved_data_dir / "logs"

	def resolved_agents_dir(self, project_root: Path) -> Path:
		agents = Path(self.agents_dir).expanduser()
		if agents.is_absolute():
			return agents
		return project_root / agents

	@property
	def pid_file(self) -> Path:
		return self.resolved_data_dir / "dashboard.pid"

	@property
	def port_file(self) -> Path:
		return self.resolved_data_dir / "dashboard.port"


@dataclass
class SupervisorConfig:
	"""Agent subprocess settings."""

	executable: str = "claude"
	output_format: str = "stream-json"
	poll_interval: float = 0.5  # seconds between blocking status checks
	default_timeout_ms: int = 300000


@dataclass
class ToolsConfig:
	"""Allowed tool sets per mode."""

	investigate: list[str] = field(default_factory=lambda: list(INVESTIGATE_TOOLS))
	implement: list[str] = field(default_factory=lambda: list(IMPLEMENT_TOOLS))

	def for_mode(self, mode: str) -> str:
		tools = self.implement if mode == "implement" else self.investigate
		return ",".join(tools)


@dataclass
class DashboardConfig:
	"""Dashboard server settings."""

	host: str = "127.0.0.1"
	base_port: int = 4000
	max_port: int = 4100
	keepalive_seconds: float = 30.0
	retention_days: int = 7
	autostart: bool = True


@dataclass
class SecurityConfig:
	"""Security settings for agent subprocess isolation."""

	extra_env_keys: list[str] = field(default_factory=list)


@dataclass
class OrchestratorConfig:
	"""Top-level agent-orchestrator configuration."""

	paths: PathsConfig = field(default_factory=PathsConfig)
	supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
	tools: ToolsConfig = field(default_factory=ToolsConfig)
	dashboard: DashboardConfig = field(default_factory=DashboardConfig)
	security: SecurityConfig = field(default_factory=SecurityConfig)


def _build_paths(data: dict[str, Any]) -> PathsConfig:
	pc = PathsConfig()
	for key in ("data_dir", "db_path", "logs_dir", "agents_dir"):
		if key in data:
			setattr(pc, key, str(data[key]))
	return pc


def _build_supervisor(data: dict[str, Any]) -> SupervisorConfig:
	sc = SupervisorConfig()
	if "executable" in data:
		sc.executable = str(data["executable"])
	if "output_format" in data:
		sc.output_format = str(data["output_format"])
	if "poll_interval" in data:
		sc.poll_interval = float(data["poll_interval"])
	if "default_timeout_ms" in data:
		sc.default_timeout_ms = int(data["default_timeout_ms"])
	return sc


def _build_tools(data: dict[str, Any]) -> ToolsConfig:
	tc = ToolsConfig()
	if "investigate" in data:
		tc.investigate = [str(t) for t in data["investigate"]]
	if "implement" in data:
		tc.implement = [str(t) for t in data["implement"]]
	return tc


def _build_dashboard(data: dict[str, Any]) -> DashboardConfig:
	dc = DashboardConfig()
	if "host" in data:
		dc.host = str(data["host"])
	for key in ("base_port", "max_port", "retention_days"):
		if key in data:
			setattr(dc, key, int(data[key]))
	if "keepalive_seconds" in data:
		dc.keepalive_seconds = float(data["keepalive_seconds"])
	if "autostart" in data:
		dc.autostart = bool(data["autostart"])
	return dc


def _build_security(data: dict[str, Any]) -> SecurityConfig:
	sc = SecurityConfig()
	if "extra_env_keys" in data:
		sc.extra_env_keys = [str(k) for k in data["extra_env_keys"]]
	return sc


_ENV_ALLOWLIST = {
	# System essentials
	"HOME", "USER", "LOGNAME", "SHELL", "LANG", "LC_ALL", "LC_CTYPE",
	"TERM", "TERM_PROGRAM", "TMPDIR", "TMP", "TEMP", "XDG_RUNTIME_DIR",
	"XDG_CONFIG_HOME", "XDG_DATA_HOME", "XDG_CACHE_HOME",
	# Required for subprocess execution
	"PATH", "PWD", "OLDPWD", "SHLVL",
	# Agent CLI auth (OAuth -- NOT raw API keys)
	"CLAUDE_CONFIG_DIR",
	# Python / Node toolchain
	"VIRTUAL_ENV", "PYTHONPATH", "NODE_PATH", "NPM_CONFIG_PREFIX",
	# Encoding
	"PYTHONIOENCODING", "PYTHONUTF8",
}

# Keys that must NEVER reach agents, even if added to extra_env_keys
_ENV_DENYLIST = {
	"ANTHROPIC_API_KEY", "CLAUDECODE",
	"AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN",
	"GITHUB_TOKEN", "GH_TOKEN", "GITLAB_TOKEN",
	"NPM_TOKEN", "PYPI_TOKEN",
	"DATABASE_URL", "REDIS_URL",
}


def subprocess_env(config: OrchestratorConfig | None = None) -> dict[str, str]:
	"""Build a restricted environment for agent subprocesses.

	Only allowlisted system vars plus explicitly configured extras are passed
	through. Denylisted secrets are stripped even when configured.
	"""
	extra = set(config.security.extra_env_keys) if config else set()
	allowed = (_ENV_ALLOWLIST | extra) - _ENV_DENYLIST
	return {k: v for k, v in os.environ.items() if k in allowed}


def load_config(path: str | Path | None = None) -> OrchestratorConfig:
	"""Load an orchestrator.toml config file.

	Args:
		path: Path to the TOML file. Defaults to ``<data dir>/orchestrator.toml``;
			a missing default file yields the built-in defaults.

	Returns:
		Parsed OrchestratorConfig.

	Raises:
		FileNotFoundError: If an explicitly given config file doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
	"""
	if path is None:
		config_path = default_data_dir() / CONFIG_FILENAME
		if not config_path.exists():
			return OrchestratorConfig()
	else:
		config_path = Path(path)
		if not config_path.exists():
			raise FileNotFoundError(f"Config file not found: {config_path}")

	with open(config_path, "rb") as f:
		data = tomllib.load(f)

	oc = OrchestratorConfig()
	if "paths" in data:
		oc.paths = _build_paths(data["paths"])
	if "supervisor" in data:
		oc.supervisor = _build_supervisor(data["supervisor"])
	if "tools" in data:
		oc.tools = _build_tools(data["tools"])
	if "dashboard" in data:
		oc.dashboard = _build_dashboard(data["dashboard"])
	if "security" in data:
		oc.security = _build_security(data["security"])
	return oc


def validate_config(config: OrchestratorConfig) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded OrchestratorConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []

	if shutil.which(config.supervisor.executable) is None:
		issues.append(("error", f"agent executable not found on PATH: {config.supervisor.executable}"))

	dc = config.dashboard
	if dc.base_port > dc.max_port:
		issues.append(("error", f"dashboard.base_port ({dc.base_port}) exceeds max_port ({dc.max_port})"))
	if not 1 <= dc.base_port <= 65535 or not 1 <= dc.max_port <= 65535:
		issues.append(("error", "dashboard ports must be within 1-65535"))
	if dc.host not in ("127.0.0.1", "localhost", "::1"):
		issues.append(("warning", f"dashboard.host is not a loopback address: {dc.host}"))
	if dc.retention_days < 1:
		issues.append(("warning", f"retention_days is very low: {dc.retention_days}"))

	if config.supervisor.poll_interval <= 0:
		issues.append(("error", f"poll_interval must be positive: {config.supervisor.poll_interval}"))
	if config.supervisor.output_format != "stream-json":
		issues.append((
			"warning",
			f"output_format '{config.supervisor.output_format}' produces transcripts the parser cannot read",
		))

	denied = set(config.security.extra_env_keys) & _ENV_DENYLIST
	for key in sorted(denied):
		issues.append(("warning", f"security.extra_env_keys entry is denylisted and ignored: {key}"))

	return issues
