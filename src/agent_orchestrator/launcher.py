"""Dashboard launcher -- discover, start and mark the dashboard server process."""

from __future__ import annotations

import logging
import os
import socket
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

from agent_orchestrator.config import DashboardConfig, OrchestratorConfig, PathsConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DashboardInfo:
	pid: int
	port: int
	host: str = "127.0.0.1"

	@property
	def url(self) -> str:
		return f"http://{self.host}:{self.port}"


def _pid_alive(pid: int) -> bool:
	"""Check if a PID is alive."""
	try:
		os.kill(pid, 0)
		return True
	except (OSError, ProcessLookupError):
		return False


def _read_int(path: Path) -> int | None:
	try:
		return int(path.read_text().strip())
	except (OSError, ValueError):
		return None


def write_markers(paths: PathsConfig, port: int, pid: int | None = None) -> None:
	paths.resolved_data_dir.mkdir(parents=True, exist_ok=True)
	paths.pid_file.write_text(str(pid if pid is not None else os.getpid()))
	paths.port_file.write_text(str(port))


def remove_markers(paths: PathsConfig, pid: int | None = None) -> None:
	"""Remove the marker files, but only if they still belong to ``pid``."""
	owner = pid if pid is not None else os.getpid()
	if _read_int(paths.pid_file) != owner:
		return
	for marker in (paths.pid_file, paths.port_file):
		try:
			marker.unlink()
		except FileNotFoundError:
			pass


def discover_dashboard(paths: PathsConfig, host: str = "127.0.0.1") -> DashboardInfo | None:
	"""Return the running dashboard recorded in the marker files, if it is alive."""
	pid = _read_int(paths.pid_file)
	port = _read_int(paths.port_file)
	if pid is None or port is None:
		return None
	if not _pid_alive(pid):
		logger.debug("Stale dashboard markers for PID %d", pid)
		return None
	return DashboardInfo(pid=pid, port=port, host=host)


def find_free_port(host: str, base_port: int, max_port: int) -> int:
	"""First port in [base_port, max_port] that ``host`` can bind."""
	for port in range(base_port, max_port + 1):
		with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
			try:
				sock.bind((host, port))
			except OSError:
				continue
			return port
	raise RuntimeError(f"No free port in range {base_port}-{max_port} on {host}")


class DashboardLauncher:
	"""Start the dashboard as a background subprocess unless one is already running."""

	def __init__(self, config: OrchestratorConfig, config_path: str | None = None) -> None:
		self.config = config
		self.config_path = config_path

	@property
	def _dashboard(self) -> DashboardConfig:
		return self.config.dashboard

	def running(self) -> DashboardInfo | None:
		return discover_dashboard(self.config.paths, self._dashboard.host)

	def launch(self) -> int:
		"""Spawn `orc dashboard` as a detached subprocess. Returns the PID."""
		cmd = [sys.executable, "-m", "agent_orchestrator.cli", "dashboard"]
		if self.config_path:
			cmd.extend(["--config", self.config_path])

		data_dir = self.config.paths.resolved_data_dir
		data_dir.mkdir(parents=True, exist_ok=True)
		with open(data_dir / "dashboard.log", "ab") as log:
			proc = subprocess.Popen(
				cmd,
				start_new_session=True,
				stdin=subprocess.DEVNULL,
				stdout=log,
				stderr=subprocess.STDOUT,
			)
		logger.info("Launched dashboard (PID %d)", proc.pid)
		return proc.pid

	def ensure_running(self) -> DashboardInfo | None:
		"""Return the live dashboard, launching one if none is recorded.

		A freshly launched dashboard has not written its markers yet, so
		None is returned in that case.
		"""
		info = self.running()
		if info is not None:
			return info
		self.launch()
		return None
