"""Dev server process supervision for hatch-ports."""

import os
import signal
import subprocess
from pathlib import Path
from types import FrameType

import httpx
import psutil

from .conflict_checker import ConflictChecker
from .models import (
    HatchConfig,
    ProcessRecord,
    ProcessState,
    ProcessStatus,
    StartResult,
    StopResult,
)
from .utils.logging import setup_logger
from .utils.processes import pid_alive, terminate_tree
from .utils.validation import validate_working_dir

logger = setup_logger(__name__)


class ProcessManager:
    """Starts dev servers on allocated ports and tears down their process trees.

    Running servers are recorded in '<project>/.hatch/pids', one
    'name:pid:port:directory' line each, so a later invocation can report on
    and stop them.
    """

    def __init__(
        self,
        project_dir: Path,
        config: HatchConfig,
        conflict_checker: ConflictChecker,
    ) -> None:
        """Initialize the process manager.

        Args:
            project_dir: Workspace directory
            config: Tool configuration
            conflict_checker: Checker used to refuse already-bound ports
        """
        self.project_dir = project_dir
        self.config = config
        self.conflict_checker = conflict_checker
        self.state_dir = project_dir / config.state_dir_name
        self.pid_file = self.state_dir / "pids"
        self._processes: dict[str, subprocess.Popen[bytes]] = {}
        self._states: dict[str, ProcessState] = {}

    def get_log_path(self, name: str) -> Path:
        """Get the log file path of a dev server."""
        return self.state_dir / f"{name}.log"

    def get_state(self, name: str) -> ProcessState:
        """Get the lifecycle state of a dev server."""
        if name in self._states:
            return self._states[name]
        record = next((r for r in self.read_records() if r.name == name), None)
        if record is None:
            return ProcessState.UNREGISTERED
        return ProcessState.RUNNING if pid_alive(record.pid) else ProcessState.TERMINATED

    def read_records(self) -> list[ProcessRecord]:
        """Read the persisted dev server records.

        Returns:
            Records in start order, malformed lines skipped
        """
        try:
            lines = self.pid_file.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []

        records = []
        for line in lines:
            if not line.strip():
                continue
            try:
                records.append(ProcessRecord.from_line(line))
            except ValueError as e:
                logger.warning(f"Skipping malformed pid record: {e}")
        return records

    def start(
        self,
        name: str,
        directory: Path,
        command: str,
        port: int,
        env: dict[str, str] | None = None,
    ) -> StartResult:
        """Start a dev server.

        A running instance of the same server is stopped first. The command's
        '{PORT}' placeholder is replaced with the port, and PORT is set in the
        environment.

        Args:
            name: Dev server name
            directory: Working directory
            command: Command template
            port: Port the server must bind
            env: Extra environment variables

        Returns:
            Start result with the spawned PID
        """
        self._stop_previous(name)
        self._states[name] = ProcessState.STARTING

        conflict = self.conflict_checker.check_port(port, resource_name=name)
        if conflict is not None:
            self._states.pop(name, None)
            logger.error(f"Cannot start {name}: {conflict.describe()}")
            return StartResult(
                name=name,
                success=False,
                message=f"Port {port} is already in use: {conflict.describe()}",
                port=port,
            )

        directory = directory if directory.is_absolute() else self.project_dir / directory
        valid, error = validate_working_dir(directory)
        if not valid:
            self._states.pop(name, None)
            return StartResult(name=name, success=False, message=error or "", port=port)

        resolved_command = command.replace("{PORT}", str(port))
        process_env = os.environ.copy()
        process_env.update(env or {})
        process_env["PORT"] = str(port)

        self.state_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.get_log_path(name)
        logger.info(f"Starting {name} in {directory} on port {port}: {resolved_command}")

        try:
            with open(log_path, "wb") as log_file:
                process = subprocess.Popen(
                    resolved_command,
                    shell=True,
                    cwd=directory,
                    env=process_env,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    # Own session, so a terminal Ctrl+C reaches us, not the server
                    start_new_session=True,
                )
        except OSError as e:
            self._states.pop(name, None)
            logger.error(f"Failed to start {name}: {e}")
            return StartResult(name=name, success=False, message=f"Failed to start: {e}")

        self._append_record(
            ProcessRecord(name=name, pid=process.pid, port=port, directory=directory)
        )
        self._processes[name] = process
        self._states[name] = ProcessState.RUNNING

        logger.info(f"Started {name} (PID: {process.pid}) - http://localhost:{port}")
        return StartResult(
            name=name,
            success=True,
            message=f"Started {name} on http://localhost:{port}",
            pid=process.pid,
            port=port,
        )

    def stop(self, name: str) -> StopResult:
        """Stop one dev server and forget its record.

        Args:
            name: Dev server name

        Returns:
            Stop result
        """
        records = self.read_records()
        matching = [r for r in records if r.name == name]
        if not matching:
            return StopResult(name=name, success=False, message=f"'{name}' is not registered")

        results = [self._stop_record(r) for r in matching]
        self._write_records([r for r in records if r.name != name])
        return StopResult(
            name=name,
            success=all(r.success for r in results),
            message="; ".join(r.message for r in results),
        )

    def stop_all(self) -> list[StopResult]:
        """Stop every recorded dev server and its descendants.

        The pid file is removed afterwards even if some kills failed.

        Returns:
            One result per record
        """
        records = self.read_records()
        if not records:
            logger.info("No running dev servers recorded")

        results = []
        try:
            for record in records:
                results.append(self._stop_record(record))
        finally:
            self.pid_file.unlink(missing_ok=True)
            self._processes.clear()

        if records:
            logger.info("All dev servers stopped")
        return results

    def status(self, probe_http: bool = False) -> list[ProcessStatus]:
        """Report every recorded dev server.

        Liveness is a PID existence check on the recorded process only.

        Args:
            probe_http: Also check whether running servers answer HTTP

        Returns:
            One status per record
        """
        statuses = []
        for record in self.read_records():
            running = pid_alive(record.pid)
            url = f"http://localhost:{record.port}"
            statuses.append(
                ProcessStatus(
                    name=record.name,
                    pid=record.pid,
                    port=record.port,
                    directory=record.directory,
                    running=running,
                    state=ProcessState.RUNNING if running else ProcessState.TERMINATED,
                    url=url,
                    responding=_probe_http(url) if probe_http and running else None,
                )
            )
        return statuses

    def wait(self) -> None:
        """Block until every server started by this manager has exited."""
        for name, process in list(self._processes.items()):
            exit_code = process.wait()
            self._states[name] = ProcessState.TERMINATED
            logger.info(f"{name} exited with code {exit_code}")

    def run_foreground(self) -> None:
        """Wait on started servers, stopping them all on SIGINT or SIGTERM."""
        if not self._processes:
            logger.warning("No servers to run")
            return

        def handle_signal(signum: int, frame: FrameType | None) -> None:
            logger.info("Received interrupt, stopping dev servers...")
            self.stop_all()
            raise SystemExit(128 + signum)

        previous = {
            sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)
        }
        logger.info("Running in foreground. Press Ctrl+C to stop all servers.")
        try:
            self.wait()
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    def _stop_previous(self, name: str) -> None:
        """Stop a still-running instance before starting a new one."""
        records = self.read_records()
        previous = [r for r in records if r.name == name]
        if not previous:
            return
        for record in previous:
            if pid_alive(record.pid):
                logger.info(f"{name} is already running (PID: {record.pid}), restarting")
                self._stop_record(record)
        self._write_records([r for r in records if r.name != name])

    def _stop_record(self, record: ProcessRecord) -> StopResult:
        self._states[record.name] = ProcessState.STOPPING
        if not pid_alive(record.pid):
            logger.warning(f"{record.name} (PID: {record.pid}) is not running")
            self._states[record.name] = ProcessState.TERMINATED
            return StopResult(name=record.name, success=True, message="Not running")

        logger.info(f"Stopping {record.name} (PID: {record.pid})")
        try:
            stopped = terminate_tree(record.pid, self.config.stop_grace_period)
        except psutil.Error as e:
            logger.error(f"Error stopping {record.name}: {e}")
            stopped = False

        process = self._processes.pop(record.name, None)
        if process is not None and process.pid == record.pid:
            process.poll()

        self._states[record.name] = ProcessState.TERMINATED
        if not stopped:
            return StopResult(
                name=record.name,
                success=False,
                message=f"Some processes under PID {record.pid} survived",
            )
        return StopResult(name=record.name, success=True, message=f"Stopped {record.name}")

    def _append_record(self, record: ProcessRecord) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with open(self.pid_file, "a", encoding="utf-8") as f:
            f.write(record.to_line() + "\n")

    def _write_records(self, records: list[ProcessRecord]) -> None:
        if not records:
            self.pid_file.unlink(missing_ok=True)
            return
        temp_file = self.pid_file.with_suffix(".tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            for record in records:
                f.write(record.to_line() + "\n")
        temp_file.replace(self.pid_file)


def _probe_http(url: str, timeout: float = 2.0) -> bool:
    """Check whether a URL answers with a non-server-error response."""
    try:
        response = httpx.get(url, timeout=timeout, follow_redirects=True)
        return response.status_code < 500
    except httpx.HTTPError:
        return False
