"""Integration tests for the MCP server's stdio transport."""

import json
import os
import queue
import subprocess
import sys
import threading
from pathlib import Path

import pytest

pytestmark = pytest.mark.integration

SRC_DIR = Path(__file__).resolve().parents[2] / "src"

MANIFEST = {
    "project_name": "myapp",
    "docker_services": [{"name": "postgres", "container_ports": [5432]}],
    "dev_servers": [
        {"name": "web", "directory": ".", "command": "npm run dev", "port_offset": 10}
    ],
}


def read_lines(stream, lines: queue.Queue) -> None:
    for line in stream:
        lines.put(line)
    lines.put(None)


def wait_for_response(lines: queue.Queue, request_id: int, seen: list[str]) -> dict:
    """Collect stdout lines until the response to a request arrives."""
    while True:
        line = lines.get(timeout=30)
        if line is None:
            raise AssertionError(f"Server exited before answering request {request_id}")
        seen.append(line)
        if not line.strip():
            continue
        message = json.loads(line)
        if message.get("id") == request_id:
            return message


@pytest.fixture
def mcp_process(project_dir: Path, hatch_config):
    """An 'hatch-ports mcp' subprocess serving the test workspace."""
    (project_dir / "hatch.json").write_text(json.dumps(MANIFEST))
    env = dict(os.environ)
    env.pop("HATCH_WORKSPACE", None)
    env["PYTHONPATH"] = os.pathsep.join(
        p for p in [str(SRC_DIR), env.get("PYTHONPATH", "")] if p
    )
    process = subprocess.Popen(
        [
            sys.executable,
            "-m",
            "hatchports",
            "--project-dir",
            str(project_dir),
            "--project",
            "myapp",
            "--home",
            str(hatch_config.home_dir),
            "--log-level",
            "DEBUG",
            "mcp",
        ],
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        env=env,
    )
    yield process
    if process.poll() is None:
        process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
    for stream in (process.stdin, process.stdout, process.stderr):
        stream.close()


class TestMcpStdio:
    """Tests for serving MCP over stdin/stdout."""

    def send(self, process: subprocess.Popen, message: dict) -> None:
        process.stdin.write(json.dumps(message) + "\n")
        process.stdin.flush()

    def test_stdout_carries_only_protocol_messages(self, mcp_process: subprocess.Popen):
        """Test log output stays off stdout while tools are called."""
        lines: queue.Queue = queue.Queue()
        reader = threading.Thread(
            target=read_lines, args=(mcp_process.stdout, lines), daemon=True
        )
        reader.start()
        # Drain stderr so a chatty server never blocks on a full pipe
        threading.Thread(target=mcp_process.stderr.read, daemon=True).start()

        seen: list[str] = []
        self.send(
            mcp_process,
            {
                "jsonrpc": "2.0",
                "id": 1,
                "method": "initialize",
                "params": {
                    "protocolVersion": "2024-11-05",
                    "capabilities": {},
                    "clientInfo": {"name": "hatchports-tests", "version": "0.1.0"},
                },
            },
        )
        initialized = wait_for_response(lines, 1, seen)
        assert "result" in initialized

        self.send(mcp_process, {"jsonrpc": "2.0", "method": "notifications/initialized"})
        self.send(
            mcp_process,
            {
                "jsonrpc": "2.0",
                "id": 2,
                "method": "tools/call",
                "params": {"name": "resolve_port", "arguments": {"name": "postgres"}},
            },
        )
        response = wait_for_response(lines, 2, seen)
        assert "result" in response
        assert not response["result"].get("isError", False)
        assert "1481" in json.dumps(response["result"])

        for line in seen:
            if line.strip():
                assert json.loads(line)["jsonrpc"] == "2.0"
