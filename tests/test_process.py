"""End-to-end process tests: single-instance guard and in-place restart.

Starts ``python -m notable`` as a subprocess on a free port and talks to it
over HTTP.
"""

from __future__ import annotations

import os
import signal
import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Optional

import httpx
import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
STARTUP_TIMEOUT = 30  # seconds


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _wait_for_pid(base_url: str, not_pid: Optional[int] = None) -> int:
    """Poll /pid until an instance (other than ``not_pid``) answers."""
    deadline = time.time() + STARTUP_TIMEOUT
    with httpx.Client(timeout=1) as client:
        while time.time() < deadline:
            try:
                pid = client.get(f"{base_url}/pid").json()["pid"]
                if pid != not_pid:
                    return pid
            except httpx.HTTPError:
                pass
            time.sleep(0.2)
    raise AssertionError(f"No instance answered on {base_url} within {STARTUP_TIMEOUT}s")


def _stop(pid: int) -> None:
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        pass


@pytest.fixture()
def instance(tmp_path: Path):
    """Start a notable instance, yield (argv, env, base_url, proc), then stop it."""
    port = _free_port()
    argv = [
        sys.executable, "-m", "notable",
        "--bind", "127.0.0.1",
        "--port", str(port),
        "--db_path", str(tmp_path / "notes.db"),
    ]
    env = {**os.environ, "PYTHONPATH": str(PROJECT_ROOT)}
    proc = subprocess.Popen(argv, cwd=str(tmp_path), env=env)
    base_url = f"http://127.0.0.1:{port}"
    pids = [_wait_for_pid(base_url)]

    yield argv, env, base_url, proc, pids

    for pid in pids:
        _stop(pid)
    try:
        proc.wait(timeout=10)
    except subprocess.TimeoutExpired:
        proc.kill()


@pytest.mark.integration
class TestProcessLifecycle:
    def test_second_instance_is_a_no_op(self, instance, tmp_path):
        argv, env, base_url, proc, pids = instance
        second = subprocess.run(argv, cwd=str(tmp_path), env=env, timeout=STARTUP_TIMEOUT)
        assert second.returncode == 0
        assert proc.poll() is None
        assert _wait_for_pid(base_url) == proc.pid

    def test_restart_replaces_process(self, instance):
        argv, env, base_url, proc, pids = instance
        with httpx.Client(timeout=5) as client:
            uid = client.post(
                f"{base_url}/api/note/create", json={"content": "survives restart"}
            ).json()["uid"]
            resp = client.put(f"{base_url}/api/restart", json={"reason": "test"})
            assert resp.status_code == 202

            assert proc.wait(timeout=STARTUP_TIMEOUT) == 0
            new_pid = _wait_for_pid(base_url, not_pid=proc.pid)
            pids.append(new_pid)

            assert new_pid != proc.pid
            note = client.get(f"{base_url}/api/note/{uid}").json()
            assert note["content"] == "survives restart"

    def test_restart_flag_signals_running_instance(self, instance, tmp_path):
        argv, env, base_url, proc, pids = instance
        second = subprocess.run(
            [*argv, "--restart", "true"], cwd=str(tmp_path), env=env, timeout=STARTUP_TIMEOUT
        )
        assert second.returncode == 0
        assert proc.wait(timeout=STARTUP_TIMEOUT) == 0
        pids.append(_wait_for_pid(base_url, not_pid=proc.pid))
