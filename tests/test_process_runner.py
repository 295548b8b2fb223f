import os
import sys
import time

import psutil
import pytest

from execengine.errors import ToolchainUnavailable
from execengine.process_runner import TIME_LIMIT_MESSAGE, TRUNCATION_MARKER, ProcessSupervisor
from tests.conftest import run


def py(code):
    return [sys.executable, '-c', code]


def test_echoes_stdin_and_exit_code(supervisor):
    outcome = run(supervisor.run(py('import sys; data = sys.stdin.read(); print(data.upper()); sys.exit(3)'), stdin='abc'))
    assert outcome.stdout == 'ABC\n'
    assert outcome.exit_code == 3
    assert not outcome.timed_out
    assert outcome.runtime_ms >= 0


def test_stderr_is_collected_separately(supervisor):
    outcome = run(supervisor.run(py('import sys; sys.stderr.write("boom"); print("ok")')))
    assert outcome.stdout == 'ok\n'
    assert outcome.stderr == 'boom'
    assert outcome.exit_code == 0


def test_child_that_ignores_stdin(supervisor):
    outcome = run(supervisor.run(py('print(1)'), stdin='x' * 500000))
    assert outcome.stdout == '1\n'
    assert outcome.exit_code == 0


def test_timeout_kills_whole_tree(tmp_path):
    supervisor = ProcessSupervisor(workspace_root=str(tmp_path), timeout_ms=1000)
    pid_file = tmp_path / 'child.pid'
    code = (
        'import subprocess, sys, time\n'
        'child = subprocess.Popen([sys.executable, "-c", "import time\\nwhile True: time.sleep(0.05)"])\n'
        f'open({str(pid_file)!r}, "w").write(str(child.pid))\n'
        'print("started", flush=True)\n'
        'while True: pass\n'
    )
    started = time.monotonic()
    outcome = run(supervisor.run(py(code)))
    elapsed = time.monotonic() - started

    assert outcome.timed_out
    assert TIME_LIMIT_MESSAGE in outcome.stderr
    assert outcome.stdout == 'started\n'
    assert elapsed < 1.0 + 1.0
    child_pid = int(pid_file.read_text())
    time.sleep(0.1)
    assert not psutil.pid_exists(child_pid) or psutil.Process(child_pid).status() == psutil.STATUS_ZOMBIE


def test_missing_binary_raises_toolchain_unavailable(supervisor):
    with pytest.raises(ToolchainUnavailable) as exc:
        run(supervisor.run(['definitely-not-a-real-binary-xyz']))
    assert exc.value.binary == 'definitely-not-a-real-binary-xyz'


def test_output_is_capped(tmp_path):
    supervisor = ProcessSupervisor(workspace_root=str(tmp_path), max_output_kb=1)
    outcome = run(supervisor.run(py('print("x" * 5000)')))
    assert outcome.truncated
    assert outcome.stdout.endswith(TRUNCATION_MARKER)
    assert len(outcome.stdout) == 1024 + len(TRUNCATION_MARKER)


def test_memory_is_sampled(supervisor):
    outcome = run(supervisor.run(py('import time; data = bytearray(20 * 1024 * 1024); time.sleep(0.3)')))
    assert outcome.exit_code == 0
    assert outcome.memory_kb is None or outcome.memory_kb > 0


def test_workspace_removed_on_success_and_failure(supervisor):
    with supervisor.workspace('py') as path:
        assert os.path.isdir(path)
        assert os.path.basename(path).startswith('py-')
        ok_path = path
    assert not os.path.exists(ok_path)

    with pytest.raises(RuntimeError):
        with supervisor.workspace('py') as path:
            failed_path = path
            raise RuntimeError('crash')
    assert not os.path.exists(failed_path)


def test_workspaces_are_unique(supervisor):
    with supervisor.workspace() as a, supervisor.workspace() as b:
        assert a != b
