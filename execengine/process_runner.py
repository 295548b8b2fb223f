import asyncio
import logging
import os
import shutil
import signal
import sys
import tempfile
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence

import psutil

from .errors import ToolchainUnavailable

logger = logging.getLogger(__name__)

TIME_LIMIT_MESSAGE = 'Time limit exceeded'
TRUNCATION_MARKER = '\n...[truncated]'

# pipes of a killed tree close almost immediately; this only bounds a stuck drain
_DRAIN_GRACE_SECONDS = 0.5


@dataclass
class ProcessOutcome:
    stdout: str
    stderr: str
    exit_code: Optional[int]
    runtime_ms: int
    memory_kb: Optional[int]
    timed_out: bool = False
    truncated: bool = False


class _Capture:
    """Collects one output stream up to a byte cap, discarding the rest."""

    def __init__(self, limit: int):
        self.limit = limit
        self.chunks: List[bytes] = []
        self.size = 0
        self.truncated = False

    def feed(self, chunk: bytes) -> None:
        room = self.limit - self.size
        if room <= 0:
            self.truncated = True
            return
        if len(chunk) > room:
            chunk = chunk[:room]
            self.truncated = True
        self.chunks.append(chunk)
        self.size += len(chunk)

    def text(self) -> str:
        out = _read_output(b''.join(self.chunks))
        if self.truncated:
            out += TRUNCATION_MARKER
        return out


def _read_output(raw: bytes) -> str:
    if raw is None:
        return ''
    return raw.decode('utf-8', errors='replace')


def _kill_tree(pid: int) -> None:
    """SIGKILL the process, its descendants and its process group. No grace period."""
    try:
        parent = psutil.Process(pid)
        procs = parent.children(recursive=True)
        procs.append(parent)
    except psutil.NoSuchProcess:
        procs = []
    for proc in procs:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    if sys.platform != 'win32':
        try:
            os.killpg(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass


def _tree_rss(proc: psutil.Process) -> int:
    total = proc.memory_info().rss
    for child in proc.children(recursive=True):
        try:
            total += child.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    return total


class ProcessSupervisor:
    """Spawns one child per call, enforces the wall-clock limit and owns temp workspaces."""

    def __init__(
        self,
        workspace_root: Optional[str] = None,
        timeout_ms: int = 3000,
        poll_interval_ms: int = 20,
        max_output_kb: int = 1024,
    ):
        self.workspace_root = workspace_root
        self.timeout_ms = timeout_ms
        self.poll_interval = poll_interval_ms / 1000.0
        self.max_output_bytes = max_output_kb * 1024

    @classmethod
    def from_settings(cls, settings) -> 'ProcessSupervisor':
        return cls(
            workspace_root=settings.workspace_root,
            timeout_ms=settings.execution_timeout_ms,
            poll_interval_ms=settings.memory_poll_interval_ms,
            max_output_kb=settings.max_output_kb,
        )

    @contextmanager
    def workspace(self, label: str = 'exec') -> Iterator[str]:
        root = self.workspace_root or None
        if root:
            os.makedirs(root, exist_ok=True)
        path = os.path.join(root or tempfile.gettempdir(), f'{label}-{uuid.uuid4().hex}')
        os.makedirs(path)
        logger.debug('created workspace %s', path)
        try:
            yield path
        finally:
            try:
                shutil.rmtree(path)
            except OSError as e:
                logger.warning('failed to remove workspace %s: %s', path, e)

    async def run(
        self,
        command: Sequence[str],
        stdin: str = '',
        cwd: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> ProcessOutcome:
        limit = (timeout_ms or self.timeout_ms) / 1000.0
        spawn_kwargs = {}
        if sys.platform != 'win32':
            # own process group so the whole tree can be killed at once
            spawn_kwargs['start_new_session'] = True

        started = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                **spawn_kwargs,
            )
        except FileNotFoundError as e:
            raise ToolchainUnavailable(command[0], 'Binary not found in PATH.') from e
        except PermissionError as e:
            raise ToolchainUnavailable(command[0], 'Binary is not executable.') from e

        out = _Capture(self.max_output_bytes)
        err = _Capture(self.max_output_bytes)
        peak = [0]
        sampler = asyncio.ensure_future(self._sample_memory(proc.pid, peak))
        io_tasks = [
            asyncio.ensure_future(self._feed_stdin(proc, stdin)),
            asyncio.ensure_future(self._drain(proc.stdout, out)),
            asyncio.ensure_future(self._drain(proc.stderr, err)),
        ]
        waiter = asyncio.ensure_future(proc.wait())
        timed_out = False
        try:
            _, pending = await asyncio.wait([*io_tasks, waiter], timeout=limit)
            if pending:
                timed_out = True
                logger.info('pid %s exceeded %.0f ms, killing process tree', proc.pid, limit * 1000)
                _kill_tree(proc.pid)
                await proc.wait()
                _, stuck = await asyncio.wait(pending, timeout=_DRAIN_GRACE_SECONDS)
                for task in stuck:
                    task.cancel()
        finally:
            sampler.cancel()
            if proc.returncode is None:
                _kill_tree(proc.pid)
                await proc.wait()
            elif sys.platform != 'win32':
                # reap anything the child left behind in its group
                try:
                    os.killpg(proc.pid, signal.SIGKILL)
                except (ProcessLookupError, PermissionError):
                    pass

        runtime_ms = int((time.monotonic() - started) * 1000)
        stderr = err.text()
        if timed_out:
            stderr = f'{stderr}\n{TIME_LIMIT_MESSAGE}' if stderr else TIME_LIMIT_MESSAGE
        return ProcessOutcome(
            stdout=out.text(),
            stderr=stderr,
            exit_code=proc.returncode,
            runtime_ms=runtime_ms,
            memory_kb=(peak[0] // 1024) if peak[0] else None,
            timed_out=timed_out,
            truncated=out.truncated or err.truncated,
        )

    @staticmethod
    async def _feed_stdin(proc, stdin: str) -> None:
        try:
            if stdin:
                proc.stdin.write(stdin.encode('utf-8'))
                await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # child exited without reading its input
            pass
        finally:
            try:
                proc.stdin.close()
            except (BrokenPipeError, ConnectionResetError):
                pass

    @staticmethod
    async def _drain(stream, capture: _Capture) -> None:
        while True:
            chunk = await stream.read(65536)
            if not chunk:
                break
            capture.feed(chunk)

    async def _sample_memory(self, pid: int, peak: List[int]) -> None:
        try:
            proc = psutil.Process(pid)
        except psutil.NoSuchProcess:
            return
        while True:
            try:
                peak[0] = max(peak[0], _tree_rss(proc))
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                return
            await asyncio.sleep(self.poll_interval)
