import asyncio
import shutil
import sys

import httpx
import pytest

from execengine.config import EngineSettings
from execengine.dispatcher import Dispatcher
from execengine.process_runner import ProcessSupervisor
from execengine.remote import RemoteExecutor


def run(coro):
    return asyncio.run(coro)


def requires(*binaries):
    missing = [b for b in binaries if shutil.which(b) is None]
    return pytest.mark.skipif(bool(missing), reason=f'missing toolchain: {", ".join(missing)}')


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(
        python_bin=sys.executable,
        executor_mode='local',
        execution_timeout_ms=3000,
        workspace_root=str(tmp_path / 'work'),
        remote_url='http://piston.test/api/v2/execute',
    )


@pytest.fixture
def supervisor(settings):
    return ProcessSupervisor.from_settings(settings)


def mock_remote(settings, handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RemoteExecutor(settings, client=client)


@pytest.fixture
def dispatcher(settings, supervisor):
    return Dispatcher(settings, supervisor=supervisor)
