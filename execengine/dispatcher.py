import logging
from contextlib import ExitStack, asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from .config import EngineSettings
from .errors import CompilationError, ToolchainUnavailable, ValidationError
from .languages import LanguageExecutor, PreparedProgram, build_executors
from .process_runner import ProcessSupervisor
from .remote import RemoteExecutor
from .schemas import (
    EnvironmentReport,
    ErrorKind,
    ExecutionRequest,
    ExecutionResult,
    ExecutorInfo,
    ToolStatus,
)

logger = logging.getLogger(__name__)

# java and javac predate the GNU-style --version flag
_VERSION_FLAGS = {'java': '-version', 'javac': '-version'}


class LocalSession:
    def __init__(self, executor: LanguageExecutor, program: PreparedProgram):
        self.executor = executor
        self.program = program
        self.remote = False

    async def run(self, stdin: str = '') -> ExecutionResult:
        return await self.executor.run(self.program, stdin or '')


class RemoteSession:
    def __init__(self, remote: RemoteExecutor, executor: LanguageExecutor, code: str, version: Optional[str]):
        self.remote_executor = remote
        self.executor = executor
        self.code = code
        self.version = version
        self.remote = True

    async def run(self, stdin: str = '') -> ExecutionResult:
        return await self.remote_executor.execute(self.executor, self.code, stdin or '', self.version)


class Dispatcher:
    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        remote: Optional[RemoteExecutor] = None,
    ):
        self.settings = settings or EngineSettings.from_env()
        self.supervisor = supervisor or ProcessSupervisor.from_settings(self.settings)
        self.remote = remote or RemoteExecutor(self.settings)
        self.executors: Dict[str, LanguageExecutor] = build_executors(self.settings, self.supervisor)

    def validate(self, request: ExecutionRequest) -> LanguageExecutor:
        language = str(request.language or '').strip().lower()
        executor = self.executors.get(language)
        if executor is None:
            supported = ', '.join(sorted(self.executors))
            raise ValidationError('language', f'unsupported language {request.language!r}, expected one of {supported}')
        if not (request.code or '').strip():
            raise ValidationError('code', 'source code must not be empty')
        return executor

    def _wants_remote(self, executor: LanguageExecutor) -> bool:
        mode = self.settings.executor_mode
        if mode == 'remote':
            return True
        missing = executor.missing_binaries()
        if not missing:
            return False
        if mode == 'auto':
            logger.warning('%s toolchain missing (%s), using remote executor', executor.name, ', '.join(missing))
            return True
        raise ToolchainUnavailable(missing[0], 'Not found in PATH. Install it or set the matching *_BIN variable.')

    @asynccontextmanager
    async def open_session(self, request: ExecutionRequest) -> AsyncIterator:
        """Yield a session whose ``run(stdin)`` executes the request's code.

        Local sessions compile once and keep one workspace until the block
        exits; compilation failures raise ``CompilationError``.
        """
        executor = self.validate(request)
        if self._wants_remote(executor):
            yield RemoteSession(self.remote, executor, request.code, request.version)
            return

        with ExitStack() as stack:
            workspace = stack.enter_context(self.supervisor.workspace(executor.name)) if executor.uses_workspace else None
            try:
                program = await executor.prepare(request.code, workspace)
            except ToolchainUnavailable as e:
                if self.settings.executor_mode != 'auto':
                    raise
                logger.warning('%s, falling back to remote executor', e)
                program = None
            if program is None:
                yield RemoteSession(self.remote, executor, request.code, request.version)
            else:
                yield LocalSession(executor, program)

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Single run against ``request.stdin``; failures come back inside the result."""
        try:
            async with self.open_session(request) as session:
                return await session.run(request.stdin)
        except CompilationError as e:
            return ExecutionResult(
                output='',
                stderr=e.diagnostics,
                exit_code=e.exit_code,
                error_kind=ErrorKind.compilation,
            )
        except ToolchainUnavailable as e:
            return ExecutionResult(output='', stderr=str(e), error_kind=ErrorKind.toolchain)
        except ValidationError:
            raise
        except Exception as e:  # noqa: BLE001 - a single run always answers with a result
            logger.exception('%s execution failed', request.language)
            return ExecutionResult(output='', stderr=str(e) or e.__class__.__name__, error_kind=ErrorKind.runtime)

    async def check_toolchains(self) -> EnvironmentReport:
        tools: Dict[str, ToolStatus] = {}
        for executor in self.executors.values():
            for role in executor.toolchain:
                if role in tools:
                    continue
                binary = self.settings.binary_for(role)
                try:
                    outcome = await self.supervisor.run(
                        [binary, _VERSION_FLAGS.get(role, '--version')],
                        timeout_ms=self.settings.compile_timeout_ms,
                    )
                except ToolchainUnavailable as e:
                    tools[role] = ToolStatus(ok=False, error=str(e))
                    continue
                text = (outcome.stdout or outcome.stderr).strip()
                tools[role] = ToolStatus(
                    ok=outcome.exit_code == 0,
                    version=text.splitlines()[0] if text else None,
                )
        return EnvironmentReport(
            ok=True,
            tools=tools,
            executor=ExecutorInfo(mode=self.settings.executor_mode, remote_url=self.settings.remote_url),
        )
