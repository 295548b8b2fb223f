import asyncio
import logging
import os
import re
import shutil
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Type

from . import jsvm
from .errors import CompilationError
from .process_runner import ProcessOutcome, ProcessSupervisor
from .schemas import ErrorKind, ExecutionResult

logger = logging.getLogger(__name__)


@dataclass
class PreparedProgram:
    """What a language hands to its own ``run``: an argv for the supervisor or a script."""

    command: List[str] = field(default_factory=list)
    cwd: Optional[str] = None
    script: Optional[str] = None


def result_from_outcome(outcome: ProcessOutcome) -> ExecutionResult:
    if outcome.timed_out:
        kind = ErrorKind.timeout
    elif outcome.exit_code:
        kind = ErrorKind.runtime
    else:
        kind = None
    return ExecutionResult(
        output=outcome.stdout,
        stderr=outcome.stderr,
        exit_code=outcome.exit_code,
        runtime_ms=outcome.runtime_ms,
        memory_kb=outcome.memory_kb,
        error_kind=kind,
        truncated=outcome.truncated,
    )


class LanguageExecutor:
    """Strategy for one language tag.

    ``prepare`` is the compile step (a no-op write for interpreted languages),
    ``run`` executes the prepared program once per stdin, and
    ``discover_runtime_version`` picks this language out of a remote runtime
    catalog.
    """

    name = ''
    source_name = 'main.txt'
    remote_language = ''
    remote_aliases = ()
    fallback_version = ''
    # settings attribute prefixes, e.g. 'gxx' -> settings.gxx_bin
    toolchain = ()
    uses_workspace = True

    def __init__(self, settings, supervisor: ProcessSupervisor):
        self.settings = settings
        self.supervisor = supervisor

    def required_binaries(self) -> List[str]:
        return [self.settings.binary_for(role) for role in self.toolchain]

    def missing_binaries(self) -> List[str]:
        return [b for b in self.required_binaries() if shutil.which(b) is None]

    def source_filename(self, code: str) -> str:
        return self.source_name

    def write_source(self, code: str, workspace: str) -> str:
        path = os.path.join(workspace, self.source_filename(code))
        with open(path, 'w', encoding='utf-8') as f:
            f.write(code)
        return path

    async def prepare(self, code: str, workspace: Optional[str]) -> PreparedProgram:
        raise NotImplementedError

    async def run(self, program: PreparedProgram, stdin: str) -> ExecutionResult:
        outcome = await self.supervisor.run(program.command, stdin=stdin, cwd=program.cwd)
        return result_from_outcome(outcome)

    def discover_runtime_version(self, catalog: Iterable[Dict[str, Any]]) -> Optional[str]:
        names = {self.remote_language, *self.remote_aliases}
        for runtime in catalog or []:
            if not isinstance(runtime, dict):
                continue
            aliases = runtime.get('aliases') or []
            if runtime.get('language') in names or names.intersection(aliases):
                version = runtime.get('version')
                if isinstance(version, str) and version:
                    return version
        return None


class CompiledExecutor(LanguageExecutor):
    """Compile once into the workspace, then run the artifact per test case."""

    def compile_command(self, source_path: str, workspace: str) -> List[str]:
        raise NotImplementedError

    def run_command(self, source_path: str, workspace: str) -> List[str]:
        raise NotImplementedError

    async def prepare(self, code: str, workspace: Optional[str]) -> PreparedProgram:
        source_path = self.write_source(code, workspace)
        outcome = await self.supervisor.run(
            self.compile_command(source_path, workspace),
            cwd=workspace,
            timeout_ms=self.settings.compile_timeout_ms,
        )
        if outcome.timed_out:
            raise CompilationError(f'Compilation timed out after {self.settings.compile_timeout_ms} ms')
        if outcome.exit_code != 0:
            diagnostics = outcome.stderr or outcome.stdout
            logger.info('%s compilation failed with exit code %s', self.name, outcome.exit_code)
            raise CompilationError(diagnostics, outcome.exit_code)
        return PreparedProgram(command=self.run_command(source_path, workspace), cwd=workspace)


_JAVA_PUBLIC_CLASS = re.compile(r'public\s+(?:(?:final|abstract|strictfp)\s+)*class\s+([A-Za-z_$][\w$]*)')
_JAVA_ANY_CLASS = re.compile(r'\bclass\s+([A-Za-z_$][\w$]*)')
_JAVA_MAIN_METHOD = re.compile(r'\bstatic\s+(?:final\s+)?void\s+main\s*\(')


class JavaExecutor(CompiledExecutor):
    name = 'java'
    source_name = 'Main.java'
    remote_language = 'java'
    fallback_version = '17.0.0'
    toolchain = ('javac', 'java')

    @staticmethod
    def public_class(code: str) -> Optional[str]:
        match = _JAVA_PUBLIC_CLASS.search(code)
        return match.group(1) if match else None

    @classmethod
    def main_class(cls, code: str) -> str:
        """Class that declares ``static void main(``, else the public class, else Main."""
        entry = _JAVA_MAIN_METHOD.search(code)
        if entry:
            owners = [m.group(1) for m in _JAVA_ANY_CLASS.finditer(code, 0, entry.start())]
            if owners:
                return owners[-1]
        return cls.public_class(code) or 'Main'

    def source_filename(self, code: str) -> str:
        # javac requires a public class to live in a file of the same name
        return f'{self.public_class(code) or self.main_class(code)}.java'

    def compile_command(self, source_path, workspace):
        return [self.settings.javac_bin, '-encoding', 'UTF-8', '-d', workspace, source_path]

    def run_command(self, source_path, workspace):
        with open(source_path, encoding='utf-8') as f:
            entry = self.main_class(f.read())
        return [self.settings.java_bin, '-cp', workspace, entry]


class CppExecutor(CompiledExecutor):
    name = 'cpp'
    source_name = 'main.cpp'
    remote_language = 'c++'
    remote_aliases = ('cpp', 'g++')
    fallback_version = '10.2.0'
    toolchain = ('gxx',)

    def _binary_path(self, workspace):
        return os.path.join(workspace, 'a.exe' if sys.platform == 'win32' else 'main.out')

    def compile_command(self, source_path, workspace):
        return [self.settings.gxx_bin, '-std=c++17', '-O2', source_path, '-o', self._binary_path(workspace)]

    def run_command(self, source_path, workspace):
        return [self._binary_path(workspace)]


class PythonExecutor(LanguageExecutor):
    # no compile step: syntax errors surface at run time as a non-zero exit
    name = 'python'
    source_name = 'main.py'
    remote_language = 'python'
    remote_aliases = ('py', 'python3')
    fallback_version = '3.10.0'
    toolchain = ('python',)

    async def prepare(self, code, workspace):
        source_path = self.write_source(code, workspace)
        return PreparedProgram(command=[self.settings.python_bin, source_path], cwd=workspace)


class JavaScriptExecutor(LanguageExecutor):
    name = 'javascript'
    source_name = 'main.js'
    remote_language = 'javascript'
    remote_aliases = ('js', 'node-javascript', 'node-js')
    fallback_version = '18.15.0'
    uses_workspace = False

    async def prepare(self, code, workspace):
        return PreparedProgram(script=code)

    async def run(self, program, stdin):
        return await asyncio.to_thread(
            jsvm.run_script,
            program.script,
            stdin,
            timeout_ms=self.settings.execution_timeout_ms,
            memory_limit_mb=self.settings.js_memory_limit_mb,
            max_output_kb=self.settings.max_output_kb,
        )


class TypeScriptExecutor(JavaScriptExecutor):
    name = 'typescript'
    source_name = 'main.ts'
    remote_language = 'typescript'
    remote_aliases = ('ts',)
    fallback_version = '5.0.3'
    toolchain = ('esbuild',)

    async def prepare(self, code, workspace):
        outcome = await self.supervisor.run(
            [self.settings.esbuild_bin, '--loader=ts', '--format=cjs', '--target=es2019', '--log-level=error'],
            stdin=code,
            timeout_ms=self.settings.compile_timeout_ms,
        )
        if outcome.timed_out:
            raise CompilationError(f'TypeScript transpilation timed out after {self.settings.compile_timeout_ms} ms')
        if outcome.exit_code != 0:
            raise CompilationError(outcome.stderr or 'Failed to transpile TypeScript', outcome.exit_code)
        return PreparedProgram(script=outcome.stdout)


LANGUAGES: Dict[str, Type[LanguageExecutor]] = {}


def register_language(executor_cls: Type[LanguageExecutor]) -> Type[LanguageExecutor]:
    LANGUAGES[executor_cls.name] = executor_cls
    return executor_cls


for _cls in (JavaScriptExecutor, TypeScriptExecutor, PythonExecutor, JavaExecutor, CppExecutor):
    register_language(_cls)


def build_executors(settings, supervisor: ProcessSupervisor) -> Dict[str, LanguageExecutor]:
    return {name: cls(settings, supervisor) for name, cls in LANGUAGES.items()}
