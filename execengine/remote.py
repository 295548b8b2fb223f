import logging
import re
import time
from typing import Any, Dict, List, Optional

import httpx

from .errors import TransportError
from .languages import LanguageExecutor
from .schemas import ErrorKind, ExecutionResult

logger = logging.getLogger(__name__)


def runtimes_url(execute_url: str) -> str:
    base = execute_url.strip().rstrip('/')
    if re.search(r'/execute$', base):
        return re.sub(r'/execute$', '/runtimes', base)
    return base + '/runtimes'


def _text(value) -> str:
    return '' if value is None else str(value)


def normalize_response(data: Dict[str, Any]) -> ExecutionResult:
    """Map a Piston-style body, nested under ``run`` or flat, onto ExecutionResult."""
    if not isinstance(data, dict):
        raise TransportError('response body is not a JSON object')
    run = data.get('run') if isinstance(data.get('run'), dict) else {}
    compile_stage = data.get('compile') if isinstance(data.get('compile'), dict) else {}

    compile_code = compile_stage.get('code')
    if isinstance(compile_code, int) and compile_code != 0:
        diagnostics = _text(compile_stage.get('stderr') or compile_stage.get('output'))
        return ExecutionResult(
            output='',
            stderr=diagnostics,
            exit_code=compile_code,
            error_kind=ErrorKind.compilation,
        )

    stdout = run.get('stdout') if 'stdout' in run else data.get('stdout')
    stderr = run.get('stderr') if 'stderr' in run else data.get('stderr')
    exit_code = run.get('code') if 'code' in run else data.get('code')
    signal = run.get('signal') or data.get('signal')

    kind = None
    stderr = _text(stderr)
    if signal == 'SIGKILL':
        kind = ErrorKind.timeout
        stderr = f'{stderr}\nTime limit exceeded' if stderr else 'Time limit exceeded'
    elif isinstance(exit_code, int) and exit_code != 0:
        kind = ErrorKind.runtime
    return ExecutionResult(
        output=_text(stdout),
        stderr=stderr,
        exit_code=exit_code if isinstance(exit_code, int) else None,
        error_kind=kind,
    )


class RemoteExecutor:
    """Client for an external Piston-style execute API.

    Transport and protocol failures come back as results with
    ``error_kind=transport``; nothing from the network is raised to callers.
    """

    def __init__(self, settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client
        # discovered runtime versions, per language
        self._discovered: Dict[str, str] = {}

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, url, **kwargs)
        async with httpx.AsyncClient(timeout=self.settings.remote_timeout_s) as client:
            return await client.request(method, url, **kwargs)

    async def fetch_runtimes(self) -> List[Dict[str, Any]]:
        res = await self._request('GET', runtimes_url(self.settings.remote_url))
        res.raise_for_status()
        data = res.json()
        return data if isinstance(data, list) else []

    async def resolve_version(self, language: LanguageExecutor, requested: Optional[str] = None) -> str:
        if requested:
            return requested
        configured = self.settings.remote_versions.get(language.name)
        if configured:
            return configured
        if language.name in self._discovered:
            return self._discovered[language.name]
        try:
            version = language.discover_runtime_version(await self.fetch_runtimes())
        except (httpx.HTTPError, ValueError) as e:
            logger.info('runtime discovery failed for %s: %s', language.name, e)
            version = None
        if version:
            self._discovered[language.name] = version
            logger.info('selected %s runtime version %s', language.name, version)
            return version
        fallback = language.fallback_version or '1.0.0'
        logger.warning('runtime discovery failed for %s, using fallback version %s', language.name, fallback)
        return fallback

    async def execute(
        self,
        language: LanguageExecutor,
        code: str,
        stdin: str = '',
        version: Optional[str] = None,
    ) -> ExecutionResult:
        started = time.monotonic()
        try:
            payload = {
                'language': language.remote_language,
                'version': await self.resolve_version(language, version),
                'files': [{'content': code, 'name': language.source_filename(code)}],
                'stdin': stdin or '',
            }
            res = await self._request('POST', self.settings.remote_url, json=payload)
            if res.status_code >= 400:
                result = ExecutionResult(
                    stderr=f'Remote executor error ({res.status_code}): {res.text}',
                    error_kind=ErrorKind.transport,
                )
            else:
                try:
                    body = res.json()
                except ValueError as e:
                    raise TransportError('response is not valid JSON') from e
                result = normalize_response(body)
        except (httpx.HTTPError, TransportError) as e:
            reason = str(e) or e.__class__.__name__
            logger.warning('remote execution failed for %s: %s', language.name, reason)
            result = ExecutionResult(
                stderr=f'Remote executor failed: {reason}',
                error_kind=ErrorKind.transport,
            )
        result.runtime_ms = int((time.monotonic() - started) * 1000)
        return result
