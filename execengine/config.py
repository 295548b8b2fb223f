import logging
import os
import sys
import tempfile
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator


LANGUAGE_IDS = ('javascript', 'typescript', 'python', 'java', 'cpp')
EXECUTOR_MODES = ('auto', 'local', 'remote')
COMPARE_MODES = ('strict', 'relaxed')

DEFAULT_PISTON_URL = 'https://emkc.org/api/v2/piston/execute'

# python, java and cpp are left empty so the remote runtime catalog decides
DEFAULT_REMOTE_VERSIONS = {
    'javascript': '18.15.0',
    'typescript': '5.0.3',
    'python': '',
    'java': '',
    'cpp': '',
}


class EngineSettings(BaseModel):
    python_bin: str = 'python3'
    java_bin: str = 'java'
    javac_bin: str = 'javac'
    gxx_bin: str = 'g++'
    esbuild_bin: str = 'esbuild'

    executor_mode: str = 'auto'
    remote_url: str = DEFAULT_PISTON_URL
    remote_timeout_s: float = 30.0
    remote_versions: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_REMOTE_VERSIONS))

    execution_timeout_ms: int = 3000
    compile_timeout_ms: int = 10000
    memory_poll_interval_ms: int = 20
    max_output_kb: int = 1024
    js_memory_limit_mb: int = 256
    sample_case_limit: int = 3

    compare_mode: Optional[str] = None
    workspace_root: str = Field(default_factory=tempfile.gettempdir)
    log_level: str = 'INFO'

    @field_validator('executor_mode', mode='before')
    @classmethod
    def _check_executor_mode(cls, value):
        mode = str(value or 'auto').strip().lower()
        if mode == 'piston':
            mode = 'remote'
        if mode not in EXECUTOR_MODES:
            raise ValueError(f'EXECUTOR_MODE must be one of {", ".join(EXECUTOR_MODES)}')
        return mode

    @field_validator('compare_mode', mode='before')
    @classmethod
    def _check_compare_mode(cls, value):
        if value is None or str(value).strip() == '':
            return None
        mode = str(value).strip().lower()
        if mode not in COMPARE_MODES:
            raise ValueError(f'COMPARE_MODE must be one of {", ".join(COMPARE_MODES)}')
        return mode

    @field_validator('execution_timeout_ms', 'compile_timeout_ms', 'memory_poll_interval_ms', 'max_output_kb')
    @classmethod
    def _check_positive(cls, value):
        if value <= 0:
            raise ValueError('must be a positive integer')
        return value

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'EngineSettings':
        env = os.environ if environ is None else environ
        values = {
            'python_bin': env.get('PYTHON_BIN') or ('python' if sys.platform == 'win32' else 'python3'),
            'java_bin': env.get('JAVA_BIN', 'java'),
            'javac_bin': env.get('JAVAC_BIN', 'javac'),
            'gxx_bin': env.get('GXX_BIN', 'g++'),
            'esbuild_bin': env.get('ESBUILD_BIN', 'esbuild'),
            'executor_mode': env.get('EXECUTOR_MODE', 'auto'),
            'remote_url': (env.get('PISTON_URL') or DEFAULT_PISTON_URL).strip(),
            'remote_timeout_s': env.get('REMOTE_TIMEOUT_S', 30),
            'execution_timeout_ms': env.get('EXECUTION_TIMEOUT_MS', 3000),
            'compile_timeout_ms': env.get('COMPILE_TIMEOUT_MS', 10000),
            'memory_poll_interval_ms': env.get('MEMORY_POLL_INTERVAL_MS', 20),
            'max_output_kb': env.get('MAX_OUTPUT_KB', 1024),
            'js_memory_limit_mb': env.get('JS_MEMORY_LIMIT_MB', 256),
            'compare_mode': env.get('COMPARE_MODE'),
            'workspace_root': env.get('WORKSPACE_ROOT') or tempfile.gettempdir(),
            'log_level': env.get('LOG_LEVEL', 'INFO'),
        }
        versions = dict(DEFAULT_REMOTE_VERSIONS)
        for lang in LANGUAGE_IDS:
            override = env.get(f'PISTON_VERSION_{lang.upper()}')
            if override:
                versions[lang] = override.strip()
        values['remote_versions'] = versions
        return cls(**values)

    def binary_for(self, role: str) -> str:
        return getattr(self, f'{role}_bin')


def configure_logging(level: str = 'INFO') -> logging.Logger:
    """Attach one stream handler to the package logger; safe to call repeatedly."""
    logger = logging.getLogger('execengine')
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        logger.addHandler(handler)
    return logger
