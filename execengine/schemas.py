from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Language(str, Enum):
    javascript = 'javascript'
    typescript = 'typescript'
    python = 'python'
    java = 'java'
    cpp = 'cpp'


class CompareMode(str, Enum):
    strict = 'strict'
    relaxed = 'relaxed'


class ExecutionMode(str, Enum):
    run = 'run'
    submit = 'submit'


class ErrorKind(str, Enum):
    compilation = 'compilation'
    timeout = 'timeout'
    runtime = 'runtime'
    transport = 'transport'
    toolchain = 'toolchain'


class VerdictStatus(str, Enum):
    accepted = 'Accepted'
    wrong_answer = 'Wrong Answer'
    time_limit_exceeded = 'Time Limit Exceeded'
    compilation_error = 'Compilation Error'
    runtime_error = 'Runtime Error'


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TestCase(_Model):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    input: str = ''
    expected_output: str = ''
    hidden: bool = False


class ExecutionRequest(_Model):
    # language stays a plain string so unsupported values reach the dispatcher's ValidationError
    language: str
    code: str = ''
    stdin: str = ''
    test_cases: List[TestCase] = Field(default_factory=list)
    compare_mode: Optional[CompareMode] = None
    mode: ExecutionMode = ExecutionMode.submit
    version: Optional[str] = None
    ignore_whitespace: Optional[bool] = None
    ignore_case: Optional[bool] = None
    problem_compare_mode: Optional[CompareMode] = None
    contest_compare_mode: Optional[CompareMode] = None


class ExecutionResult(_Model):
    output: str = ''
    stderr: str = ''
    exit_code: Optional[int] = None
    runtime_ms: int = 0
    memory_kb: Optional[int] = None
    error_kind: Optional[ErrorKind] = None
    truncated: bool = False


class TestCaseResult(_Model):
    input: str
    expected_output: str
    actual_output: str
    passed: bool
    runtime: int = 0
    memory: Optional[int] = None
    error: Optional[str] = None
    hidden: bool = False


class Verdict(_Model):
    status: VerdictStatus
    tests_passed: int
    total_tests: int
    score: int
    results: List[TestCaseResult] = Field(default_factory=list)
    runtime: str = '0ms'
    memory: str = 'N/A'
    error: Optional[str] = None


class ToolStatus(_Model):
    ok: bool
    version: Optional[str] = None
    error: Optional[str] = None


class ExecutorInfo(_Model):
    mode: str
    remote_url: str


class EnvironmentReport(_Model):
    ok: bool
    tools: Dict[str, ToolStatus]
    executor: ExecutorInfo
