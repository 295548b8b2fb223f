import logging
import re
from typing import List, Optional

from .compare import ComparePolicy, normalize, resolve_compare_mode
from .dispatcher import Dispatcher
from .errors import CompilationError, ToolchainUnavailable, ValidationError
from .process_runner import TIME_LIMIT_MESSAGE
from .schemas import (
    ErrorKind,
    ExecutionMode,
    ExecutionRequest,
    ExecutionResult,
    TestCase,
    TestCaseResult,
    Verdict,
    VerdictStatus,
)

logger = logging.getLogger(__name__)

TIMEOUT_SIGNATURE = re.compile(r'time\s*limit|timed?\s*out|timeout', re.IGNORECASE)


def compute_score(passed: int, total: int) -> int:
    if total <= 0:
        return 0
    return passed * 100 // total


def select_cases(request: ExecutionRequest, sample_limit: int) -> List[TestCase]:
    if request.mode == ExecutionMode.run:
        return [c for c in request.test_cases if not c.hidden][:sample_limit]
    return list(request.test_cases)


def _case_error(result: ExecutionResult) -> Optional[str]:
    if result.stderr:
        return result.stderr
    if result.error_kind is ErrorKind.timeout:
        return TIME_LIMIT_MESSAGE
    if result.exit_code:
        return f'Process exited with code {result.exit_code}'
    return None


def _is_timeout(case: TestCaseResult, kind: Optional[ErrorKind]) -> bool:
    if kind is ErrorKind.timeout:
        return True
    return bool(case.error and TIMEOUT_SIGNATURE.search(case.error))


def _format_memory(kb: Optional[int]) -> str:
    if not kb:
        return 'N/A'
    return f'{kb / 1024:.1f}MB'


def _failed_verdict(status: VerdictStatus, total: int, error: str) -> Verdict:
    return Verdict(
        status=status,
        tests_passed=0,
        total_tests=total,
        score=0,
        results=[],
        runtime='0ms',
        memory='N/A',
        error=error,
    )


def aggregate(results: List[TestCaseResult], kinds: List[Optional[ErrorKind]]) -> Verdict:
    total = len(results)
    passed = sum(1 for r in results if r.passed)
    if passed == total:
        status = VerdictStatus.accepted
    elif any(_is_timeout(r, k) for r, k in zip(results, kinds)):
        status = VerdictStatus.time_limit_exceeded
    else:
        status = VerdictStatus.wrong_answer

    memory = [r.memory for r in results if r.memory]
    return Verdict(
        status=status,
        tests_passed=passed,
        total_tests=total,
        score=compute_score(passed, total),
        results=results,
        runtime=f'{max((r.runtime for r in results), default=0)}ms',
        memory=_format_memory(max(memory) if memory else None),
    )


async def _run_cases(session, cases: List[TestCase], policy: ComparePolicy):
    results: List[TestCaseResult] = []
    kinds: List[Optional[ErrorKind]] = []
    for i, case in enumerate(cases):
        expected = normalize(case.expected_output, policy)
        try:
            raw = await session.run(case.input)
        except ToolchainUnavailable:
            raise
        except Exception as e:  # noqa: BLE001 - recorded against this case only
            logger.error('Test case %d execution error: %s', i + 1, e)
            results.append(TestCaseResult(
                input=case.input,
                expected_output=expected,
                actual_output='',
                passed=False,
                error=str(e) or e.__class__.__name__,
                hidden=case.hidden,
            ))
            kinds.append(None)
            continue

        if raw.error_kind is ErrorKind.compilation:
            # the remote service compiles per call; a failure there is shared by every case
            raise CompilationError(raw.stderr, raw.exit_code)

        actual = normalize(raw.output, policy)
        passed = raw.error_kind is not ErrorKind.timeout and actual == expected
        results.append(TestCaseResult(
            input=case.input,
            expected_output=expected,
            actual_output=actual,
            passed=passed,
            runtime=raw.runtime_ms,
            memory=raw.memory_kb,
            error=_case_error(raw),
            hidden=case.hidden,
        ))
        kinds.append(raw.error_kind)
        logger.info('Test case %d: %s', i + 1, 'PASSED' if passed else 'FAILED')
    return results, kinds


async def evaluate(request: ExecutionRequest, dispatcher: Dispatcher) -> Verdict:
    """Run every selected test case in order and fold the outcomes into a Verdict.

    Only ``ValidationError`` escapes; anything that goes wrong after
    validation is reported inside the returned Verdict.
    """
    dispatcher.validate(request)
    settings = dispatcher.settings
    cases = select_cases(request, settings.sample_case_limit)
    if not cases:
        raise ValidationError('testCases', 'at least one test case is required')

    mode = resolve_compare_mode(
        request.compare_mode,
        request.problem_compare_mode,
        request.contest_compare_mode,
        settings.compare_mode,
    )
    policy = ComparePolicy.from_mode(mode, request.ignore_whitespace, request.ignore_case)
    logger.info('Executing %s code with %d test cases (%s compare)', request.language, len(cases), mode.value)

    try:
        async with dispatcher.open_session(request) as session:
            results, kinds = await _run_cases(session, cases, policy)
    except CompilationError as e:
        logger.info('%s submission failed to compile', request.language)
        return _failed_verdict(VerdictStatus.compilation_error, len(cases), e.diagnostics)
    except ToolchainUnavailable as e:
        logger.error('%s', e)
        return _failed_verdict(VerdictStatus.runtime_error, len(cases), str(e))
    except Exception as e:  # noqa: BLE001 - callers always receive a Verdict
        logger.exception('Code execution error')
        return _failed_verdict(VerdictStatus.runtime_error, len(cases), str(e) or e.__class__.__name__)

    return aggregate(results, kinds)
