import re
from dataclasses import dataclass
from typing import Optional

from .schemas import CompareMode

_LINE_ENDINGS = re.compile(r'\r+\n')
_WHITESPACE = re.compile(r'\s+')


@dataclass(frozen=True)
class ComparePolicy:
    ignore_whitespace: bool = True
    ignore_case: bool = True

    @classmethod
    def from_mode(
        cls,
        mode,
        ignore_whitespace: Optional[bool] = None,
        ignore_case: Optional[bool] = None,
    ) -> 'ComparePolicy':
        relaxed = _mode_value(mode) != CompareMode.strict.value
        return cls(
            ignore_whitespace=relaxed if ignore_whitespace is None else ignore_whitespace,
            ignore_case=relaxed if ignore_case is None else ignore_case,
        )


STRICT = ComparePolicy(ignore_whitespace=False, ignore_case=False)
RELAXED = ComparePolicy()


def _mode_value(mode) -> Optional[str]:
    if mode is None:
        return None
    value = getattr(mode, 'value', mode)
    value = str(value).strip().lower()
    return value or None


def normalize(text: Optional[str], policy: ComparePolicy = RELAXED) -> str:
    out = _LINE_ENDINGS.sub('\n', text or '')
    if policy.ignore_whitespace:
        out = _WHITESPACE.sub(' ', out).strip()
    if policy.ignore_case:
        out = out.lower()
    return out


def outputs_match(actual: Optional[str], expected: Optional[str], policy: ComparePolicy = RELAXED) -> bool:
    return normalize(actual, policy) == normalize(expected, policy)


def resolve_compare_mode(request=None, problem=None, contest=None, default=None) -> CompareMode:
    """First mode set wins: request, problem, contest, global default, then relaxed."""
    for candidate in (request, problem, contest, default):
        value = _mode_value(candidate)
        if value in (CompareMode.strict.value, CompareMode.relaxed.value):
            return CompareMode(value)
    return CompareMode.relaxed
