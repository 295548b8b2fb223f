"""In-process JavaScript host built on QuickJS.

Each call gets a fresh QuickJS context that only sees the globals installed by
``_PRELUDE``: a capturing ``console``, virtual-time timers, stdin line readers
and a ``require`` that serves nothing but a read-only ``fs`` shim over stdin.

Console output is buffered inside the context and read back once the script is
done, since QuickJS will not call into Python while a time limit is armed.

The context runs inside the host process and shares its memory, so this is a
fast path with a heap cap and a cooperative time budget, not a security
boundary. Untrusted code that must be contained belongs on the subprocess or
remote path.
"""
import json
import logging
import time

import quickjs

from .process_runner import TIME_LIMIT_MESSAGE, TRUNCATION_MARKER
from .schemas import ErrorKind, ExecutionResult

logger = logging.getLogger(__name__)

_PRELUDE = r"""
(function (global, stdin, limit) {
  const io = { out: [], err: [], size: 0, truncated: false };
  Object.defineProperty(global, "__io", { enumerable: false, value: io });
  const emit = (stream, text) => {
    if (io.size + text.length > limit) {
      io.truncated = true;
      return;
    }
    io.size += text.length + 1;
    io[stream].push(text);
  };

  const format = (args) => args.map((a) => String(a)).join(" ");
  const toStdout = (...args) => { emit("out", format(args)); };
  global.console = Object.freeze({
    log: toStdout,
    info: toStdout,
    debug: toStdout,
    warn: toStdout,
    error: (...args) => { emit("err", format(args)); },
  });

  const lines = stdin.split(/\r?\n/);
  let cursor = 0;
  const nextLine = () => (cursor < lines.length ? lines[cursor++] : "");
  global.readLine = nextLine;
  global.gets = nextLine;
  global.prompt = nextLine;

  const timers = [];
  let lastId = 0;
  let clock = 0;
  const schedule = (fn, delay, args, repeat) => {
    const id = ++lastId;
    const wait = Math.max(0, Number(delay) || 0);
    timers.push({ id, fn, args, wait, repeat, at: clock + wait });
    return id;
  };
  const cancel = (id) => {
    const index = timers.findIndex((t) => t.id === id);
    if (index >= 0) timers.splice(index, 1);
  };
  global.setTimeout = (fn, delay, ...args) => schedule(fn, delay, args, false);
  global.setInterval = (fn, delay, ...args) => schedule(fn, delay, args, true);
  global.clearTimeout = cancel;
  global.clearInterval = cancel;
  Object.defineProperty(global, "__runNextTimer", {
    enumerable: false,
    value: () => {
      if (timers.length === 0) return false;
      let next = 0;
      for (let i = 1; i < timers.length; i++) {
        const t = timers[i];
        if (t.at < timers[next].at || (t.at === timers[next].at && t.id < timers[next].id)) next = i;
      }
      const timer = timers[next];
      clock = timer.at;
      if (timer.repeat) {
        timer.at = clock + Math.max(1, timer.wait);
      } else {
        timers.splice(next, 1);
      }
      if (typeof timer.fn === "function") timer.fn(...timer.args);
      return timers.length > 0;
    },
  });

  const fsShim = Object.freeze({ readFileSync: () => stdin });
  global.module = { exports: {} };
  global.exports = global.module.exports;
  global.require = (name) => {
    if (name === "fs" || name === "node:fs") return fsShim;
    throw new Error("Module not allowed: " + name);
  };
})(globalThis, __STDIN__, __LIMIT__);
"""


class _BudgetExhausted(Exception):
    pass


def _eval(ctx, source: str, deadline: float):
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise _BudgetExhausted()
    ctx.set_time_limit(remaining)
    return ctx.eval(source)


def _drain_jobs(ctx, deadline: float) -> None:
    while ctx.execute_pending_job():
        if time.monotonic() >= deadline:
            raise _BudgetExhausted()


def _is_interrupt(exc: Exception) -> bool:
    return 'interrupted' in str(exc)


def _collect_output(ctx) -> dict:
    """Read the console buffers back with the time limit disarmed."""
    ctx.set_time_limit(-1)
    try:
        raw = ctx.eval('JSON.stringify(globalThis.__io || null)')
    except (quickjs.JSException, MemoryError) as e:
        logger.warning('could not read script output: %s', e)
        return {}
    return json.loads(raw) if isinstance(raw, str) else {}


def run_script(
    code: str,
    stdin: str = '',
    timeout_ms: int = 3000,
    memory_limit_mb: int = 256,
    max_output_kb: int = 1024,
) -> ExecutionResult:
    """Run JavaScript in a fresh context; never raises for script failures."""
    ctx = quickjs.Context()
    ctx.set_memory_limit(memory_limit_mb * 1024 * 1024)
    prelude = _PRELUDE.replace('__STDIN__', json.dumps(stdin or '')).replace('__LIMIT__', str(max_output_kb * 1024))

    started = time.monotonic()
    deadline = started + timeout_ms / 1000.0
    exit_code = 0
    error_kind = None
    failure = None
    try:
        _eval(ctx, prelude, deadline)
        _eval(ctx, code, deadline)
        _drain_jobs(ctx, deadline)
        while _eval(ctx, '__runNextTimer()', deadline):
            _drain_jobs(ctx, deadline)
        _drain_jobs(ctx, deadline)
    except _BudgetExhausted:
        error_kind = ErrorKind.timeout
    except quickjs.JSException as e:
        if _is_interrupt(e):
            error_kind = ErrorKind.timeout
        else:
            failure = str(e)
    except MemoryError:
        failure = 'InternalError: out of memory'
    runtime_ms = int((time.monotonic() - started) * 1000)

    io = _collect_output(ctx)
    stderr = list(io.get('err') or [])
    truncated = bool(io.get('truncated'))
    if failure is not None:
        stderr.append(failure)
        exit_code = 1
        error_kind = ErrorKind.runtime
    if error_kind is ErrorKind.timeout:
        logger.info('script exceeded %d ms budget', timeout_ms)
        stderr.append(TIME_LIMIT_MESSAGE)
        exit_code = None

    stdout = '\n'.join(io.get('out') or [])
    if truncated:
        stdout += TRUNCATION_MARKER
    return ExecutionResult(
        output=stdout,
        stderr='\n'.join(stderr),
        exit_code=exit_code,
        runtime_ms=runtime_ms,
        memory_kb=None,
        error_kind=error_kind,
        truncated=truncated,
    )
