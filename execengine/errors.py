from typing import Optional


class EngineError(Exception):
    pass


class ValidationError(EngineError, ValueError):
    """Request rejected before any execution attempt starts."""

    def __init__(self, field: str, message: str):
        super().__init__(f'{field}: {message}')
        self.field = field
        self.message = message


class CompilationError(EngineError):
    def __init__(self, diagnostics: str, exit_code: Optional[int] = None):
        super().__init__(diagnostics or 'Compilation failed')
        self.diagnostics = diagnostics
        self.exit_code = exit_code


class ToolchainUnavailable(EngineError):
    """A compiler, interpreter or transpiler could not be started."""

    def __init__(self, binary: str, reason: str = ''):
        message = f'Failed to start {binary}'
        if reason:
            message = f'{message}. {reason}'
        super().__init__(message)
        self.binary = binary


class TransportError(EngineError):
    pass
