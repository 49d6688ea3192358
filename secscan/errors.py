from __future__ import annotations

# Captured process output is trimmed to this many characters when rendered.
MAX_OUTPUT_CHARS = 4000


class ScannerError(RuntimeError):
    """Base error. Carries enough context to diagnose a run from the log line alone."""

    def __init__(self, message: str, tool: str | None = None, exit_code: int | None = None, output: str | None = None):
        super().__init__(message)
        self.message = message
        self.tool = tool
        self.exit_code = exit_code
        self.output = output

    def __str__(self) -> str:
        parts = [self.message]
        if self.tool:
            parts.append(f"tool={self.tool}")
        if self.exit_code is not None:
            parts.append(f"exit_code={self.exit_code}")
        if self.output:
            output = self.output.strip()
            if len(output) > MAX_OUTPUT_CHARS:
                output = output[-MAX_OUTPUT_CHARS:]
            parts.append(f"output={output}")
        return " ".join(parts)


class ConfigurationError(ScannerError):
    pass


class ExecutionError(ScannerError):
    pass


class NormalizationError(ScannerError):
    pass


class UploadError(ScannerError):
    pass


class PersistenceError(ScannerError):
    pass


class ScanNotFoundError(ScannerError, LookupError):
    pass


class InvalidTransitionError(ScannerError):
    pass
