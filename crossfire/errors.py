from typing import Optional


class CrossfireError(Exception):
    """Base class for every error raised by the engine core."""


class ConfigurationError(CrossfireError):
    """No targets, no templates, or an unusable configuration. Fatal for the scan."""


class LoadError(CrossfireError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"Failed to load template {path}: {reason}")
        self.path = path
        self.reason = reason


class EngineUnavailable(CrossfireError):
    """The interpreter or compiler for a language cannot be found."""

    def __init__(self, language: str, tool: Optional[str] = None):
        what = f"'{tool}' not found" if tool else "no toolchain found"
        super().__init__(f"{language} engine unavailable: {what}")
        self.language = language
        self.tool = tool


class CompilationFailed(CrossfireError):
    def __init__(self, language: str, diagnostics: str):
        super().__init__(f"{language} compilation failed: {diagnostics.strip()[:2000]}")
        self.language = language
        self.diagnostics = diagnostics


class ExecutionTimeout(CrossfireError):
    def __init__(self, seconds: float):
        super().__init__(f"Execution exceeded {seconds:g}s and was terminated")
        self.seconds = seconds


class ExecutionError(CrossfireError):
    """Template logic failed (non-zero exit with no usable output, flow error, ...)."""


class InvalidOutput(CrossfireError):
    """Template stdout is not a well-formed findings document."""


class TransientDialError(CrossfireError):
    """Connection or spawn failure before template logic started. Retryable."""


class RequestFailed(CrossfireError):
    """A request that cannot complete: read timeout, broken stream, bad URL. Not retried."""
