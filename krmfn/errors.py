"""
Error classes for krmfn pipeline runs.

The error types map onto how a run reacts to them:
- ConfigurationError: operator mistake, always fatal, raised before or during discovery
- ExecutionError: a function failed at runtime, fatal or deferred per the function
- DeferredFailuresError: every deferred ExecutionError of a run, joined at the end
- ResourceIOError: reading the source or writing the sink failed, always fatal
- RunCancelledError: cancellation was observed between two functions

Error handling contract:
- Backends raise ExecutionError, never return error values
- The pipeline decides whether an ExecutionError is deferred
- ConfigurationError and ResourceIOError are never deferred
"""


class KrmFnError(Exception):
    """Base exception for krmfn."""
    pass


class ConfigurationError(KrmFnError):
    """
    Configuration error - the run cannot start.

    Examples:
    - Function annotation is not valid YAML
    - Function declares more than one backend
    - Script path is absolute or escapes the package root
    - Function requires the network but networking is disabled
    """
    pass


class ExecutionError(KrmFnError):
    """
    A function failed while it was running.

    Examples:
    - Non-zero exit status from a container or executable
    - Output that is not a valid ResourceList
    - Timeout
    - Exception raised by a script

    Attributes:
        function: Label of the function (image, script or executable)
        source_path: Path of the function config resource, if any
    """

    def __init__(self, message: str, function: str | None = None, source_path: str | None = None):
        self.function = function
        self.source_path = source_path
        self.reason = message
        super().__init__(self._format(message))

    def _format(self, message: str) -> str:
        if not self.function:
            return message
        where = f" (config {self.source_path})" if self.source_path else ""
        return f"function {self.function}{where} failed: {message}"


class DeferredFailuresError(ExecutionError):
    """
    Aggregate of the deferred failures of a run.

    The message is every individual failure message, separated by a
    ``---`` line, so the caller sees all of them at once.
    """

    SEPARATOR = "\n---\n"

    def __init__(self, errors: list[ExecutionError]):
        self.errors = list(errors)
        super().__init__(self.SEPARATOR.join(str(e) for e in self.errors))


class ResourceIOError(KrmFnError):
    """Reading resources from the source or writing them to the sink failed."""
    pass


class RunCancelledError(KrmFnError):
    """The run was cancelled before all functions executed."""
    pass
