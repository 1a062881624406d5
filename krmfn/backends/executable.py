"""Exec backend - runs functions as executables on the host."""

from typing import Any

from krmfn.backends.base import FunctionBackend
from krmfn.function_spec import ExecBackendSpec, FunctionSpec


class ExecBackend(FunctionBackend):
    """
    Run a host executable with the ResourceList on stdin.

    The path is taken as given; whoever declared the function accepted
    running it with the privileges of krmfn.
    """

    name = "exec"

    def run(self, resource_list: dict[str, Any], spec: FunctionSpec) -> Any:
        backend = spec.backend
        if not isinstance(backend, ExecBackendSpec):
            raise TypeError(f"ExecBackend cannot run {type(backend).__name__}")
        return self.run_subprocess([backend.path], resource_list, spec)
