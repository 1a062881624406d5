"""
Backend selection for FunctionSpecs.

``select_backend`` maps each backend variant of a FunctionSpec onto the
backend that runs it, honouring the run configuration:
- container functions run unless ``disable_containers`` is set
- script functions run only with ``enable_script``
- exec functions run only with ``enable_exec``

A function whose backend is disabled is skipped, not failed: the selector
returns None and the pipeline leaves the function out of the run.
"""

from pathlib import Path
from typing import Callable, Optional

from krmfn.backends.base import FunctionBackend
from krmfn.backends.container import ContainerBackend
from krmfn.backends.executable import ExecBackend
from krmfn.backends.script import ScriptBackend
from krmfn.config import RunConfig
from krmfn.function_spec import (
    ContainerBackendSpec,
    ExecBackendSpec,
    FunctionSpec,
    ScriptBackendSpec,
)


# Signature of the injectable selector used by FunctionPipeline
BackendProvider = Callable[[FunctionSpec], Optional[FunctionBackend]]


def select_backend(spec: FunctionSpec, config: RunConfig, root: Path) -> Optional[FunctionBackend]:
    """
    Create the backend for a function.

    Args:
        spec: The function to run
        config: Run configuration (enable/disable flags, mounts, timeout)
        root: Package root, used to resolve script paths

    Returns:
        The backend, or None if the function's backend is disabled
    """
    backend = spec.backend
    timeout = float(config.timeout_seconds) if config.timeout_seconds else None

    if isinstance(backend, ContainerBackendSpec):
        if config.disable_containers:
            return None
        return ContainerBackend(storage_mounts=config.storage_mounts, timeout_seconds=timeout)

    if isinstance(backend, ScriptBackendSpec):
        if not config.enable_script:
            return None
        return ScriptBackend(root=root, timeout_seconds=timeout)

    if isinstance(backend, ExecBackendSpec):
        if not config.enable_exec:
            return None
        return ExecBackend(timeout_seconds=timeout)

    raise TypeError(f"Unknown backend spec: {backend!r}")


def default_provider(config: RunConfig, root: Path) -> BackendProvider:
    """Bind ``select_backend`` to a run configuration."""
    def provider(spec: FunctionSpec) -> Optional[FunctionBackend]:
        return select_backend(spec, config, root)
    return provider
