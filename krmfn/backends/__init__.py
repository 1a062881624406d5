"""
Function backends for krmfn.

Each backend runs one function against a batch of resources:
- container: docker image, ResourceList over stdin/stdout
- script: Python script executed in-process
- exec: host executable, ResourceList over stdin/stdout

Usage:
    from krmfn.backends import select_backend

    backend = select_backend(spec, config, root)
    if backend is not None:
        nodes, result = backend.apply(nodes, spec)
"""

from krmfn.backends.base import ExecutionResult, FunctionBackend
from krmfn.backends.container import ContainerBackend
from krmfn.backends.executable import ExecBackend
from krmfn.backends.registry import BackendProvider, default_provider, select_backend
from krmfn.backends.script import ScriptBackend, resolve_script_path

__all__ = [
    "BackendProvider",
    "ContainerBackend",
    "ExecBackend",
    "ExecutionResult",
    "FunctionBackend",
    "ScriptBackend",
    "default_provider",
    "resolve_script_path",
    "select_backend",
]
