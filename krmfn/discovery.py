"""
Function discovery.

Functions come from three sources, in this order:
1. the input resources themselves (function config resources in the tree)
2. function paths: directories or files given on the run configuration
3. explicit functions: FunctionSpecs or declarations given on the run

Functions from the input are scoped to their directory unless the run is
globally scoped; functions from the other two sources are always global.
Every function is validated here, before anything executes.
"""

import logging
from pathlib import Path
from typing import Any

from krmfn.backends.script import resolve_script_path
from krmfn.config import RunConfig
from krmfn.errors import ConfigurationError
from krmfn.function_spec import (
    ContainerBackendSpec,
    FunctionSpec,
    Scope,
    ScriptBackendSpec,
    function_spec_from_dict,
    get_function_spec,
    is_function_config,
)
from krmfn.ordering import function_scope_dir
from krmfn.resource_io import LocalPackageReader
from krmfn.resources import ResourceNode


logger = logging.getLogger(__name__)

DEFAULT_NETWORK = "bridge"


class FunctionDiscovery:
    """
    Collect and validate the functions of a run.

    Usage:
        discovery = FunctionDiscovery(config, root)
        specs = discovery.from_input(nodes) + discovery.from_function_paths() + discovery.from_functions()
    """

    def __init__(self, config: RunConfig, root: Path):
        self.config = config
        self.root = Path(root)

    def from_input(self, nodes: list[ResourceNode]) -> list[FunctionSpec]:
        """Functions declared by resources of the input tree (unordered)."""
        if not self.config.functions_from_input():
            return []

        specs = []
        for node in nodes:
            if not is_function_config(node):
                continue
            spec = get_function_spec(node)
            if spec is None:
                logger.debug(
                    f"Function config {node.path} declares no backend, skipping",
                    extra={"event": "function_skipped", "metadata": {"path": node.path}},
                )
                continue
            spec.root = self.root
            if self.config.global_scope:
                spec = spec.as_global()
            else:
                spec.scope = Scope.LOCAL
                spec.scope_dir = function_scope_dir(node.path)
            specs.append(self.validate(spec))
        return specs

    def from_function_paths(self) -> list[FunctionSpec]:
        """Functions read from the configured function paths (globally scoped)."""
        specs = []
        for fn_path in self.config.function_paths:
            fn_path = Path(fn_path)
            root = fn_path.parent if fn_path.is_file() else fn_path
            for node in LocalPackageReader(fn_path).read():
                spec = get_function_spec(node)
                if spec is None:
                    continue
                spec = spec.as_global()
                spec.root = root
                specs.append(self.validate(spec))
        return specs

    def from_functions(self) -> list[FunctionSpec]:
        """Explicitly supplied functions (globally scoped)."""
        specs = []
        for item in self.config.functions:
            spec = self._explicit_spec(item)
            if spec is None:
                continue
            spec = spec.as_global()
            if spec.root is None:
                spec.root = self.root
            specs.append(self.validate(spec))
        return specs

    def _explicit_spec(self, item: Any) -> FunctionSpec | None:
        if isinstance(item, FunctionSpec):
            return item
        if isinstance(item, ResourceNode):
            return get_function_spec(item)
        if isinstance(item, dict):
            if "metadata" in item or "kind" in item:
                return get_function_spec(ResourceNode.from_wire(item))
            return function_spec_from_dict(item, where="explicit function")
        raise ConfigurationError(f"Unsupported function declaration: {item!r}")

    def validate(self, spec: FunctionSpec) -> FunctionSpec:
        """
        Check that a function can run with this configuration.

        Raises:
            ConfigurationError: If the function needs the network and it is
                disabled, or its script path is not allowed
        """
        backend = spec.backend
        if isinstance(backend, ContainerBackendSpec) and backend.network_required:
            if not self.config.network:
                where = f" declared in {spec.source_path}" if spec.source_path else ""
                raise ConfigurationError(
                    f"network required but not enabled: function {spec.label}{where} "
                    f"requires network access"
                )
            spec.network = self.config.network_name or DEFAULT_NETWORK

        if isinstance(backend, ScriptBackendSpec) and backend.path:
            resolve_script_path(spec.root or self.root, spec.source_path, backend.path)

        return spec
