"""
Base class for function backends.

A backend runs one FunctionSpec against a batch of ResourceNodes. The base
class owns everything the backends have in common:
- scoping: a LOCAL function only sees resources under its scope directory
- the ResourceList envelope handed to the function and read back from it
- the results file written after the function ran
- turning failures into an ExecutionResult carrying the ExecutionError

Subclasses only implement ``run()``: take the ResourceList mapping, return
the function's output (a ResourceList mapping or a list of documents).
"""

import logging
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from krmfn.errors import ExecutionError, ResourceIOError
from krmfn.function_spec import FunctionSpec, Scope
from krmfn.ordering import in_scope
from krmfn.resources import STREAM_ROOT, ResourceNode, dump_documents, load_documents


logger = logging.getLogger(__name__)

RESOURCE_LIST_API_VERSION = "config.kubernetes.io/v1alpha1"
RESOURCE_LIST_KIND = "ResourceList"


@dataclass
class ExecutionResult:
    """
    Outcome of running one function.

    Attributes:
        function: Function label (image, script or executable)
        source_path: Path of the function config resource
        results: ``results`` field returned by the function, if any
        results_file: Where the results were written, if configured
        error: Failure of the function (deferred or fatal)
        duration_seconds: Wall time of the function run
    """
    function: str
    source_path: Optional[str] = None
    results: Any = None
    results_file: Optional[Path] = None
    error: Optional[ExecutionError] = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "function": self.function,
            "source_path": self.source_path,
            "success": self.success,
            "results": self.results,
            "results_file": str(self.results_file) if self.results_file else None,
            "error": str(self.error) if self.error else None,
            "duration_seconds": self.duration_seconds,
        }


class FunctionBackend(ABC):
    """
    Abstract base class for function backends.

    Each backend must implement:
    - run(): Execute the function on a ResourceList and return its output
    """

    name = "function"

    def __init__(
        self,
        results_file: Optional[Path] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.results_file = results_file
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    def run(self, resource_list: dict[str, Any], spec: FunctionSpec) -> Any:
        """
        Run the function.

        Args:
            resource_list: ResourceList mapping with items and functionConfig
            spec: The function being run

        Returns:
            The function output: a ResourceList mapping or a list of documents

        Raises:
            ExecutionError: If the function fails
        """
        pass

    def apply(
        self,
        nodes: list[ResourceNode],
        spec: FunctionSpec,
    ) -> tuple[list[ResourceNode], ExecutionResult]:
        """
        Apply the function to a batch of resources.

        On failure the input batch is returned unchanged and the error is
        stored on the ExecutionResult; the caller decides whether it is fatal.

        Returns:
            The new batch (authoritative) and the ExecutionResult
        """
        started = time.time()
        result = ExecutionResult(
            function=spec.label,
            source_path=spec.source_path,
            results_file=self.results_file,
        )

        if spec.scope == Scope.LOCAL:
            selected = [n for n in nodes if in_scope(n, spec.scope_dir)]
            saved = [n for n in nodes if not in_scope(n, spec.scope_dir)]
        else:
            selected, saved = list(nodes), []

        logger.info(
            f"Running {self.name} function {spec.label} on {len(selected)} resources",
            extra={
                "event": "function_started",
                "function": spec.label,
                "metadata": {"backend": self.name, "scope": spec.scope.value, "scope_dir": spec.scope_dir},
            },
        )

        try:
            output = self.run(build_resource_list(selected, spec), spec)
            items, results = parse_function_output(output)
        except ExecutionError as e:
            result.error = _with_context(e, spec)
            result.duration_seconds = time.time() - started
            self._write_results(result)
            logger.warning(
                f"Function {spec.label} failed: {e.reason}",
                extra={"event": "function_failed", "function": spec.label},
            )
            return list(nodes), result

        output_nodes = [ResourceNode.from_wire(item) for item in items]
        originals = {(n.path, n.index): n.value for n in selected}
        for node in output_nodes:
            if (node.path, node.index) in originals:
                node.restore_empty_metadata(originals[(node.path, node.index)])
        if spec.scope == Scope.LOCAL and spec.scope_dir != STREAM_ROOT:
            for node in output_nodes:
                if not node.path:
                    node.path = f"{spec.scope_dir}/{node.default_path()}"

        result.results = results
        result.duration_seconds = time.time() - started
        self._write_results(result)

        logger.info(
            f"Function {spec.label} returned {len(output_nodes)} resources",
            extra={
                "event": "function_completed",
                "function": spec.label,
                "metadata": {"duration_seconds": result.duration_seconds},
            },
        )
        return output_nodes + saved, result

    def run_subprocess(
        self,
        cmd: list[str],
        resource_list: dict[str, Any],
        spec: FunctionSpec,
        cwd: Optional[Path] = None,
    ) -> Any:
        """
        Run a command with the ResourceList on stdin and parse its stdout.

        Raises:
            ExecutionError: On spawn failure, timeout or non-zero exit
        """
        logger.debug(
            f"Executing {' '.join(cmd)}",
            extra={"event": "process_exec", "function": spec.label},
        )
        try:
            completed = subprocess.run(
                cmd,
                input=yaml.safe_dump(resource_list, default_flow_style=False, sort_keys=False),
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                cwd=cwd,
            )
        except subprocess.TimeoutExpired as e:
            raise ExecutionError(f"timed out after {self.timeout_seconds}s") from e
        except OSError as e:
            raise ExecutionError(f"could not start {cmd[0]}: {e}") from e

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            message = f"exit status {completed.returncode}"
            if stderr:
                message = f"{message}: {stderr}"
            raise ExecutionError(message)

        try:
            documents = load_documents(completed.stdout)
        except yaml.YAMLError as e:
            raise ExecutionError(f"output is not valid YAML: {e}") from e
        if len(documents) == 1 and isinstance(documents[0], dict):
            return documents[0]
        return documents

    def _write_results(self, result: ExecutionResult) -> None:
        if self.results_file is None:
            return
        data = {
            "function": result.function,
            "configPath": result.source_path,
            "results": result.results,
        }
        if result.error is not None:
            data["error"] = str(result.error)
        try:
            self.results_file.parent.mkdir(parents=True, exist_ok=True)
            self.results_file.write_text(dump_documents([data]))
        except OSError as e:
            raise ResourceIOError(f"Cannot write results file {self.results_file}: {e}") from e

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(results_file={self.results_file})"


def build_resource_list(nodes: list[ResourceNode], spec: FunctionSpec) -> dict[str, Any]:
    """Wrap resources and the function config into a ResourceList mapping."""
    resource_list: dict[str, Any] = {
        "apiVersion": RESOURCE_LIST_API_VERSION,
        "kind": RESOURCE_LIST_KIND,
    }
    if spec.function_config is not None:
        resource_list["functionConfig"] = spec.function_config.to_wire()
    resource_list["items"] = [node.to_wire() for node in nodes]
    return resource_list


def parse_function_output(output: Any) -> tuple[list[Any], Any]:
    """
    Split a function's output into items and results.

    A ResourceList mapping yields its ``items`` and ``results``; a plain list
    of documents is taken as the items.

    Raises:
        ExecutionError: If the output has neither shape
    """
    if isinstance(output, dict):
        if output.get("kind") != RESOURCE_LIST_KIND:
            # a single resource document
            return [output], None
        items = output.get("items")
        if items is None:
            items = []
        if not isinstance(items, list):
            raise ExecutionError("ResourceList items must be a list")
        return [item for item in items if item is not None], output.get("results")

    if isinstance(output, list):
        return [item for item in output if item is not None], None

    if output is None:
        return [], None

    raise ExecutionError(f"unexpected function output of type {type(output).__name__}")


def _with_context(error: ExecutionError, spec: FunctionSpec) -> ExecutionError:
    """Attach the function label and config path to an error raised without them."""
    if error.function is not None:
        return error
    wrapped = ExecutionError(error.reason, function=spec.label, source_path=spec.source_path)
    wrapped.__cause__ = error.__cause__ or error
    return wrapped
