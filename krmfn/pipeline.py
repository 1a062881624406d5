"""
Pipeline orchestrator for krmfn.

Coordinates one run: read resources → discover functions → order them →
select backends → execute functions one after another → collect deferred
failures → write resources back.

States: DISCOVERING → ORDERING → EXECUTING → COLLECTING → DONE, with FAILED
reachable from any state. Configuration and I/O errors, and failures of
functions that do not defer them, fail the run immediately without writing
anything back. Resources are written once the run reaches DONE; deferred
failures are reported after that, as one DeferredFailuresError, and leave
the run FAILED.
"""

import logging
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import IO, Any, Optional

from krmfn.backends import BackendProvider, ExecutionResult, FunctionBackend, default_provider
from krmfn.config import RunConfig
from krmfn.discovery import FunctionDiscovery
from krmfn.errors import (
    ConfigurationError,
    DeferredFailuresError,
    ExecutionError,
    KrmFnError,
    RunCancelledError,
)
from krmfn.function_spec import FunctionSpec
from krmfn.ordering import sort_functions
from krmfn.resource_io import (
    LocalPackageReadWriter,
    ResourceReader,
    ResourceWriter,
    StreamReader,
    StreamWriter,
)
from krmfn.resources import ResourceNode


logger = logging.getLogger(__name__)


class RunState(str, Enum):
    """Lifecycle of a pipeline run."""
    PENDING = "pending"
    DISCOVERING = "discovering"
    ORDERING = "ordering"
    EXECUTING = "executing"
    COLLECTING = "collecting"
    DONE = "done"
    FAILED = "failed"


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class PipelineResult:
    """Result of a complete pipeline run."""

    success: bool
    started_at: datetime
    ended_at: datetime
    duration_seconds: float
    state: RunState
    functions: list[ExecutionResult] = field(default_factory=list)
    error: Optional[KrmFnError] = None

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "state": self.state.value,
            "functions": [r.to_dict() for r in self.functions],
            "error_message": self.error_message,
        }


class FunctionPipeline:
    """
    Run configuration functions against a package or a stream.

    Resources are read from ``config.path`` or from ``input``; they are
    written back to ``config.path`` unless ``output`` is given. Without a
    path the run reads stdin and writes stdout.

    Functions run strictly one at a time; each function sees the output of
    the previous one.
    """

    def __init__(
        self,
        config: RunConfig,
        input: Optional[IO] = None,
        output: Optional[IO] = None,
        backend_provider: Optional[BackendProvider] = None,
    ):
        """
        Initialize pipeline.

        Args:
            config: Run configuration
            input: Stream to read resources from instead of a directory
            output: Stream to write resources to instead of the directory
            backend_provider: Backend selector, defaults to ``select_backend``
        """
        self.config = config
        self.input = input
        self.output = output
        self.backend_provider = backend_provider
        self.state = RunState.PENDING
        self.results: list[ExecutionResult] = []

        self._cancel_event = threading.Event()
        self._results_lock = threading.Lock()
        self._results_count = 0

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """
        Request cancellation.

        Safe to call from signal handlers and other threads. A function that
        is already running finishes; no further function starts.
        """
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def execute(self) -> list[ExecutionResult]:
        """
        Run the pipeline, raising on failure.

        Returns:
            ExecutionResult of every function that ran

        Raises:
            ConfigurationError: Invalid configuration or function declaration
            ResourceIOError: Reading or writing resources failed
            ExecutionError: A function without deferFailure failed
            DeferredFailuresError: One or more deferred functions failed
            RunCancelledError: The run was cancelled
        """
        self.results = []
        try:
            return self._execute()
        except KrmFnError as e:
            self._transition(RunState.FAILED, error=str(e))
            raise

    def run(self) -> PipelineResult:
        """
        Run the pipeline and report the outcome instead of raising.

        Returns:
            PipelineResult with execution details
        """
        started_at = _utcnow()
        start_time = time.time()
        error: Optional[KrmFnError] = None

        try:
            self.execute()
        except KrmFnError as e:
            error = e
            logger.error(
                f"Pipeline failed: {e}",
                extra={"event": "pipeline_failed", "metadata": {"state": self.state.value}},
            )

        return PipelineResult(
            success=error is None,
            started_at=started_at,
            ended_at=_utcnow(),
            duration_seconds=time.time() - start_time,
            state=self.state,
            functions=list(self.results),
            error=error,
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _execute(self) -> list[ExecutionResult]:
        self._transition(RunState.DISCOVERING)
        root = self._resolve_root()
        reader, writer = self._open_package(root)
        nodes = reader.read()

        discovery = FunctionDiscovery(self.config, root)
        input_specs = discovery.from_input(nodes)
        path_specs = discovery.from_function_paths()
        explicit_specs = discovery.from_functions()

        self._transition(RunState.ORDERING)
        specs = sort_functions(input_specs) + path_specs + explicit_specs
        bindings = self._bind(specs, root)

        self._transition(RunState.EXECUTING, functions=len(bindings))
        for spec, backend in bindings:
            if self.cancelled:
                raise RunCancelledError(
                    f"Run cancelled after {len(self.results)} of {len(bindings)} functions"
                )
            nodes = self._apply(backend, nodes, spec)

        self._transition(RunState.COLLECTING)
        deferred = [r.error for r in self.results if r.error is not None]

        # the sink is written in DONE; deferred failures then turn the run FAILED
        self._transition(RunState.DONE, resources=len(nodes))
        writer.write(nodes)
        if deferred:
            raise DeferredFailuresError(deferred)

        return list(self.results)

    def _apply(
        self,
        backend: FunctionBackend,
        nodes: list[ResourceNode],
        spec: FunctionSpec,
    ) -> list[ResourceNode]:
        """Run one function; raise its failure unless it is deferred."""
        try:
            new_nodes, result = backend.apply(nodes, spec)
        except ExecutionError as e:
            # backends outside of FunctionBackend.apply may raise directly
            new_nodes = nodes
            result = ExecutionResult(function=spec.label, source_path=spec.source_path, error=e)

        self.results.append(result)
        if result.error is None:
            return new_nodes

        if not spec.defer_failure:
            raise result.error

        logger.warning(
            f"Deferring failure of {spec.label}: {result.error}",
            extra={"event": "failure_deferred", "function": spec.label},
        )
        return new_nodes

    def _bind(self, specs: list[FunctionSpec], root: Path) -> list[tuple[FunctionSpec, FunctionBackend]]:
        """Select a backend for every function, dropping disabled ones."""
        provider = self.backend_provider or default_provider(self.config, root)

        bindings = []
        for spec in specs:
            backend = provider(spec)
            if backend is None:
                logger.info(
                    f"No enabled backend for function {spec.label}, skipping",
                    extra={"event": "function_skipped", "function": spec.label},
                )
                continue
            if self.config.results_dir is not None:
                backend.results_file = self._next_results_file()
            bindings.append((spec, backend))
        return bindings

    def _next_results_file(self) -> Path:
        """Allocate the next ``results-<n>.yaml`` file name."""
        with self._results_lock:
            count = self._results_count
            self._results_count += 1
        return self.config.results_dir / f"results-{count}.yaml"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve_root(self) -> Path:
        if self.config.path is not None and self.input is not None:
            raise ConfigurationError("A run reads either a package path or an input stream, not both")

        self.config.validate()
        if self.config.path is not None:
            return self.config.path.resolve()
        return Path.cwd()

    def _open_package(self, root: Path) -> tuple[ResourceReader, ResourceWriter]:
        if self.config.path is not None:
            package = LocalPackageReadWriter(root)
            reader: ResourceReader = package
            writer: ResourceWriter = package
        else:
            reader = StreamReader(self.input if self.input is not None else sys.stdin)
            writer = StreamWriter(sys.stdout)

        if self.output is not None:
            writer = StreamWriter(self.output)
        return reader, writer

    def _transition(self, state: RunState, **metadata: Any) -> None:
        logger.debug(
            f"Pipeline state {self.state.value} -> {state.value}",
            extra={"event": "state_changed", "metadata": {"state": state.value, **metadata}},
        )
        self.state = state
