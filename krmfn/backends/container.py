"""
Container backend - runs functions packaged as container images.

Uses the ``docker`` CLI via subprocess. Each function runs in an ephemeral
container (``--rm``) that receives the ResourceList on stdin and writes the
result to stdout. Containers run as ``nobody`` without privilege escalation
and without network access unless the function requires it.
"""

import logging
import shutil
from pathlib import Path
from typing import Any, Iterable, Optional

from krmfn.backends.base import FunctionBackend
from krmfn.config import StorageMount
from krmfn.errors import ExecutionError
from krmfn.function_spec import ContainerBackendSpec, FunctionSpec


logger = logging.getLogger(__name__)

NO_NETWORK = "none"


class ContainerBackend(FunctionBackend):
    """
    Run a function inside a docker container.

    Example::

        backend = ContainerBackend(storage_mounts=[StorageMount("bind", "/data", "/data")])
        nodes, result = backend.apply(nodes, spec)
    """

    name = "container"

    def __init__(
        self,
        storage_mounts: Iterable[StorageMount] = (),
        docker_cmd: Optional[str] = None,
        results_file: Optional[Path] = None,
        timeout_seconds: Optional[float] = None,
    ):
        super().__init__(results_file=results_file, timeout_seconds=timeout_seconds)
        self.storage_mounts = list(storage_mounts)
        self._docker_cmd = docker_cmd

    @property
    def docker_cmd(self) -> str:
        """Find the docker CLI binary."""
        if self._docker_cmd is None:
            docker = shutil.which("docker")
            if docker is None:
                raise ExecutionError("docker CLI not found on PATH")
            self._docker_cmd = docker
        return self._docker_cmd

    def build_command(self, spec: FunctionSpec) -> list[str]:
        """Build the ``docker run`` command line for a function."""
        backend = spec.backend
        if not isinstance(backend, ContainerBackendSpec):
            raise TypeError(f"ContainerBackend cannot run {type(backend).__name__}")

        cmd = [
            self.docker_cmd, "run", "--rm", "-i",
            "--network", spec.network or NO_NETWORK,
            "--user", "nobody",
            "--security-opt=no-new-privileges",
            "--label", f"krmfn.function={backend.image}",
        ]
        for mount in self.storage_mounts:
            cmd.extend(["--mount", mount.to_docker_arg()])
        cmd.append(backend.image)
        return cmd

    def run(self, resource_list: dict[str, Any], spec: FunctionSpec) -> Any:
        return self.run_subprocess(self.build_command(spec), resource_list, spec)
