"""
Script backend - runs Python scripts in a child interpreter.

A script sees a global ``resource_list`` (the ResourceList mapping with
``items`` and ``functionConfig``) and edits it in place, or rebinds it:

    for item in resource_list["items"]:
        item.setdefault("metadata", {}).setdefault("labels", {})["team"] = "platform"

Scripts run with the privileges of krmfn itself, so script paths are
resolved strictly inside the directory the function was declared in:
absolute paths and paths starting with ``..`` are configuration errors.
"""

import logging
import posixpath
import sys
import tempfile
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any, Optional

import requests

from krmfn.backends.base import FunctionBackend
from krmfn.errors import ConfigurationError, ExecutionError
from krmfn.function_spec import FunctionSpec, ScriptBackendSpec


logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 30
RUNNER_MODULE = "krmfn.backends.script_runner"


def resolve_script_path(root: Path, config_path: Optional[str], script_path: str) -> Path:
    """
    Resolve a script path relative to the directory of its function config.

    Args:
        root: Directory the function config path is relative to
        config_path: Path annotation of the function config resource
        script_path: Script path as declared on the function

    Returns:
        Absolute path of the script

    Raises:
        ConfigurationError: If the script path is absolute or starts with ``..``
    """
    posix = script_path.replace("\\", "/")
    if PurePosixPath(posix).is_absolute() or PureWindowsPath(script_path).is_absolute():
        raise ConfigurationError(f"absolute function path {script_path} not allowed")

    cleaned = posixpath.normpath(posix)
    if cleaned == ".." or cleaned.startswith("../"):
        raise ConfigurationError(f"function path {script_path} not allowed to start with ../")

    config_dir = posixpath.dirname(posixpath.normpath(config_path)) if config_path else ""
    return Path(root).joinpath(config_dir, cleaned)


class ScriptBackend(FunctionBackend):
    """
    Run a Python script against the ResourceList.

    The script runs in a child Python process (see ``script_runner``) so
    ``timeout_seconds`` can stop it like any other function.
    """

    name = "script"

    def __init__(
        self,
        root: Path,
        results_file: Optional[Path] = None,
        timeout_seconds: Optional[float] = None,
    ):
        super().__init__(results_file=results_file, timeout_seconds=timeout_seconds)
        self.root = Path(root)

    def build_command(self, script: Path) -> list[str]:
        """Build the command line running ``script`` through the runner module."""
        return [sys.executable, "-m", RUNNER_MODULE, str(script)]

    def fetch(self, url: str) -> str:
        """
        Download a script.

        Raises:
            ExecutionError: If the download fails
        """
        logger.debug(f"Fetching script {url}", extra={"event": "script_fetch", "metadata": {"url": url}})
        try:
            response = requests.get(url, timeout=self.timeout_seconds or DEFAULT_FETCH_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as e:
            raise ExecutionError(f"cannot fetch script {url}: {e}") from e
        return response.text

    def run(self, resource_list: dict[str, Any], spec: FunctionSpec) -> Any:
        backend = spec.backend
        if not isinstance(backend, ScriptBackendSpec):
            raise TypeError(f"ScriptBackend cannot run {type(backend).__name__}")

        if backend.path:
            path = resolve_script_path(spec.root or self.root, spec.source_path, backend.path)
            if not path.is_file():
                raise ExecutionError(f"cannot read script {path}: no such file")
            return self.run_subprocess(self.build_command(path), resource_list, spec)

        source = self.fetch(backend.url)
        with tempfile.TemporaryDirectory(prefix="krmfn-script-") as tmp:
            path = Path(tmp) / "script.py"
            path.write_text(source)
            return self.run_subprocess(self.build_command(path), resource_list, spec)
