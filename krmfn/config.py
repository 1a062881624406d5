"""
Configuration management for krmfn runs.

A run can be configured programmatically (``RunConfig(...)``) or from a YAML
file loaded with ``load_config``:

    path: ./package
    function_paths: [./fns]
    functions:
      - container: {image: example.com/set-labels:v1}
    global_scope: false
    network: false
    network_name: bridge
    enable_script: false
    enable_exec: false
    disable_containers: false
    results_dir: ./results
    timeout_seconds: 300
    storage_mounts:
      - {type: bind, src: ./data, dst: /data}
    logging:
      level: INFO
      format: structured
      file: logs/krmfn.log
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml

from krmfn.errors import ConfigurationError


MOUNT_TYPES = ("bind", "volume", "tmpfs")
LOG_FORMATS = ("structured", "pretty")


@dataclass(frozen=True)
class StorageMount:
    """A host path or volume mounted into container functions."""
    type: str
    src: str
    dst: str
    read_write: bool = False

    @classmethod
    def parse(cls, value: str) -> "StorageMount":
        """
        Parse a mount flag such as ``type=bind,src=/data,dst=/data,rw=true``.

        Raises:
            ConfigurationError: If a field is missing or unknown
        """
        fields: dict[str, str] = {}
        for part in value.split(","):
            if not part:
                continue
            key, sep, val = part.partition("=")
            if not sep:
                raise ConfigurationError(f"Invalid mount field '{part}' in '{value}'")
            fields[key.strip()] = val.strip()

        aliases = {"source": "src", "target": "dst", "destination": "dst"}
        fields = {aliases.get(k, k): v for k, v in fields.items()}
        unknown = set(fields) - {"type", "src", "dst", "rw"}
        if unknown:
            raise ConfigurationError(f"Unknown mount fields {sorted(unknown)} in '{value}'")

        return cls.from_dict({
            "type": fields.get("type"),
            "src": fields.get("src"),
            "dst": fields.get("dst"),
            "rw": fields.get("rw", "false").lower() in ("1", "true", "yes"),
        })

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StorageMount":
        mount = cls(
            type=str(data.get("type") or ""),
            src=str(data.get("src") or ""),
            dst=str(data.get("dst") or ""),
            read_write=bool(data.get("rw", data.get("read_write", False))),
        )
        mount.validate()
        return mount

    def validate(self) -> None:
        if self.type not in MOUNT_TYPES:
            raise ConfigurationError(
                f"Mount type must be one of {', '.join(MOUNT_TYPES)}, got '{self.type}'"
            )
        if not self.dst:
            raise ConfigurationError("Mount requires a dst")
        if self.type != "tmpfs" and not self.src:
            raise ConfigurationError(f"{self.type} mount requires a src")

    def to_docker_arg(self) -> str:
        """Render as the value of ``docker run --mount``."""
        parts = [f"type={self.type}"]
        if self.src:
            parts.append(f"source={self.src}")
        parts.append(f"target={self.dst}")
        if not self.read_write and self.type != "tmpfs":
            parts.append("readonly")
        return ",".join(parts)


class RunConfig:
    """
    Complete configuration of a pipeline run.

    ``include_input_functions`` is tri-state: None means "read functions
    from the input unless function_paths or functions are given".
    """

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        function_paths: Iterable[Path | str] = (),
        functions: Iterable[Any] = (),
        include_input_functions: Optional[bool] = None,
        global_scope: bool = False,
        network: bool = False,
        network_name: str = "",
        enable_script: bool = False,
        enable_exec: bool = False,
        disable_containers: bool = False,
        results_dir: Path | str | None = None,
        storage_mounts: Iterable[StorageMount] = (),
        timeout_seconds: Optional[float] = None,
        logging: Optional[dict[str, Any]] = None,
    ):
        self.path = Path(path) if path else None
        self.function_paths = [Path(p) for p in function_paths]
        self.functions = list(functions)
        self.include_input_functions = include_input_functions
        self.global_scope = global_scope
        self.network = network
        self.network_name = network_name
        self.enable_script = enable_script
        self.enable_exec = enable_exec
        self.disable_containers = disable_containers
        self.results_dir = Path(results_dir) if results_dir else None
        self.storage_mounts = list(storage_mounts)
        self.timeout_seconds = timeout_seconds
        self.logging = logging or {}

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Optional[Path] = None) -> "RunConfig":
        """
        Build a RunConfig from a parsed YAML mapping.

        Relative paths are resolved against ``base_dir`` (the directory of
        the config file).
        """
        known = {
            "path", "function_paths", "functions", "include_input_functions",
            "global_scope", "network", "network_name", "enable_script",
            "enable_exec", "disable_containers", "results_dir",
            "storage_mounts", "timeout_seconds", "logging",
        }
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")

        def resolve(value: Any) -> Optional[Path]:
            if not value:
                return None
            p = Path(value).expanduser()
            if base_dir is not None and not p.is_absolute():
                p = base_dir / p
            return p

        functions = data.get("functions") or []
        if not isinstance(functions, list):
            raise ConfigurationError("'functions' must be a list of function declarations")

        mounts = data.get("storage_mounts") or []
        if not isinstance(mounts, list):
            raise ConfigurationError("'storage_mounts' must be a list")

        return cls(
            path=resolve(data.get("path")),
            function_paths=[resolve(p) for p in data.get("function_paths") or []],
            functions=functions,
            include_input_functions=data.get("include_input_functions"),
            global_scope=bool(data.get("global_scope", False)),
            network=bool(data.get("network", False)),
            network_name=str(data.get("network_name") or ""),
            enable_script=bool(data.get("enable_script", False)),
            enable_exec=bool(data.get("enable_exec", False)),
            disable_containers=bool(data.get("disable_containers", False)),
            results_dir=resolve(data.get("results_dir")),
            storage_mounts=[
                m if isinstance(m, StorageMount) else StorageMount.from_dict(m)
                for m in mounts
            ],
            timeout_seconds=data.get("timeout_seconds"),
            logging=data.get("logging") or {},
        )

    def functions_from_input(self) -> bool:
        """Whether functions declared in the input are run."""
        if self.include_input_functions is None:
            return not (self.function_paths or self.functions)
        return self.include_input_functions

    def get_log_level(self) -> str:
        """Get logging level."""
        return str(self.logging.get("level", "INFO")).upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "structured")

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path, if file logging is configured."""
        log_file = self.logging.get("file")
        return Path(log_file) if log_file else None

    def validate(self) -> None:
        """
        Validate the configuration.

        Raises:
            ConfigurationError: If any setting is invalid
        """
        if self.path is not None and not self.path.is_dir():
            raise ConfigurationError(f"Package path is not a directory: {self.path}")

        for fn_path in self.function_paths:
            if not fn_path.exists():
                raise ConfigurationError(f"Function path does not exist: {fn_path}")

        if self.results_dir is not None and self.results_dir.exists() and not self.results_dir.is_dir():
            raise ConfigurationError(f"Results dir is not a directory: {self.results_dir}")

        if self.timeout_seconds is not None:
            try:
                timeout = float(self.timeout_seconds)
            except (TypeError, ValueError):
                raise ConfigurationError(f"timeout_seconds must be a number, got {self.timeout_seconds!r}")
            if timeout <= 0:
                raise ConfigurationError("timeout_seconds must be positive")

        for mount in self.storage_mounts:
            mount.validate()

        if self.get_log_format() not in LOG_FORMATS:
            raise ConfigurationError(
                f"logging.format must be one of {', '.join(LOG_FORMATS)}"
            )

    def __repr__(self) -> str:
        return (
            f"RunConfig(path={self.path}, function_paths={len(self.function_paths)}, "
            f"functions={len(self.functions)})"
        )


def load_config(config_path: Path | str) -> RunConfig:
    """
    Load run configuration from a YAML file.

    Args:
        config_path: Path to the config file

    Returns:
        RunConfig instance

    Raises:
        ConfigurationError: If the file is missing or invalid
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}")

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file must contain a mapping: {config_path}")

    return RunConfig.from_dict(data, base_dir=config_path.parent)
