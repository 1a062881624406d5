"""
Readers and writers for trees of ResourceNodes.

Two kinds of storage are supported:
- LocalPackageReadWriter: a directory of YAML files, read and written back in place
- StreamReader / StreamWriter: a single multi-document YAML stream

The directory writer only touches the run's own footprint: files read by
this run are rewritten when their documents changed and deleted when no node
refers to them any more; files that were never read are left alone.
"""

import copy
import logging
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import IO, Any, Iterable

import yaml

from krmfn.errors import ResourceIOError
from krmfn.resources import STREAM_ROOT, ResourceNode, dump_documents, load_documents


logger = logging.getLogger(__name__)

MATCH_GLOBS = ("*.yaml", "*.yml")

RESOURCE_LIST_KIND = "ResourceList"


class ResourceReader(ABC):
    """Source of ResourceNodes."""

    @abstractmethod
    def read(self) -> list[ResourceNode]:
        """
        Read all nodes.

        Raises:
            ResourceIOError: If the source is unreadable or malformed
        """
        pass


class ResourceWriter(ABC):
    """Sink for ResourceNodes."""

    @abstractmethod
    def write(self, nodes: list[ResourceNode]) -> None:
        """
        Write all nodes.

        Raises:
            ResourceIOError: If the destination is unwritable
        """
        pass


class LocalPackageReader(ResourceReader):
    """
    Read every YAML document below a directory (or from a single file).

    Hidden files and directories are skipped. Each node is annotated with its
    path relative to the package root and its index inside the file.
    """

    def __init__(self, package_path: Path | str, match_globs: Iterable[str] = MATCH_GLOBS):
        self.package_path = Path(package_path)
        self.match_globs = tuple(match_globs)
        # relative path -> documents as read, used to detect unchanged files
        self._snapshot: dict[str, list[Any]] = {}

    @property
    def read_paths(self) -> list[str]:
        """Relative paths of the files read by the last ``read()``."""
        return list(self._snapshot)

    def read(self) -> list[ResourceNode]:
        if not self.package_path.exists():
            raise ResourceIOError(f"Package path does not exist: {self.package_path}")

        self._snapshot = {}
        nodes: list[ResourceNode] = []
        for file_path, rel_path in self._matching_files():
            nodes.extend(self._read_file(file_path, rel_path))

        logger.debug(
            f"Read {len(nodes)} resources from {len(self._snapshot)} files",
            extra={"event": "package_read", "metadata": {"path": str(self.package_path)}},
        )
        return nodes

    def _matching_files(self) -> list[tuple[Path, str]]:
        if self.package_path.is_file():
            return [(self.package_path, self.package_path.name)]

        found: dict[str, Path] = {}
        for pattern in self.match_globs:
            for file_path in self.package_path.rglob(pattern):
                rel = file_path.relative_to(self.package_path)
                if any(part.startswith(".") for part in rel.parts):
                    continue
                if file_path.is_file():
                    found[rel.as_posix()] = file_path
        return [(found[rel], rel) for rel in sorted(found)]

    def _read_file(self, file_path: Path, rel_path: str) -> list[ResourceNode]:
        try:
            text = file_path.read_text()
        except OSError as e:
            raise ResourceIOError(f"Cannot read {file_path}: {e}") from e

        try:
            documents = load_documents(text)
        except yaml.YAMLError as e:
            raise ResourceIOError(f"Invalid YAML in {file_path}: {e}") from e

        nodes = []
        for index, document in enumerate(documents):
            node = ResourceNode.from_wire(document)
            node.path = rel_path
            node.index = index
            nodes.append(node)

        # files without documents have no nodes, so writeback never owns them
        if nodes:
            self._snapshot[rel_path] = copy.deepcopy([n.value for n in nodes])
        return nodes


class LocalPackageReadWriter(LocalPackageReader, ResourceWriter):
    """
    Directory package that is written back to the place it was read from.

    ``read()`` must be called before ``write()`` so deletions can be scoped
    to the files of this run. Only files that held at least one document are
    tracked; empty and comment-only files are never deleted.
    """

    def write(self, nodes: list[ResourceNode]) -> None:
        root = self.package_path
        if not root.is_dir():
            raise ResourceIOError(f"Package path is not a directory: {root}")

        files = self._group_by_path(nodes)

        written = 0
        for rel_path, group in files.items():
            values = [node.value for node in group]
            if self._snapshot.get(rel_path) == values:
                continue
            self._write_file(rel_path, values)
            written += 1

        deleted = 0
        for rel_path in self._snapshot:
            if rel_path in files:
                continue
            try:
                (root / rel_path).unlink(missing_ok=True)
            except OSError as e:
                raise ResourceIOError(f"Cannot delete {root / rel_path}: {e}") from e
            deleted += 1

        logger.info(
            f"Wrote {written} files, deleted {deleted} files",
            extra={
                "event": "package_written",
                "metadata": {"path": str(root), "written": written, "deleted": deleted},
            },
        )

    def _group_by_path(self, nodes: list[ResourceNode]) -> dict[str, list[ResourceNode]]:
        files: dict[str, list[ResourceNode]] = {}
        for node in nodes:
            rel_path = node.path
            if not rel_path or rel_path == STREAM_ROOT:
                rel_path = node.default_path()
            files.setdefault(_clean_relative(rel_path), []).append(node)

        for group in files.values():
            group.sort(key=lambda n: n.index)
        return files

    def _write_file(self, rel_path: str, values: list[Any]) -> None:
        target = self.package_path / rel_path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(dump_documents(values))
        except OSError as e:
            raise ResourceIOError(f"Cannot write {target}: {e}") from e


class StreamReader(ResourceReader):
    """
    Read a multi-document YAML stream.

    A stream holding a single ResourceList is unwrapped to its items.
    Documents without a path annotation get the stream root path ".".
    """

    def __init__(self, stream: IO):
        self.stream = stream

    def read(self) -> list[ResourceNode]:
        try:
            data = self.stream.read()
        except OSError as e:
            raise ResourceIOError(f"Cannot read input stream: {e}") from e
        if isinstance(data, bytes):
            data = data.decode("utf-8")

        try:
            documents = load_documents(data)
        except yaml.YAMLError as e:
            raise ResourceIOError(f"Invalid YAML in input stream: {e}") from e

        if (
            len(documents) == 1
            and isinstance(documents[0], dict)
            and documents[0].get("kind") == RESOURCE_LIST_KIND
        ):
            documents = documents[0].get("items") or []

        nodes = []
        for index, document in enumerate(documents):
            node = ResourceNode.from_wire(document)
            node.annotations.setdefault("path", STREAM_ROOT)
            node.annotations.setdefault("index", str(index))
            nodes.append(node)
        return nodes


class StreamWriter(ResourceWriter):
    """Write nodes as one multi-document YAML stream."""

    def __init__(self, stream: IO):
        self.stream = stream

    def write(self, nodes: list[ResourceNode]) -> None:
        values = []
        for node in nodes:
            if node.path and node.path != STREAM_ROOT:
                values.append(node.to_wire())
            else:
                values.append(node.value)

        try:
            self.stream.write(dump_documents(values))
            self.stream.flush()
        except OSError as e:
            raise ResourceIOError(f"Cannot write output stream: {e}") from e


def _clean_relative(rel_path: str) -> str:
    """Normalise a node path and refuse paths that leave the package."""
    path = PurePosixPath(rel_path)
    if path.is_absolute() or ".." in path.parts:
        raise ResourceIOError(f"Resource path {rel_path} is outside of the package")
    return path.as_posix()
