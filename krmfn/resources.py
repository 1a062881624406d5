"""
ResourceNode - one configuration document plus its path metadata.

A node wraps the value produced by ``yaml.safe_load`` (usually a mapping
shaped like a Kubernetes resource) and an annotation map that is kept
outside of the value. The annotations record where the document came from:

- path: slash-separated path relative to the package root ("." for streams)
- index: position of the document inside its file

When nodes are handed to a function, or written to a stream, the annotations
travel inside ``metadata.annotations`` of the document (see ``to_wire`` and
``from_wire``).
"""

import copy
from dataclasses import dataclass, field
from typing import Any

import yaml


PATH_ANNOTATION = "config.kubernetes.io/path"
INDEX_ANNOTATION = "config.kubernetes.io/index"
FUNCTION_ANNOTATION = "config.kubernetes.io/function"

# Annotations owned by krmfn; they are lifted out of documents on read
INTERNAL_ANNOTATIONS = {
    PATH_ANNOTATION: "path",
    INDEX_ANNOTATION: "index",
}

STREAM_ROOT = "."


@dataclass
class ResourceNode:
    """
    A structured document with krmfn annotations.

    Attributes:
        value: Document value (mapping, sequence or scalar)
        annotations: krmfn metadata (``path``, ``index``)
    """
    value: Any
    annotations: dict[str, str] = field(default_factory=dict)

    @property
    def path(self) -> str | None:
        return self.annotations.get("path")

    @path.setter
    def path(self, value: str) -> None:
        self.annotations["path"] = value

    @property
    def index(self) -> int:
        try:
            return int(self.annotations.get("index", 0))
        except ValueError:
            return 0

    @index.setter
    def index(self, value: int) -> None:
        self.annotations["index"] = str(value)

    @property
    def metadata(self) -> dict[str, Any]:
        """Return the document's ``metadata`` mapping (empty if absent)."""
        if not isinstance(self.value, dict):
            return {}
        metadata = self.value.get("metadata")
        return metadata if isinstance(metadata, dict) else {}

    @property
    def kind(self) -> str | None:
        if not isinstance(self.value, dict):
            return None
        return self.value.get("kind")

    @property
    def name(self) -> str | None:
        return self.metadata.get("name")

    def get_annotation(self, key: str) -> str | None:
        """Get an annotation from the document's own metadata."""
        annotations = self.metadata.get("annotations")
        if not isinstance(annotations, dict):
            return None
        return annotations.get(key)

    def copy(self) -> "ResourceNode":
        return ResourceNode(copy.deepcopy(self.value), dict(self.annotations))

    def to_wire(self) -> Any:
        """
        Return a copy of the value with path/index injected into its metadata.

        Non-mapping documents are returned unchanged.
        """
        value = copy.deepcopy(self.value)
        if not isinstance(value, dict) or not self.annotations:
            return value

        metadata = value.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
            value["metadata"] = metadata
        annotations = metadata.get("annotations")
        if not isinstance(annotations, dict):
            annotations = {}
            metadata["annotations"] = annotations

        for wire_key, key in INTERNAL_ANNOTATIONS.items():
            if key in self.annotations:
                annotations[wire_key] = str(self.annotations[key])
        return value

    @classmethod
    def from_wire(cls, value: Any) -> "ResourceNode":
        """
        Build a node from a document, lifting krmfn annotations out of it.

        Empty ``annotations``/``metadata`` mappings that only existed to carry
        krmfn annotations are removed again.
        """
        node = cls(value)
        if not isinstance(value, dict):
            return node

        metadata = value.get("metadata")
        if not isinstance(metadata, dict):
            return node
        annotations = metadata.get("annotations")
        if not isinstance(annotations, dict):
            return node

        removed = False
        for wire_key, key in INTERNAL_ANNOTATIONS.items():
            if wire_key in annotations:
                node.annotations[key] = str(annotations.pop(wire_key))
                removed = True

        if not removed:
            return node
        if not annotations:
            del metadata["annotations"]
        if not metadata:
            del value["metadata"]
        return node

    def restore_empty_metadata(self, original: Any) -> None:
        """
        Put back an empty ``metadata``/``annotations`` the original document had.

        ``to_wire`` fills such mappings with krmfn annotations and ``from_wire``
        drops them again, which would lose ``metadata: {}`` or
        ``annotations: null`` written by the user.
        """
        if not isinstance(self.value, dict) or not isinstance(original, dict):
            return
        if "metadata" not in original:
            return

        old = original["metadata"]
        if "metadata" not in self.value:
            if _is_blank_metadata(old):
                self.value["metadata"] = copy.deepcopy(old)
            return

        metadata = self.value["metadata"]
        if (
            isinstance(old, dict)
            and isinstance(metadata, dict)
            and "annotations" in old
            and not old["annotations"]
            and "annotations" not in metadata
        ):
            metadata["annotations"] = copy.deepcopy(old["annotations"])

    def default_path(self) -> str:
        """Default file name for a node that has no path, e.g. ``deployment_app.yaml``."""
        kind = (self.kind or "resource").lower()
        name = self.name
        base = f"{kind}_{name}" if name else kind
        return f"{base.lower()}.yaml"

    def __repr__(self) -> str:
        return f"ResourceNode(kind={self.kind}, name={self.name}, path={self.path})"


def load_documents(text: str) -> list[Any]:
    """
    Parse a multi-document YAML string.

    Empty documents (e.g. a trailing ``---``) are skipped.

    Raises:
        yaml.YAMLError: If the text is not valid YAML
    """
    return [doc for doc in yaml.safe_load_all(text) if doc is not None]


def dump_documents(values: list[Any]) -> str:
    """Serialize documents as a multi-document YAML string."""
    return yaml.safe_dump_all(
        values,
        default_flow_style=False,
        sort_keys=False,
        explicit_start=len(values) > 1,
    )


def _is_blank_metadata(metadata: Any) -> bool:
    """True for metadata holding nothing but an empty annotations mapping."""
    if not metadata:
        return True
    if not isinstance(metadata, dict):
        return False
    return set(metadata) == {"annotations"} and not metadata["annotations"]
