"""
Ordering of functions declared inside the resource tree.

Functions deeper in the directory tree run first, so nested configuration is
resolved before it is folded into its ancestors. Functions kept in a
``functions`` directory are scoped to the directory above it.
"""

from pathlib import PurePosixPath

from krmfn.function_spec import FunctionSpec
from krmfn.resources import STREAM_ROOT, ResourceNode


FUNCTIONS_DIR = "functions"


def function_scope_dir(path: str | None) -> str:
    """
    Return the directory a function declared at ``path`` is scoped to.

    Examples:
        "a/b/fn.yaml"           -> "a/b"
        "a/b/functions/fn.yaml" -> "a/b"
        "fn.yaml"               -> "."
    """
    if not path:
        return STREAM_ROOT
    parent = PurePosixPath(path.replace("\\", "/")).parent
    if parent.name == FUNCTIONS_DIR:
        # the functions dir itself does not count as scope
        parent = parent.parent
    return parent.as_posix()


def scope_depth(scope_dir: str) -> int:
    """Number of path segments in a scope directory, the root being 0."""
    if scope_dir in ("", STREAM_ROOT):
        return 0
    return len(scope_dir.split("/"))


def sort_functions(specs: list[FunctionSpec]) -> list[FunctionSpec]:
    """
    Sort functions declared in the input so that the deepest run first.

    Ties are broken by the scope directory path, ascending. The sort is
    stable, so functions sharing a scope directory keep their input order.
    """
    def sort_key(spec: FunctionSpec) -> tuple[int, str]:
        scope_dir = function_scope_dir(spec.source_path)
        return (-scope_depth(scope_dir), scope_dir)

    return sorted(specs, key=sort_key)


def in_scope(node: ResourceNode, scope_dir: str) -> bool:
    """Check whether a resource lies at or below a scope directory."""
    if scope_dir in ("", STREAM_ROOT):
        return True
    path = node.path
    if not path or path == STREAM_ROOT:
        return False
    return PurePosixPath(path).is_relative_to(scope_dir)
