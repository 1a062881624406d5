import logging
import textwrap
from pathlib import Path

import pytest

from krmfn.backends.base import FunctionBackend
from krmfn.errors import ExecutionError


@pytest.fixture(autouse=True)
def reset_krmfn_logger():
    """Drop handlers installed by setup_logging so tests don't leak them."""
    yield
    logger = logging.getLogger("krmfn")
    logger.handlers = []
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def write_package(tmp_path):
    """Write ``{relative path: yaml text}`` below tmp_path/pkg and return the dir."""
    def write(files: dict[str, str]) -> Path:
        root = tmp_path / "pkg"
        root.mkdir(exist_ok=True)
        for rel_path, text in files.items():
            target = root / rel_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(textwrap.dedent(text).lstrip())
        return root
    return write


def function_config(name: str, annotation: str) -> str:
    """YAML text of a function config resource with the function annotation."""
    indented = textwrap.indent(textwrap.dedent(annotation).strip(), " " * 8)
    return (
        "apiVersion: v1\n"
        "kind: ConfigMap\n"
        "metadata:\n"
        f"  name: {name}\n"
        "  annotations:\n"
        "    config.kubernetes.io/function: |\n"
        f"{indented}\n"
    )


class RecordingBackend(FunctionBackend):
    """
    In-memory backend used instead of docker/scripts/executables.

    Records the label of every function it runs into ``calls`` together with
    the items it was given; fails with ExecutionError when ``fail`` is set;
    otherwise applies ``transform`` to the ResourceList and returns it.
    """

    name = "fake"

    def __init__(self, calls, transform=None, fail=False, **kwargs):
        super().__init__(**kwargs)
        self.calls = calls
        self.transform = transform
        self.fail = fail

    def run(self, resource_list, spec):
        self.calls.append((spec.label, [dict(item) for item in resource_list["items"]]))
        if self.fail:
            raise ExecutionError(f"{spec.label} exploded")
        if self.transform is not None:
            self.transform(resource_list)
        return resource_list


@pytest.fixture
def recorder():
    """
    Build a backend provider backed by RecordingBackend.

    Usage:
        provider, calls = recorder(failing={"fn-2"}, transforms={"fn-1": fn})
    """
    def make(failing=(), transforms=None):
        calls = []
        transforms = transforms or {}

        def provider(spec):
            return RecordingBackend(
                calls,
                transform=transforms.get(spec.label),
                fail=spec.label in failing,
            )

        return provider, calls
    return make


def labels(calls) -> list[str]:
    return [label for label, _ in calls]
