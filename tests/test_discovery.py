"""Tests for FunctionDiscovery."""

import pytest

from conftest import function_config

from krmfn.config import RunConfig
from krmfn.discovery import FunctionDiscovery
from krmfn.errors import ConfigurationError
from krmfn.function_spec import ContainerBackendSpec, ExecBackendSpec, FunctionSpec, Scope
from krmfn.resource_io import LocalPackageReader


def discover_input(root, **config):
    config = RunConfig(root, **config)
    return FunctionDiscovery(config, root).from_input(LocalPackageReader(root).read())


class TestFromInput:
    """Functions declared in the input tree."""

    def test_local_scope_from_path(self, write_package):
        root = write_package({
            "a/b/fn.yaml": function_config("fn", "exec: {path: fn-ab}"),
            "a/functions/fn.yaml": function_config("fn", "exec: {path: fn-a}"),
            "app.yaml": "kind: Deployment\n",
        })

        specs = discover_input(root)

        assert [(s.label, s.scope, s.scope_dir) for s in specs] == [
            ("fn-ab", Scope.LOCAL, "a/b"),
            ("fn-a", Scope.LOCAL, "a"),
        ]
        assert all(s.root == root for s in specs)

    def test_global_scope(self, write_package):
        root = write_package({"a/fn.yaml": function_config("fn", "exec: {path: fn}")})

        specs = discover_input(root, global_scope=True)

        assert specs[0].scope == Scope.GLOBAL
        assert specs[0].scope_dir == "."

    def test_declaration_without_backend_is_skipped(self, write_package):
        root = write_package({"fn.yaml": function_config("fn", "deferFailure: true")})
        assert discover_input(root) == []

    def test_disabled_by_config(self, write_package):
        root = write_package({"fn.yaml": function_config("fn", "exec: {path: fn}")})
        assert discover_input(root, include_input_functions=False) == []

    def test_not_read_when_functions_given(self, write_package):
        root = write_package({"fn.yaml": function_config("fn", "exec: {path: in-tree}")})
        assert discover_input(root, functions=[{"exec": {"path": "explicit"}}]) == []

    def test_network_required_but_disabled(self, write_package):
        root = write_package({
            "a/fn.yaml": function_config(
                "fn", "container:\n  image: example.com/fn:v1\n  network:\n    required: true\n"
            ),
        })

        with pytest.raises(ConfigurationError) as exc_info:
            discover_input(root)

        message = str(exc_info.value)
        assert "network required but not enabled" in message
        assert "example.com/fn:v1" in message
        assert "a/fn.yaml" in message

    def test_network_enabled(self, write_package):
        root = write_package({
            "fn.yaml": function_config("fn", "container:\n  image: fn\n  network: {required: true}\n"),
        })

        assert discover_input(root, network=True)[0].network == "bridge"
        assert discover_input(root, network=True, network_name="ci")[0].network == "ci"

    def test_no_network_when_not_required(self, write_package):
        root = write_package({"fn.yaml": function_config("fn", "container: {image: fn}")})
        assert discover_input(root, network=True)[0].network is None

    @pytest.mark.parametrize("script_path,message", [
        ("../../etc/passwd", "not allowed to start with ../"),
        ("/etc/passwd", "absolute function path"),
    ])
    def test_script_path_outside_package(self, write_package, script_path, message):
        root = write_package({
            "a/fn.yaml": function_config("fn", f"script: {{path: '{script_path}'}}"),
        })

        with pytest.raises(ConfigurationError, match=message):
            discover_input(root)

    def test_script_path_checked_even_when_scripts_disabled(self, write_package):
        root = write_package({"fn.yaml": function_config("fn", "script: {path: ../x.py}")})

        with pytest.raises(ConfigurationError):
            discover_input(root, enable_script=False)


class TestFromFunctionPaths:
    """Functions read from configured function paths."""

    def test_directory(self, write_package, tmp_path):
        root = write_package({"app.yaml": "kind: Deployment\n"})
        fns = tmp_path / "fns"
        fns.mkdir()
        (fns / "a.yaml").write_text(function_config("a", "exec: {path: fn-a}"))
        (fns / "b.yaml").write_text(function_config("b", "exec: {path: fn-b}"))
        (fns / "plain.yaml").write_text("kind: NotAFunction\n")

        discovery = FunctionDiscovery(RunConfig(root, function_paths=[fns]), root)
        specs = discovery.from_function_paths()

        assert [s.label for s in specs] == ["fn-a", "fn-b"]
        assert all(s.scope == Scope.GLOBAL for s in specs)
        assert all(s.root == fns for s in specs)

    def test_single_file(self, write_package, tmp_path):
        root = write_package({"app.yaml": "kind: Deployment\n"})
        fn_file = tmp_path / "fn.yaml"
        fn_file.write_text(function_config("fn", "exec: {path: fn}"))

        specs = FunctionDiscovery(RunConfig(root, function_paths=[fn_file]), root).from_function_paths()

        assert [s.label for s in specs] == ["fn"]
        assert specs[0].root == tmp_path


class TestFromFunctions:
    """Explicitly supplied functions."""

    def test_accepts_specs_declarations_and_resources(self, tmp_path):
        config = RunConfig(functions=[
            FunctionSpec(backend=ExecBackendSpec(path="spec")),
            {"exec": {"path": "declaration"}},
            {
                "kind": "ConfigMap",
                "metadata": {
                    "name": "fn",
                    "annotations": {"config.kubernetes.io/function": "exec: {path: resource}"},
                },
            },
        ])

        specs = FunctionDiscovery(config, tmp_path).from_functions()

        assert [s.label for s in specs] == ["spec", "declaration", "resource"]
        assert all(s.scope == Scope.GLOBAL for s in specs)
        assert all(s.root == tmp_path for s in specs)
        assert specs[2].function_config.name == "fn"

    def test_unsupported_declaration(self, tmp_path):
        config = RunConfig(functions=["example.com/fn:v1"])
        with pytest.raises(ConfigurationError, match="Unsupported function declaration"):
            FunctionDiscovery(config, tmp_path).from_functions()

    def test_explicit_container_needs_network(self, tmp_path):
        config = RunConfig(functions=[
            FunctionSpec(backend=ContainerBackendSpec(image="fn", network_required=True)),
        ])
        with pytest.raises(ConfigurationError, match="network required"):
            FunctionDiscovery(config, tmp_path).from_functions()
