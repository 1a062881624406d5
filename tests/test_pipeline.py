"""Tests for the FunctionPipeline orchestrator.

Backends are replaced by RecordingBackend through ``backend_provider`` so the
tests control which functions fail and what they change.
"""

import io

import pytest
import yaml

from conftest import function_config, labels

from krmfn.config import RunConfig
from krmfn.errors import (
    ConfigurationError,
    DeferredFailuresError,
    ExecutionError,
    ResourceIOError,
    RunCancelledError,
)
from krmfn.function_spec import ExecBackendSpec, FunctionSpec
from krmfn.pipeline import FunctionPipeline, RunState


APP = """\
# application
apiVersion: apps/v1
kind: Deployment
metadata:
  name: app
spec:
  replicas: 1
"""

SVC = """\
kind: Service
metadata:
  name: svc
"""


def explicit(*names, deferred=()):
    return [
        FunctionSpec(backend=ExecBackendSpec(path=name), defer_failure=name in deferred)
        for name in names
    ]


def label_with(key, value):
    def transform(resource_list):
        for item in resource_list["items"]:
            item["metadata"].setdefault("labels", {})[key] = value
    return transform


def snapshot(root):
    return {p.relative_to(root).as_posix(): p.read_bytes() for p in sorted(root.rglob("*")) if p.is_file()}


class StateRecordingStream(io.StringIO):
    """Output stream that notes the pipeline state at every write."""

    pipeline = None

    def __init__(self):
        super().__init__()
        self.states = []

    def write(self, text):
        self.states.append(self.pipeline.state)
        return super().write(text)


class TestNoOp:
    """Runs without functions leave the package alone."""

    def test_empty_function_set(self, write_package, recorder):
        root = write_package({"app.yaml": APP, "nested/svc.yaml": SVC})
        before = snapshot(root)
        provider, calls = recorder()

        results = FunctionPipeline(RunConfig(root), backend_provider=provider).execute()

        assert results == []
        assert calls == []
        assert snapshot(root) == before

    def test_empty_and_comment_only_files_survive(self, write_package, recorder):
        root = write_package({"app.yaml": APP, "notes.yaml": "# todo: add services\n"})
        (root / "empty.yaml").write_text("")
        before = snapshot(root)
        provider, _ = recorder()

        FunctionPipeline(RunConfig(root), backend_provider=provider).execute()

        assert snapshot(root) == before

    def test_identity_function(self, write_package, recorder):
        root = write_package({"app.yaml": APP, "nested/svc.yaml": SVC})
        before = snapshot(root)
        provider, calls = recorder()

        FunctionPipeline(RunConfig(root, functions=explicit("fn")), backend_provider=provider).execute()

        assert labels(calls) == ["fn"]
        assert snapshot(root) == before


class TestOrdering:
    """Input functions run deepest first, then function paths, then explicit ones."""

    def test_input_functions_deepest_first(self, write_package, recorder):
        root = write_package({
            "fn.yaml": function_config("root", "exec: {path: fn-root}"),
            "b/fn.yaml": function_config("b", "exec: {path: fn-b}"),
            "a/fn.yaml": function_config("a", "exec: {path: fn-a}"),
            "a/x/functions/fn.yaml": function_config("ax", "exec: {path: fn-ax}"),
            "app.yaml": APP,
        })
        provider, calls = recorder()

        FunctionPipeline(RunConfig(root), backend_provider=provider).execute()

        assert labels(calls) == ["fn-ax", "fn-a", "fn-b", "fn-root"]

    def test_local_functions_see_their_subtree(self, write_package, recorder):
        root = write_package({
            "a/fn.yaml": function_config("fn-a", "exec: {path: fn-a}"),
            "a/app.yaml": APP,
            "b/svc.yaml": SVC,
        })
        provider, calls = recorder()

        FunctionPipeline(RunConfig(root), backend_provider=provider).execute()

        seen = sorted(item["metadata"]["name"] for item in calls[0][1])
        assert seen == ["app", "fn-a"]

    def test_sources_in_order(self, write_package, recorder, tmp_path):
        root = write_package({"fn.yaml": function_config("in-tree", "exec: {path: in-tree}")})
        fns = tmp_path / "fns"
        fns.mkdir()
        (fns / "fn.yaml").write_text(function_config("from-path", "exec: {path: from-path}"))
        provider, calls = recorder()
        config = RunConfig(
            root,
            function_paths=[fns],
            functions=explicit("explicit"),
            include_input_functions=True,
        )

        FunctionPipeline(config, backend_provider=provider).execute()

        assert labels(calls) == ["in-tree", "from-path", "explicit"]

    def test_each_function_sees_previous_output(self, write_package, recorder):
        root = write_package({"app.yaml": APP})
        provider, calls = recorder(transforms={"fn-1": label_with("step", "one")})

        FunctionPipeline(RunConfig(root, functions=explicit("fn-1", "fn-2")), backend_provider=provider).execute()

        assert calls[1][1][0]["metadata"]["labels"] == {"step": "one"}
        written = yaml.safe_load((root / "app.yaml").read_text())
        assert written["metadata"]["labels"] == {"step": "one"}


class TestFailures:
    """Fail-fast and deferred failures."""

    def test_fail_fast(self, write_package, recorder):
        root = write_package({"app.yaml": APP})
        before = snapshot(root)
        provider, calls = recorder(
            failing={"fn-2"},
            transforms={"fn-1": label_with("step", "one")},
        )
        pipeline = FunctionPipeline(
            RunConfig(root, functions=explicit("fn-1", "fn-2", "fn-3", "fn-4")),
            backend_provider=provider,
        )

        with pytest.raises(ExecutionError) as exc_info:
            pipeline.execute()

        assert not isinstance(exc_info.value, DeferredFailuresError)
        assert "fn-2 exploded" in str(exc_info.value)
        assert labels(calls) == ["fn-1", "fn-2"]
        assert pipeline.state == RunState.FAILED
        # nothing is written back after a fatal failure
        assert snapshot(root) == before

    def test_deferred_failures_aggregate(self, write_package, recorder):
        root = write_package({"app.yaml": APP})
        provider, calls = recorder(
            failing={"fn-2", "fn-4"},
            transforms={"fn-1": label_with("one", "yes"), "fn-3": label_with("three", "yes")},
        )
        pipeline = FunctionPipeline(
            RunConfig(root, functions=explicit("fn-1", "fn-2", "fn-3", "fn-4", deferred={"fn-2", "fn-4"})),
            backend_provider=provider,
        )

        with pytest.raises(DeferredFailuresError) as exc_info:
            pipeline.execute()

        assert labels(calls) == ["fn-1", "fn-2", "fn-3", "fn-4"]
        assert str(exc_info.value) == (
            "function fn-2 failed: fn-2 exploded\n---\nfunction fn-4 failed: fn-4 exploded"
        )
        assert len(exc_info.value.errors) == 2
        # successful functions are still written back
        written = yaml.safe_load((root / "app.yaml").read_text())
        assert written["metadata"]["labels"] == {"one": "yes", "three": "yes"}

    def test_deferred_failure_passes_input_through(self, write_package, recorder):
        root = write_package({"app.yaml": APP})
        provider, calls = recorder(failing={"fn-1"})

        with pytest.raises(DeferredFailuresError):
            FunctionPipeline(
                RunConfig(root, functions=explicit("fn-1", "fn-2", deferred={"fn-1"})),
                backend_provider=provider,
            ).execute()

        assert [item["metadata"]["name"] for item in calls[1][1]] == ["app"]

    def test_deferred_then_fatal(self, write_package, recorder):
        root = write_package({"app.yaml": APP})
        provider, calls = recorder(failing={"fn-1", "fn-2"})

        with pytest.raises(ExecutionError) as exc_info:
            FunctionPipeline(
                RunConfig(root, functions=explicit("fn-1", "fn-2", "fn-3", deferred={"fn-1"})),
                backend_provider=provider,
            ).execute()

        assert not isinstance(exc_info.value, DeferredFailuresError)
        assert labels(calls) == ["fn-1", "fn-2"]

    def test_network_required_runs_nothing(self, write_package, recorder):
        root = write_package({
            "fn.yaml": function_config("fn", "exec: {path: fn-first}"),
            "a/fn.yaml": function_config("net", "container:\n  image: fn-net\n  network: {required: true}\n"),
        })
        provider, calls = recorder()

        with pytest.raises(ConfigurationError, match="network required but not enabled"):
            FunctionPipeline(RunConfig(root), backend_provider=provider).execute()

        assert calls == []

    def test_script_escape_runs_nothing(self, write_package, recorder):
        root = write_package({
            "fn.yaml": function_config("fn", "exec: {path: fn-first}"),
            "a/fn.yaml": function_config("bad", "script: {path: ../../etc/passwd}"),
        })
        provider, calls = recorder()

        with pytest.raises(ConfigurationError, match="not allowed to start with ../"):
            FunctionPipeline(RunConfig(root, enable_script=True), backend_provider=provider).execute()

        assert calls == []

    def test_unreadable_package(self, write_package, recorder):
        root = write_package({"bad.yaml": "kind: [\n"})
        provider, calls = recorder()

        with pytest.raises(ResourceIOError):
            FunctionPipeline(RunConfig(root), backend_provider=provider).execute()

    def test_path_and_input(self, write_package):
        root = write_package({"app.yaml": APP})

        with pytest.raises(ConfigurationError, match="not both"):
            FunctionPipeline(RunConfig(root), input=io.StringIO(SVC)).execute()


class TestCancellation:
    """Cancellation stops before the next function starts."""

    def test_cancel_between_functions(self, write_package, recorder):
        root = write_package({"app.yaml": APP})
        before = snapshot(root)
        pipeline = None

        def cancel(resource_list):
            pipeline.cancel()

        provider, calls = recorder(transforms={"fn-1": cancel})
        pipeline = FunctionPipeline(
            RunConfig(root, functions=explicit("fn-1", "fn-2")),
            backend_provider=provider,
        )

        with pytest.raises(RunCancelledError, match="after 1 of 2"):
            pipeline.execute()

        assert labels(calls) == ["fn-1"]
        assert pipeline.cancelled
        assert snapshot(root) == before

    def test_cancel_before_start(self, write_package, recorder):
        root = write_package({"app.yaml": APP})
        provider, calls = recorder()
        pipeline = FunctionPipeline(RunConfig(root, functions=explicit("fn-1")), backend_provider=provider)
        pipeline.cancel()

        result = pipeline.run()

        assert not result.success
        assert isinstance(result.error, RunCancelledError)
        assert calls == []


class TestResultsFiles:
    """results-<n>.yaml files are numbered per bound function."""

    def test_numbering(self, write_package, recorder, tmp_path):
        root = write_package({"app.yaml": APP})
        results_dir = tmp_path / "results"
        make_provider, calls = recorder()

        def provider(spec):
            if spec.label == "skipped":
                return None
            return make_provider(spec)

        FunctionPipeline(
            RunConfig(root, functions=explicit("fn-1", "skipped", "fn-2"), results_dir=results_dir),
            backend_provider=provider,
        ).execute()

        assert labels(calls) == ["fn-1", "fn-2"]
        assert sorted(p.name for p in results_dir.iterdir()) == ["results-0.yaml", "results-1.yaml"]
        assert yaml.safe_load((results_dir / "results-1.yaml").read_text())["function"] == "fn-2"

    def test_counter_not_shared_between_pipelines(self, write_package, recorder, tmp_path):
        root = write_package({"app.yaml": APP})
        provider, _ = recorder()

        for results_dir in (tmp_path / "r1", tmp_path / "r2"):
            FunctionPipeline(
                RunConfig(root, functions=explicit("fn"), results_dir=results_dir),
                backend_provider=provider,
            ).execute()

        assert [p.name for p in (tmp_path / "r2").iterdir()] == ["results-0.yaml"]


class TestStreams:
    """Stream input and output."""

    def test_output_stream_leaves_package_untouched(self, write_package, recorder):
        root = write_package({"app.yaml": APP, "nested/svc.yaml": SVC})
        before = snapshot(root)
        provider, _ = recorder(transforms={"fn": label_with("seen", "yes")})
        out = io.StringIO()

        FunctionPipeline(
            RunConfig(root, functions=explicit("fn")),
            output=out,
            backend_provider=provider,
        ).execute()

        assert snapshot(root) == before
        documents = list(yaml.safe_load_all(out.getvalue()))
        assert [d["metadata"]["labels"] for d in documents] == [{"seen": "yes"}, {"seen": "yes"}]
        assert documents[1]["metadata"]["annotations"]["config.kubernetes.io/path"] == "nested/svc.yaml"

    def test_stream_in_stream_out(self, recorder):
        provider, calls = recorder(transforms={"fn": label_with("seen", "yes")})
        out = io.StringIO()

        FunctionPipeline(
            RunConfig(functions=explicit("fn")),
            input=io.StringIO(SVC),
            output=out,
            backend_provider=provider,
        ).execute()

        assert out.getvalue() == (
            "kind: Service\nmetadata:\n  name: svc\n  labels:\n    seen: 'yes'\n"
        )


class TestWriteback:
    """Package writeback follows the function output."""

    def test_removed_resources_delete_files(self, write_package, recorder):
        root = write_package({"app.yaml": APP, "nested/svc.yaml": SVC})

        def drop_services(resource_list):
            resource_list["items"] = [i for i in resource_list["items"] if i["kind"] != "Service"]

        provider, _ = recorder(transforms={"fn": drop_services})

        FunctionPipeline(RunConfig(root, functions=explicit("fn")), backend_provider=provider).execute()

        assert (root / "app.yaml").exists()
        assert not (root / "nested/svc.yaml").exists()

    def test_new_resource_from_local_function(self, write_package, recorder):
        root = write_package({"a/fn.yaml": function_config("gen", "exec: {path: gen}")})

        def generate(resource_list):
            resource_list["items"].append({"kind": "ConfigMap", "metadata": {"name": "made"}})

        provider, _ = recorder(transforms={"gen": generate})

        FunctionPipeline(RunConfig(root), backend_provider=provider).execute()

        assert yaml.safe_load((root / "a/configmap_made.yaml").read_text()) == {
            "kind": "ConfigMap",
            "metadata": {"name": "made"},
        }

    def test_sink_is_written_in_done(self, recorder):
        provider, _ = recorder()
        out = StateRecordingStream()
        pipeline = FunctionPipeline(
            RunConfig(functions=explicit("fn")),
            input=io.StringIO(SVC),
            output=out,
            backend_provider=provider,
        )
        out.pipeline = pipeline

        pipeline.execute()

        assert out.states == [RunState.DONE]
        assert pipeline.state == RunState.DONE

    def test_deferred_failure_fails_after_write(self, recorder):
        provider, _ = recorder(failing={"fn"})
        out = StateRecordingStream()
        pipeline = FunctionPipeline(
            RunConfig(functions=explicit("fn", deferred={"fn"})),
            input=io.StringIO(SVC),
            output=out,
            backend_provider=provider,
        )
        out.pipeline = pipeline

        with pytest.raises(DeferredFailuresError):
            pipeline.execute()

        assert out.states == [RunState.DONE]
        assert out.getvalue() == SVC
        assert pipeline.state == RunState.FAILED


class TestRunResult:
    """FunctionPipeline.run() reports instead of raising."""

    def test_success(self, write_package, recorder):
        root = write_package({"app.yaml": APP})
        provider, _ = recorder()

        result = FunctionPipeline(RunConfig(root, functions=explicit("fn")), backend_provider=provider).run()

        assert result.success
        assert result.state == RunState.DONE
        assert [r.function for r in result.functions] == ["fn"]
        assert result.error_message is None
        assert result.to_dict()["state"] == "done"

    def test_failure(self, write_package, recorder):
        root = write_package({"app.yaml": APP})
        provider, _ = recorder(failing={"fn"})

        result = FunctionPipeline(RunConfig(root, functions=explicit("fn")), backend_provider=provider).run()

        assert not result.success
        assert result.state == RunState.FAILED
        assert result.error_message == "function fn failed: fn exploded"
        assert result.to_dict()["functions"][0]["success"] is False


class TestDefaultBackends:
    """End to end with the real backend selection."""

    def test_script_function_in_tree(self, write_package):
        root = write_package({
            "a/fn.yaml": function_config("team", "script: {path: set_team.py}"),
            "a/app.yaml": APP,
            "b/svc.yaml": SVC,
        })
        (root / "a" / "set_team.py").write_text(
            "for item in resource_list['items']:\n"
            "    if item['kind'] == 'Deployment':\n"
            "        item['metadata']['labels'] = {'team': 'a'}\n"
        )
        svc_before = (root / "b/svc.yaml").read_bytes()

        FunctionPipeline(RunConfig(root, enable_script=True)).execute()

        app = yaml.safe_load((root / "a/app.yaml").read_text())
        assert app["metadata"]["labels"] == {"team": "a"}
        assert (root / "b/svc.yaml").read_bytes() == svc_before

    def test_disabled_script_is_skipped(self, write_package):
        root = write_package({
            "fn.yaml": function_config("team", "script: {path: set_team.py}"),
            "app.yaml": APP,
        })
        before = snapshot(root)

        results = FunctionPipeline(RunConfig(root)).execute()

        assert results == []
        assert snapshot(root) == before
