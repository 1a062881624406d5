"""
CLI interface for krmfn.

Runs configuration functions against a package directory, or against a
YAML stream on stdin when no directory is given.
"""

import signal
import sys
from pathlib import Path

import click

from krmfn import __version__
from krmfn.config import RunConfig, StorageMount, load_config
from krmfn.errors import ConfigurationError, KrmFnError, RunCancelledError
from krmfn.function_spec import ContainerBackendSpec, ExecBackendSpec, FunctionSpec, ScriptBackendSpec
from krmfn.pipeline import FunctionPipeline
from krmfn.utils import format_duration, print_banner, print_error, print_success, print_warning, setup_logging


EXIT_FAILURE = 1
EXIT_CANCELLED = 130


@click.group()
@click.version_option(version=__version__, prog_name="krmfn")
def main():
    """
    krmfn - run configuration functions against resource packages.
    """


def _explicit_functions(images, exec_paths, script_paths, network_required) -> list[FunctionSpec]:
    specs = [
        FunctionSpec(backend=ContainerBackendSpec(image=image, network_required=network_required))
        for image in images
    ]
    specs.extend(FunctionSpec(backend=ExecBackendSpec(path=p)) for p in exec_paths)
    specs.extend(FunctionSpec(backend=ScriptBackendSpec(path=p)) for p in script_paths)
    return specs


def _build_config(config_file, directory, **options) -> RunConfig:
    """Merge a config file (if any) with command-line options; options win."""
    config = load_config(config_file) if config_file else RunConfig()

    if directory:
        config.path = Path(directory)
    config.function_paths.extend(Path(p) for p in options["fn_paths"])
    config.functions.extend(_explicit_functions(
        options["images"], options["exec_paths"], options["script_paths"], options["network"],
    ))
    if options["include_input_functions"] is not None:
        config.include_input_functions = options["include_input_functions"]

    for flag in ("global_scope", "network", "enable_script", "enable_exec", "disable_containers"):
        if options[flag]:
            setattr(config, flag, True)
    if options["network_name"]:
        config.network_name = options["network_name"]
    if options["results_dir"]:
        config.results_dir = Path(options["results_dir"])
    if options["timeout"]:
        config.timeout_seconds = options["timeout"]
    config.storage_mounts.extend(StorageMount.parse(m) for m in options["mounts"])
    return config


def _install_signal_handlers(pipeline: FunctionPipeline) -> dict:
    """Cancel the pipeline on SIGINT/SIGTERM; return the previous handlers."""
    def handle(signum, frame):
        print_warning(f"Received signal {signum}, stopping after the current function")
        pipeline.cancel()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, handle)
    return previous


@main.command("run")
@click.argument("directory", required=False, type=click.Path(file_okay=False))
@click.option("--config", "config_file", type=click.Path(dir_okay=False), help="YAML run configuration")
@click.option("--fn-path", "fn_paths", multiple=True, type=click.Path(exists=True), help="Read functions from this path (repeatable)")
@click.option("--image", "images", multiple=True, help="Run this container image as a function (repeatable)")
@click.option("--exec-path", "exec_paths", multiple=True, help="Run this executable as a function (repeatable)")
@click.option("--script-path", "script_paths", multiple=True, help="Run this Python script as a function (repeatable)")
@click.option("--include-input-functions/--no-input-functions", default=None, help="Run functions declared in the input")
@click.option("--global-scope", is_flag=True, help="Scope functions from the input to the whole package")
@click.option("--network", is_flag=True, help="Allow network access for functions that require it")
@click.option("--network-name", default="", help="Docker network for functions with network access")
@click.option("--enable-script", is_flag=True, help="Allow Python script functions")
@click.option("--enable-exec", is_flag=True, help="Allow executable functions")
@click.option("--disable-containers", is_flag=True, help="Skip container functions")
@click.option("--results-dir", type=click.Path(file_okay=False), help="Write one results file per function here")
@click.option("--mount", "mounts", multiple=True, help="Storage mount for containers, e.g. type=bind,src=/a,dst=/a")
@click.option("--timeout", type=float, help="Timeout in seconds for each function")
@click.option("--output", "output", type=click.Choice(["-"]), help="Write to stdout instead of the package")
@click.option("--log-format", type=click.Choice(["structured", "pretty"]), default=None, help="Log output format")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def run(directory, config_file, output, log_format, verbose, **options):
    """
    Run functions against DIRECTORY (or stdin when omitted).

    Examples:

        krmfn run ./package

        krmfn run ./package --fn-path ./functions --results-dir ./results

        cat resources.yaml | krmfn run --image example.com/set-labels:v1

        krmfn run ./package --enable-script --output -
    """
    try:
        config = _build_config(config_file, directory, **options)
        config.logging.setdefault("level", "INFO")
        if verbose:
            config.logging["level"] = "DEBUG"
        if log_format:
            config.logging["format"] = log_format
        setup_logging(
            log_level=config.get_log_level(),
            log_format=config.get_log_format(),
            log_file=config.get_log_file_path(),
        )
    except ConfigurationError as e:
        print_error(str(e))
        raise SystemExit(EXIT_FAILURE)

    pipeline = FunctionPipeline(
        config,
        output=sys.stdout if output == "-" else None,
    )
    previous_handlers = _install_signal_handlers(pipeline)
    try:
        result = pipeline.run()
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)

    if result.success:
        print_success(
            f"Ran {len(result.functions)} functions in {format_duration(result.duration_seconds)}"
        )
        return

    print_error(result.error_message)
    if isinstance(result.error, RunCancelledError):
        raise SystemExit(EXIT_CANCELLED)
    raise SystemExit(EXIT_FAILURE)


@main.command("validate")
@click.argument("directory", type=click.Path(exists=True, file_okay=False))
@click.option("--config", "config_file", type=click.Path(dir_okay=False), help="YAML run configuration")
def validate(directory, config_file):
    """
    Check the functions declared under DIRECTORY without running them.

    Lists the functions in execution order.
    """
    from krmfn.discovery import FunctionDiscovery
    from krmfn.ordering import sort_functions
    from krmfn.resource_io import LocalPackageReader

    try:
        config = load_config(config_file) if config_file else RunConfig()
        config.path = Path(directory)
        config.validate()
        root = config.path.resolve()
        nodes = LocalPackageReader(root).read()
        discovery = FunctionDiscovery(config, root)
        specs = (
            sort_functions(discovery.from_input(nodes))
            + discovery.from_function_paths()
            + discovery.from_functions()
        )
    except KrmFnError as e:
        print_error(str(e))
        raise SystemExit(EXIT_FAILURE)

    print_banner(f"Functions in {directory}")
    for position, spec in enumerate(specs, start=1):
        where = spec.source_path or "explicit"
        click.echo(f"{position}. {spec.label} [{spec.scope.value}:{spec.scope_dir}] ({where})")
    print_success(f"{len(nodes)} resources, {len(specs)} functions")


if __name__ == "__main__":
    main()
