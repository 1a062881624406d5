"""
Child process entry point of the script backend.

Reads a ResourceList from stdin, runs the script named on the command line
with ``resource_list`` bound as a global, and writes the (possibly rebound)
ResourceList to stdout:

    python -m krmfn.backends.script_runner path/to/script.py < resource_list.yaml

Anything the script prints goes to stderr so stdout only carries YAML.
"""

import contextlib
import runpy
import sys

import yaml


RUN_NAME = "__krmfn_script__"


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("usage: python -m krmfn.backends.script_runner SCRIPT", file=sys.stderr)
        return 2

    namespace = {"resource_list": yaml.safe_load(sys.stdin)}
    try:
        with contextlib.redirect_stdout(sys.stderr):
            namespace = runpy.run_path(args[0], init_globals=namespace, run_name=RUN_NAME)
    except SystemExit as e:
        if e.code not in (None, 0):
            print(f"script exited with status {e.code}", file=sys.stderr)
            return e.code if isinstance(e.code, int) else 1
    except Exception as e:
        print(f"script raised {type(e).__name__}: {e}", file=sys.stderr)
        return 1

    yaml.safe_dump(namespace.get("resource_list"), sys.stdout, default_flow_style=False, sort_keys=False)
    return 0


if __name__ == "__main__":
    sys.exit(main())
