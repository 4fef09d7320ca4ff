"""Run one PEP 517 hook in a fresh interpreter.

Invoked as ``python -S -s _hook_runner.py <hook> <control_dir>`` from the
source tree. ``<control_dir>/input.json`` names the backend, its extra
import path, the build environment's site directories and the hook
keyword arguments; the result is written to ``<control_dir>/output.json``.
A failing hook exits non-zero with its traceback on stderr.

This file must not import anything outside the standard library.
"""
import importlib
import json
import os
import site
import sys
import traceback

HOOKS = (
    "get_requires_for_build_wheel",
    "prepare_metadata_for_build_wheel",
    "build_wheel",
)


class BackendUnavailable(Exception):
    def __init__(self, message):
        super().__init__(message)
        self.message = message


def load_backend(spec, backend_path):
    module_name, _, object_path = spec.partition(":")
    if backend_path:
        sys.path[:0] = [os.path.abspath(p) for p in backend_path]
    try:
        backend = importlib.import_module(module_name)
    except ImportError:
        raise BackendUnavailable(traceback.format_exc())
    for attribute in filter(None, object_path.split(".")):
        backend = getattr(backend, attribute)
    return backend


def write_output(control_dir, result):
    with open(os.path.join(control_dir, "output.json"), "w", encoding="utf-8") as fh:
        json.dump(result, fh)


def main():
    if len(sys.argv) != 3 or sys.argv[1] not in HOOKS:
        sys.exit("usage: _hook_runner.py {%s} <control_dir>" % ",".join(HOOKS))
    hook_name, control_dir = sys.argv[1], sys.argv[2]
    here = os.path.dirname(os.path.abspath(__file__))
    sys.path[:] = [p for p in sys.path if os.path.abspath(p or ".") != here]
    with open(os.path.join(control_dir, "input.json"), encoding="utf-8") as fh:
        request = json.load(fh)

    for directory in request.get("site_dirs", []):
        site.addsitedir(directory)

    result = {"unsupported": False, "return_val": None}
    try:
        backend = load_backend(request["backend"], request.get("backend_path", []))
    except BackendUnavailable as exc:
        result["backend_unavailable"] = True
        result["traceback"] = exc.message
        write_output(control_dir, result)
        return

    hook = getattr(backend, hook_name, None)
    if hook is None:
        if hook_name == "get_requires_for_build_wheel":
            result["return_val"] = []
        else:
            result["unsupported"] = True
    else:
        result["return_val"] = hook(**request.get("kwargs", {}))
    write_output(control_dir, result)


if __name__ == "__main__":
    main()
