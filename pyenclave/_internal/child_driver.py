"""Import worker for fully isolated imports.

The host copies this file to a temporary location and runs it as
``python -S -E -s child_driver.py REQUEST OUTPUT``. It must only depend on the
standard library: by the time it runs, ``sys.path`` is replaced with exactly the
environment's ``Modules`` directory and the interpreter's own library paths.

REQUEST is a JSON file::

    {"search_path": [...], "target": "name", "plan": [{"name": ..., "modules": [...]}, ...]}

``plan`` is ordered deepest dependency first. OUTPUT receives a JSON descriptor
of every module imported, with its file location, so the host can attach the
target without exposing its own search path to the environment.
"""

from __future__ import annotations

import importlib
import json
import sys
import traceback

EXIT_OK = 0
EXIT_BAD_REQUEST = 2
EXIT_TARGET_FAILED = 3


def _describe(module_name: str) -> dict:
    module = sys.modules[module_name]
    search = getattr(module, "__path__", None)
    version = getattr(module, "__version__", None)
    return {
        "file": getattr(module, "__file__", None),
        "is_package": search is not None,
        "search_locations": list(search) if search is not None else [],
        "version": str(version) if version is not None else None,
    }


def run(request: dict) -> tuple[int, dict]:
    sys.path[:] = list(request["search_path"])
    importlib.invalidate_caches()

    target = request["target"]
    descriptor: dict = {
        "target": target,
        "search_path": list(sys.path),
        "modules": {},
        "imported": [],
        "failed": [],
    }
    seen: set[str] = set()
    target_ok = True

    for step in request.get("plan", []):
        dist_name = step["name"]
        for module_name in step.get("modules", []):
            if module_name in seen:
                continue
            seen.add(module_name)
            try:
                importlib.import_module(module_name)
            except BaseException as exc:  # noqa: BLE001 - report every failure mode to the host
                descriptor["failed"].append({"name": dist_name, "module": module_name, "error": repr(exc)})
                if dist_name == target:
                    target_ok = False
                continue
            descriptor["imported"].append(module_name)
            descriptor["modules"][module_name] = _describe(module_name)

    return (EXIT_OK if target_ok else EXIT_TARGET_FAILED), descriptor


def main(argv: list[str]) -> int:
    if len(argv) != 3:
        sys.stderr.write("usage: child_driver.py REQUEST OUTPUT\n")
        return EXIT_BAD_REQUEST
    try:
        with open(argv[1], encoding="utf-8") as fh:
            request = json.load(fh)
    except (OSError, ValueError) as exc:
        sys.stderr.write(f"unreadable request: {exc}\n")
        return EXIT_BAD_REQUEST

    try:
        code, descriptor = run(request)
    except Exception:
        traceback.print_exc()
        return EXIT_BAD_REQUEST

    with open(argv[2], "w", encoding="utf-8") as fh:
        json.dump(descriptor, fh)
    if code != EXIT_OK:
        for failure in descriptor["failed"]:
            sys.stderr.write(f"{failure['module']}: {failure['error']}\n")
    return code


if __name__ == "__main__":
    sys.exit(main(sys.argv))
