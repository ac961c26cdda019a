"""Tests for search-path computation and the search-path targets."""

import importlib.machinery
import importlib.util
import os
import subprocess
import sys
import textwrap

import pytest

from pyenclave import path_helpers


class TestComputeSearchPath:
    def test_modules_dir_comes_first(self, tmp_path):
        env = tmp_path / "env"
        (env / "Modules").mkdir(parents=True)

        result = path_helpers.compute_search_path(env, include_system_paths=False)

        assert result[0] == os.path.join(str(env), "Modules")

    def test_isolated_path_holds_only_essential_paths(self, tmp_path):
        env = tmp_path / "env"
        site_dir = tmp_path / "site-packages"
        site_dir.mkdir()

        result = path_helpers.compute_search_path(env, include_system_paths=False, original=[str(site_dir)])

        assert str(site_dir) not in result
        essentials = [p for p in path_helpers.essential_host_paths() if os.path.exists(p)]
        assert set(result[1:]) == set(essentials)

    def test_system_paths_follow_environment_minus_user_site(self, tmp_path):
        env = tmp_path / "env"
        lib = tmp_path / "lib"
        user_site = tmp_path / "user" / "site"
        for d in (lib, user_site):
            d.mkdir(parents=True)

        result = path_helpers.compute_search_path(
            env,
            include_system_paths=True,
            original=[str(lib), str(user_site)],
            user_paths=[str(tmp_path / "user")],
        )

        assert result == [os.path.join(str(env), "Modules"), str(lib)]

    def test_missing_and_duplicate_entries_dropped(self, tmp_path):
        env = tmp_path / "env"
        lib = tmp_path / "lib"
        lib.mkdir()

        result = path_helpers.compute_search_path(
            env,
            include_system_paths=True,
            original=[str(lib), str(tmp_path / "gone"), str(lib), ""],
            user_paths=[],
        )

        assert result.count(str(lib)) == 1
        assert str(tmp_path / "gone") not in result


class TestUserProfilePaths:
    def test_prefix_match_is_component_wise(self, tmp_path):
        user = str(tmp_path / "user")
        assert path_helpers.is_user_profile_path(os.path.join(user, "lib"), [user])
        assert path_helpers.is_user_profile_path(user, [user])
        assert not path_helpers.is_user_profile_path(user + "-other", [user])


def _stdlib_extension():
    """Name and directory of a compiled stdlib module the interpreter has not loaded at startup."""
    for name in ("mmap", "_csv", "_lsprof", "_bisect", "select"):
        spec = importlib.util.find_spec(name)
        if spec is not None and spec.origin and spec.origin.endswith(tuple(importlib.machinery.EXTENSION_SUFFIXES)):
            return name, os.path.dirname(spec.origin)
    pytest.skip("interpreter has no shared-library stdlib modules")


def _norm_all(paths):
    return {os.path.normcase(os.path.realpath(p)) for p in paths}


class TestEssentialHostPaths:
    def test_includes_compiled_stdlib_directory(self, tmp_path):
        _, dynload = _stdlib_extension()

        result = path_helpers.compute_search_path(tmp_path / "env", include_system_paths=False)

        assert os.path.normcase(os.path.realpath(dynload)) in _norm_all(result)

    def test_never_resolves_against_a_virtualenv_prefix(self):
        if sys.prefix == sys.base_prefix:
            pytest.skip("not running inside a virtual environment")

        venv = os.path.normcase(os.path.realpath(sys.prefix))
        for path in _norm_all(path_helpers.interpreter_library_paths()):
            assert not path.startswith(venv + os.sep)

    def test_includes_pip_and_pyenclave_parents(self, tmp_path):
        result = _norm_all(path_helpers.compute_search_path(tmp_path / "env", include_system_paths=False))

        pyenclave_parent = os.path.dirname(os.path.dirname(os.path.abspath(path_helpers.__file__)))
        assert os.path.normcase(os.path.realpath(pyenclave_parent)) in result
        pip_spec = importlib.util.find_spec("pip")
        if pip_spec is not None:
            pip_parent = os.path.dirname(pip_spec.submodule_search_locations[0])
            assert os.path.normcase(os.path.realpath(pip_parent)) in result

    def test_missing_package_is_skipped(self, monkeypatch):
        monkeypatch.setattr(path_helpers.importlib.util, "find_spec", lambda name: None)

        assert path_helpers.essential_host_paths() == path_helpers.interpreter_library_paths()

    @pytest.mark.subprocess
    def test_activated_interpreter_imports_compiled_stdlib_and_pip(self, tmp_path):
        extension, _ = _stdlib_extension()
        check_pip = importlib.util.find_spec("pip") is not None
        script = textwrap.dedent(
            f"""
            import importlib
            from pyenclave import EnclaveManager
            from pyenclave.config import load_config

            manager = EnclaveManager(config=load_config(home={str(tmp_path / "home")!r}), confirm=lambda m: True)
            manager.create("web")
            manager.activate("web")
            try:
                importlib.import_module({extension!r})
                if {check_pip!r}:
                    importlib.import_module("pip")
            finally:
                manager.deactivate()
            print("ok")
            """
        )
        package_parent = os.path.dirname(os.path.dirname(os.path.abspath(path_helpers.__file__)))
        env = dict(os.environ, PYTHONPATH=package_parent)
        env.pop("PYENCLAVE_HOME", None)

        proc = subprocess.run(
            [sys.executable, "-c", script], env=env, capture_output=True, text=True, timeout=120, check=False
        )

        assert proc.returncode == 0, proc.stderr
        assert proc.stdout.strip().endswith("ok")


class TestTargets:
    def test_sys_path_target_keeps_list_identity(self, monkeypatch):
        live = list(sys.path)
        monkeypatch.setattr(sys, "path", live)
        target = path_helpers.SysPathTarget()

        target.write(["/a", "/b"])

        assert sys.path is live
        assert target.read() == ["/a", "/b"]

    def test_environment_variable_target_round_trip(self, monkeypatch):
        monkeypatch.delenv("PYENCLAVE_TEST_PATH", raising=False)
        target = path_helpers.EnvironmentVariableTarget("PYENCLAVE_TEST_PATH")

        assert target.read() == []
        target.write(["/x", "/y"])
        assert os.environ["PYENCLAVE_TEST_PATH"] == os.pathsep.join(["/x", "/y"])
        assert target.read() == ["/x", "/y"]
        assert target.description == "$PYENCLAVE_TEST_PATH"

    def test_environment_variable_target_empty_write_unsets(self, monkeypatch):
        monkeypatch.setenv("PYENCLAVE_TEST_PATH", "/x")
        target = path_helpers.EnvironmentVariableTarget("PYENCLAVE_TEST_PATH")

        target.write([])

        assert "PYENCLAVE_TEST_PATH" not in os.environ
