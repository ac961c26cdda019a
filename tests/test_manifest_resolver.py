"""Tests for manifest discovery and in-environment dependency resolution."""

import os

import pytest

from pyenclave._internal import manifest
from pyenclave._internal.resolver import (
    AssemblyRef,
    ConflictType,
    DependencyResolver,
    build_remediation,
)
from pyenclave.errors import DependencyConflict


@pytest.fixture
def env(tmp_path):
    root = tmp_path / "env"
    (root / "Modules").mkdir(parents=True)
    return root


def _modules(env):
    return env / "Modules"


class TestManifest:
    def test_versioned_newest_first_then_flat(self, env, make_dist):
        make_dist(_modules(env), "foo", "1.0")
        make_dist(_modules(env), "foo", "10.0", files={"foo/__init__.py": ""})
        make_dist(_modules(env), "foo", "2.0", files={"foo/__init__.py": ""})
        egg = _modules(env) / "foo.egg-info"
        egg.mkdir()
        (egg / "PKG-INFO").write_text("Metadata-Version: 1.0\nName: foo\nVersion: 0.5\n", encoding="utf-8")

        found = manifest.find_manifest_dirs("FOO", _modules(env))

        assert [p.name for p in found] == [
            "foo-10.0.dist-info",
            "foo-2.0.dist-info",
            "foo-1.0.dist-info",
            "foo.egg-info",
        ]
        assert manifest.read_manifest(found[-1]).version == "0.5"

    def test_name_normalisation(self, env, make_dist):
        make_dist(_modules(env), "My.Package", "1.0")

        assert manifest.locate_manifest("my-package", _modules(env)) is not None
        assert manifest.locate_manifest("my_package", _modules(env)) is not None
        assert manifest.locate_manifest("other", _modules(env)) is None
        assert manifest.locate_manifest("x", env / "missing") is None

    def test_read_manifest_fields(self, env, make_dist):
        dist = make_dist(
            _modules(env),
            "demo",
            "1.2",
            requires=["dep>=1", 'extra-dep; extra == "full"'],
            files={"demo/__init__.py": "", "demo/_speedups.so": ""},
        )

        m = manifest.read_manifest(dist)

        assert (m.name, m.version, m.top_level) == ("demo", "1.2", ["demo"])
        assert [f.name for f in m.native_files] == ["_speedups.so"]
        required, nested = m.split_requirements()
        assert [r.name for r in required] == ["dep"]
        assert nested == []
        required, nested = m.split_requirements(("full",))
        assert [r.name for r in nested] == ["extra-dep"]

    def test_read_manifest_without_metadata(self, env):
        empty = _modules(env) / "broken-1.0.dist-info"
        empty.mkdir()

        with pytest.raises(ValueError):
            manifest.read_manifest(empty)

    def test_iter_manifests_skips_unreadable(self, env, make_dist, caplog):
        make_dist(_modules(env), "good", "1.0")
        (_modules(env) / "bad-1.0.dist-info").mkdir()

        names = [m.name for m in manifest.iter_manifests(_modules(env))]

        assert names == ["good"]
        assert "Unreadable manifest" in caplog.text

    def test_top_level_derived_from_record(self, env, make_dist):
        dist = make_dist(_modules(env), "single", "1.0", files={"single_mod.py": ""}, top_level=[])
        (dist / "top_level.txt").unlink()

        assert manifest.read_manifest(dist).top_level == ["single_mod"]

    def test_native_module_name(self, tmp_path):
        root = tmp_path
        path = root / "pkg" / "sub" / "_core.cpython-312-x86_64-linux-gnu.so"
        assert manifest.native_module_name(path, root) == "pkg.sub._core"


class TestResolve:
    def test_tree_and_counts(self, env, make_dist):
        make_dist(_modules(env), "app", "1.0", requires=["lib>=1", "util"])
        make_dist(_modules(env), "lib", "1.5", requires=["util"])
        make_dist(_modules(env), "util", "0.3")

        tree = DependencyResolver().resolve("app", env)

        assert tree.root.name == "app"
        assert tree.root.resolved
        assert sorted(d.name for d in tree.root.dependencies) == ["lib", "util"]
        assert tree.count == 3
        assert tree.unresolved == []
        # util is reachable at depth 1 and 2; the deepest occurrence wins.
        assert tree.all["util"].depth == 2

    def test_missing_dependency_recorded(self, env, make_dist):
        make_dist(_modules(env), "app", "1.0", requires=["ghost"])

        tree = DependencyResolver().resolve("app", env)

        ghost = tree.all["ghost"]
        assert not ghost.resolved
        assert ghost.resolved_manifest_path is None
        assert [(u.name, u.reason) for u in tree.unresolved] == [("ghost", "not_found")]

    def test_root_not_installed(self, env):
        tree = DependencyResolver().resolve("nothing", env)
        assert tree.root is not None
        assert not tree.root.resolved

    def test_self_cycle_terminates_at_max_depth(self, env, make_dist):
        make_dist(_modules(env), "loop", "1.0", requires=["loop"])

        tree = DependencyResolver(max_depth=3).resolve("loop", env)

        assert tree.count == 1
        assert any(u.reason == "max_depth" and u.depth == 4 for u in tree.unresolved)

    def test_mutual_cycle_terminates(self, env, make_dist):
        make_dist(_modules(env), "a", "1.0", requires=["b"])
        make_dist(_modules(env), "b", "1.0", requires=["a"])

        tree = DependencyResolver(max_depth=10).resolve("a", env)

        assert set(tree.all) == {"a", "b"}
        assert any(u.reason == "max_depth" for u in tree.unresolved)

    def test_extras_activate_nested_requirements(self, env, make_dist):
        make_dist(_modules(env), "app", "1.0", requires=['plugin; extra == "full"'])
        make_dist(_modules(env), "plugin", "1.0")

        plain = DependencyResolver().resolve("app", env)
        full = DependencyResolver().resolve("app", env, extras=["full"])

        assert "plugin" not in plain.all
        assert "plugin" in full.all

    def test_unsatisfied_specifier_warns(self, env, make_dist, caplog):
        make_dist(_modules(env), "app", "1.0", requires=["lib>=2"])
        make_dist(_modules(env), "lib", "1.0")

        tree = DependencyResolver().resolve("app", env)

        assert tree.all["lib"].resolved
        assert "lib' 1.0 installed but >=2 required" in caplog.text

    def test_never_consults_host_packages(self, env):
        # pytest is importable in the host, but not installed in the environment.
        tree = DependencyResolver().resolve("pytest", env)
        assert not tree.root.resolved


class TestConflicts:
    @pytest.fixture
    def native_env(self, env, make_dist):
        make_dist(_modules(env), "app", "1.0", requires=["fastlib"])
        make_dist(_modules(env), "fastlib", "2.0", files={"fastlib/__init__.py": "", "fastlib/_core.so": ""})
        return env

    def _required_location(self, env):
        return os.path.realpath(_modules(env) / "fastlib" / "_core.so")

    def test_version_mismatch(self, native_env):
        resolver = DependencyResolver()
        tree = resolver.resolve("app", native_env)
        loaded = {"fastlib._core": AssemblyRef("fastlib._core", "1.0", "/host/site/fastlib/_core.so")}

        conflicts = resolver.detect_conflicts(tree, loaded)

        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict.conflict_type is ConflictType.VERSION_MISMATCH
        assert conflict.loaded_version == "1.0"
        assert conflict.required_version == "2.0"
        assert conflict.required_by == "fastlib"
        assert conflict.required_location == self._required_location(native_env)

    def test_identity_mismatch_same_version(self, native_env):
        resolver = DependencyResolver()
        tree = resolver.resolve("app", native_env)
        loaded = {"fastlib._core": AssemblyRef("fastlib._core", "2.0", "/host/site/fastlib/_core.so")}

        conflicts = resolver.detect_conflicts(tree, loaded)

        assert [c.conflict_type for c in conflicts] == [ConflictType.IDENTITY_MISMATCH]

    def test_same_file_is_not_a_conflict(self, native_env):
        resolver = DependencyResolver()
        tree = resolver.resolve("app", native_env)
        loaded = {"fastlib._core": AssemblyRef("fastlib._core", "2.0", self._required_location(native_env))}

        assert resolver.detect_conflicts(tree, loaded) == []

    def test_no_loaded_modules_no_conflicts(self, native_env):
        resolver = DependencyResolver()
        assert resolver.detect_conflicts(resolver.resolve("app", native_env), {}) == []

    def test_two_packages_in_tree_with_different_versions(self, env, make_dist):
        make_dist(_modules(env), "app", "1.0", requires=["liba", "libb"])
        make_dist(_modules(env), "liba", "1.0", files={"shared/_x.so": ""})
        make_dist(_modules(env), "libb", "2.0", files={"shared/_x.so": ""})
        resolver = DependencyResolver()

        conflicts = resolver.detect_conflicts(resolver.resolve("app", env), {})

        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict.assembly_name == "shared._x"
        assert conflict.conflict_type is ConflictType.VERSION_MISMATCH
        assert (conflict.loaded_version, conflict.required_version) == ("1.0", "2.0")
        assert conflict.required_by == "libb"

    def test_two_packages_in_tree_with_same_version(self, env, make_dist):
        make_dist(_modules(env), "app", "1.0", requires=["liba", "libb"])
        make_dist(_modules(env), "liba", "1.0", files={"shared/_x.so": ""})
        make_dist(_modules(env), "libb", "1.0", files={"shared/_x.so": ""})
        resolver = DependencyResolver()

        assert resolver.detect_conflicts(resolver.resolve("app", env), {}) == []

    def test_remediation(self, native_env):
        resolver = DependencyResolver()
        tree = resolver.resolve("app", native_env)
        conflicts = resolver.detect_conflicts(
            tree, {"fastlib._core": AssemblyRef("fastlib._core", "1.0", "/elsewhere/_core.so")}
        )

        remediation = build_remediation(conflicts)

        assert remediation["remove_from_session"] == ["fastlib"]
        assert remediation["install_versions"] == ["fastlib==1.0"]
        assert remediation["message"]


class TestLoadOrder:
    @pytest.fixture
    def chain_env(self, env, make_dist):
        make_dist(_modules(env), "app", "1.0", requires=["mid", "base"])
        make_dist(_modules(env), "mid", "1.0", requires=["base"])
        make_dist(_modules(env), "base", "1.0")
        make_dist(_modules(env), "aux", "1.0")
        return env

    def test_deepest_first(self, chain_env):
        resolver = DependencyResolver()
        order = resolver.compute_load_order(resolver.resolve("app", chain_env))

        assert [n.name for n in order] == ["base", "mid", "app"]

    def test_unresolved_nodes_excluded(self, env, make_dist):
        make_dist(_modules(env), "app", "1.0", requires=["ghost"])
        resolver = DependencyResolver()

        order = resolver.compute_load_order(resolver.resolve("app", env))

        assert [n.name for n in order] == ["app"]

    def test_failures_do_not_stop_loading(self, chain_env):
        resolver = DependencyResolver()
        attempted = []

        def load(node):
            attempted.append(node.name)
            if node.name == "mid":
                raise ImportError("mid is broken")

        report = resolver.plan_and_load("app", chain_env, load, loaded={})

        assert attempted == ["base", "mid", "app"]
        assert report.loaded == ["base", "app"]
        assert [(f.name, f.error) for f in report.failed] == [("mid", "mid is broken")]
        assert not report.success

    def test_conflicts_block_all_loading(self, env, make_dist):
        make_dist(_modules(env), "fastlib", "2.0", files={"fastlib/__init__.py": "", "fastlib/_core.so": ""})
        resolver = DependencyResolver()
        attempted = []

        report = resolver.plan_and_load(
            "fastlib",
            env,
            attempted.append,
            loaded={"fastlib._core": AssemblyRef("fastlib._core", "1.0", "/elsewhere/_core.so")},
        )

        assert attempted == []
        assert len(report.conflicts) == 1
        assert report.remediation["remove_from_session"] == ["fastlib"]
        with pytest.raises(DependencyConflict) as excinfo:
            report.raise_for_conflicts()
        assert excinfo.value.conflicts == report.conflicts

    def test_missing_root(self, env):
        report = DependencyResolver().plan_and_load("ghost", env, lambda node: None)

        assert report.loaded == []
        assert [f.error for f in report.failed] == ["not found in environment"]
