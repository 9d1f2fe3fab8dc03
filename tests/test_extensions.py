"""Tests for extension loading and the hook registry."""

import os

import pytest

from conftest import no_sleep, wrap_program
from extensions import (
    EXTENSION_API_VERSION,
    ExtensionAPI,
    KarelExtensionError,
    build_default_services,
    load_runtime_services,
    resolve_extension,
)
from interpreter import Interpreter
from world import World

TRAIL_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), os.pardir, "ext", "trail.py")


def _write_extension(tmp_path, name, body):
    path = tmp_path / name
    path.write_text(body, encoding="utf-8")
    return str(path)


class TestTrailExtension:
    def _run(self, verbose=False):
        services = load_runtime_services([TRAIL_PATH])
        world = World.empty(3, 3)
        interp = Interpreter(world, services=services, sleep=no_sleep, verbose=verbose)
        interp.load(wrap_program("move;\nmove;\nturnleft;\nturnoff"))
        while interp.step():
            pass
        return interp, services

    def test_trail_records_visited_cells(self):
        interp, services = self._run()

        assert interp.trail == [(1, 1), (1, 2), (1, 3)]
        assert [meta.name for meta in services.metadata] == ["trail"]

    def test_trail_restarts_on_reset(self):
        interp, _ = self._run()
        interp.reset()
        assert interp.trail == [(1, 1)]

    def test_verbose_run_prints_trail(self, capsys):
        self._run(verbose=True)
        assert "trail: (1,1) -> (1,2) -> (1,3)" in capsys.readouterr().out


class TestLoading:
    def test_missing_file(self, tmp_path):
        with pytest.raises(KarelExtensionError, match="not found"):
            load_runtime_services([str(tmp_path / "absent.py")])

    def test_module_without_register_function(self, tmp_path):
        path = _write_extension(tmp_path, "plain.py", "VALUE = 1\n")
        with pytest.raises(KarelExtensionError, match="karel_register"):
            load_runtime_services([path])

    def test_api_version_mismatch(self, tmp_path):
        path = _write_extension(
            tmp_path,
            "future.py",
            f"KAREL_EXTENSION_API_VERSION = {EXTENSION_API_VERSION + 1}\n"
            "def karel_register(ext):\n"
            "    pass\n",
        )
        with pytest.raises(KarelExtensionError, match="requires API"):
            load_runtime_services([path])

    def test_bundled_extension_by_name(self):
        services = load_runtime_services(["trail"])
        assert services.loaded_names() == ["trail"]
        assert resolve_extension("trail") == os.path.abspath(TRAIL_PATH)

    def test_same_extension_twice_is_rejected(self):
        with pytest.raises(KarelExtensionError, match="already loaded"):
            load_runtime_services(["trail", TRAIL_PATH])

    def test_metadata_requiring_newer_api(self, tmp_path):
        path = _write_extension(
            tmp_path,
            "greedy.py",
            "def karel_register(ext):\n"
            f"    ext.metadata(name='greedy', requires_api={EXTENSION_API_VERSION + 1})\n",
        )
        with pytest.raises(KarelExtensionError, match="needs API"):
            load_runtime_services([path])

    def test_unnamed_extension_is_listed_by_file_stem(self, tmp_path):
        path = _write_extension(tmp_path, "quiet_ext.py", "def karel_register(ext):\n    pass\n")
        assert load_runtime_services([path]).loaded_names() == ["quiet_ext"]

    def test_decorator_registration(self, tmp_path):
        path = _write_extension(
            tmp_path,
            "counter.py",
            "KAREL_EXTENSION_NAME = 'counter'\n"
            "\n"
            "def karel_register(ext):\n"
            "    @ext.on_event('program_load')\n"
            "    def start(interp, result):\n"
            "        interp.counted = 0\n"
            "\n"
            "    @ext.every_n_steps(1)\n"
            "    def count(interp, ctx):\n"
            "        interp.counted += 1\n",
        )
        services = load_runtime_services([path])
        interp = Interpreter(World.empty(3, 3), services=services, sleep=no_sleep)
        interp.load(wrap_program("move;\nturnleft;\nturnoff"))
        while interp.step():
            pass

        assert interp.counted == 3


class TestRegistry:
    def test_unknown_event_is_rejected(self):
        api = ExtensionAPI(services=build_default_services(), ext_name="test")
        with pytest.raises(KarelExtensionError, match="Unknown event 'on_tick'"):
            api.on_event("on_tick", lambda *args: None)

    def test_step_rule_period_must_be_positive(self):
        api = ExtensionAPI(services=build_default_services(), ext_name="test")
        with pytest.raises(KarelExtensionError):
            api.every_n_steps(0, lambda interp, ctx: None)

    def test_higher_priority_runs_first(self):
        services = build_default_services()
        calls = []
        registry = services.hook_registry
        registry.on_event("reset", lambda interp: calls.append("low"), priority=0, ext_name="a")
        registry.on_event("reset", lambda interp: calls.append("high"), priority=10, ext_name="b")

        registry.emit("reset", None)

        assert calls == ["high", "low"]

    def test_step_rule_error_faults_the_run(self):
        services = build_default_services()
        errors = []

        def explode(interp, ctx):
            raise RuntimeError("bad rule")

        services.hook_registry.add_step_rule(name="explode", every_n=1, handler=explode, ext_name="test")
        interp = Interpreter(World.empty(3, 3), services=services, sleep=no_sleep, on_error=errors.append)
        interp.load(wrap_program("move;\nturnoff"))

        assert interp.step() is False
        (error,) = errors
        assert error.rule == "EXT"
        assert error.line == 3
