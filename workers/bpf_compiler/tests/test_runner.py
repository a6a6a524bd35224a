"""
Tests for bpf_compiler.runner and bpf_compiler.config.

Entry points run against a fake toolchain with Settings pointing at tmp_path.
"""
import asyncio
import json
import logging
import os

import pytest

from bpf_compiler import runner
from bpf_compiler.config import Settings, directories_for, ensure_output_dir, state_directories
from bpf_compiler.core.errors import CompileCancelled, CompileIOError, ToolchainError
from bpf_compiler.core.isa import IsaLevel, StaticProbe
from bpf_compiler.policy.programs import ProgramCategory


@pytest.fixture
def settings(tmp_path, fake_clang):
    bpf_dir = tmp_path / "bpf"
    state_dir = tmp_path / "state"
    bpf_dir.mkdir()
    state_dir.mkdir()
    return Settings(
        BPF_DIR=str(bpf_dir),
        STATE_DIR=str(state_dir),
        COMPILER=str(fake_clang),
        DRY_MODE=True,
        VALIDATE_OBJECTS=False,
    )


def _run(coro):
    return asyncio.run(coro)


# ── config ────────────────────────────────────────────────────────────────────

class TestConfig:

    def test_defaults(self, monkeypatch):
        for name in ("BPFC_DEBUG", "BPFC_DRY_MODE", "BPFC_COMPILER"):
            monkeypatch.delenv(name, raising=False)
        s = Settings()
        assert s.DEBUG is False
        assert s.DRY_MODE is False
        assert s.COMPILER == "clang"
        assert s.COMPILE_TIMEOUT is None

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("BPFC_DEBUG", "1")
        monkeypatch.setenv("BPFC_COMPILE_TIMEOUT", "2.5")
        s = Settings()
        assert s.DEBUG is True
        assert s.COMPILE_TIMEOUT == 2.5

    def test_state_directories(self, settings):
        dirs = state_directories(settings)
        assert dirs.library == settings.BPF_DIR
        assert dirs.runtime == settings.STATE_DIR
        assert dirs.state == settings.STATE_DIR
        assert dirs.output == settings.STATE_DIR
        assert state_directories(settings, "/x").output == "/x"

    def test_template_directories(self, settings):
        dirs = directories_for(ProgramCategory.ENDPOINT, settings, "/tmpl/1")
        assert dirs.state == "/tmpl/1"
        assert dirs.output == "/tmpl/1"
        assert dirs.runtime == settings.STATE_DIR

    def test_network_uses_state_dir(self, settings):
        dirs = directories_for(ProgramCategory.NETWORK, settings)
        assert dirs == state_directories(settings)

    def test_ensure_output_dir(self, settings, tmp_path):
        dirs = state_directories(settings, str(tmp_path / "a" / "b"))
        ensure_output_dir(dirs)
        ensure_output_dir(dirs)
        assert os.path.isdir(dirs.output)


# ── entry points ─────────────────────────────────────────────────────────────

class TestEntryPoints:

    def test_compile_object(self, settings, fake_clang):
        result = _run(runner.compile_object("bpf_sock.c", "bpf_sock.o", settings=settings))

        assert result.output_path == os.path.join(settings.STATE_DIR, "bpf_sock.o")
        assert os.path.exists(result.output_path)
        argv = fake_clang.invocations()[0]
        assert argv[-4:] == ["-c", os.path.join(settings.BPF_DIR, "bpf_sock.c"), "-o", "-"]

    def test_compile_with_options(self, settings, fake_clang):
        _run(runner.compile_with_options(
            "bpf_sock.c", "bpf_sock.o", ["-DENABLE_IPV6"], settings=settings,
        ))
        argv = fake_clang.invocations()[0]
        assert argv.index("-DENABLE_IPV6") < argv.index("-c")

    def test_compile_template(self, settings, tmp_path):
        out = str(tmp_path / "templates" / "42")
        debug = settings.model_copy(update={"DEBUG": True})

        report = _run(runner.compile_template(out, is_host=False, settings=debug))

        assert report.artifact_names == ["bpf_lxc.dbg.o", "bpf_lxc.asm", "bpf_lxc.c", "bpf_lxc.o"]
        assert sorted(os.listdir(out)) == ["bpf_lxc.asm", "bpf_lxc.c", "bpf_lxc.dbg.o", "bpf_lxc.o"]

    def test_compile_host_template(self, settings, tmp_path):
        out = str(tmp_path / "host")
        report = _run(runner.compile_template(out, is_host=True, settings=settings))
        assert report.artifact_names == ["bpf_host.o"]

    def test_compile_network(self, settings):
        report = _run(runner.compile_network(settings=settings))
        assert report.artifact_names == ["bpf_network.o"]
        assert os.path.exists(os.path.join(settings.STATE_DIR, "bpf_network.o"))

    def test_compile_overlay_options(self, settings, fake_clang):
        report = _run(runner.compile_overlay(["-DENABLE_IPV4=1"], settings=settings))
        assert report.artifact_names == ["bpf_overlay.o"]
        assert "-DENABLE_IPV4=1" in fake_clang.invocations()[0]

    def test_dry_mode_setting_pins_baseline_isa(self, settings, fake_clang):
        runner.configure_isa_selector(StaticProbe.for_level(IsaLevel.V3))

        report = _run(runner.compile_network(settings=settings))
        _run(runner.compile_object("bpf_sock.c", "bpf_sock.o", settings=settings))

        assert report.isa == "v1"
        runs = fake_clang.invocations()
        assert len(runs) == 2
        assert all("-mcpu=v1" in argv and "-mcpu=v3" not in argv for argv in runs)

    def test_probed_isa_without_dry_mode(self, settings, fake_clang):
        runner.configure_isa_selector(StaticProbe.for_level(IsaLevel.V3))
        live = settings.model_copy(update={"DRY_MODE": False})

        report = _run(runner.compile_network(settings=live))

        assert report.isa == "v3"
        assert "-mcpu=v3" in fake_clang.invocations()[0]

    def test_uncreatable_output_dir(self, settings, fake_clang, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")

        with pytest.raises(CompileIOError) as exc:
            _run(runner.compile_template(str(blocker / "tmpl"), is_host=False, settings=settings))

        assert str(exc.value).startswith("endpoint: Failed to create ")
        assert fake_clang.invocations() == []

    def test_failure_propagates(self, settings, make_compiler):
        failing = settings.model_copy(update={"COMPILER": str(make_compiler("fail"))})
        with pytest.raises(ToolchainError) as exc:
            _run(runner.compile_network(settings=failing))
        assert exc.value.artifact == "bpf_network.o"

    def test_cancelled_overlay(self, settings, fake_clang):
        async def scenario():
            cancel = asyncio.Event()
            cancel.set()
            await runner.compile_overlay(cancel=cancel, settings=settings)

        with pytest.raises(CompileCancelled):
            _run(scenario())
        assert fake_clang.invocations() == []


# ── CLI ──────────────────────────────────────────────────────────────────────

def _cli_args(settings, *extra):
    return [
        *extra,
        "--bpf-dir", settings.BPF_DIR,
        "--state-dir", settings.STATE_DIR,
        "--compiler", settings.COMPILER,
    ]


class TestCli:

    def test_settings_from_args(self):
        args = runner.build_parser().parse_args([
            "overlay", "--bpf-dir", "/b", "--state-dir", "/s",
            "--timeout", "3", "--debug", "--dry-run", "-D", "A=1", "-D", "B",
        ])
        s = runner.settings_from_args(args)

        assert s.BPF_DIR == "/b"
        assert s.STATE_DIR == "/s"
        assert s.COMPILE_TIMEOUT == 3.0
        assert s.DEBUG is True
        assert s.DRY_MODE is True
        assert args.defines == ["A=1", "B"]

    def test_unknown_category_rejected(self):
        with pytest.raises(SystemExit):
            runner.build_parser().parse_args(["xdp"])

    def test_network_prints_report(self, settings, fake_clang, capsys):
        rc = runner.main(_cli_args(settings, "network", "--isa", "v2"))

        assert rc == runner.EXIT_OK
        report = json.loads(capsys.readouterr().out)
        assert report["category"] == "network"
        assert report["isa"] == "v2"
        assert [a["name"] for a in report["artifacts"]] == ["bpf_network.o"]
        assert "-mcpu=v2" in fake_clang.invocations()[0]

    def test_overlay_defines(self, settings, fake_clang, capsys):
        rc = runner.main(_cli_args(settings, "overlay", "--dry-run", "-D", "ENABLE_NAT=1"))

        assert rc == runner.EXIT_OK
        argv = fake_clang.invocations()[0]
        assert "-DENABLE_NAT=1" in argv
        assert "-mcpu=v1" in argv

    def test_failure_exit_code(self, settings, make_compiler, capsys, caplog):
        failing = str(make_compiler("fail"))
        args = _cli_args(settings, "network", "--dry-run")
        args[args.index("--compiler") + 1] = failing

        assert runner.main(args) == runner.EXIT_FAILED
        assert capsys.readouterr().out == ""
        errors = [r for r in caplog.records if r.name == "bpf_compiler.runner"]
        assert [r.levelno for r in errors] == [logging.ERROR]
        assert errors[0].getMessage().startswith("network: ")

    def test_cancelled_exit_code(self, settings, monkeypatch):
        async def cancelled(*args, **kwargs):
            raise CompileCancelled("compile aborted", "bpf_network.o")

        monkeypatch.setattr(runner, "_run_category", cancelled)

        assert runner.main(_cli_args(settings, "network", "--dry-run")) == runner.EXIT_CANCELLED

    def test_uncreatable_out_exit_code(self, settings, fake_clang, tmp_path, capsys):
        blocker = tmp_path / "blocker"
        blocker.write_text("")

        rc = runner.main(_cli_args(settings, "endpoint", "--out", str(blocker / "tmpl"), "--dry-run"))

        assert rc == runner.EXIT_FAILED
        assert capsys.readouterr().out == ""
        assert fake_clang.invocations() == []

    def test_explicit_isa_wins_over_dry_run(self, settings, fake_clang, capsys):
        rc = runner.main(_cli_args(settings, "network", "--dry-run", "--isa", "v3"))

        assert rc == runner.EXIT_OK
        assert json.loads(capsys.readouterr().out)["isa"] == "v3"
        assert "-mcpu=v3" in fake_clang.invocations()[0]
