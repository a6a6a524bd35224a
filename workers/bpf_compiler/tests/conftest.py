"""
Shared pytest fixtures for bpf_compiler tests.

Compiler runs use a fake toolchain: a small /bin/sh script written into
tmp_path that answers ``--version``, appends its argv to a log file and
then runs a configurable shell body (print an object, fail, hang...).
No real clang is needed except for tests using the ``bpf_clang`` fixture.
"""
import os
import shutil
import stat
import subprocess
import tempfile
import textwrap
from pathlib import Path
from typing import List

import pytest

from bpf_compiler.core import flags as flags_mod
from bpf_compiler.core.flags import OutputDirectories
from bpf_compiler.core.isa import reset_isa_selector

ARGS_SEPARATOR = "----"

FAKE_VERSION = "clang version 17.0.6 (fake toolchain)"

# Shell bodies for the fake compiler.  "$@" holds the clang arguments.
BODY_OK = 'echo "fake object for: $*"'
BODY_FAIL = textwrap.dedent("""\
    echo "bpf_lxc.c:12:3: error: use of undeclared identifier 'foo'" >&2
    echo "1 error generated." >&2
    exit 1
""")
BODY_HANG = "exec sleep 30"

# Named behaviours accepted by the make_compiler fixture.
BODIES = {"ok": BODY_OK, "fail": BODY_FAIL, "hang": BODY_HANG}


class FakeCompiler:
    """Handle on a fake toolchain script and its argv log."""

    def __init__(self, path: Path, args_log: Path, pid_file: Path, version: str = FAKE_VERSION):
        self.path = path
        self.args_log = args_log
        self.pid_file = pid_file
        self.version = version

    def __str__(self) -> str:
        return str(self.path)

    def invocations(self) -> List[List[str]]:
        """argv of every compile run (version queries excluded), in order."""
        if not self.args_log.exists():
            return []
        runs: List[List[str]] = []
        current: List[str] = []
        for line in self.args_log.read_text().splitlines():
            if line == ARGS_SEPARATOR:
                runs.append(current)
                current = []
            else:
                current.append(line)
        return runs


def write_fake_compiler(
    directory: Path,
    body: str = BODY_OK,
    version_body: str = f'echo "{FAKE_VERSION}"',
    name: str = "clang",
) -> FakeCompiler:
    directory.mkdir(parents=True, exist_ok=True)
    script = directory / name
    args_log = directory / f"{name}.args"
    pid_file = directory / f"{name}.pid"
    script.write_text(
        "#!/bin/sh\n"
        'if [ "$1" = "--version" ]; then\n'
        f"{textwrap.indent(version_body, '  ')}\n"
        "  exit $?\n"
        "fi\n"
        f'echo $$ > "{pid_file}"\n'
        f'for a in "$@"; do printf \'%s\\n\' "$a"; done >> "{args_log}"\n'
        f'echo "{ARGS_SEPARATOR}" >> "{args_log}"\n'
        f"{body}\n"
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return FakeCompiler(script, args_log, pid_file)


@pytest.fixture
def make_compiler(tmp_path):
    """
    Factory: make_compiler(body="ok", version_body=...) -> FakeCompiler.

    *body* is a behaviour name from BODIES ("ok", "fail", "hang") or a
    literal shell body.
    """
    counter = {"n": 0}

    def _make(body: str = "ok", **kwargs) -> FakeCompiler:
        counter["n"] += 1
        return write_fake_compiler(
            tmp_path / f"toolchain{counter['n']}", BODIES.get(body, body), **kwargs,
        )

    return _make


@pytest.fixture
def fake_clang(make_compiler) -> FakeCompiler:
    return make_compiler()


@pytest.fixture
def dirs(tmp_path) -> OutputDirectories:
    """Library / runtime / state / output roots, all created."""
    roots = {name: tmp_path / name for name in ("lib", "run", "state", "out")}
    for p in roots.values():
        p.mkdir()
    return OutputDirectories(
        library=str(roots["lib"]),
        runtime=str(roots["run"]),
        state=str(roots["state"]),
        output=str(roots["out"]),
    )


@pytest.fixture(autouse=True)
def _isolate_globals():
    """Fresh ISA selector and no test includes for every test."""
    reset_isa_selector()
    saved = list(flags_mod.TEST_INCLUDES)
    flags_mod.TEST_INCLUDES.clear()
    yield
    flags_mod.TEST_INCLUDES[:] = saved
    reset_isa_selector()


# ── Real clang (optional) ────────────────────────────────────────────────────

def _clang_targets_bpf() -> bool:
    """True if a clang in PATH can build a trivial BPF object."""
    if shutil.which("clang") is None:
        return False
    with tempfile.TemporaryDirectory() as tmpdir:
        src = Path(tmpdir) / "probe.c"
        src.write_text("int f(void) { return 0; }\n")
        try:
            subprocess.run(
                ["clang", "--target=bpf", "-O2", "-c", str(src), "-o", os.devnull],
                check=True,
                capture_output=True,
                timeout=30,
            )
        except (subprocess.SubprocessError, OSError):
            return False
    return True


@pytest.fixture(scope="session")
def bpf_clang() -> str:
    """A clang in PATH that can target BPF; skips the test otherwise."""
    if not _clang_targets_bpf():
        pytest.skip("clang with BPF target not available")
    return "clang"
