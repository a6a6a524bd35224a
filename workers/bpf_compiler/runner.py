"""
Runner — entry points for the loader and a small CLI.

Usage (CLI)::

    python -m bpf_compiler.runner endpoint --out /var/run/cilium/state/templates/1 --debug
    python -m bpf_compiler.runner overlay -D ENABLE_IPV4=1
    python -m bpf_compiler.runner network --isa v3

Usage (async)::

    from bpf_compiler.runner import compile_template
    report = await compile_template("/tmp/tmpl", is_host=False)

The CLI prints the SessionReport as JSON.  SIGINT / SIGTERM cancel the
running session cleanly (exit status 130).
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Iterable, List

from bpf_compiler.config import Settings, directories_for, ensure_output_dir, state_directories
from bpf_compiler.core.errors import CompileCancelled, CompileError
from bpf_compiler.core.flags import OutputKind, ProgramSpec
from bpf_compiler.core.invoker import CompilationResult, compile_program
from bpf_compiler.core.isa import DEFAULT_ISA, IsaLevel, StaticProbe, configure_isa_selector
from bpf_compiler.io.schema import SessionReport
from bpf_compiler.policy.programs import ProgramCategory
from bpf_compiler.session import compile_session

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


def _settings(settings: Settings | None) -> Settings:
    return settings if settings is not None else Settings()


def _isa_override(settings: Settings) -> IsaLevel | None:
    """Dry mode never probes the kernel: build for the baseline ISA."""
    return DEFAULT_ISA if settings.DRY_MODE else None


# ─── Loader entry points ─────────────────────────────────────────────────────

async def compile_with_options(
    src: str,
    out: str,
    options: Iterable[str] = (),
    cancel: asyncio.Event | None = None,
    settings: Settings | None = None,
) -> CompilationResult:
    """Compile one BPF source from the BPF dir into an object in the state dir."""
    settings = _settings(settings)
    spec = ProgramSpec(src, out, OutputKind.OBJECT, tuple(options))
    dirs = state_directories(settings)
    return await compile_program(
        spec, dirs, cancel,
        compiler=settings.COMPILER,
        isa=_isa_override(settings),
        timeout=settings.COMPILE_TIMEOUT,
    )


async def compile_object(
    src: str,
    out: str,
    cancel: asyncio.Event | None = None,
    settings: Settings | None = None,
) -> CompilationResult:
    """Compile one BPF source into an object with no extra options."""
    return await compile_with_options(src, out, (), cancel, settings)


async def _run_category(
    category: ProgramCategory,
    output: str | None,
    options: Iterable[str],
    cancel: asyncio.Event | None,
    settings: Settings | None,
) -> SessionReport:
    settings = _settings(settings)
    dirs = directories_for(category, settings, output)
    try:
        ensure_output_dir(dirs)
    except CompileError as e:
        e.with_context(category.value)
        raise
    return await compile_session(
        dirs, category, settings.DEBUG, cancel,
        options=options,
        compiler=settings.COMPILER,
        isa=_isa_override(settings),
        timeout=settings.COMPILE_TIMEOUT,
        validate_objects=settings.VALIDATE_OBJECTS,
    )


async def compile_template(
    out: str,
    is_host: bool,
    cancel: asyncio.Event | None = None,
    settings: Settings | None = None,
) -> SessionReport:
    """Build the endpoint (or host endpoint) template into *out*."""
    category = ProgramCategory.HOST_ENDPOINT if is_host else ProgramCategory.ENDPOINT
    return await _run_category(category, out, (), cancel, settings)


async def compile_network(
    cancel: asyncio.Event | None = None,
    settings: Settings | None = None,
) -> SessionReport:
    """Build the network program into the state dir."""
    return await _run_category(ProgramCategory.NETWORK, None, (), cancel, settings)


async def compile_overlay(
    options: Iterable[str] = (),
    cancel: asyncio.Event | None = None,
    settings: Settings | None = None,
) -> SessionReport:
    """Build the overlay program into the state dir with extra clang options."""
    return await _run_category(ProgramCategory.OVERLAY, None, options, cancel, settings)


# ─── CLI ─────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bpf_compiler",
        description="Compile BPF datapath programs with clang.",
    )
    parser.add_argument(
        "category", choices=[c.value for c in ProgramCategory],
        help="Program category to build",
    )
    parser.add_argument("--out", default=None, help="Output directory (default: state dir)")
    parser.add_argument("--bpf-dir", default=None, help="BPF library directory")
    parser.add_argument("--state-dir", default=None, help="State directory")
    parser.add_argument("--compiler", default=None, help="Compiler executable")
    parser.add_argument("--timeout", type=float, default=None, help="Per-compile timeout (s)")
    parser.add_argument("--debug", action="store_true", help="Also emit debug artifacts")
    parser.add_argument("--dry-run", action="store_true", help="Do not probe the kernel")
    parser.add_argument(
        "--isa", choices=[level.value for level in IsaLevel], default=None,
        help="Use this ISA level instead of probing",
    )
    parser.add_argument(
        "-D", dest="defines", action="append", default=[], metavar="NAME[=VALUE]",
        help="Extra define for the overlay program (repeatable)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    overrides = {}
    if args.bpf_dir:
        overrides["BPF_DIR"] = args.bpf_dir
    if args.state_dir:
        overrides["STATE_DIR"] = args.state_dir
    if args.compiler:
        overrides["COMPILER"] = args.compiler
    if args.timeout is not None:
        overrides["COMPILE_TIMEOUT"] = args.timeout
    if args.debug:
        overrides["DEBUG"] = True
    if args.dry_run:
        overrides["DRY_MODE"] = True
    if args.isa:
        # --isa wins over dry mode.
        overrides["DRY_MODE"] = False
    return Settings(**overrides)


async def _main_async(args: argparse.Namespace, settings: Settings) -> SessionReport:
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, cancel.set)
    try:
        return await _run_category(
            ProgramCategory(args.category),
            args.out,
            [f"-D{d}" for d in args.defines],
            cancel,
            settings,
        )
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


def main(argv: List[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    settings = settings_from_args(args)

    probe = StaticProbe.for_level(IsaLevel(args.isa)) if args.isa else None
    configure_isa_selector(probe, dry_mode=settings.DRY_MODE)

    try:
        report = asyncio.run(_main_async(args, settings))
    except CompileCancelled as e:
        logger.info(f"Aborted: {e}")
        return EXIT_CANCELLED
    except CompileError as e:
        logger.error(str(e))
        return EXIT_FAILED

    print(report.model_dump_json(indent=2))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
