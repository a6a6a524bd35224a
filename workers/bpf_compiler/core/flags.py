"""
Flag builder — turn a program description into the clang argument list.

The argument list is fully determined by (ProgramSpec, OutputDirectories,
IsaLevel).  Layout, in order:

  1. test-only include paths (normally none)
  2. -I<runtime>/globals -I<state> -I<library> -I<library>/include
  3. output-kind marker (-E | -S -g | -g for debug objects)
  4. standard BPF cflags, identical for every invocation
  5. -mcpu=<isa>
  6. the program's extra options, verbatim
  7. -c <library>/<source> -o -      (output always goes to stdout)
"""
from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Sequence, Tuple

from bpf_compiler import COMPILER
from bpf_compiler.core.cpus import num_possible_cpus
from bpf_compiler.core.isa import IsaLevel


class OutputKind(str, Enum):
    """Artifact kind produced by one compiler run."""
    OBJECT = "obj"
    ASSEMBLY = "asm"
    PREPROCESSED = "c"


@dataclass(frozen=True)
class ProgramSpec:
    """One program to compile into exactly one artifact."""
    source: str                      # basename under the library dir
    output: str                      # basename under the output dir
    output_kind: OutputKind = OutputKind.OBJECT
    options: Tuple[str, ...] = ()    # passed to clang as individual args
    debug_symbols: bool = False      # emit -g for OBJECT output

    def with_options(self, options: Iterable[str]) -> "ProgramSpec":
        return ProgramSpec(
            source=self.source,
            output=self.output,
            output_kind=self.output_kind,
            options=tuple(options),
            debug_symbols=self.debug_symbols,
        )


@dataclass(frozen=True)
class OutputDirectories:
    """Directories used for include paths and for the artifact location."""
    library: str   # BPF library sources
    runtime: str   # runtime headers (globals/)
    state: str     # node / endpoint / feature headers
    output: str    # where artifacts are written

    def output_path(self, spec: ProgramSpec) -> str:
        return os.path.join(self.output, spec.output)

    def source_path(self, spec: ProgramSpec) -> str:
        return os.path.join(self.library, spec.source)


# Injected by tests to add include directories; empty in production.
TEST_INCLUDES: List[str] = []

PREPROCESS_FLAG = "-E"
ASSEMBLY_FLAG = "-S"
DEBUG_FLAG = "-g"

WARNING_CFLAGS = (
    "-Wall",
    "-Wextra",
    "-Werror",
    "-Wshadow",
    "-Wno-address-of-packed-member",
    "-Wno-unknown-warning-option",
    "-Wno-gnu-variable-sized-type-not-at-end",
    "-Wdeclaration-after-statement",
    "-Wimplicit-int-conversion",
    "-Wenum-conversion",
)


def standard_cflags() -> Tuple[str, ...]:
    """Target, language, optimization and warning flags used for every program."""
    return (
        "-O2",
        "--target=bpf",
        "-std=gnu89",
        "-nostdinc",
        f"-D__NR_CPUS__={num_possible_cpus()}",
    ) + WARNING_CFLAGS


def include_flags(dirs: OutputDirectories) -> List[str]:
    flags = [f"-I{path}" for path in TEST_INCLUDES]
    flags += [
        f"-I{os.path.join(dirs.runtime, 'globals')}",
        f"-I{dirs.state}",
        f"-I{dirs.library}",
        f"-I{os.path.join(dirs.library, 'include')}",
    ]
    return flags


def output_kind_flags(spec: ProgramSpec) -> List[str]:
    if spec.output_kind == OutputKind.PREPROCESSED:
        return [PREPROCESS_FLAG]
    if spec.output_kind == OutputKind.ASSEMBLY:
        return [ASSEMBLY_FLAG, DEBUG_FLAG]
    if spec.debug_symbols:
        return [DEBUG_FLAG]
    return []


def build_flags(
    spec: ProgramSpec,
    dirs: OutputDirectories,
    isa: IsaLevel,
) -> Tuple[str, ...]:
    """Build the complete, ordered clang argument list for *spec*."""
    flags = include_flags(dirs)
    flags += output_kind_flags(spec)
    flags += standard_cflags()
    flags.append(isa.to_flag())
    flags += spec.options
    flags += ["-c", dirs.source_path(spec), "-o", "-"]
    return tuple(flags)


def command_line(flags: Sequence[str], compiler: str | None = None) -> str:
    """Render the argv as a copy-pasteable shell string."""
    return shlex.join([compiler or COMPILER, *flags])
