"""
Program catalogue — the fixed BPF programs and their artifact names.

Artifact names are part of the contract with the loader, which opens the
produced objects by name.  Changing any of them is a breaking change.

    category        source           production       debug artifacts
    endpoint        bpf_lxc.c        bpf_lxc.o        bpf_lxc.dbg.o, bpf_lxc.asm, bpf_lxc.c
    host-endpoint   bpf_host.c       bpf_host.o       bpf_host.dbg.o, bpf_host.asm, bpf_host.c
    network         bpf_network.c    bpf_network.o    -
    overlay         bpf_overlay.c    bpf_overlay.o    -
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, List, Tuple

from bpf_compiler.core.flags import OutputKind, ProgramSpec


class ProgramCategory(str, Enum):
    """Role of a compiled BPF program."""
    ENDPOINT = "endpoint"
    HOST_ENDPOINT = "host-endpoint"
    NETWORK = "network"
    OVERLAY = "overlay"


ENDPOINT_PREFIX = "bpf_lxc"
HOST_ENDPOINT_PREFIX = "bpf_host"
NETWORK_PREFIX = "bpf_network"
OVERLAY_PREFIX = "bpf_overlay"

PREFIXES: Dict[ProgramCategory, str] = {
    ProgramCategory.ENDPOINT: ENDPOINT_PREFIX,
    ProgramCategory.HOST_ENDPOINT: HOST_ENDPOINT_PREFIX,
    ProgramCategory.NETWORK: NETWORK_PREFIX,
    ProgramCategory.OVERLAY: OVERLAY_PREFIX,
}

# Categories that also get assembly / preprocessed / debug-object outputs.
DEBUG_CATEGORIES = frozenset({ProgramCategory.ENDPOINT, ProgramCategory.HOST_ENDPOINT})

# Categories whose production build takes caller-supplied compiler options.
OPTION_CATEGORIES = frozenset({ProgramCategory.OVERLAY})


def source_name(category: ProgramCategory) -> str:
    return f"{PREFIXES[category]}.{OutputKind.PREPROCESSED.value}"


def object_name(category: ProgramCategory) -> str:
    return f"{PREFIXES[category]}.o"


def debug_object_name(category: ProgramCategory) -> str:
    return f"{PREFIXES[category]}.dbg.o"


def assembly_name(category: ProgramCategory) -> str:
    return f"{PREFIXES[category]}.{OutputKind.ASSEMBLY.value}"


def production_spec(
    category: ProgramCategory, options: Iterable[str] = (),
) -> ProgramSpec:
    """The always-built object for *category*."""
    spec = ProgramSpec(
        source=source_name(category),
        output=object_name(category),
        output_kind=OutputKind.OBJECT,
    )
    options = tuple(options)
    if options:
        spec = spec.with_options(options)
    return spec


def debug_specs(category: ProgramCategory) -> List[ProgramSpec]:
    """Debug object, assembly and preprocessed source, in build order.

    Empty for categories without debug artifacts.
    """
    if category not in DEBUG_CATEGORIES:
        return []
    src = source_name(category)
    return [
        ProgramSpec(src, debug_object_name(category), OutputKind.OBJECT, debug_symbols=True),
        ProgramSpec(src, assembly_name(category), OutputKind.ASSEMBLY),
        ProgramSpec(src, src, OutputKind.PREPROCESSED),
    ]


def artifact_names(category: ProgramCategory, debug: bool) -> Tuple[str, ...]:
    """Names of every artifact a session for *category* produces, in order."""
    names = [s.output for s in debug_specs(category)] if debug else []
    names.append(object_name(category))
    return tuple(names)
