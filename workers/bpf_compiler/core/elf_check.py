"""
Object inspection — sanity-check a compiled BPF object with pyelftools.

Presence checks only: ELF header, machine, and which .BTF / .debug_*
sections exist.  No BTF or DWARF parsing.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile

logger = logging.getLogger(__name__)

BPF_MACHINE = "EM_BPF"


@dataclass(frozen=True)
class ObjectMeta:
    """Facts about one compiled object file."""
    path: str
    is_elf: bool
    machine: Optional[str] = None
    elf_type: Optional[str] = None
    has_btf: bool = False
    debug_sections: List[str] = field(default_factory=list)

    @property
    def is_bpf(self) -> bool:
        return self.is_elf and self.machine == BPF_MACHINE


def inspect_object(path: str) -> ObjectMeta:
    """Read the ELF header and section names of *path*.

    Returns ``ObjectMeta(is_elf=False)`` for anything pyelftools cannot
    open; never raises for a bad file.
    """
    try:
        with open(path, "rb") as f:
            elf = ELFFile(f)
            sections = [s.name for s in elf.iter_sections()]
            return ObjectMeta(
                path=path,
                is_elf=True,
                machine=elf.header["e_machine"],
                elf_type=elf.header["e_type"],
                has_btf=".BTF" in sections,
                debug_sections=[s for s in sections if s.startswith(".debug_")],
            )
    except (ELFError, OSError) as e:
        logger.debug(f"ELF inspection failed for {Path(path).name}: {e}")
        return ObjectMeta(path=path, is_elf=False)
