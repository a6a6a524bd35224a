"""
ISA selection — pick the BPF instruction-set level clang should target.

The level is probed indirectly from kernel features that landed in the
same release as the instructions: v3 needs both the v3 ISA probe and the
bpf_redirect_neigh() helper for SchedCLS programs (5.10+), v2 needs the
v2 ISA probe (4.14+).  Everything else gets v1.

The answer is computed at most once per selector and cached for the
lifetime of the process.  Probe errors count as "not available".
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

logger = logging.getLogger(__name__)


class IsaLevel(str, Enum):
    """BPF ISA levels, ordered.  Values are the clang ``-mcpu`` names."""
    V1 = "v1"
    V2 = "v2"
    V3 = "v3"

    @property
    def rank(self) -> int:
        return int(self.value[1:])

    def to_flag(self) -> str:
        """Convert to compiler flag"""
        return f"-mcpu={self.value}"


DEFAULT_ISA = IsaLevel.V1


class CapabilityProbe(Protocol):
    """Kernel feature probes consumed by the selector.

    Each query returns True when the feature is available.  Raising is
    treated the same as returning False.
    """

    def have_v3_isa(self) -> bool: ...

    def have_v2_isa(self) -> bool: ...

    def have_redirect_neigh_helper(self) -> bool: ...


@dataclass(frozen=True)
class StaticProbe:
    """Probe with fixed answers (tests, CLI overrides, known hosts)."""
    v3_isa: bool = False
    v2_isa: bool = False
    redirect_neigh: bool = False

    def have_v3_isa(self) -> bool:
        return self.v3_isa

    def have_v2_isa(self) -> bool:
        return self.v2_isa

    def have_redirect_neigh_helper(self) -> bool:
        return self.redirect_neigh

    @classmethod
    def for_level(cls, level: IsaLevel) -> "StaticProbe":
        """A probe that makes the selector pick exactly *level*."""
        return cls(
            v3_isa=level == IsaLevel.V3,
            v2_isa=level.rank >= IsaLevel.V2.rank,
            redirect_neigh=level == IsaLevel.V3,
        )


def _ask(probe: CapabilityProbe, name: str) -> bool:
    try:
        return bool(getattr(probe, name)())
    except Exception as e:
        logger.debug(f"Probe {name} failed, assuming unavailable: {e}")
        return False


class IsaSelector:
    """Computes the ISA level once and hands out the cached value."""

    def __init__(self, probe: CapabilityProbe | None = None, dry_mode: bool = False):
        self.probe = probe
        self.dry_mode = dry_mode
        self._level: IsaLevel | None = None
        self._lock = threading.Lock()

    @property
    def resolved(self) -> bool:
        return self._level is not None

    def detect(self) -> IsaLevel:
        """Return the ISA level, probing on the first call only."""
        level = self._level
        if level is not None:
            return level

        with self._lock:
            if self._level is None:
                self._level = self._probe()
                logger.debug(f"Selected BPF ISA {self._level.value}")
            return self._level

    def _probe(self) -> IsaLevel:
        if self.dry_mode or self.probe is None:
            return DEFAULT_ISA

        if _ask(self.probe, "have_v3_isa") and _ask(self.probe, "have_redirect_neigh_helper"):
            return IsaLevel.V3
        if _ask(self.probe, "have_v2_isa"):
            return IsaLevel.V2
        return DEFAULT_ISA


# =============================================================================
# Process-wide selector
# =============================================================================

_selector: IsaSelector | None = None
_selector_lock = threading.Lock()


def configure_isa_selector(
    probe: CapabilityProbe | None, dry_mode: bool = False,
) -> IsaSelector:
    """Install the process-wide selector.

    Once the installed selector has resolved a level, later calls keep it
    and return the existing selector, so the level never changes.
    """
    global _selector
    with _selector_lock:
        if _selector is not None and _selector.resolved:
            logger.debug("ISA already selected, ignoring reconfiguration")
            return _selector
        _selector = IsaSelector(probe, dry_mode=dry_mode)
        return _selector


def get_isa_selector() -> IsaSelector:
    """Return the process-wide selector, creating an unprobed one if needed."""
    global _selector
    with _selector_lock:
        if _selector is None:
            _selector = IsaSelector(None)
        return _selector


def detect_isa() -> IsaLevel:
    """ISA level of this host, computed once per process."""
    return get_isa_selector().detect()


def reset_isa_selector() -> None:
    """Forget the process-wide selector.  Test setup only."""
    global _selector
    with _selector_lock:
        _selector = None
