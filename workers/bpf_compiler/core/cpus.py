"""
Possible-CPU count, baked into every BPF program as ``__NR_CPUS__``.
"""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

logger = logging.getLogger(__name__)

POSSIBLE_CPUS_PATH = Path("/sys/devices/system/cpu/possible")


def parse_cpu_ranges(text: str) -> int:
    """
    Count the CPUs in a kernel cpu list such as ``0-3,8-11`` or ``0``.

    Raises ValueError on malformed input.
    """
    total = 0
    for part in text.strip().split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            lo, hi = part.split("-", 1)
            start, end = int(lo), int(hi)
            if end < start:
                raise ValueError(f"Invalid CPU range '{part}'")
            total += end - start + 1
        else:
            int(part)
            total += 1
    if total == 0:
        raise ValueError(f"Empty CPU list '{text}'")
    return total


@lru_cache(maxsize=1)
def num_possible_cpus() -> int:
    """Number of possible CPUs on this host. Cached after first call."""
    try:
        return parse_cpu_ranges(POSSIBLE_CPUS_PATH.read_text())
    except (OSError, ValueError) as e:
        fallback = os.cpu_count() or 1
        logger.warning(
            f"Unable to read possible CPUs from {POSSIBLE_CPUS_PATH}: {e}; "
            f"using {fallback}"
        )
        return fallback
