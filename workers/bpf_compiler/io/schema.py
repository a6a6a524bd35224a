"""
Schema — Pydantic models describing a finished compile session.

The report is returned to the caller (and printed by the CLI); it is not
written anywhere by this package.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from bpf_compiler import PACKAGE_NAME, SCHEMA_VERSION, __version__


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ArtifactRole(str, Enum):
    DEBUG = "debug"
    PRODUCTION = "production"


class ArtifactFlag(str, Enum):
    """Non-fatal findings about a produced artifact."""
    NON_ELF_OUTPUT = "NON_ELF_OUTPUT"
    NOT_BPF_OBJECT = "NOT_BPF_OBJECT"


class ObjectInfo(BaseModel):
    """ELF facts for an object artifact."""
    machine: Optional[str] = None
    elf_type: Optional[str] = None
    has_btf: bool = False
    debug_sections: List[str] = Field(default_factory=list)


class ArtifactRecord(BaseModel):
    """One produced artifact."""
    name: str
    path: str
    kind: str                       # obj | asm | c
    role: ArtifactRole
    command: str                    # full compiler command line
    compiler_pid: int
    peak_rss_bytes: int = 0
    duration_ms: int = 0
    object_info: Optional[ObjectInfo] = None
    flags: List[ArtifactFlag] = Field(default_factory=list)


class SessionReport(BaseModel):
    """Everything one successful session produced."""
    package_name: str = PACKAGE_NAME
    package_version: str = __version__
    schema_version: str = SCHEMA_VERSION

    category: str
    debug: bool
    isa: str
    compiler: str
    compiler_version: str
    output_dir: str
    started_at: str = Field(default_factory=now_iso)
    finished_at: Optional[str] = None
    artifacts: List[ArtifactRecord] = Field(default_factory=list)

    @property
    def artifact_names(self) -> List[str]:
        return [a.name for a in self.artifacts]
