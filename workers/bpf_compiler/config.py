"""
Compiler configuration
"""
import os

from pydantic_settings import BaseSettings, SettingsConfigDict

from bpf_compiler import COMPILER
from bpf_compiler.core.errors import CompileIOError
from bpf_compiler.core.flags import OutputDirectories
from bpf_compiler.policy.programs import DEBUG_CATEGORIES, ProgramCategory


class Settings(BaseSettings):
    """Compiler settings, read from BPFC_* environment variables"""

    model_config = SettingsConfigDict(
        env_prefix="BPFC_",
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Modes
    DRY_MODE: bool = False     # no kernel access: skip capability probes
    DEBUG: bool = False        # also emit debug object, assembly, preprocessed C

    # Directories
    BPF_DIR: str = "/var/lib/cilium/bpf"
    STATE_DIR: str = "/var/run/cilium/state"

    # Toolchain
    COMPILER: str = COMPILER
    COMPILE_TIMEOUT: float | None = None  # seconds
    VALIDATE_OBJECTS: bool = True


def directories_for(
    category: ProgramCategory,
    settings: Settings,
    output: str | None = None,
) -> OutputDirectories:
    """
    Directory layout used for *category*.

    Endpoint templates are built into their own directory, which also holds
    the endpoint's state headers.  Everything else reads and writes the
    global state directory.
    """
    if category in DEBUG_CATEGORIES and output is not None:
        return OutputDirectories(
            library=settings.BPF_DIR,
            runtime=settings.STATE_DIR,
            state=output,
            output=output,
        )
    return state_directories(settings, output)


def state_directories(settings: Settings, output: str | None = None) -> OutputDirectories:
    """BPF dir sources, state dir for headers and (by default) output."""
    return OutputDirectories(
        library=settings.BPF_DIR,
        runtime=settings.STATE_DIR,
        state=settings.STATE_DIR,
        output=output or settings.STATE_DIR,
    )


def ensure_output_dir(dirs: OutputDirectories) -> None:
    try:
        os.makedirs(dirs.output, exist_ok=True)
    except OSError as e:
        raise CompileIOError(f"Failed to create {dirs.output}: {e}") from e
