"""
Session orchestration — build every artifact of one program category.

    version check → [debug object → assembly → preprocessed C] → production object

Steps run strictly in order; the first failure ends the session and leaves
already produced artifacts in place.  Nothing is retried.

Debug artifact failures are logged at DEBUG, production failures at
WARNING.  Cancellation is never logged as a failure.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List

from bpf_compiler import COMPILER
from bpf_compiler.core.elf_check import inspect_object
from bpf_compiler.core.errors import CompileCancelled, CompileError
from bpf_compiler.core.flags import OutputDirectories, OutputKind, ProgramSpec, command_line
from bpf_compiler.core.invoker import CompilationResult, compile_program, toolchain_version
from bpf_compiler.core.isa import IsaLevel, detect_isa
from bpf_compiler.io.schema import (
    ArtifactFlag,
    ArtifactRecord,
    ArtifactRole,
    ObjectInfo,
    SessionReport,
    now_iso,
)
from bpf_compiler.policy.programs import (
    OPTION_CATEGORIES,
    ProgramCategory,
    debug_specs,
    production_spec,
)

logger = logging.getLogger(__name__)


def _record(
    spec: ProgramSpec,
    result: CompilationResult,
    role: ArtifactRole,
    compiler: str,
    validate: bool,
) -> ArtifactRecord:
    record = ArtifactRecord(
        name=spec.output,
        path=result.output_path,
        kind=spec.output_kind.value,
        role=role,
        command=command_line(result.flags, compiler),
        compiler_pid=result.pid,
        peak_rss_bytes=result.peak_rss_bytes,
        duration_ms=result.duration_ms,
    )
    if not validate or spec.output_kind != OutputKind.OBJECT:
        return record

    meta = inspect_object(result.output_path)
    if not meta.is_elf:
        record.flags.append(ArtifactFlag.NON_ELF_OUTPUT)
    else:
        record.object_info = ObjectInfo(
            machine=meta.machine,
            elf_type=meta.elf_type,
            has_btf=meta.has_btf,
            debug_sections=meta.debug_sections,
        )
        if not meta.is_bpf:
            record.flags.append(ArtifactFlag.NOT_BPF_OBJECT)
    if record.flags:
        logger.warning(
            f"{spec.output}: unexpected object "
            f"({', '.join(f.value for f in record.flags)})"
        )
    return record


class CompileSession:
    """
    One build session for one program category.

    A session is single-use: construct it, await ``run()`` once.
    """

    def __init__(
        self,
        dirs: OutputDirectories,
        category: ProgramCategory,
        debug: bool = False,
        cancel: asyncio.Event | None = None,
        *,
        options: Iterable[str] = (),
        compiler: str = COMPILER,
        isa: IsaLevel | None = None,
        timeout: float | None = None,
        validate_objects: bool = True,
    ):
        self.dirs = dirs
        self.category = ProgramCategory(category)
        self.debug = debug
        self.cancel = cancel
        self.options = tuple(options)
        self.compiler = compiler
        self.isa = isa
        self.timeout = timeout
        self.validate_objects = validate_objects

    # -----------------------------------------------------------------
    # Plan
    # -----------------------------------------------------------------

    def debug_plan(self) -> List[ProgramSpec]:
        return debug_specs(self.category) if self.debug else []

    def production(self) -> ProgramSpec:
        if self.category in OPTION_CATEGORIES:
            return production_spec(self.category, self.options)
        return production_spec(self.category)

    # -----------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------

    async def _compile(
        self, spec: ProgramSpec, role: ArtifactRole, isa: IsaLevel,
    ) -> ArtifactRecord:
        try:
            result = await compile_program(
                spec, self.dirs, self.cancel,
                compiler=self.compiler, isa=isa, timeout=self.timeout,
            )
        except CompileError as e:
            e.with_context(self.category.value)
            if not isinstance(e, CompileCancelled):
                level = logging.DEBUG if role == ArtifactRole.DEBUG else logging.WARNING
                logger.log(level, f"Failed to compile {spec!r}: {e}")
            raise
        return _record(spec, result, role, self.compiler, self.validate_objects)

    async def run(self) -> SessionReport:
        """
        Build the category's artifacts.

        Raises:
            CompileIOError: Version query failed or an artifact could not be created.
            ToolchainError: The compiler failed on one of the artifacts.
            CompileCancelled: The cancel token fired.
        """
        try:
            version = await toolchain_version(self.compiler, self.cancel, self.timeout)
        except CompileError as e:
            e.with_context(self.category.value)
            raise

        logger.debug(f"{self.compiler}: {version.strip()}")
        isa = self.isa or detect_isa()
        logger.info(
            f"Compiling {self.category.value} programs into {self.dirs.output} "
            f"(isa={isa.value}, debug={self.debug})"
        )

        report = SessionReport(
            category=self.category.value,
            debug=self.debug,
            isa=isa.value,
            compiler=self.compiler,
            compiler_version=version.strip(),
            output_dir=self.dirs.output,
        )

        for spec in self.debug_plan():
            report.artifacts.append(await self._compile(spec, ArtifactRole.DEBUG, isa))

        report.artifacts.append(
            await self._compile(self.production(), ArtifactRole.PRODUCTION, isa)
        )

        report.finished_at = now_iso()
        logger.info(
            f"Compiled {self.category.value}: {', '.join(report.artifact_names)}"
        )
        return report


async def compile_session(
    dirs: OutputDirectories,
    category: ProgramCategory,
    debug: bool = False,
    cancel: asyncio.Event | None = None,
    **kwargs,
) -> SessionReport:
    """Run one CompileSession; see CompileSession for keyword arguments."""
    return await CompileSession(dirs, category, debug, cancel, **kwargs).run()
