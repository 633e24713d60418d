"""Sequential stage engine shared by every pipeline.

A :class:`Pipeline` is an ordered list of :class:`Stage` objects.  Stages run
strictly one after another; each stage first evaluates its preconditions and
then calls its body with a :class:`StageContext`.  A failing stage with the
``ABORT`` policy ends the run and every later stage is reported as skipped.
There is no rollback: partial output stays on disk for inspection and only
the run's own scratch directories are removed.
"""

from __future__ import annotations

import enum
import logging
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from build_config import PipelineConfig
from command_runner import CommandExecutor, CommandInterrupted, CommandResult
from preconditions import Precondition
from progress import ProgressParser

LOG = logging.getLogger("komodo.pipeline")

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

INTERRUPTED_EXIT_CODE = 130


def log_success(logger: logging.Logger, message: str, *args: Any) -> None:
    logger.log(SUCCESS, message, *args)


class FailurePolicy(enum.Enum):
    ABORT = "abort"
    WARN_AND_CONTINUE = "warn-and-continue"


class StageState(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class PipelineState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


class SkipReason(enum.Enum):
    DISABLED = "disabled by configuration"
    ABORTED = "pipeline aborted by an earlier stage"
    NOT_REACHED = "not reached"


class StageError(RuntimeError):
    """A stage could not complete; carries the exit status to report."""

    def __init__(self, message: str, *, returncode: int = 1, remediation: str | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.remediation = remediation

    def describe(self) -> str:
        if self.remediation:
            return f"{self} {self.remediation}"
        return str(self)


class PreconditionFailed(StageError):
    pass


class CommandFailed(StageError):
    def __init__(self, result: CommandResult) -> None:
        reason = "timed out" if result.timed_out else f"exited with status {result.returncode}"
        super().__init__(f"Command '{result.command_line}' {reason}.", returncode=result.returncode)
        self.result = result


@dataclass(frozen=True)
class ExecutionResult:
    """What happened when a stage ran."""

    stage: str
    returncode: int
    output: str
    duration: float
    commands: tuple[CommandResult, ...] = ()
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


StageBody = Callable[["StageContext"], None]


@dataclass(frozen=True)
class Stage:
    name: str
    body: StageBody
    description: str = ""
    preconditions: Sequence[Precondition] = ()
    policy: FailurePolicy = FailurePolicy.ABORT
    enabled: bool = True
    skip_note: str | None = None
    timeout: float | None = None


@dataclass
class StageRecord:
    """Progress of one stage within a run."""

    name: str
    state: StageState = StageState.PENDING
    skip_reason: SkipReason | None = None
    detail: str | None = None
    result: ExecutionResult | None = None

    @property
    def ran(self) -> bool:
        return self.result is not None


class StageContext:
    """Everything a stage body may touch: config, executor and run outputs."""

    def __init__(
        self,
        config: PipelineConfig,
        executor: CommandExecutor,
        logger: logging.Logger,
        outputs: dict[str, Any] | None = None,
    ) -> None:
        self.config = config
        self.executor = executor
        self.log = logger
        self.outputs: dict[str, Any] = outputs if outputs is not None else {}
        self.stage: Stage | None = None
        self.commands: list[CommandResult] = []
        self.results: list[ExecutionResult] = []
        self._scratch: list[Path] = []

    def run(
        self,
        argv: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        check: bool = True,
        progress: ProgressParser | None = None,
    ) -> CommandResult:
        timeout = self.stage.timeout if self.stage else None
        result = self.executor.run(
            argv,
            env=env,
            cwd=cwd,
            timeout=timeout,
            progress=progress,
        )
        self.commands.append(result)
        if check and not result.succeeded:
            raise CommandFailed(result)
        return result

    def scratch_dir(self, prefix: str = "komodo-") -> Path:
        path = Path(tempfile.mkdtemp(prefix=prefix))
        self._scratch.append(path)
        return path

    def cleanup(self) -> None:
        while self._scratch:
            path = self._scratch.pop()
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)
                self.log.info("Cleaned up temporary directory: %s", path)


@dataclass
class PipelineRun:
    """Ordered record of a pipeline invocation."""

    name: str
    records: list[StageRecord]
    state: PipelineState = PipelineState.IDLE
    failed_stage: str | None = None
    error: StageError | None = None
    interrupted: bool = False
    outputs: dict[str, Any] = field(default_factory=dict)

    @property
    def results(self) -> list[ExecutionResult]:
        return [record.result for record in self.records if record.result is not None]

    def record(self, name: str) -> StageRecord:
        for record in self.records:
            if record.name == name:
                return record
        raise KeyError(name)

    @property
    def exit_code(self) -> int:
        if self.state is PipelineState.COMPLETED:
            return 0
        if self.interrupted:
            return INTERRUPTED_EXIT_CODE
        if self.error is not None and self.error.returncode:
            return self.error.returncode
        return 1


class Pipeline:
    """Runs stages in order and applies their failure policies."""

    def __init__(
        self,
        name: str,
        stages: Sequence[Stage],
        config: PipelineConfig,
        *,
        executor: CommandExecutor | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        names = [stage.name for stage in stages]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate stage names in pipeline {name}: {names}")
        self.name = name
        self.stages = list(stages)
        self.config = config
        self.executor = executor or CommandExecutor()
        self.log = logger or LOG
        self.state = PipelineState.IDLE

    def run(self) -> PipelineRun:
        run = PipelineRun(self.name, [StageRecord(stage.name) for stage in self.stages])
        context = StageContext(self.config, self.executor, self.log, run.outputs)
        self.state = run.state = PipelineState.RUNNING
        try:
            for stage, record in zip(self.stages, run.records):
                if run.state is PipelineState.ABORTED:
                    self._skip(record, SkipReason.NOT_REACHED if run.interrupted else SkipReason.ABORTED)
                    continue
                if not stage.enabled:
                    self._skip(record, SkipReason.DISABLED, stage.skip_note)
                    self.log.info("Skipping stage '%s': %s", stage.name, record.detail)
                    continue
                error = self._run_stage(stage, record, context, run)
                if error is None:
                    continue
                if stage.policy is FailurePolicy.WARN_AND_CONTINUE and not run.interrupted:
                    self.log.warning(
                        "Stage '%s' failed but is not critical; continuing: %s",
                        stage.name,
                        error.describe(),
                    )
                    continue
                run.failed_stage = stage.name
                run.error = error
                self.state = run.state = PipelineState.ABORTED
        finally:
            context.cleanup()

        if run.state is PipelineState.RUNNING:
            self.state = run.state = PipelineState.COMPLETED
        return run

    def _skip(self, record: StageRecord, reason: SkipReason, note: str | None = None) -> None:
        record.state = StageState.SKIPPED
        record.skip_reason = reason
        record.detail = note or reason.value

    def _run_stage(
        self,
        stage: Stage,
        record: StageRecord,
        context: StageContext,
        run: PipelineRun,
    ) -> StageError | None:
        self.log.info("==> %s%s", stage.name, f": {stage.description}" if stage.description else "")
        record.state = StageState.RUNNING
        context.stage = stage
        context.commands = []
        started = time.monotonic()
        error: StageError | None = None
        try:
            self._check_preconditions(stage)
            stage.body(context)
        except StageError as exc:
            error = exc
        except OSError as exc:
            error = StageError(f"{type(exc).__name__}: {exc}")
        except (CommandInterrupted, KeyboardInterrupt) as exc:
            run.interrupted = True
            reason = str(exc) or "keyboard interrupt"
            error = StageError(f"Stage '{stage.name}' interrupted: {reason}", returncode=INTERRUPTED_EXIT_CODE)
        finally:
            context.stage = None

        duration = time.monotonic() - started
        returncode = error.returncode if error else 0
        record.result = ExecutionResult(
            stage=stage.name,
            returncode=returncode,
            output="".join(command.output for command in context.commands),
            duration=duration,
            commands=tuple(context.commands),
            error=error.describe() if error else None,
        )
        context.results.append(record.result)
        if error is None:
            record.state = StageState.SUCCEEDED
            log_success(self.log, "Stage '%s' completed in %s", stage.name, format_duration(duration))
            return None

        record.state = StageState.FAILED
        record.detail = error.describe()
        self.log.error("Stage '%s' failed: %s", stage.name, record.detail)
        return error

    def _check_preconditions(self, stage: Stage) -> None:
        blocking: list[str] = []
        for precondition in stage.preconditions:
            result = precondition.evaluate()
            if result.passed:
                self.log.debug("Precondition %s passed: %s", precondition.name, result.message)
            elif precondition.advisory:
                self.log.warning(result.message)
            else:
                self.log.error(result.message)
                blocking.append(result.message)
        if blocking:
            raise PreconditionFailed(" ".join(blocking))


def format_duration(seconds: float) -> str:
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{seconds:.1f}s"


def log_pipeline_plan(pipeline: Pipeline) -> None:
    """Emit the ordered stage plan before a run starts."""

    pipeline.log.info("Planned stages for the %s pipeline:", pipeline.name)
    for index, stage in enumerate(pipeline.stages, start=1):
        if stage.enabled:
            suffix = " (non-critical)" if stage.policy is FailurePolicy.WARN_AND_CONTINUE else ""
            pipeline.log.info("  %d. %s%s", index, stage.name, suffix)
        else:
            pipeline.log.info("  %d. %s (skipped: %s)", index, stage.name, stage.skip_note or "disabled")


def log_run_summary(run: PipelineRun, logger: logging.Logger = LOG) -> None:
    logger.info("Summary of the %s pipeline:", run.name)
    for record in run.records:
        if record.result is not None:
            logger.info(
                "  %-14s %-9s %s",
                record.name,
                record.state.value,
                format_duration(record.result.duration),
            )
        else:
            logger.info("  %-14s %-9s %s", record.name, record.state.value, record.detail or "")
