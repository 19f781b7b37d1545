"""Declarative stage pipeline run against one job's working directory.

Each stage returns a StageResult instead of raising; run_pipeline folds
over the stages and stops at the first failed result. Nothing here retries.
"""

import logging
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from backend.app.errors import StageError

logger = logging.getLogger("dynwall-worker")


@dataclass
class Workspace:
    """A job's private working directory and its two inputs."""

    job_id: str
    root: str
    light_path: str
    dark_path: str

    def path(self, name: str) -> str:
        return os.path.join(self.root, name)


@dataclass
class StageResult:
    stage: str
    ok: bool
    returncode: Optional[int] = 0
    output: str = ""
    message: str = ""
    artifacts: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def success(cls, stage: str, output: str = "", artifacts: Optional[Dict[str, str]] = None) -> "StageResult":
        return cls(stage=stage, ok=True, output=output, artifacts=dict(artifacts or {}))

    @classmethod
    def failure(cls, stage: str, returncode: Optional[int], output: str = "", message: str = "") -> "StageResult":
        return cls(stage=stage, ok=False, returncode=returncode, output=output, message=message)


@dataclass
class PipelineOutcome:
    results: List[StageResult] = field(default_factory=list)

    @property
    def failed(self) -> Optional[StageResult]:
        for r in self.results:
            if not r.ok:
                return r
        return None

    @property
    def ok(self) -> bool:
        return self.failed is None

    @property
    def artifacts(self) -> Dict[str, str]:
        merged: Dict[str, str] = {}
        for r in self.results:
            merged.update(r.artifacts)
        return merged

    def raise_for_failure(self) -> None:
        failed = self.failed
        if failed is not None:
            raise StageError(failed.stage, failed.returncode, failed.output, failed.message)


class Stage(ABC):
    name: str = "stage"

    @abstractmethod
    def run(self, ws: Workspace) -> StageResult:
        """Run against the workspace and report the outcome."""


@dataclass
class ToolRun:
    returncode: Optional[int]
    output: str
    error: str = ""


def run_tool(args: Sequence[str], cwd: Optional[str] = None, timeout: Optional[float] = None) -> ToolRun:
    """Run an external executable with stdout and stderr merged.

    A missing executable or an expired timeout is reported with
    returncode None instead of raising.
    """
    logger.info("Running: %s", " ".join(args))
    try:
        proc = subprocess.run(
            list(args),
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout or None,
            check=False,
        )
    except FileNotFoundError as e:
        return ToolRun(None, "", f"executable not found: {args[0]} ({e})")
    except subprocess.TimeoutExpired as e:
        partial = e.output.decode("utf-8", "replace") if e.output else ""
        return ToolRun(None, partial, f"{args[0]} timed out after {timeout}s")
    return ToolRun(proc.returncode, proc.stdout.decode("utf-8", "replace"))


def tool_result(stage: str, run: ToolRun, expected: Optional[str] = None, artifacts=None) -> StageResult:
    """Turn a finished tool run into a StageResult, checking the declared output."""
    if run.returncode != 0:
        return StageResult.failure(stage, run.returncode, run.output, run.error)
    if expected and not os.path.isfile(expected):
        return StageResult.failure(stage, run.returncode, run.output, f"{stage} did not produce {expected}")
    return StageResult.success(stage, run.output, artifacts)


def run_pipeline(stages: Sequence[Stage], ws: Workspace) -> PipelineOutcome:
    outcome = PipelineOutcome()
    for stage in stages:
        logger.info("Job %s: stage %s starting", ws.job_id, stage.name)
        try:
            result = stage.run(ws)
        except OSError as e:
            result = StageResult.failure(stage.name, None, message=str(e))
        outcome.results.append(result)
        if not result.ok:
            logger.error(
                "Job %s: stage %s failed (exit status %s): %s\nOutput: %s",
                ws.job_id,
                stage.name,
                result.returncode,
                result.message,
                result.output,
            )
            break
        logger.info("Job %s: stage %s done", ws.job_id, stage.name)
    return outcome
