from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping, Sequence

from rookery_build.common.time_utils import utc_now
from rookery_build.integration.events import StageFailed, StageStarted
from rookery_build.pipeline.checkpointing import CheckpointStore, validate_stage_label, validate_unit_name


logger = logging.getLogger(__name__)

Action = Callable[[], object]


class StageActionFailed(RuntimeError):
    def __init__(self, unit: str, stage: str) -> None:
        super().__init__(f"Action for {unit} (stage: {stage}) reported failure")
        self.unit = unit
        self.stage = stage


class StageOutcome(str, Enum):
    SKIPPED = "skipped"
    COMPLETED = "completed"


@dataclass(frozen=True)
class CommandAction:
    """Run a build command given as an argument vector (never a shell string)."""

    argv: Sequence[str]
    cwd: Path | None = None
    env: Mapping[str, str] | None = None

    def __call__(self) -> None:
        if not self.argv:
            raise ValueError("Empty command")
        logger.debug("Running %s", list(self.argv))
        subprocess.run(
            list(self.argv),
            cwd=str(self.cwd) if self.cwd is not None else None,
            env=dict(self.env) if self.env is not None else None,
            check=True,
        )


@dataclass(frozen=True)
class StageExecutor:
    """The check -> act -> record protocol, in one place for every call site.

    Holds no state of its own: all state lives in the store.
    """

    store: CheckpointStore

    def run(
        self,
        unit: str,
        stage: str,
        action: Action,
        input_artifact: Path | None = None,
        *,
        force: bool = False,
        record_type: str | None = None,
    ) -> StageOutcome:
        validate_unit_name(unit)
        validate_stage_label(stage)
        if self.store.should_skip(unit, input_artifact, force=force):
            return StageOutcome.SKIPPED

        bus = self.store.bus
        bus.publish(StageStarted(occurred_at=utc_now(), unit=unit, stage=stage))
        try:
            ok = action()
            if ok is False:
                raise StageActionFailed(unit, stage)
        except BaseException as exc:
            bus.publish(StageFailed(occurred_at=utc_now(), unit=unit, stage=stage, error=str(exc) or type(exc).__name__))
            raise

        self.store.create(unit, stage, input_artifact, record_type=record_type)
        return StageOutcome.COMPLETED
