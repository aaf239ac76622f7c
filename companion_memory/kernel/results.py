from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class StageStatus(str, Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class StageResult:
    stage: str
    status: StageStatus
    payload: Any = None
    error: str | None = None

    @classmethod
    def success(cls, stage: str, payload: Any = None) -> "StageResult":
        return cls(stage=stage, status=StageStatus.SUCCESS, payload=payload)

    @classmethod
    def degraded(cls, stage: str, error: str, payload: Any = None) -> "StageResult":
        return cls(stage=stage, status=StageStatus.DEGRADED, payload=payload, error=error)

    @classmethod
    def failed(cls, stage: str, error: str) -> "StageResult":
        return cls(stage=stage, status=StageStatus.FAILED, error=error)

    @classmethod
    def skipped(cls, stage: str, reason: str | None = None) -> "StageResult":
        return cls(stage=stage, status=StageStatus.SKIPPED, error=reason)

    @property
    def has_payload(self) -> bool:
        return self.status in {StageStatus.SUCCESS, StageStatus.DEGRADED} and self.payload is not None


@dataclass(slots=True)
class KernelRunReport:
    user_id: str | None
    conversation_id: str | None
    message_id: int | None
    stages: list[StageResult] = field(default_factory=list)

    def add(self, result: StageResult) -> StageResult:
        self.stages.append(result)
        return result

    def get(self, stage: str) -> StageResult | None:
        for result in self.stages:
            if result.stage == stage:
                return result
        return None

    @property
    def skipped(self) -> bool:
        return bool(self.stages) and all(result.status == StageStatus.SKIPPED for result in self.stages)

    @property
    def ok(self) -> bool:
        return all(result.status in {StageStatus.SUCCESS, StageStatus.SKIPPED} for result in self.stages)


def error_text(exc: BaseException) -> str:
    message = str(exc).strip()
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__
