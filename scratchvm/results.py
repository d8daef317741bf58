"""Result types for the provisioning state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class Stage(str, Enum):
    INIT = 'Init'
    IMAGE_READY = 'ImageReady'
    DISK_READY = 'DiskReady'
    BUNDLE_READY = 'BundleReady'
    LAUNCHED = 'Launched'
    RUNNING = 'Running'
    FAILED = 'Failed'

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class StageFailure:
    stage: Stage
    error_type: str
    message: str
    error: BaseException | None = field(default=None, compare=False, repr=False)

    @classmethod
    def from_exception(cls, stage: Stage, ex: BaseException) -> 'StageFailure':
        return cls(stage, type(ex).__name__, str(ex), ex)

    def describe(self) -> str:
        return f'FAILED stage={self.stage} error={self.error_type}: {self.message}'


@dataclass
class ProvisionResult:
    name: str
    state: Stage = Stage.INIT
    history: list[Stage] = field(default_factory=list)
    failure: StageFailure | None = None
    disk_path: Path | None = None
    seed_path: Path | None = None
    forwarded_ports: dict[int, str] = field(default_factory=dict)
    display: str = ''

    @property
    def ok(self) -> bool:
        return self.state == Stage.RUNNING

    def advance(self, stage: Stage) -> None:
        self.history.append(stage)
        self.state = stage

    def fail(self, stage: Stage, ex: BaseException) -> None:
        self.failure = StageFailure.from_exception(stage, ex)
        self.history.append(Stage.FAILED)
        self.state = Stage.FAILED

    def as_dict(self) -> dict:
        return {
            'name': self.name,
            'state': str(self.state),
            'history': [str(s) for s in self.history],
            'failure': None
            if self.failure is None
            else {
                'stage': str(self.failure.stage),
                'error_type': self.failure.error_type,
                'message': self.failure.message,
            },
            'disk_path': str(self.disk_path) if self.disk_path else None,
            'seed_path': str(self.seed_path) if self.seed_path else None,
            'forwarded_ports': dict(self.forwarded_ports),
            'display': self.display,
        }
