"""Stage catalog, composite lead status and transition legality.

Nothing in here touches the database. ``LeadService`` loads rows, asks this
module what a transition means, and only then mutates.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal, Protocol


class StageLike(Protocol):
    id: uuid.UUID
    name: str
    display_name: str
    position: int
    probability: int
    is_won: bool
    is_lost: bool
    is_active: bool


class StageTransitionError(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class StageNotFoundError(LookupError):
    def __init__(self, stage_id: uuid.UUID) -> None:
        super().__init__(f"stage {stage_id} not found")
        self.stage_id = stage_id


@dataclass(frozen=True)
class Active:
    stage_id: uuid.UUID
    name: Literal["active"] = "active"


@dataclass(frozen=True)
class Won:
    stage_id: uuid.UUID
    name: Literal["won"] = "won"


@dataclass(frozen=True)
class Lost:
    stage_id: uuid.UUID
    lost_reason_id: uuid.UUID
    name: Literal["lost"] = "lost"


LeadStatus = Active | Won | Lost


class StageCatalog:
    def __init__(self, stages: Iterable[StageLike]) -> None:
        self._stages = sorted(stages, key=lambda stage: (stage.position, str(stage.id)))
        self._by_id = {stage.id: stage for stage in self._stages}

    def __iter__(self):  # type: ignore[no-untyped-def]
        return iter(self._stages)

    def __len__(self) -> int:
        return len(self._stages)

    def get(self, stage_id: uuid.UUID) -> StageLike:
        stage = self._by_id.get(stage_id)
        if stage is None:
            raise StageNotFoundError(stage_id)
        return stage

    def find(self, stage_id: uuid.UUID) -> StageLike | None:
        return self._by_id.get(stage_id)

    def won_stage(self) -> StageLike | None:
        for stage in self._stages:
            if stage.is_won and stage.is_active:
                return stage
        return None

    def initial_stage(self) -> StageLike | None:
        for stage in self.board_stages():
            if not stage.is_won:
                return stage
        return None

    def board_stages(self) -> list[StageLike]:
        return [stage for stage in self._stages if stage.is_active and not stage.is_lost]


def lead_status(stage: StageLike, lost_reason_id: uuid.UUID | None) -> LeadStatus:
    if lost_reason_id is not None:
        return Lost(stage_id=stage.id, lost_reason_id=lost_reason_id)
    if stage.is_won:
        return Won(stage_id=stage.id)
    return Active(stage_id=stage.id)


def is_closed(status: LeadStatus) -> bool:
    return not isinstance(status, Active)


@dataclass(frozen=True)
class StageChangePlan:
    outcome: Literal["moved", "unchanged", "requires_win_confirmation"]
    target: StageLike


def plan_stage_change(status: LeadStatus, target: StageLike) -> StageChangePlan:
    if isinstance(status, Won):
        raise StageTransitionError("lead is already won")
    if isinstance(status, Lost):
        raise StageTransitionError("lead is lost; reactivate it before changing stage")
    if not target.is_active:
        raise StageTransitionError("target stage is inactive")
    if target.is_lost:
        raise StageTransitionError("use mark-lost to close a lead as lost")
    if target.is_won:
        return StageChangePlan(outcome="requires_win_confirmation", target=target)
    if target.id == status.stage_id:
        return StageChangePlan(outcome="unchanged", target=target)
    return StageChangePlan(outcome="moved", target=target)


def ensure_can_mark_won(status: LeadStatus) -> None:
    if isinstance(status, Won):
        raise StageTransitionError("lead is already won")
    if isinstance(status, Lost):
        raise StageTransitionError("lost lead cannot be won; reactivate it first")


def ensure_can_mark_lost(status: LeadStatus) -> None:
    if isinstance(status, Won):
        raise StageTransitionError("won lead cannot be marked as lost")
    if isinstance(status, Lost):
        raise StageTransitionError("lead is already lost")


def ensure_can_reactivate(status: LeadStatus) -> None:
    if not isinstance(status, Lost):
        raise StageTransitionError("only lost leads can be reactivated")
