from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Protocol, Sequence

from planner_taskgraph.core.errors import InvalidState, NotFound
from planner_taskgraph.core.model import TASK_STATUSES


# Legal task status transitions (besides same-status no-ops).
#   Todo       -> InProgress, Blocked, Done
#   InProgress -> Todo, Blocked, Done
#   Blocked    -> Todo, InProgress
#   Done       -> Todo (reopen), Blocked
TRANSITIONS: dict[str, frozenset[str]] = {
    "Todo": frozenset({"InProgress", "Blocked", "Done"}),
    "InProgress": frozenset({"Todo", "Blocked", "Done"}),
    "Blocked": frozenset({"Todo", "InProgress"}),
    "Done": frozenset({"Todo", "Blocked"}),
}


@dataclass(frozen=True)
class Transition:
    old_status: str
    new_status: str
    is_blocked: bool
    became_done: bool
    became_unblocked: bool

    @property
    def changed(self) -> bool:
        return self.old_status != self.new_status


def transition(
    current: str,
    target: str,
    *,
    is_blocked: bool,
    dependencies_satisfied: bool,
    task_id: str | None = None,
) -> Transition:
    """Decide the outcome of moving a task from `current` to `target`.

    Completion requires every dependency to be Done; the caller computes that
    and passes it in so this stays free of graph and storage concerns.
    """
    if target not in TASK_STATUSES:
        raise InvalidState(
            code="E_INVALID_STATUS",
            message=f"unknown task status: {target!r} (allowed: {', '.join(TASK_STATUSES)})",
            entity=_entity(task_id),
        )

    if current == target:
        return Transition(
            old_status=current,
            new_status=target,
            is_blocked=is_blocked,
            became_done=False,
            became_unblocked=False,
        )

    if target not in TRANSITIONS.get(current, frozenset()):
        raise InvalidState(
            code="E_ILLEGAL_TRANSITION",
            message=f"cannot move task from {current} to {target}",
            entity=_entity(task_id),
        )

    if target == "Done" and not dependencies_satisfied:
        raise InvalidState(
            code="E_DEPENDENCIES_NOT_DONE",
            message="task cannot be completed while a dependency is not Done",
            entity=_entity(task_id),
        )

    if target == "Blocked":
        blocked = True
    elif current == "Blocked":
        blocked = False
    else:
        blocked = is_blocked

    return Transition(
        old_status=current,
        new_status=target,
        is_blocked=blocked,
        became_done=target == "Done",
        became_unblocked=current == "Blocked",
    )


class Ordered(Protocol):
    id: str
    order_index: int


def next_order_index(indices: Iterable[int]) -> int:
    return max(indices, default=-1) + 1


def reorder(items: Sequence[Ordered], item_id: str, new_index: int) -> None:
    """Move one item to `new_index`, shifting the ones in between by one.

    Moving down (to a smaller index) pushes items in [new, old) up by one;
    moving up pulls items in (old, new] down by one. Items outside that
    window keep their index, so gaps in the sequence survive.
    """
    if new_index < 0:
        raise InvalidState(
            code="E_NEGATIVE_ORDER_INDEX",
            message=f"order index must be >= 0, got {new_index}",
            entity=item_id,
        )

    moving = next((it for it in items if it.id == item_id), None)
    if moving is None:
        raise NotFound(code="E_NOT_FOUND", message=f"unknown item: {item_id}", entity=item_id)

    old_index = moving.order_index
    if old_index == new_index:
        return

    for it in items:
        if it.id == item_id:
            continue
        if new_index < old_index and new_index <= it.order_index < old_index:
            it.order_index += 1
        elif new_index > old_index and old_index < it.order_index <= new_index:
            it.order_index -= 1

    moving.order_index = new_index


def _entity(task_id: str | None) -> str | None:
    return f"task:{task_id}" if task_id else None
