from __future__ import annotations

from .errors import InvalidStateTransition

_MAIN_CHAIN: tuple[str, ...] = ("PENDING", "GENERATED", "APPROVED", "SENT")
_SKIPPABLE_FROM = frozenset({"PENDING", "GENERATED"})
AI_STATUSES = frozenset(_MAIN_CHAIN) | {"SKIPPED"}


def can_transition(current: str | None, target: str) -> bool:
    if target not in AI_STATUSES:
        return False
    if current is None:
        return target == "PENDING"
    if current == target:
        return True
    if target == "SKIPPED":
        return current in _SKIPPABLE_FROM
    if current == "SKIPPED":
        return False
    return _MAIN_CHAIN.index(target) > _MAIN_CHAIN.index(current)


def ensure_transition(current: str | None, target: str) -> bool:
    """Validate a move of ``ai_status``.

    Returns False when ``target`` equals ``current`` (nothing to write) and
    True for a real forward move. Raises InvalidStateTransition otherwise.
    """
    if not can_transition(current, target):
        raise InvalidStateTransition(current, target)
    return current != target
