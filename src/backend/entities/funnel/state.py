"""Sub-question status state machine.

``pending -> running -> completed | failed``; ``failed -> pending`` for a
retry. ``completed`` is terminal and no transition skips ``running``.
"""

from entities.shared.errors import InvalidStatusTransitionError
from models import SubQuestionStatus

ALLOWED_TRANSITIONS: dict[SubQuestionStatus, frozenset[SubQuestionStatus]] = {
    SubQuestionStatus.PENDING: frozenset({SubQuestionStatus.RUNNING}),
    SubQuestionStatus.RUNNING: frozenset({SubQuestionStatus.COMPLETED, SubQuestionStatus.FAILED}),
    SubQuestionStatus.FAILED: frozenset({SubQuestionStatus.PENDING}),
    SubQuestionStatus.COMPLETED: frozenset(),
}


def can_transition(current: SubQuestionStatus | str, target: SubQuestionStatus | str) -> bool:
    return SubQuestionStatus(target) in ALLOWED_TRANSITIONS[SubQuestionStatus(current)]


def ensure_transition(
    current: SubQuestionStatus | str, target: SubQuestionStatus | str
) -> SubQuestionStatus:
    """Return *target* as a status, or raise if the move is not allowed.

    Raises:
        InvalidStatusTransitionError: If ``current -> target`` is illegal.
    """
    current_status = SubQuestionStatus(current)
    target_status = SubQuestionStatus(target)
    if not can_transition(current_status, target_status):
        raise InvalidStatusTransitionError(current_status.value, target_status.value)
    return target_status
