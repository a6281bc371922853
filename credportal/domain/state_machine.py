from __future__ import annotations

from enum import Enum
from typing import Generic, Mapping, TypeVar

from credportal.domain.errors import InvalidTransitionError, NotAuthorizedError
from credportal.domain.session import REVIEW_ROLES, SessionContext
from credportal.domain.states import (
    APPLICATION_TRANSITIONS,
    CONTRACT_TRANSITIONS,
    SANCTION_TRANSITIONS,
    ApplicationStatus,
    ContractStatus,
    SanctionStatus,
)

S = TypeVar("S", bound=Enum)


class StateMachine(Generic[S]):
    def __init__(self, entity: str, transitions: Mapping[S, set[S]]) -> None:
        self.entity = entity
        self.transitions = transitions

    def allowed(self, current: S) -> set[S]:
        return set(self.transitions.get(current, set()))

    def can_transition(self, current: S, target: S) -> bool:
        return target in self.transitions.get(current, set())

    def transition(self, current: S, target: S) -> S:
        if not self.can_transition(current, target):
            raise InvalidTransitionError(self.entity, current.value, target.value)
        return target


application_machine: StateMachine[ApplicationStatus] = StateMachine("application", APPLICATION_TRANSITIONS)
contract_machine: StateMachine[ContractStatus] = StateMachine("contract", CONTRACT_TRANSITIONS)
sanction_machine: StateMachine[SanctionStatus] = StateMachine("sanction", SANCTION_TRANSITIONS)


CANDIDATE_EDGES = {
    (ApplicationStatus.DRAFT, ApplicationStatus.SUBMITTED),
    (ApplicationStatus.PENDING_CORRECTION, ApplicationStatus.UNDER_ANALYSIS),
}


def authorize_application_transition(
    session: SessionContext,
    candidate_id: str,
    current: ApplicationStatus,
    target: ApplicationStatus,
) -> None:
    """Check who may move an application along an edge that is already legal."""
    if (current, target) in CANDIDATE_EDGES:
        if session.user_id != candidate_id:
            raise NotAuthorizedError(
                f"Only the candidate may move an application {current.value} -> {target.value}"
            )
        return
    if not session.has_any(REVIEW_ROLES):
        raise NotAuthorizedError(
            f"Analyst or manager capability required for {current.value} -> {target.value}"
        )
