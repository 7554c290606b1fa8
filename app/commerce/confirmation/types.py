from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID

from app.services.best_effort import BestEffortResult

EVENT_SESSION_COMPLETED = "checkout.session.completed"
EVENT_SESSION_EXPIRED = "checkout.session.expired"
EVENT_ASYNC_PAYMENT_FAILED = "checkout.session.async_payment_failed"

HANDLED_EVENT_TYPES = frozenset(
    {
        EVENT_SESSION_COMPLETED,
        EVENT_SESSION_EXPIRED,
        EVENT_ASYNC_PAYMENT_FAILED,
    }
)

OUTCOME_CONFIRMED = "confirmed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_FAILED = "failed"
OUTCOME_IGNORED = "ignored"


@dataclass(slots=True)
class ConfirmationResult:
    event_id: str
    event_type: str
    outcome: str
    enrollment_id: UUID | None = None
    side_effects: list[BestEffortResult] = field(default_factory=list)

    @property
    def duplicate(self) -> bool:
        return self.outcome == OUTCOME_DUPLICATE
