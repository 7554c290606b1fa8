from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.commerce.commissions.service import CommissionLedger
from app.commerce.commissions.types import CommissionResult
from app.commerce.confirmation.errors import MissingCorrelationError, UnknownEnrollmentError
from app.commerce.confirmation.types import (
    EVENT_ASYNC_PAYMENT_FAILED,
    EVENT_SESSION_COMPLETED,
    EVENT_SESSION_EXPIRED,
    OUTCOME_CANCELLED,
    OUTCOME_CONFIRMED,
    OUTCOME_DUPLICATE,
    OUTCOME_FAILED,
    OUTCOME_IGNORED,
    ConfirmationResult,
)
from app.commerce.enrollments.errors import EnrollmentNotFoundError
from app.commerce.enrollments.service import EnrollmentLedger
from app.commerce.enrollments.types import ENROLLMENT_TYPE_PARTIAL_GRANT
from app.commerce.lms_sync.service import sync_enrollment_after_payment
from app.db.models.enrollments import Enrollment
from app.db.repo.courses_repo import CoursesRepo
from app.db.repo.enrollments_repo import EnrollmentsRepo
from app.db.session import SessionLocal
from app.services.best_effort import run_best_effort
from app.services.email_sender import (
    EMAIL_TEMPLATE_PARTIAL_GRANT_ENROLLMENT,
    EMAIL_TEMPLATE_PAYMENT_CONFIRMATION,
    send_template_email,
)

logger = structlog.get_logger(__name__)


def extract_session_object(event: dict[str, Any]) -> dict[str, Any]:
    data = event.get("data")
    if not isinstance(data, dict):
        return {}
    session_object = data.get("object")
    return session_object if isinstance(session_object, dict) else {}


def extract_enrollment_id(session_object: dict[str, Any]) -> UUID:
    metadata = session_object.get("metadata")
    raw_id = None
    if isinstance(metadata, dict):
        raw_id = metadata.get("enrollmentId")
    if not raw_id:
        raw_id = session_object.get("client_reference_id")
    if not raw_id:
        raise MissingCorrelationError
    try:
        return UUID(str(raw_id))
    except ValueError as exc:
        raise MissingCorrelationError from exc


def extract_payment_id(session_object: dict[str, Any]) -> str:
    payment_intent = session_object.get("payment_intent")
    if isinstance(payment_intent, dict):
        payment_intent = payment_intent.get("id")
    if payment_intent:
        return str(payment_intent)
    return str(session_object.get("id") or "")


async def _record_commission(
    enrollment_id: UUID,
    *,
    session_factory: async_sessionmaker[AsyncSession],
) -> CommissionResult:
    async with session_factory.begin() as session:
        return await CommissionLedger.record_commission(
            session,
            enrollment_id=enrollment_id,
            now_utc=datetime.now(timezone.utc),
        )


async def _send_confirmation_email(enrollment: Enrollment, *, course_title: str) -> bool:
    template = (
        EMAIL_TEMPLATE_PARTIAL_GRANT_ENROLLMENT
        if enrollment.enrollment_type == ENROLLMENT_TYPE_PARTIAL_GRANT
        else EMAIL_TEMPLATE_PAYMENT_CONFIRMATION
    )
    return await send_template_email(
        template=template,
        to_email=enrollment.email,
        data={
            "courseTitle": course_title,
            "courseId": enrollment.course_id,
            "enrollmentId": str(enrollment.id),
            "amount": str(enrollment.amount),
            "originalPrice": str(enrollment.original_price),
            "discountPercentage": enrollment.discount_percentage,
            "currency": enrollment.currency,
        },
    )


async def _confirm(
    event_id: str,
    session_object: dict[str, Any],
    *,
    session_factory: async_sessionmaker[AsyncSession],
    now_utc: datetime,
) -> ConfirmationResult:
    enrollment_id = extract_enrollment_id(session_object)
    async with session_factory.begin() as session:
        if await EnrollmentsRepo.get_by_id(session, enrollment_id) is None:
            raise UnknownEnrollmentError
        transition = await EnrollmentLedger.confirm_payment(
            session,
            enrollment_id=enrollment_id,
            event_id=event_id,
            payment_id=extract_payment_id(session_object),
            now_utc=now_utc,
        )
        enrollment = transition.enrollment
        course = await CoursesRepo.get_by_id(session, enrollment.course_id)
        course_title = course.title if course is not None else enrollment.course_id

    result = ConfirmationResult(
        event_id=event_id,
        event_type=EVENT_SESSION_COMPLETED,
        outcome=OUTCOME_CONFIRMED if transition.transitioned else OUTCOME_DUPLICATE,
        enrollment_id=enrollment_id,
    )
    if not transition.transitioned:
        logger.info("payment_event_duplicate", event_id=event_id, enrollment_id=str(enrollment_id))
        return result

    # The transition is committed; nothing below may undo it or fail the delivery.
    result.side_effects.append(
        await run_best_effort(
            "commission",
            _record_commission(enrollment_id, session_factory=session_factory),
            enrollment_id=str(enrollment_id),
        )
    )
    result.side_effects.append(
        await run_best_effort(
            "confirmation_email",
            _send_confirmation_email(enrollment, course_title=course_title),
            enrollment_id=str(enrollment_id),
        )
    )
    result.side_effects.append(
        await run_best_effort(
            "lms_sync",
            sync_enrollment_after_payment(enrollment_id, session_factory=session_factory),
            enrollment_id=str(enrollment_id),
        )
    )
    return result


async def _expire(
    event_id: str,
    session_object: dict[str, Any],
    *,
    session_factory: async_sessionmaker[AsyncSession],
) -> ConfirmationResult:
    enrollment_id = extract_enrollment_id(session_object)
    async with session_factory.begin() as session:
        cancelled = await EnrollmentLedger.cancel(session, enrollment_id=enrollment_id)
    return ConfirmationResult(
        event_id=event_id,
        event_type=EVENT_SESSION_EXPIRED,
        outcome=OUTCOME_CANCELLED if cancelled else OUTCOME_DUPLICATE,
        enrollment_id=enrollment_id,
    )


async def _fail(
    event_id: str,
    session_object: dict[str, Any],
    *,
    session_factory: async_sessionmaker[AsyncSession],
    now_utc: datetime,
) -> ConfirmationResult:
    enrollment_id = extract_enrollment_id(session_object)
    async with session_factory.begin() as session:
        if await EnrollmentsRepo.get_by_id(session, enrollment_id) is None:
            raise UnknownEnrollmentError
        failed = await EnrollmentLedger.mark_failed(
            session,
            enrollment_id=enrollment_id,
            event_id=event_id,
            now_utc=now_utc,
        )
    return ConfirmationResult(
        event_id=event_id,
        event_type=EVENT_ASYNC_PAYMENT_FAILED,
        outcome=OUTCOME_FAILED if failed else OUTCOME_DUPLICATE,
        enrollment_id=enrollment_id,
    )


async def handle_payment_event(
    event: dict[str, Any],
    *,
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
    now_utc: datetime | None = None,
) -> ConfirmationResult:
    """Apply one verified provider event to the enrollment ledger.

    Raises ``MissingCorrelationError`` when the event carries no usable
    enrollment id and ``UnknownEnrollmentError`` when it points at a row
    that does not exist. Every other outcome, duplicates included, is a
    result the provider should see as delivered.
    """
    now_utc = now_utc or datetime.now(timezone.utc)
    event_id = str(event.get("id") or "")
    event_type = str(event.get("type") or "")
    session_object = extract_session_object(event)

    if event_type == EVENT_SESSION_COMPLETED:
        if not event_id:
            raise MissingCorrelationError
        try:
            return await _confirm(event_id, session_object, session_factory=session_factory, now_utc=now_utc)
        except EnrollmentNotFoundError as exc:
            raise UnknownEnrollmentError from exc
    if event_type == EVENT_SESSION_EXPIRED:
        return await _expire(event_id, session_object, session_factory=session_factory)
    if event_type == EVENT_ASYNC_PAYMENT_FAILED:
        if not event_id:
            raise MissingCorrelationError
        return await _fail(event_id, session_object, session_factory=session_factory, now_utc=now_utc)

    logger.info("payment_event_ignored", event_id=event_id, event_type=event_type)
    return ConfirmationResult(event_id=event_id, event_type=event_type, outcome=OUTCOME_IGNORED)
