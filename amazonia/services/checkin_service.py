"""
Check-in Service - proximity-verified visits to places and events

A successful check-in creates one ``visits`` row with a unique
verification code and credits the place/event AmaCoins value exactly once.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from amazonia.config import settings
from amazonia.db.models import Visit, VisitStatus, Place, Event, TransactionType
from amazonia.exceptions import (
    AmazoniaError, NotFound, Forbidden, TooFar, AlreadyCheckedIn, EventFull,
    InvalidStateTransition, IdempotencyKeyConflict
)
from amazonia.services.code_service import code_generator
from amazonia.services.geo_service import haversine_distance
from amazonia.services.ledger_service import ledger_service
from amazonia.services.notification_service import notification_service

logger = logging.getLogger(__name__)


class CheckInService:
    """Service for GPS check-ins and partner review of visits"""

    def check_in(
        self,
        db: Session,
        user_id: int,
        latitude: float,
        longitude: float,
        place_id: Optional[int] = None,
        event_id: Optional[int] = None,
        idempotency_key: Optional[str] = None
    ) -> Tuple[Visit, bool]:
        """
        Check a user in at a place or an event.

        Returns ``(visit, replayed)``; ``replayed`` is true when the
        idempotency key matched an earlier check-in and nothing changed.
        """
        if (place_id is None) == (event_id is None):
            raise AmazoniaError("Specify exactly one of place_id or event_id")

        def operation() -> Tuple[Visit, bool]:
            if idempotency_key:
                existing = db.query(Visit).filter(
                    Visit.user_id == user_id,
                    Visit.idempotency_key == idempotency_key
                ).first()
                if existing:
                    if (existing.place_id, existing.event_id) != (place_id, event_id):
                        raise IdempotencyKeyConflict(idempotency_key=idempotency_key)
                    return existing, True

            target = self._get_target(db, place_id, event_id)
            distance = haversine_distance(latitude, longitude, target.latitude, target.longitude)
            if distance > settings.CHECKIN_MAX_DISTANCE_KM:
                raise TooFar(
                    distance_km=round(distance, 3),
                    max_distance_km=settings.CHECKIN_MAX_DISTANCE_KM
                )

            # Serializes concurrent check-ins of the same user
            ledger_service.lock_user(db, user_id)

            now = datetime.utcnow()
            self._ensure_not_checked_in(db, user_id, place_id, event_id, now)
            if event_id is not None:
                self._claim_event_seat(db, target)

            status = VisitStatus.pending if settings.CHECKIN_REQUIRES_REVIEW else VisitStatus.verified
            visit = Visit(
                user_id=user_id,
                place_id=place_id,
                event_id=event_id,
                amacoins_earned=target.amacoins_value,
                verification_code=self._new_code(db),
                status=status,
                distance_km=round(distance, 3),
                idempotency_key=idempotency_key,
                visited_at=now,
                reviewed_at=None if status == VisitStatus.pending else now
            )
            db.add(visit)
            db.flush()

            if target.amacoins_value > 0:
                ledger_service.apply_transaction(
                    db,
                    user_id=user_id,
                    amount=target.amacoins_value,
                    transaction_type=TransactionType.credit,
                    related_entity=visit,
                    description=f"Check-in: {target.name}",
                    idempotency_key=f"visit:{visit.id}:credit"
                )
            return visit, False

        visit, replayed = ledger_service.run_atomic(db, operation)

        if replayed:
            logger.info(f"Check-in replay for user {user_id} returned visit {visit.id}")
        else:
            logger.info(
                f"User {user_id} checked in (visit {visit.id}, status {visit.status.value}, "
                f"+{visit.amacoins_earned} AmaCoins)"
            )
        return visit, replayed

    def verify_visit(self, db: Session, code: str, partner_id: Optional[int] = None) -> Visit:
        """Mark a pending visit as verified by partner staff or an admin"""
        def operation() -> Visit:
            visit = self._get_reviewable(db, code, partner_id)
            visit.status = VisitStatus.verified
            visit.reviewed_at = datetime.utcnow()
            db.flush()
            return visit

        visit = ledger_service.run_atomic(db, operation)
        logger.info(f"Visit {visit.id} verified")
        notification_service.enqueue(
            visit.user_id,
            "visit_verified",
            {"visit_id": visit.id, "verification_code": visit.verification_code}
        )
        return visit

    def reject_visit(
        self,
        db: Session,
        code: str,
        reason: Optional[str] = None,
        partner_id: Optional[int] = None
    ) -> Visit:
        """
        Reject a pending visit and claw back its AmaCoins.

        The clawback is limited to the user's current balance, since the
        coins may already have been spent.
        """
        def operation() -> Visit:
            visit = self._get_reviewable(db, code, partner_id)
            # Lock order: user row, then event row
            user = ledger_service.lock_user(db, visit.user_id)

            visit.status = VisitStatus.rejected
            visit.rejection_reason = reason
            visit.reviewed_at = datetime.utcnow()

            if visit.event_id is not None:
                db.query(Event).filter(
                    Event.id == visit.event_id,
                    Event.current_attendance > 0
                ).update(
                    {Event.current_attendance: Event.current_attendance - 1},
                    synchronize_session=False
                )

            clawback = min(visit.amacoins_earned, user.amacoins)
            if clawback > 0:
                ledger_service.apply_transaction(
                    db,
                    user_id=visit.user_id,
                    amount=-clawback,
                    transaction_type=TransactionType.debit,
                    related_entity=visit,
                    description=f"Visit rejected: {reason or 'no reason given'}",
                    idempotency_key=f"visit:{visit.id}:clawback"
                )
            db.flush()
            return visit

        visit = ledger_service.run_atomic(db, operation)
        logger.info(f"Visit {visit.id} rejected: {reason}")
        notification_service.enqueue(
            visit.user_id,
            "visit_rejected",
            {"visit_id": visit.id, "reason": reason}
        )
        return visit

    def list_user_visits(
        self,
        db: Session,
        user_id: int,
        limit: int = 10,
        offset: int = 0
    ) -> List[Visit]:
        return db.query(Visit).filter(
            Visit.user_id == user_id
        ).order_by(Visit.visited_at.desc(), Visit.id.desc()).offset(offset).limit(limit).all()

    def _get_target(self, db: Session, place_id: Optional[int], event_id: Optional[int]):
        if place_id is not None:
            place = db.query(Place).filter(Place.id == place_id).first()
            if not place:
                raise NotFound("Place not found", place_id=place_id)
            return place

        event = db.query(Event).filter(Event.id == event_id).first()
        if not event:
            raise NotFound("Event not found", event_id=event_id)
        return event

    def _ensure_not_checked_in(
        self,
        db: Session,
        user_id: int,
        place_id: Optional[int],
        event_id: Optional[int],
        now: datetime
    ) -> None:
        query = db.query(Visit.id).filter(
            Visit.user_id == user_id,
            Visit.status != VisitStatus.rejected
        )
        if place_id is not None:
            cutoff = now - timedelta(hours=settings.CHECKIN_COOLDOWN_HOURS)
            query = query.filter(Visit.place_id == place_id, Visit.visited_at >= cutoff)
        else:
            # One check-in per event
            query = query.filter(Visit.event_id == event_id)

        if query.first():
            raise AlreadyCheckedIn(place_id=place_id, event_id=event_id)

    def _claim_event_seat(self, db: Session, event: Event) -> None:
        claimed = db.query(Event).filter(
            Event.id == event.id,
            or_(
                Event.max_capacity.is_(None),
                Event.current_attendance < Event.max_capacity
            )
        ).update(
            {Event.current_attendance: Event.current_attendance + 1},
            synchronize_session=False
        )
        if claimed != 1:
            raise EventFull(event_id=event.id, max_capacity=event.max_capacity)
        db.expire(event, ["current_attendance"])

    def _new_code(self, db: Session) -> str:
        return code_generator.generate_unique(
            lambda code: db.query(Visit.id).filter(Visit.verification_code == code).first() is not None
        )

    def _get_reviewable(self, db: Session, code: str, partner_id: Optional[int]) -> Visit:
        visit = db.query(Visit).filter(
            Visit.verification_code == code
        ).with_for_update().populate_existing().first()
        if not visit:
            raise NotFound("Invalid verification code")

        if partner_id is not None:
            place = visit.place
            if place is None or place.partner_id != partner_id:
                raise Forbidden("This visit does not belong to your venue")

        if visit.status != VisitStatus.pending:
            raise InvalidStateTransition(
                f"Visit is already {visit.status.value}",
                status=visit.status.value
            )
        return visit


# Singleton instance
checkin_service = CheckInService()
