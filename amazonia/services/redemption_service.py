"""
Redemption Service - exchanging AmaCoins for partner rewards

Stock decrement, ledger debit and the redemption row are written in one
transaction; cancellation reverses all three.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from amazonia.config import settings
from amazonia.db.models import (
    Reward, RewardType, Redemption, RedemptionStatus, TransactionType
)
from amazonia.exceptions import (
    NotFound, OutOfStock, InsufficientFunds, RewardUnavailable,
    RedemptionLimitReached, InvalidStateTransition, CancellationWindowExpired,
    RedemptionExpired, IdempotencyKeyConflict
)
from amazonia.services.code_service import code_generator
from amazonia.services.ledger_service import ledger_service
from amazonia.services.notification_service import notification_service

logger = logging.getLogger(__name__)

# How long a redemption code stays usable, by reward type
REDEMPTION_VALIDITY_DAYS = {
    RewardType.digital_service: 30,
    RewardType.discount_coupon: 7,
    RewardType.physical_product: 15,
}
DEFAULT_VALIDITY_DAYS = 30


class RedemptionService:
    """Service for the reward catalog, redemptions and partner confirmation"""

    def list_rewards(
        self,
        db: Session,
        reward_type: Optional[RewardType] = None,
        partner_id: Optional[int] = None,
        max_cost: Optional[int] = None,
        in_stock: bool = False,
        search: Optional[str] = None,
        limit: int = 10,
        offset: int = 0
    ) -> List[Reward]:
        """Get active rewards matching the catalog filters"""
        query = db.query(Reward).filter(Reward.is_active.is_(True))

        if reward_type is not None:
            query = query.filter(Reward.reward_type == reward_type)
        if partner_id is not None:
            query = query.filter(Reward.partner_id == partner_id)
        if max_cost is not None:
            query = query.filter(Reward.amacoins_cost <= max_cost)
        if in_stock:
            query = query.filter(Reward.stock > 0)
        if search:
            query = query.filter(Reward.name.ilike(f"%{search}%"))

        return query.order_by(Reward.amacoins_cost.asc(), Reward.id.asc()).offset(offset).limit(limit).all()

    def redeem(
        self,
        db: Session,
        user_id: int,
        reward_id: int,
        contact_info: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None
    ) -> Tuple[Redemption, bool]:
        """
        Redeem a reward for a user.

        Returns ``(redemption, replayed)``; ``replayed`` is true when the
        idempotency key matched an earlier redemption and nothing changed.
        """
        def operation() -> Tuple[Redemption, bool]:
            if idempotency_key:
                existing = db.query(Redemption).filter(
                    Redemption.user_id == user_id,
                    Redemption.idempotency_key == idempotency_key
                ).first()
                if existing:
                    if existing.reward_id != reward_id:
                        raise IdempotencyKeyConflict(idempotency_key=idempotency_key)
                    return existing, True

            reward = self._lock_reward(db, reward_id)
            if not reward.is_active or (
                reward.expiration_date is not None and reward.expiration_date < date.today()
            ):
                raise RewardUnavailable(reward_id=reward_id)
            if reward.stock <= 0:
                raise OutOfStock(reward_id=reward_id)

            user = ledger_service.lock_user(db, user_id)
            if user.amacoins < reward.amacoins_cost:
                raise InsufficientFunds(balance=user.amacoins, cost=reward.amacoins_cost)

            if reward.max_per_user:
                redeemed = db.query(func.count(Redemption.id)).filter(
                    Redemption.user_id == user_id,
                    Redemption.reward_id == reward_id,
                    Redemption.status.in_([RedemptionStatus.pending, RedemptionStatus.completed])
                ).scalar() or 0
                if redeemed >= reward.max_per_user:
                    raise RedemptionLimitReached(
                        f"You have reached the limit of {reward.max_per_user} redemptions for this reward",
                        max_per_user=reward.max_per_user
                    )

            decremented = db.query(Reward).filter(
                Reward.id == reward_id,
                Reward.stock > 0
            ).update({Reward.stock: Reward.stock - 1}, synchronize_session=False)
            if decremented != 1:
                raise OutOfStock(reward_id=reward_id)
            db.expire(reward, ["stock"])

            now = datetime.utcnow()
            validity = REDEMPTION_VALIDITY_DAYS.get(reward.reward_type, DEFAULT_VALIDITY_DAYS)
            redemption = Redemption(
                user_id=user_id,
                reward_id=reward_id,
                amacoins_spent=reward.amacoins_cost,
                redemption_code=self._new_code(db),
                status=RedemptionStatus.pending,
                contact_info=contact_info,
                idempotency_key=idempotency_key,
                redeemed_at=now,
                expires_at=now + timedelta(days=validity)
            )
            db.add(redemption)
            db.flush()

            if reward.amacoins_cost > 0:
                ledger_service.apply_transaction(
                    db,
                    user_id=user_id,
                    amount=-reward.amacoins_cost,
                    transaction_type=TransactionType.debit,
                    related_entity=redemption,
                    description=f"Reward redemption: {reward.name}",
                    idempotency_key=f"redemption:{redemption.id}:debit"
                )
            return redemption, False

        redemption, replayed = ledger_service.run_atomic(db, operation)

        if not replayed:
            logger.info(
                f"User {user_id} redeemed reward {reward_id} for {redemption.amacoins_spent} AmaCoins "
                f"(redemption {redemption.id})"
            )
            notification_service.enqueue(
                user_id,
                "redemption_success",
                {
                    "reward_id": reward_id,
                    "reward_name": redemption.reward.name,
                    "redemption_code": redemption.redemption_code
                }
            )
        return redemption, replayed

    def cancel(
        self,
        db: Session,
        redemption_id: int,
        user_id: Optional[int] = None,
        enforce_window: bool = True
    ) -> Redemption:
        """
        Cancel a pending redemption: refund AmaCoins and restore stock.

        ``user_id`` restricts the lookup to the owner's redemptions; admins
        pass None and may skip the cancellation window.
        """
        def operation() -> Redemption:
            query = db.query(Redemption).filter(Redemption.id == redemption_id)
            if user_id is not None:
                query = query.filter(Redemption.user_id == user_id)
            redemption = query.with_for_update().populate_existing().first()
            if not redemption:
                raise NotFound("Redemption not found", redemption_id=redemption_id)

            if redemption.status != RedemptionStatus.pending:
                raise InvalidStateTransition(
                    f"Redemption is already {redemption.status.value}",
                    status=redemption.status.value
                )

            deadline = redemption.redeemed_at + timedelta(minutes=settings.REDEMPTION_CANCEL_WINDOW_MINUTES)
            if enforce_window and datetime.utcnow() > deadline:
                raise CancellationWindowExpired(deadline=deadline.isoformat())

            self._lock_reward(db, redemption.reward_id)
            db.query(Reward).filter(
                Reward.id == redemption.reward_id
            ).update({Reward.stock: Reward.stock + 1}, synchronize_session=False)

            redemption.status = RedemptionStatus.cancelled
            redemption.cancelled_at = datetime.utcnow()

            if redemption.amacoins_spent > 0:
                ledger_service.apply_transaction(
                    db,
                    user_id=redemption.user_id,
                    amount=redemption.amacoins_spent,
                    transaction_type=TransactionType.refund,
                    related_entity=redemption,
                    description=f"Redemption cancelled: {redemption.redemption_code}",
                    idempotency_key=f"redemption:{redemption.id}:refund"
                )
            db.flush()
            return redemption

        redemption = ledger_service.run_atomic(db, operation)

        logger.info(f"Redemption {redemption.id} cancelled, refunded {redemption.amacoins_spent} AmaCoins")
        notification_service.enqueue(
            redemption.user_id,
            "redemption_cancelled",
            {
                "redemption_code": redemption.redemption_code,
                "refunded_amacoins": redemption.amacoins_spent
            }
        )
        return redemption

    def lookup_code(self, db: Session, partner_id: int, code: str) -> Redemption:
        """Check a redemption code presented at a partner's counter"""
        redemption = self._find_partner_redemption(db, partner_id, code)
        self._ensure_usable(redemption)
        return redemption

    def complete(self, db: Session, partner_id: int, code: str) -> Redemption:
        """Mark a pending redemption as handed over by the partner"""
        def operation() -> Redemption:
            redemption = self._find_partner_redemption(db, partner_id, code, for_update=True)
            self._ensure_usable(redemption)
            redemption.status = RedemptionStatus.completed
            redemption.completed_at = datetime.utcnow()
            redemption.completed_by_partner_id = partner_id
            db.flush()
            return redemption

        redemption = ledger_service.run_atomic(db, operation)

        logger.info(f"Redemption {redemption.id} completed by partner {partner_id}")
        notification_service.enqueue(
            redemption.user_id,
            "redemption_confirmed",
            {"redemption_code": redemption.redemption_code}
        )
        return redemption

    def list_user_redemptions(
        self,
        db: Session,
        user_id: int,
        status: Optional[RedemptionStatus] = None,
        limit: int = 10,
        offset: int = 0
    ) -> List[Redemption]:
        query = db.query(Redemption).filter(Redemption.user_id == user_id)
        if status is not None:
            query = query.filter(Redemption.status == status)
        return query.order_by(
            Redemption.redeemed_at.desc(), Redemption.id.desc()
        ).offset(offset).limit(limit).all()

    def _lock_reward(self, db: Session, reward_id: int) -> Reward:
        reward = db.query(Reward).filter(
            Reward.id == reward_id
        ).with_for_update().populate_existing().first()
        if not reward:
            raise NotFound("Reward not found", reward_id=reward_id)
        return reward

    def _find_partner_redemption(
        self,
        db: Session,
        partner_id: int,
        code: str,
        for_update: bool = False
    ) -> Redemption:
        query = db.query(Redemption).join(Reward).filter(
            Redemption.redemption_code == code,
            Reward.partner_id == partner_id
        )
        if for_update:
            query = query.with_for_update(of=Redemption).populate_existing()
        redemption = query.first()
        if not redemption:
            raise NotFound("Invalid redemption code or it does not belong to this partner")
        return redemption

    @staticmethod
    def _ensure_usable(redemption: Redemption) -> None:
        if redemption.status == RedemptionStatus.completed:
            raise InvalidStateTransition("This code has already been used", status="completed")
        if redemption.status == RedemptionStatus.cancelled:
            raise InvalidStateTransition("This code was cancelled", status="cancelled")
        if redemption.expires_at and redemption.expires_at < datetime.utcnow():
            raise RedemptionExpired(expires_at=redemption.expires_at.isoformat())

    def _new_code(self, db: Session) -> str:
        return code_generator.generate_unique(
            lambda code: db.query(Redemption.id).filter(Redemption.redemption_code == code).first() is not None
        )


# Singleton instance
redemption_service = RedemptionService()
