"""
Ledger Service - AmaCoins balance mutations

The balance stored on ``users.amacoins`` is a materialized fold over the
append-only ``amacoin_transactions`` table. Both are written in the same
database transaction, so for every user::

    users.amacoins == sum(amacoin_transactions.amount)

Balance writes are serialized per user: the user row is read with
``SELECT ... FOR UPDATE`` and written with a compare-and-swap on the
previous balance. A lost race surfaces as ``ConcurrentModification`` and
``run_atomic`` retries the whole unit of work.
"""
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from psycopg2 import errorcodes
from tenacity import Retrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from amazonia.config import settings
from amazonia.db.models import (
    User, AmacoinTransaction, TransactionType, Visit, Redemption, QuizAttempt
)
from amazonia.exceptions import NotFound, InsufficientBalance, ConcurrentModification

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENTITY_TYPES = {
    Visit: "visit",
    Redemption: "redemption",
    QuizAttempt: "quiz_attempt",
}


class LedgerService:
    """Service for crediting and debiting AmaCoins"""

    def lock_user(self, db: Session, user_id: int) -> User:
        """Load the user row for update, refreshing any stale identity"""
        user = db.query(User).filter(
            User.id == user_id
        ).with_for_update().populate_existing().first()
        if not user:
            raise NotFound("User not found", user_id=user_id)
        return user

    def apply_transaction(
        self,
        db: Session,
        user_id: int,
        amount: int,
        transaction_type: TransactionType,
        related_entity: Any = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> AmacoinTransaction:
        """
        Credit (amount > 0) or debit (amount < 0) a user's balance.

        Must run inside the caller's transaction; nothing is committed here.
        Replaying an ``idempotency_key`` returns the original row untouched.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise ValueError(f"amount must be a non-zero integer, got {amount!r}")

        if idempotency_key:
            existing = db.query(AmacoinTransaction).filter(
                AmacoinTransaction.idempotency_key == idempotency_key
            ).first()
            if existing:
                logger.info(f"Ledger replay for key {idempotency_key}, returning transaction {existing.id}")
                return existing

        user = self.lock_user(db, user_id)
        previous_balance = user.amacoins
        new_balance = previous_balance + amount

        if new_balance < 0:
            raise InsufficientBalance(
                balance=previous_balance,
                required=-amount
            )

        updated = db.query(User).filter(
            User.id == user_id,
            User.amacoins == previous_balance
        ).update({User.amacoins: new_balance}, synchronize_session="evaluate")

        if updated != 1:
            logger.warning(f"Balance CAS miss for user {user_id} (expected {previous_balance})")
            raise ConcurrentModification(user_id=user_id)

        related_type, related_id = self._entity_ref(related_entity)
        row = AmacoinTransaction(
            user_id=user_id,
            amount=amount,
            previous_balance=previous_balance,
            new_balance=new_balance,
            transaction_type=transaction_type,
            related_entity_type=related_type,
            related_entity_id=related_id,
            description=description,
            idempotency_key=idempotency_key
        )
        db.add(row)
        db.flush()

        logger.info(
            f"Ledger {transaction_type.value} of {amount} for user {user_id}: "
            f"{previous_balance} -> {new_balance}"
        )
        return row

    def run_atomic(self, db: Session, operation: Callable[[], T]) -> T:
        """
        Run ``operation`` as one database transaction.

        Commits on success and rolls back on any error. Conflicts
        (balance CAS misses, unique constraint races) are retried
        up to ``LEDGER_MAX_RETRIES`` times before surfacing as
        ``ConcurrentModification``.
        """
        retrying = Retrying(
            stop=stop_after_attempt(settings.LEDGER_MAX_RETRIES + 1),
            wait=wait_exponential(multiplier=0.05, max=0.5),
            retry=retry_if_exception_type(ConcurrentModification),
            reraise=True
        )
        for attempt in retrying:
            with attempt:
                try:
                    result = operation()
                    db.commit()
                except IntegrityError as e:
                    db.rollback()
                    if not _is_unique_violation(e):
                        logger.error(f"Integrity error, not retrying: {e.orig}")
                        raise
                    logger.warning(f"Unique constraint conflict, retrying: {e.orig}")
                    raise ConcurrentModification("Conflicting write, please retry") from e
                except Exception:
                    db.rollback()
                    raise
        return result

    def get_balance(self, db: Session, user_id: int) -> int:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFound("User not found", user_id=user_id)
        return user.amacoins

    def list_transactions(
        self,
        db: Session,
        user_id: int,
        limit: int = 20,
        offset: int = 0
    ) -> List[AmacoinTransaction]:
        """Get a user's ledger, newest first"""
        return db.query(AmacoinTransaction).filter(
            AmacoinTransaction.user_id == user_id
        ).order_by(
            AmacoinTransaction.id.desc()
        ).offset(offset).limit(limit).all()

    def reconcile(self, db: Session, user_id: int) -> Dict[str, Any]:
        """Compare the cached balance with the fold over the ledger"""
        balance = self.get_balance(db, user_id)
        ledger_sum = db.query(
            func.coalesce(func.sum(AmacoinTransaction.amount), 0)
        ).filter(
            AmacoinTransaction.user_id == user_id
        ).scalar()

        last = db.query(AmacoinTransaction).filter(
            AmacoinTransaction.user_id == user_id
        ).order_by(AmacoinTransaction.id.desc()).first()
        last_balance = last.new_balance if last else 0

        consistent = balance == int(ledger_sum) == last_balance
        if not consistent:
            logger.error(
                f"Ledger mismatch for user {user_id}: balance={balance} "
                f"sum={ledger_sum} last_new_balance={last_balance}"
            )

        return {
            "user_id": user_id,
            "balance": balance,
            "ledger_sum": int(ledger_sum),
            "last_new_balance": last_balance,
            "consistent": consistent
        }

    @staticmethod
    def _entity_ref(entity: Any):
        if entity is None:
            return None, None
        entity_type = ENTITY_TYPES.get(type(entity))
        if entity_type is None:
            raise ValueError(f"Unsupported ledger entity {type(entity).__name__}")
        return entity_type, entity.id


def _is_unique_violation(error: IntegrityError) -> bool:
    orig = error.orig
    if getattr(orig, "pgcode", None) is not None:
        return orig.pgcode == errorcodes.UNIQUE_VIOLATION
    # sqlite3 reports constraint kinds only in the message
    return "UNIQUE constraint failed" in str(orig)


# Singleton instance
ledger_service = LedgerService()
