"""
Celery Tasks for async processing
"""
import logging
from typing import Any, Dict, List

from celery import shared_task
from amazonia.db.database import SessionLocal
from amazonia.db.models import User

logger = logging.getLogger(__name__)


def get_db_session():
    """Get database session for tasks"""
    return SessionLocal()


@shared_task(bind=True, max_retries=3, default_retry_delay=30)
def send_user_notification(self, user_id: int, notification_type: str, data: Dict[str, Any]):
    """Record an in-app notification after the originating request committed"""
    from amazonia.services.notification_service import notification_service

    db = get_db_session()
    try:
        notification = notification_service.record(db, user_id, notification_type, data)
        return {"notification_id": notification.id if notification else None}
    except Exception as e:
        logger.error(f"Notification {notification_type} for user {user_id} failed: {e}")
        db.rollback()
        raise self.retry(exc=e)
    finally:
        db.close()


@shared_task(bind=True, max_retries=1, default_retry_delay=300)
def reconcile_ledgers(self, batch_size: int = 500):
    """
    Audit every user's balance against the AmaCoins ledger.

    Reports users whose cached balance differs from the fold over their
    transactions. Nothing is corrected automatically.
    """
    from amazonia.services.ledger_service import ledger_service

    db = get_db_session()
    try:
        mismatches: List[Dict[str, Any]] = []
        checked = 0
        last_id = 0
        while True:
            user_ids = [
                row.id for row in db.query(User.id).filter(
                    User.id > last_id
                ).order_by(User.id.asc()).limit(batch_size).all()
            ]
            if not user_ids:
                break
            for user_id in user_ids:
                report = ledger_service.reconcile(db, user_id)
                checked += 1
                if not report["consistent"]:
                    mismatches.append(report)
            last_id = user_ids[-1]

        logger.info(f"Ledger reconciliation checked {checked} users, {len(mismatches)} mismatches")
        return {"checked": checked, "mismatches": mismatches}
    except Exception as e:
        logger.error(f"Ledger reconciliation failed: {e}")
        raise self.retry(exc=e)
    finally:
        db.close()
