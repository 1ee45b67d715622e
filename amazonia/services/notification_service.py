"""
Notification Service - in-app notifications for ledger events

Notifications are written after the request transaction commits, from a
Celery task, so a failing notification never affects balances.
"""
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from amazonia.db.models import User, UserNotification

logger = logging.getLogger(__name__)


class NotificationPreferences(BaseModel):
    """Typed view over ``users.notification_preferences``; unknown keys are ignored"""
    model_config = ConfigDict(extra="ignore")

    events: bool = True
    rewards: bool = True
    quizzes: bool = True
    emergency: bool = True

    @classmethod
    def from_raw(cls, raw: Optional[Dict[str, Any]]) -> "NotificationPreferences":
        return cls.model_validate(raw or {})


# type -> (preference category, title, message template)
TEMPLATES = {
    "visit_verified": (
        "events", "Check-in verified!",
        "Your check-in {verification_code} was verified."
    ),
    "visit_rejected": (
        "events", "Check-in rejected",
        "Your check-in was rejected: {reason}"
    ),
    "redemption_success": (
        "rewards", "Reward redeemed!",
        "You redeemed {reward_name}. Redemption code: {redemption_code}"
    ),
    "redemption_confirmed": (
        "rewards", "Redemption confirmed!",
        "Your redemption {redemption_code} was confirmed by the partner."
    ),
    "redemption_cancelled": (
        "rewards", "Redemption cancelled",
        "Your redemption {redemption_code} was cancelled and {refunded_amacoins} AmaCoins were refunded."
    ),
    "quiz_completed": (
        "quizzes", "Quiz completed!",
        "You scored {score}% and earned {amacoins_earned} AmaCoins."
    ),
}


class NotificationService:
    """Service for recording and dispatching user notifications"""

    def enqueue(self, user_id: int, notification_type: str, data: Dict[str, Any]) -> None:
        """Dispatch a notification to the worker after the caller has committed"""
        from amazonia.worker.tasks import send_user_notification

        try:
            send_user_notification.delay(user_id, notification_type, data)
        except Exception as e:
            logger.error(f"Could not enqueue {notification_type} notification for user {user_id}: {e}")

    def record(
        self,
        db: Session,
        user_id: int,
        notification_type: str,
        data: Dict[str, Any]
    ) -> Optional[UserNotification]:
        """Store a notification if the user's preferences allow it"""
        if notification_type not in TEMPLATES:
            raise ValueError(f"Unknown notification type: {notification_type}")

        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            logger.warning(f"Skipping {notification_type} notification, user {user_id} not found")
            return None

        category, title, template = TEMPLATES[notification_type]
        preferences = NotificationPreferences.from_raw(user.notification_preferences)
        if not getattr(preferences, category):
            logger.debug(f"User {user_id} opted out of {category} notifications")
            return None

        notification = UserNotification(
            user_id=user_id,
            type=notification_type,
            title=title,
            message=template.format_map(_Defaulting(data)),
            data=data
        )
        db.add(notification)
        db.commit()
        db.refresh(notification)

        logger.info(f"Recorded {notification_type} notification for user {user_id}")
        return notification


class _Defaulting(dict):
    def __missing__(self, key):
        return "-"


# Singleton instance
notification_service = NotificationService()
