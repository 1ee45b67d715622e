"""
Quiz Service - quiz attempts and their AmaCoins rewards
"""
import logging
from datetime import datetime, timedelta
from typing import Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from amazonia.config import settings
from amazonia.db.models import (
    User, Quiz, QuizAttempt, QuizAttemptStatus, TransactionType
)
from amazonia.exceptions import (
    AmazoniaError, NotFound, Forbidden, InvalidStateTransition, AttemptExpired,
    AttemptLimitReached
)
from amazonia.services.ledger_service import ledger_service
from amazonia.services.notification_service import notification_service

logger = logging.getLogger(__name__)


class QuizService:
    """Service for starting and scoring quiz attempts"""

    def start_attempt(self, db: Session, user_id: int, quiz_id: int) -> Tuple[QuizAttempt, bool]:
        """
        Start an attempt, or resume the user's ongoing one.

        Returns ``(attempt, resumed)``. At most ``QUIZ_MAX_ATTEMPTS_PER_DAY``
        attempts per quiz may be started per user and UTC day.
        """
        quiz = db.query(Quiz).filter(Quiz.id == quiz_id).first()
        if not quiz:
            raise NotFound("Quiz not found", quiz_id=quiz_id)

        def operation() -> Tuple[QuizAttempt, bool]:
            # Serializes concurrent starts of the same user
            ledger_service.lock_user(db, user_id)

            now = datetime.utcnow()
            ongoing = db.query(QuizAttempt).filter(
                QuizAttempt.user_id == user_id,
                QuizAttempt.quiz_id == quiz_id,
                QuizAttempt.status == QuizAttemptStatus.in_progress,
                QuizAttempt.expires_at > now
            ).order_by(QuizAttempt.id.desc()).first()
            if ongoing:
                return ongoing, True

            day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
            started_today = db.query(func.count(QuizAttempt.id)).filter(
                QuizAttempt.user_id == user_id,
                QuizAttempt.quiz_id == quiz_id,
                QuizAttempt.started_at >= day_start
            ).scalar() or 0
            if started_today >= settings.QUIZ_MAX_ATTEMPTS_PER_DAY:
                raise AttemptLimitReached(
                    f"You have reached the limit of {settings.QUIZ_MAX_ATTEMPTS_PER_DAY} attempts per day for this quiz",
                    max_attempts_per_day=settings.QUIZ_MAX_ATTEMPTS_PER_DAY
                )

            attempt = QuizAttempt(
                user_id=user_id,
                quiz_id=quiz_id,
                status=QuizAttemptStatus.in_progress,
                started_at=now,
                expires_at=now + timedelta(minutes=settings.QUIZ_ATTEMPT_MINUTES)
            )
            db.add(attempt)
            db.flush()
            return attempt, False

        attempt, resumed = ledger_service.run_atomic(db, operation)

        if resumed:
            logger.info(f"User {user_id} resumed attempt {attempt.id} of quiz {quiz_id}")
        else:
            logger.info(f"User {user_id} started quiz {quiz_id} (attempt {attempt.id})")
        return attempt, resumed

    def complete_attempt(
        self,
        db: Session,
        user_id: int,
        attempt_id: int,
        correct_answers: int
    ) -> QuizAttempt:
        """
        Score an attempt and credit its AmaCoins.

        score = round(correct / questions * 100)
        amacoins = round(quiz reward * score / 100)
        """
        expired = False

        def operation() -> QuizAttempt:
            nonlocal expired
            attempt = db.query(QuizAttempt).filter(
                QuizAttempt.id == attempt_id
            ).with_for_update().populate_existing().first()
            if not attempt:
                raise NotFound("Attempt not found", attempt_id=attempt_id)
            if attempt.user_id != user_id:
                raise Forbidden("This attempt does not belong to you")
            if attempt.status != QuizAttemptStatus.in_progress:
                raise InvalidStateTransition(
                    "This attempt has already finished",
                    status=attempt.status.value
                )

            now = datetime.utcnow()
            if attempt.expires_at < now:
                attempt.status = QuizAttemptStatus.expired
                expired = True
                db.flush()
                return attempt

            quiz = attempt.quiz
            if correct_answers < 0 or correct_answers > quiz.question_count:
                raise AmazoniaError(
                    f"correct_answers must be between 0 and {quiz.question_count}"
                )

            score = round(correct_answers / quiz.question_count * 100) if quiz.question_count else 0
            earned = round(quiz.amacoins_reward * score / 100)

            attempt.status = QuizAttemptStatus.completed
            attempt.score = score
            attempt.amacoins_earned = earned
            attempt.completed_at = now

            if earned > 0:
                ledger_service.apply_transaction(
                    db,
                    user_id=user_id,
                    amount=earned,
                    transaction_type=TransactionType.credit,
                    related_entity=attempt,
                    description=f"Quiz completed: {quiz.title}",
                    idempotency_key=f"quiz_attempt:{attempt.id}:credit"
                )

            db.query(User).filter(User.id == user_id).update(
                {User.quiz_points: User.quiz_points + score},
                synchronize_session=False
            )
            db.flush()
            return attempt

        attempt = ledger_service.run_atomic(db, operation)

        if expired:
            logger.info(f"Quiz attempt {attempt_id} expired before submission")
            raise AttemptExpired(attempt_id=attempt_id)

        logger.info(
            f"User {user_id} completed attempt {attempt.id} with score {attempt.score} "
            f"(+{attempt.amacoins_earned} AmaCoins)"
        )
        notification_service.enqueue(
            user_id,
            "quiz_completed",
            {"score": attempt.score, "amacoins_earned": attempt.amacoins_earned}
        )
        return attempt


# Singleton instance
quiz_service = QuizService()
