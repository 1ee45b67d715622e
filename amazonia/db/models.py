"""
SQLAlchemy ORM Models for the AmazôniaExperience backend
"""
import enum

from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean, DateTime, Date,
    ForeignKey, JSON, Enum, UniqueConstraint, Index, CheckConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from amazonia.db.database import Base


class UserRole(str, enum.Enum):
    user = "user"
    partner = "partner"
    admin = "admin"


class VisitStatus(str, enum.Enum):
    pending = "pending"
    verified = "verified"
    rejected = "rejected"


class RewardType(str, enum.Enum):
    physical_product = "physical_product"
    digital_service = "digital_service"
    discount_coupon = "discount_coupon"


class RedemptionStatus(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    cancelled = "cancelled"


class TransactionType(str, enum.Enum):
    credit = "credit"
    debit = "debit"
    refund = "refund"


class QuizAttemptStatus(str, enum.Enum):
    in_progress = "in_progress"
    completed = "completed"
    expired = "expired"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    nationality = Column(String(100))
    role = Column(Enum(UserRole), nullable=False, default=UserRole.user)
    amacoins = Column(Integer, nullable=False, default=0)
    quiz_points = Column(Integer, nullable=False, default=0)
    notification_preferences = Column(JSON)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    __table_args__ = (
        CheckConstraint("amacoins >= 0", name="ck_users_amacoins_non_negative"),
    )

    # Relationships
    visits = relationship("Visit", back_populates="user")
    redemptions = relationship("Redemption", back_populates="user")
    transactions = relationship("AmacoinTransaction", back_populates="user")


class Partner(Base):
    __tablename__ = "partners"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    business_name = Column(String(255), nullable=False)
    business_type = Column(String(50), nullable=False)  # event_organizer, tourist_spot, shop, restaurant, app_service
    address = Column(String(255))
    contact_phone = Column(String(50))
    created_at = Column(DateTime, server_default=func.now())


class Place(Base):
    __tablename__ = "places"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    address = Column(String(255))
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    type = Column(String(50), nullable=False, default="tourist_spot")  # tourist_spot, restaurant, shop, cultural_venue
    amacoins_value = Column(Integer, nullable=False, default=10)
    partner_id = Column(Integer, ForeignKey("partners.id"))
    wifi_available = Column(Boolean, default=False)
    created_at = Column(DateTime, server_default=func.now())

    visits = relationship("Visit", back_populates="place")


class Event(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    location = Column(String(255))
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    event_type = Column(String(50), nullable=False, default="cultural")
    amacoins_value = Column(Integer, nullable=False, default=20)
    max_capacity = Column(Integer)
    current_attendance = Column(Integer, nullable=False, default=0)
    is_featured = Column(Boolean, default=False)
    created_at = Column(DateTime, server_default=func.now())

    visits = relationship("Visit", back_populates="event")


class Visit(Base):
    __tablename__ = "visits"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    place_id = Column(Integer, ForeignKey("places.id"))
    event_id = Column(Integer, ForeignKey("events.id"))
    amacoins_earned = Column(Integer, nullable=False, default=0)
    verification_code = Column(String(32), unique=True, nullable=False)
    status = Column(Enum(VisitStatus), nullable=False, default=VisitStatus.pending)
    rejection_reason = Column(String(255))
    distance_km = Column(Float)
    idempotency_key = Column(String(64))
    visited_at = Column(DateTime, nullable=False, server_default=func.now())
    reviewed_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint(
            "(place_id IS NULL) <> (event_id IS NULL)",
            name="ck_visits_place_xor_event"
        ),
        UniqueConstraint("user_id", "idempotency_key", name="unique_visit_idempotency_key"),
        Index("idx_visits_user_visited", "user_id", "visited_at"),
    )

    user = relationship("User", back_populates="visits")
    place = relationship("Place", back_populates="visits")
    event = relationship("Event", back_populates="visits")


class Reward(Base):
    __tablename__ = "rewards"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    reward_type = Column(Enum(RewardType), nullable=False)
    amacoins_cost = Column(Integer, nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    max_per_user = Column(Integer)
    partner_id = Column(Integer, ForeignKey("partners.id"))
    image_url = Column(String(255))
    is_active = Column(Boolean, nullable=False, default=True)
    expiration_date = Column(Date)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_rewards_stock_non_negative"),
    )

    redemptions = relationship("Redemption", back_populates="reward")


class Redemption(Base):
    __tablename__ = "redemptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    reward_id = Column(Integer, ForeignKey("rewards.id"), nullable=False)
    amacoins_spent = Column(Integer, nullable=False)
    redemption_code = Column(String(32), unique=True, nullable=False)
    status = Column(Enum(RedemptionStatus), nullable=False, default=RedemptionStatus.pending)
    contact_info = Column(JSON)
    idempotency_key = Column(String(64))
    redeemed_at = Column(DateTime, nullable=False, server_default=func.now())
    expires_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    completed_at = Column(DateTime)
    completed_by_partner_id = Column(Integer, ForeignKey("partners.id"))

    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="unique_redemption_idempotency_key"),
        Index("idx_redemptions_user_reward", "user_id", "reward_id"),
    )

    user = relationship("User", back_populates="redemptions")
    reward = relationship("Reward", back_populates="redemptions")


class AmacoinTransaction(Base):
    """Append-only ledger row. Never updated or deleted."""
    __tablename__ = "amacoin_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(Integer, nullable=False)
    previous_balance = Column(Integer, nullable=False)
    new_balance = Column(Integer, nullable=False)
    transaction_type = Column(Enum(TransactionType), nullable=False)
    related_entity_type = Column(String(50))  # visit, redemption, quiz_attempt
    related_entity_id = Column(Integer)
    description = Column(Text)
    idempotency_key = Column(String(128), unique=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_amacoin_transactions_non_zero"),
        CheckConstraint(
            "new_balance = previous_balance + amount",
            name="ck_amacoin_transactions_balance_fold"
        ),
        Index("idx_amacoin_transactions_user_created", "user_id", "created_at"),
    )

    user = relationship("User", back_populates="transactions")


class Quiz(Base):
    __tablename__ = "quizzes"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    difficulty = Column(String(20), default="easy")  # easy, medium, hard
    topic = Column(String(100))
    amacoins_reward = Column(Integer, nullable=False, default=0)
    question_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())


class QuizAttempt(Base):
    __tablename__ = "quiz_attempts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    quiz_id = Column(Integer, ForeignKey("quizzes.id"), nullable=False)
    status = Column(Enum(QuizAttemptStatus), nullable=False, default=QuizAttemptStatus.in_progress)
    score = Column(Integer)
    amacoins_earned = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime, nullable=False, server_default=func.now())
    expires_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)

    quiz = relationship("Quiz")


class UserNotification(Base):
    __tablename__ = "user_notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    type = Column(String(50), nullable=False)  # redemption_success, visit_verified, ...
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, server_default=func.now())
