"""
Shared pytest fixtures.

Tests run against an in-memory SQLite database; the schema is created and
dropped around every test. Notifications are captured instead of being
sent to the Celery broker.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CHECKIN_REQUIRES_REVIEW"] = "false"

from datetime import datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from amazonia.db.database import Base, SessionLocal, engine  # noqa: E402
from amazonia.db.models import (  # noqa: E402
    User, Partner, Place, Event, Reward, RewardType, Quiz, TransactionType,
    UserRole
)
from amazonia.services.ledger_service import ledger_service  # noqa: E402
from amazonia.services.notification_service import notification_service  # noqa: E402

# Teatro Amazonas, Manaus
MANAUS_LAT = -3.1303
MANAUS_LON = -60.0234


@pytest.fixture(autouse=True)
def schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(schema):
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def sent_notifications(monkeypatch):
    sent = []
    monkeypatch.setattr(
        notification_service,
        "enqueue",
        lambda user_id, notification_type, data: sent.append((user_id, notification_type, data))
    )
    return sent


@pytest.fixture
def client():
    from amazonia.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make_user(balance=0, role=UserRole.user, preferences=None):
        counter["n"] += 1
        user = User(
            name=f"Visitor {counter['n']}",
            email=f"visitor{counter['n']}@example.com",
            role=role,
            notification_preferences=preferences
        )
        db.add(user)
        db.commit()
        if balance:
            ledger_service.run_atomic(
                db,
                lambda: ledger_service.apply_transaction(
                    db, user.id, balance, TransactionType.credit, description="Welcome bonus"
                )
            )
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def make_partner(db, make_user):
    def _make_partner(business_name="Café do Largo"):
        owner = make_user(role=UserRole.partner)
        partner = Partner(user_id=owner.id, business_name=business_name, business_type="restaurant")
        db.add(partner)
        db.commit()
        db.refresh(partner)
        return partner

    return _make_partner


@pytest.fixture
def make_place(db):
    def _make_place(latitude=MANAUS_LAT, longitude=MANAUS_LON, amacoins_value=10, partner=None, name="Teatro Amazonas"):
        place = Place(
            name=name,
            latitude=latitude,
            longitude=longitude,
            amacoins_value=amacoins_value,
            partner_id=partner.id if partner else None
        )
        db.add(place)
        db.commit()
        db.refresh(place)
        return place

    return _make_place


@pytest.fixture
def make_event(db):
    def _make_event(max_capacity=None, amacoins_value=20, latitude=MANAUS_LAT, longitude=MANAUS_LON):
        now = datetime.utcnow()
        event = Event(
            name="Festival de Ciranda",
            start_time=now - timedelta(hours=1),
            end_time=now + timedelta(hours=3),
            latitude=latitude,
            longitude=longitude,
            amacoins_value=amacoins_value,
            max_capacity=max_capacity
        )
        db.add(event)
        db.commit()
        db.refresh(event)
        return event

    return _make_event


@pytest.fixture
def make_reward(db):
    def _make_reward(cost=80, stock=1, max_per_user=None, partner=None, reward_type=RewardType.discount_coupon,
                     is_active=True, expiration_date=None, name="Açaí na tigela"):
        reward = Reward(
            name=name,
            reward_type=reward_type,
            amacoins_cost=cost,
            stock=stock,
            max_per_user=max_per_user,
            partner_id=partner.id if partner else None,
            is_active=is_active,
            expiration_date=expiration_date
        )
        db.add(reward)
        db.commit()
        db.refresh(reward)
        return reward

    return _make_reward


@pytest.fixture
def make_quiz(db):
    def _make_quiz(amacoins_reward=50, question_count=10):
        quiz = Quiz(title="Fauna da Amazônia", amacoins_reward=amacoins_reward, question_count=question_count)
        db.add(quiz)
        db.commit()
        db.refresh(quiz)
        return quiz

    return _make_quiz


def assert_ledger_consistent(db, user_id):
    """balance == sum(amount) == last new_balance"""
    db.expire_all()
    report = ledger_service.reconcile(db, user_id)
    assert report["consistent"], report
    return report
