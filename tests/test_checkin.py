from datetime import datetime, timedelta

import pytest

from amazonia.config import settings
from amazonia.db.database import SessionLocal
from amazonia.db.models import AmacoinTransaction, Event, TransactionType, Visit, VisitStatus
from amazonia.exceptions import (
    AmazoniaError, AlreadyCheckedIn, EventFull, Forbidden, IdempotencyKeyConflict, InvalidStateTransition,
    NotFound, TooFar
)
from amazonia.services.checkin_service import checkin_service
from amazonia.services.ledger_service import ledger_service

from tests.conftest import MANAUS_LAT, MANAUS_LON, assert_ledger_consistent


@pytest.fixture
def review_mode(monkeypatch):
    monkeypatch.setattr(settings, "CHECKIN_REQUIRES_REVIEW", True)


def test_check_in_credits_place_value(db, make_user, make_place):
    user = make_user()
    place = make_place(amacoins_value=15)

    visit, replayed = checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, place_id=place.id)

    assert replayed is False
    assert visit.status == VisitStatus.verified
    assert visit.amacoins_earned == 15
    assert len(visit.verification_code) == settings.VERIFICATION_CODE_LENGTH
    assert ledger_service.get_balance(db, user.id) == 15
    row = db.query(AmacoinTransaction).one()
    assert row.transaction_type == TransactionType.credit
    assert row.idempotency_key == f"visit:{visit.id}:credit"
    assert_ledger_consistent(db, user.id)


def test_check_in_within_radius(db, make_user, make_place):
    user = make_user()
    place = make_place()

    # ~0.33 km north of the place
    visit, _ = checkin_service.check_in(db, user.id, MANAUS_LAT + 0.003, MANAUS_LON, place_id=place.id)

    assert visit.distance_km == pytest.approx(0.334, abs=0.001)


def test_too_far_writes_nothing(db, make_user, make_place):
    user = make_user()
    place = make_place()

    # ~0.56 km away
    with pytest.raises(TooFar) as exc_info:
        checkin_service.check_in(db, user.id, MANAUS_LAT + 0.005, MANAUS_LON, place_id=place.id)

    assert exc_info.value.details["max_distance_km"] == 0.5
    assert db.query(Visit).count() == 0
    assert db.query(AmacoinTransaction).count() == 0
    assert ledger_service.get_balance(db, user.id) == 0


def test_unknown_place(db, make_user):
    user = make_user()
    with pytest.raises(NotFound):
        checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, place_id=404)


def test_requires_exactly_one_target(db, make_user, make_place, make_event):
    user = make_user()
    with pytest.raises(AmazoniaError) as exc_info:
        checkin_service.check_in(
            db, user.id, MANAUS_LAT, MANAUS_LON, place_id=make_place().id, event_id=make_event().id
        )
    assert exc_info.value.status_code == 400


def test_second_check_in_within_cooldown(db, make_user, make_place):
    user = make_user()
    place = make_place()
    checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, place_id=place.id)

    with pytest.raises(AlreadyCheckedIn):
        checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, place_id=place.id)

    assert db.query(Visit).count() == 1
    assert ledger_service.get_balance(db, user.id) == 10


def test_check_in_allowed_after_cooldown(db, make_user, make_place):
    user = make_user()
    place = make_place()
    visit, _ = checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, place_id=place.id)
    visit.visited_at = datetime.utcnow() - timedelta(hours=settings.CHECKIN_COOLDOWN_HOURS, minutes=1)
    db.commit()

    second, _ = checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, place_id=place.id)

    assert second.id != visit.id
    assert ledger_service.get_balance(db, user.id) == 20
    assert_ledger_consistent(db, user.id)


def test_cooldown_is_per_user(db, make_user, make_place):
    place = make_place()
    for user in (make_user(), make_user()):
        checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, place_id=place.id)
    assert db.query(Visit).count() == 2


def test_concurrent_check_ins_only_one_succeeds(db, make_user, make_place, monkeypatch):
    user = make_user()
    place = make_place()
    original = ledger_service.lock_user
    state = {"raced": False}

    def lock_user(session, user_id):
        locked = original(session, user_id)
        if not state["raced"]:
            # Another request for the same user commits first
            state["raced"] = True
            other = SessionLocal()
            try:
                checkin_service.check_in(other, user_id, MANAUS_LAT, MANAUS_LON, place_id=place.id)
            finally:
                other.close()
        return locked

    monkeypatch.setattr(ledger_service, "lock_user", lock_user)

    with pytest.raises(AlreadyCheckedIn):
        checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, place_id=place.id)

    assert db.query(Visit).count() == 1
    assert db.query(AmacoinTransaction).count() == 1
    report = assert_ledger_consistent(db, user.id)
    assert report["balance"] == 10


def test_idempotency_key_replays_visit(db, make_user, make_place):
    user = make_user()
    place = make_place()

    first, replayed_first = checkin_service.check_in(
        db, user.id, MANAUS_LAT, MANAUS_LON, place_id=place.id, idempotency_key="retry-1"
    )
    second, replayed_second = checkin_service.check_in(
        db, user.id, MANAUS_LAT, MANAUS_LON, place_id=place.id, idempotency_key="retry-1"
    )

    assert (replayed_first, replayed_second) == (False, True)
    assert second.id == first.id
    assert ledger_service.get_balance(db, user.id) == 10


def test_idempotency_key_reused_for_other_place(db, make_user, make_place):
    user = make_user()
    teatro = make_place()
    palacio = make_place(name="Palácio Rio Negro")
    checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, place_id=teatro.id, idempotency_key="retry-1")

    with pytest.raises(IdempotencyKeyConflict):
        checkin_service.check_in(
            db, user.id, MANAUS_LAT, MANAUS_LON, place_id=palacio.id, idempotency_key="retry-1"
        )

    assert db.query(Visit).count() == 1
    assert ledger_service.get_balance(db, user.id) == 10


def test_zero_value_place_records_visit_without_ledger_row(db, make_user, make_place):
    user = make_user()
    place = make_place(amacoins_value=0)

    visit, _ = checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, place_id=place.id)

    assert visit.amacoins_earned == 0
    assert db.query(AmacoinTransaction).count() == 0


def test_event_check_in_claims_seat(db, make_user, make_event):
    user = make_user()
    event = make_event(max_capacity=10)

    visit, _ = checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, event_id=event.id)

    assert visit.amacoins_earned == 20
    db.expire_all()
    assert db.get(Event, event.id).current_attendance == 1


def test_event_allows_one_check_in_per_user(db, make_user, make_event):
    user = make_user()
    event = make_event()
    checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, event_id=event.id)

    with pytest.raises(AlreadyCheckedIn):
        checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, event_id=event.id)


def test_event_full(db, make_user, make_event):
    event = make_event(max_capacity=1)
    checkin_service.check_in(db, make_user().id, MANAUS_LAT, MANAUS_LON, event_id=event.id)
    latecomer = make_user()

    with pytest.raises(EventFull):
        checkin_service.check_in(db, latecomer.id, MANAUS_LAT, MANAUS_LON, event_id=event.id)

    assert ledger_service.get_balance(db, latecomer.id) == 0
    db.expire_all()
    assert db.get(Event, event.id).current_attendance == 1


def test_review_mode_creates_pending_visit(db, make_user, make_place, review_mode):
    user = make_user()
    place = make_place()

    visit, _ = checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, place_id=place.id)

    assert visit.status == VisitStatus.pending
    assert visit.reviewed_at is None
    assert ledger_service.get_balance(db, user.id) == 10


def test_verify_pending_visit(db, make_user, make_place, make_partner, review_mode, sent_notifications):
    partner = make_partner()
    user = make_user()
    place = make_place(partner=partner)
    visit, _ = checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, place_id=place.id)

    verified = checkin_service.verify_visit(db, visit.verification_code, partner_id=partner.id)

    assert verified.status == VisitStatus.verified
    assert verified.reviewed_at is not None
    assert ledger_service.get_balance(db, user.id) == 10
    assert sent_notifications[-1][:2] == (user.id, "visit_verified")


def test_verify_twice_is_invalid(db, make_user, make_place, review_mode):
    user = make_user()
    visit, _ = checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, place_id=make_place().id)
    checkin_service.verify_visit(db, visit.verification_code)

    with pytest.raises(InvalidStateTransition):
        checkin_service.verify_visit(db, visit.verification_code)


def test_partner_cannot_review_other_venue(db, make_user, make_place, make_partner, review_mode):
    owner = make_partner()
    other = make_partner(business_name="Bar do Armando")
    user = make_user()
    visit, _ = checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, place_id=make_place(partner=owner).id)

    with pytest.raises(Forbidden):
        checkin_service.verify_visit(db, visit.verification_code, partner_id=other.id)


def test_unknown_verification_code(db):
    with pytest.raises(NotFound):
        checkin_service.verify_visit(db, "NOPE0000")


def test_reject_claws_back_credit(db, make_user, make_place, review_mode, sent_notifications):
    user = make_user(balance=5)
    visit, _ = checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, place_id=make_place().id)

    rejected = checkin_service.reject_visit(db, visit.verification_code, reason="Photo missing")

    assert rejected.status == VisitStatus.rejected
    assert rejected.rejection_reason == "Photo missing"
    clawback = db.query(AmacoinTransaction).filter_by(idempotency_key=f"visit:{visit.id}:clawback").one()
    assert clawback.amount == -10
    assert clawback.transaction_type == TransactionType.debit
    report = assert_ledger_consistent(db, user.id)
    assert report["balance"] == 5
    assert sent_notifications[-1][:2] == (user.id, "visit_rejected")


def test_reject_clawback_limited_to_balance(db, make_user, make_place, review_mode):
    user = make_user()
    visit, _ = checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, place_id=make_place().id)
    ledger_service.run_atomic(
        db, lambda: ledger_service.apply_transaction(db, user.id, -7, TransactionType.debit)
    )

    checkin_service.reject_visit(db, visit.verification_code)

    report = assert_ledger_consistent(db, user.id)
    assert report["balance"] == 0


def test_rejected_visit_frees_cooldown_and_seat(db, make_user, make_event, review_mode):
    user = make_user()
    event = make_event(max_capacity=1)
    visit, _ = checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, event_id=event.id)

    checkin_service.reject_visit(db, visit.verification_code)
    db.expire_all()
    assert db.get(Event, event.id).current_attendance == 0

    again, _ = checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, event_id=event.id)
    assert again.status == VisitStatus.pending


def test_list_user_visits_newest_first(db, make_user, make_place):
    user = make_user()
    first = make_place(name="Teatro Amazonas")
    second = make_place(name="Palácio Rio Negro", latitude=MANAUS_LAT + 0.001)
    checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, place_id=first.id)
    checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, place_id=second.id)

    visits = checkin_service.list_user_visits(db, user.id)

    assert [v.place_id for v in visits] == [second.id, first.id]


def test_reject_locks_user_before_releasing_seat(db, make_user, make_event, review_mode, monkeypatch):
    user = make_user()
    event = make_event(max_capacity=1)
    visit, _ = checkin_service.check_in(db, user.id, MANAUS_LAT, MANAUS_LON, event_id=event.id)
    attendance_at_lock = []
    original_lock_user = ledger_service.lock_user

    def lock_user(session, user_id):
        attendance_at_lock.append(
            session.query(Event.current_attendance).filter(Event.id == event.id).scalar()
        )
        return original_lock_user(session, user_id)

    monkeypatch.setattr(ledger_service, "lock_user", lock_user)
    checkin_service.reject_visit(db, visit.verification_code)

    # Seat still held when the user row was locked
    assert attendance_at_lock[0] == 1
    db.expire_all()
    assert db.get(Event, event.id).current_attendance == 0
