# backend/tests/repositories/test_payment_repository.py
"""Tests for PaymentRepository, centred on the compare-and-set transition."""

from datetime import timedelta
from decimal import Decimal

import pytest

from careslot.core.exceptions import PersistenceConflictException
from careslot.models.booking import BookingStatus
from careslot.models.payment import PaymentRecord, PaymentStatus
from careslot.repositories.payment_repository import PaymentRepository


@pytest.fixture
def repository(db) -> PaymentRepository:
    return PaymentRepository(db)


@pytest.fixture
def make_payment(db, repository):
    counter = {"n": 0}

    def _make(booking, status=PaymentStatus.PENDING, amount="50.00", external_id=None, attempt_started_at=None):
        counter["n"] += 1
        payment = repository.insert(
            PaymentRecord(
                booking_id=booking.id,
                amount=Decimal(amount),
                currency="USD",
                method="card",
                reference=f"HC_{booking.id}_{counter['n']}",
                external_transaction_id=external_id,
                status=status.value,
                attempt_started_at=attempt_started_at,
            )
        )
        db.commit()
        return payment

    return _make


class TestTransitionStatus:
    def test_moves_expected_status_once(self, db, repository, make_booking, make_payment, clock):
        payment = make_payment(make_booking())

        first = repository.transition_status(
            payment.id,
            expected=PaymentStatus.PENDING,
            target=PaymentStatus.COMPLETED,
            now=clock.now(),
            payload={"state": "COMPLETE"},
        )
        second = repository.transition_status(
            payment.id, expected=PaymentStatus.PENDING, target=PaymentStatus.COMPLETED, now=clock.now()
        )
        db.commit()

        assert first is True
        assert second is False
        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.raw_gateway_payload == {"state": "COMPLETE"}
        assert payment.updated_at.replace(tzinfo=None) == clock.now().replace(tzinfo=None)

    def test_settled_payment_never_regresses(self, db, repository, make_booking, make_payment, clock):
        payment = make_payment(make_booking(), status=PaymentStatus.COMPLETED)

        moved = repository.transition_status(
            payment.id, expected=PaymentStatus.PENDING, target=PaymentStatus.FAILED, now=clock.now()
        )
        db.commit()

        assert moved is False
        assert payment.status == PaymentStatus.COMPLETED.value


class TestExternalTransactionId:
    def test_bind_then_lookup(self, db, repository, make_booking, make_payment, clock):
        payment = make_payment(make_booking())

        assert repository.bind_external_transaction_id(payment.id, "PAY-1", now=clock.now()) is True
        db.commit()

        assert repository.get_by_external_id("PAY-1").id == payment.id
        assert repository.get_by_reference(payment.reference).id == payment.id

    def test_binding_same_id_again_is_allowed(self, repository, make_booking, make_payment, clock):
        payment = make_payment(make_booking(), external_id="PAY-1")

        assert repository.bind_external_transaction_id(payment.id, "PAY-1", now=clock.now()) is True
        assert payment.external_transaction_id == "PAY-1"

    def test_rebinding_to_another_id_is_refused(self, repository, make_booking, make_payment, clock):
        payment = make_payment(make_booking(), external_id="PAY-1")

        assert repository.bind_external_transaction_id(payment.id, "PAY-2", now=clock.now()) is False
        assert payment.external_transaction_id == "PAY-1"

    def test_only_current_attempt_may_bind(self, repository, make_booking, make_payment, clock):
        payment = make_payment(make_booking())

        stale = repository.bind_external_transaction_id(payment.id, "PAY-OLD", now=clock.now(), attempt=2)
        current = repository.bind_external_transaction_id(
            payment.id, "PAY-NEW", now=clock.now(), attempt=1, checkout_url="https://pay.test/PAY-NEW"
        )

        assert stale is False
        assert current is True
        assert payment.external_transaction_id == "PAY-NEW"
        assert payment.checkout_url == "https://pay.test/PAY-NEW"

    def test_id_owned_by_another_payment_conflicts(self, db, repository, make_booking, make_payment, clock):
        make_payment(make_booking(hours_ahead=24), external_id="PAY-1")
        other = make_payment(make_booking(hours_ahead=48))

        with pytest.raises(PersistenceConflictException):
            repository.bind_external_transaction_id(other.id, "PAY-1", now=clock.now())
        db.rollback()


class TestAttemptClaim:
    def _claim(self, repository, payment, clock, lease_seconds=60):
        return repository.claim_stale_attempt(
            payment.id,
            stale_before=clock.now() - timedelta(seconds=lease_seconds),
            now=clock.now(),
            amount=Decimal("55.00"),
            currency="KES",
            method="mobile_money",
        )

    def test_leased_attempt_is_not_claimed(self, db, repository, make_booking, make_payment, clock):
        payment = make_payment(make_booking(), attempt_started_at=clock.now())

        assert self._claim(repository, payment, clock) is None
        assert payment.attempts == 1
        assert payment.amount == Decimal("50.00")

    def test_expired_lease_is_claimed_once(self, db, repository, make_booking, make_payment, clock):
        payment = make_payment(make_booking(), attempt_started_at=clock.now())
        clock.advance(seconds=61)

        first = self._claim(repository, payment, clock)
        second = self._claim(repository, payment, clock)
        db.commit()

        assert first == 2
        assert second is None
        assert payment.attempts == 2
        assert payment.amount == Decimal("55.00")
        assert payment.currency == "KES"
        assert payment.attempt_started_at.replace(tzinfo=None) == clock.now().replace(tzinfo=None)

    def test_acknowledged_attempt_is_never_claimed(self, repository, make_booking, make_payment, clock):
        payment = make_payment(make_booking(), external_id="PAY-1")
        clock.advance(hours=1)

        assert self._claim(repository, payment, clock) is None

class TestActivePaymentGuard:
    def test_second_active_payment_for_booking_conflicts(self, db, repository, make_booking, make_payment):
        booking = make_booking()
        make_payment(booking)

        with pytest.raises(PersistenceConflictException):
            repository.insert(
                PaymentRecord(
                    booking_id=booking.id,
                    amount=Decimal("50.00"),
                    currency="USD",
                    method="card",
                    reference="HC_second_attempt",
                    status=PaymentStatus.PENDING.value,
                )
            )
        db.rollback()

    def test_failed_attempt_does_not_block_a_new_one(self, repository, make_booking, make_payment):
        booking = make_booking()
        failed = make_payment(booking, status=PaymentStatus.FAILED)
        retry = make_payment(booking)

        assert repository.get_active_for_booking(booking.id).id == retry.id
        assert repository.get_by_booking_id(booking.id).id == retry.id
        assert {p.id for p in repository.list_for_booking(booking.id)} == {failed.id, retry.id}

    def test_get_by_booking_id_falls_back_to_failed(self, repository, make_booking, make_payment):
        booking = make_booking()
        failed = make_payment(booking, status=PaymentStatus.FAILED)

        assert repository.get_active_for_booking(booking.id) is None
        assert repository.get_by_booking_id(booking.id).id == failed.id


class TestSweepsAndViews:
    def test_completed_payments_with_unconfirmed_bookings(self, repository, make_booking, make_payment):
        stuck = make_booking(hours_ahead=24)
        confirmed = make_booking(hours_ahead=48, status=BookingStatus.CONFIRMED)
        pending = make_booking(hours_ahead=72)
        stuck_payment = make_payment(stuck, status=PaymentStatus.COMPLETED)
        make_payment(confirmed, status=PaymentStatus.COMPLETED)
        make_payment(pending)

        found = repository.list_completed_with_unconfirmed_booking()

        assert [payment.id for payment in found] == [stuck_payment.id]

    def test_requester_scoping(self, repository, make_booking, make_payment):
        mine = make_payment(make_booking())
        theirs = make_payment(make_booking(hours_ahead=48, requester_id="01HSOMEONEELSE00000000000Z"))

        assert repository.get_for_requester(mine.id, "01HREQUESTER0000000000000A") is not None
        assert repository.get_for_requester(theirs.id, "01HREQUESTER0000000000000A") is None
        history = repository.get_user_payment_history("01HREQUESTER0000000000000A")
        assert [payment.id for payment in history] == [mine.id]

    def test_payment_stats(self, repository, make_booking, make_payment):
        make_payment(make_booking(hours_ahead=24), status=PaymentStatus.COMPLETED, amount="50.00")
        make_payment(make_booking(hours_ahead=48), status=PaymentStatus.COMPLETED, amount="75.00")
        make_payment(make_booking(hours_ahead=72), status=PaymentStatus.FAILED, amount="60.00")

        stats = repository.get_requester_payment_stats("01HREQUESTER0000000000000A")

        assert stats["counts"]["COMPLETED"] == 2
        assert stats["counts"]["FAILED"] == 1
        assert stats["counts"]["PENDING"] == 0
        assert stats["total_payments"] == 3
        assert stats["total_paid"] == Decimal("125.00")
