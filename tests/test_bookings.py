"""
Tests for laundrify/services/bookings.py - checkout, status machine and referral redemption.
"""
import asyncio
import uuid
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from laundrify.database import Base
from laundrify.models.booking import Booking
from laundrify.models.referral import Referral
from laundrify.services import referrals
from laundrify.services.bookings import (
    VALID_TRANSITIONS,
    advance_status,
    assign_rider,
    booking_stats,
    create_booking,
    get_booking,
    list_customer_bookings,
    reconcile_historical_bookings,
    redeem_referral_discount,
    update_payment_status,
)
from laundrify.services.order_ids import OrderIdSpaceExhausted, is_sequential_order_id
from laundrify.utils.errors import (
    InvalidTransition,
    NotFound,
    PersistenceConflict,
    ReferralAlreadyUsed,
    ReferralExpired,
    ReferralNotEligible,
    ReferralNotFound,
    ValidationError,
)
from laundrify.utils.timezone import ensure_utc

JAN_2025 = datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# create_booking
# ---------------------------------------------------------------------------


class TestCreateBooking:
    async def test_happy_path(self, db, checkout_payload):
        booking = await create_booking(db, checkout_payload, now=JAN_2025)

        assert booking.order_id == "A20250100001"
        assert booking.status == "pending"
        assert booking.payment_status == "pending"
        assert booking.items_summary == "Shirt x 2, Towel x 1"
        assert booking.total_price == 100.0
        assert booking.discount_amount == 0.0
        assert booking.final_amount == 100.0
        assert booking.line_items[1] == {"name": "Towel", "quantity": 1, "unit_price": 20.0, "line_total": 20.0}

    async def test_sequential_ids(self, db, checkout_payload):
        first = await create_booking(db, checkout_payload, now=JAN_2025)
        second = await create_booking(db, checkout_payload, now=JAN_2025)

        assert first.order_id == "A20250100001"
        assert second.order_id == "A20250100002"
        assert first.order_id < second.order_id

    async def test_adopts_breakdown_discount(self, db, checkout_payload):
        checkout_payload["charges_breakdown"]["discount"] = 20
        checkout_payload["discount_amount"] = 0

        booking = await create_booking(db, checkout_payload)

        assert booking.discount_amount == 20.0
        assert booking.final_amount == 80.0

    async def test_supplied_final_amount_replaced(self, db, checkout_payload):
        checkout_payload["discount_amount"] = 10
        checkout_payload["final_amount"] = 100

        booking = await create_booking(db, checkout_payload)

        assert booking.final_amount == 90.0

    @pytest.mark.parametrize("field", ["customer_id", "address"])
    async def test_missing_required_field(self, db, checkout_payload, field):
        checkout_payload[field] = "  "
        with pytest.raises(ValidationError) as exc_info:
            await create_booking(db, checkout_payload)
        assert field in exc_info.value.details["missing"]

    async def test_requires_line_items(self, db, checkout_payload):
        checkout_payload["line_items"] = []
        with pytest.raises(ValidationError):
            await create_booking(db, checkout_payload)

    async def test_negative_total_rejected(self, db, checkout_payload):
        checkout_payload["total_price"] = -5
        with pytest.raises(ValidationError):
            await create_booking(db, checkout_payload)

    async def test_malformed_payload(self, db, checkout_payload):
        checkout_payload["line_items"] = [{"name": "Shirt", "quantity": 0, "unit_price": 10}]
        with pytest.raises(ValidationError) as exc_info:
            await create_booking(db, checkout_payload)
        assert exc_info.value.details["errors"]

    async def test_nothing_written_on_validation_error(self, db, checkout_payload):
        checkout_payload["address"] = ""
        with pytest.raises(ValidationError):
            await create_booking(db, checkout_payload)
        assert (await db.execute(select(Booking))).scalars().all() == []

    async def test_retries_on_order_id_conflict(self, db, checkout_payload, make_booking):
        await make_booking(order_id="A20250100001")

        with (
            patch(
                "laundrify.services.order_ids.generate_order_id",
                new_callable=AsyncMock,
                side_effect=["A20250100001", "A20250100002"],
            ),
            patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep,
        ):
            booking = await create_booking(db, checkout_payload, now=JAN_2025)

        assert booking.order_id == "A20250100002"
        assert mock_sleep.await_count == 1

    async def test_conflict_after_all_attempts(self, db, checkout_payload, make_booking):
        await make_booking(order_id="A20250100001")

        with (
            patch(
                "laundrify.services.order_ids.generate_order_id",
                new_callable=AsyncMock,
                return_value="A20250100001",
            ) as mock_gen,
            patch("asyncio.sleep", new_callable=AsyncMock),
        ):
            with pytest.raises(PersistenceConflict) as exc_info:
                await create_booking(db, checkout_payload, now=JAN_2025)

        assert mock_gen.await_count == 3
        assert exc_info.value.retryable is True
        rows = (await db.execute(select(Booking).where(Booking.order_id == "A20250100001"))).scalars().all()
        assert len(rows) == 1

    async def test_fallback_order_id_still_books(self, db, checkout_payload):
        with patch(
            "laundrify.services.order_ids._scan_next",
            new_callable=AsyncMock,
            side_effect=OrderIdSpaceExhausted("202501"),
        ):
            booking = await create_booking(db, checkout_payload)

        assert booking.order_id.startswith("B")
        assert not is_sequential_order_id(booking.order_id)

    async def test_with_referral_code(self, db, checkout_payload, make_referral):
        referral = await make_referral(referrer_id="user_alice")

        checkout_payload["referral_code"] = referral.referral_code.lower()
        booking = await create_booking(db, checkout_payload)

        assert booking.referral_code == referral.referral_code
        assert booking.discount_amount == 50.0
        assert booking.final_amount == 50.0
        assert booking.charges_breakdown["referral_discount"] == 50.0
        assert referral.status == "first_payment_completed"
        assert referral.referee_id == checkout_payload["customer_id"]
        assert referral.referee_first_booking_id == booking.id

    async def test_unknown_referral_code_rejected_before_insert(self, db, checkout_payload):
        checkout_payload["referral_code"] = "REFNOTREAL"
        with pytest.raises(ReferralNotFound):
            await create_booking(db, checkout_payload)
        assert (await db.execute(select(Booking))).scalars().all() == []

    async def test_expired_referral_code(self, db, checkout_payload, make_referral):
        referral = await make_referral(expires_at=datetime.now(timezone.utc) - timedelta(days=1))
        checkout_payload["referral_code"] = referral.referral_code
        with pytest.raises(ReferralExpired):
            await create_booking(db, checkout_payload)


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


class TestGetBooking:
    async def test_by_order_id(self, db, checkout_payload):
        booking = await create_booking(db, checkout_payload, now=JAN_2025)
        assert (await get_booking(db, "a20250100001")).id == booking.id

    async def test_by_uuid(self, db, checkout_payload):
        booking = await create_booking(db, checkout_payload)
        assert (await get_booking(db, str(booking.id))).id == booking.id
        assert (await get_booking(db, booking.id)).id == booking.id

    async def test_not_found(self, db):
        with pytest.raises(NotFound):
            await get_booking(db, "A20250199999")
        with pytest.raises(NotFound):
            await get_booking(db, uuid.uuid4())
        with pytest.raises(NotFound):
            await get_booking(db, "")

    async def test_list_customer_bookings(self, db, make_booking):
        older = await make_booking(customer_id="cust_1", created_at=JAN_2025)
        newer = await make_booking(customer_id="cust_1", created_at=JAN_2025 + timedelta(days=1))
        await make_booking(customer_id="cust_2")

        bookings = await list_customer_bookings(db, "cust_1")

        assert [b.id for b in bookings] == [newer.id, older.id]


# ---------------------------------------------------------------------------
# Status machine
# ---------------------------------------------------------------------------


class TestAdvanceStatus:
    async def test_forward_path(self, db, make_booking):
        booking = await make_booking()
        for status in ("confirmed", "in_progress", "completed"):
            await advance_status(db, booking.id, status)
            assert booking.status == status
        assert booking.completed_at is not None

    async def test_completed_at_stamped_once(self, db, make_booking):
        booking = await make_booking(status="in_progress")
        t1 = datetime(2025, 1, 20, 9, 0, tzinfo=timezone.utc)

        await advance_status(db, booking.id, "completed", now=t1)
        await advance_status(db, booking.id, "completed", now=t1 + timedelta(hours=3))

        assert ensure_utc(booking.completed_at) == t1

    @pytest.mark.parametrize("current,target", [
        ("pending", "in_progress"),
        ("pending", "completed"),
        ("confirmed", "pending"),
        ("in_progress", "confirmed"),
        ("completed", "cancelled"),
        ("completed", "pending"),
        ("cancelled", "confirmed"),
    ])
    async def test_rejected_transitions(self, db, make_booking, current, target):
        booking = await make_booking(status=current)
        with pytest.raises(InvalidTransition) as exc_info:
            await advance_status(db, booking.id, target)
        assert exc_info.value.current == current
        assert booking.status == current

    @pytest.mark.parametrize("current", ["pending", "confirmed", "in_progress"])
    async def test_cancel_from_open_states(self, db, make_booking, current):
        booking = await make_booking(status=current)

        await advance_status(db, booking.id, "cancelled", reason="Customer unavailable")

        assert booking.status == "cancelled"
        assert booking.cancelled_at is not None
        assert booking.cancellation_reason == "Customer unavailable"

    async def test_unknown_status(self, db, make_booking):
        booking = await make_booking()
        with pytest.raises(ValidationError):
            await advance_status(db, booking.id, "teleported")

    async def test_reconciles_on_write(self, db, make_booking):
        booking = await make_booking(
            charges_breakdown={"base_price": 100.0, "discount": 20.0},
            discount_amount=0.0,
            final_amount=100.0,
            items_summary="",
        )

        await advance_status(db, booking.id, "confirmed")

        assert booking.discount_amount == 20.0
        assert booking.final_amount == 80.0
        assert booking.items_summary == "Shirt x 1"

    def test_terminal_states(self):
        assert VALID_TRANSITIONS["completed"] == []
        assert VALID_TRANSITIONS["cancelled"] == []


class TestPaymentAndRider:
    async def test_payment_status_independent(self, db, make_booking):
        booking = await make_booking(status="pending")
        await update_payment_status(db, booking.id, "paid")
        assert booking.payment_status == "paid"
        assert booking.status == "pending"

    async def test_unknown_payment_status(self, db, make_booking):
        booking = await make_booking()
        with pytest.raises(ValidationError):
            await update_payment_status(db, booking.id, "maybe")

    async def test_assign_rider(self, db, make_booking):
        booking = await make_booking(status="confirmed")
        await assign_rider(db, booking.id, "rider_42")
        assert booking.rider_id == "rider_42"

    async def test_no_rider_on_closed_booking(self, db, make_booking):
        booking = await make_booking(status="completed")
        with pytest.raises(InvalidTransition):
            await assign_rider(db, booking.id, "rider_42")


# ---------------------------------------------------------------------------
# Referral redemption
# ---------------------------------------------------------------------------


class TestRedeemReferralDiscount:
    async def test_referee_discount(self, db, make_booking, make_referral):
        referral = await make_referral(referrer_id="user_alice")
        booking = await make_booking(customer_id="user_bob")

        await redeem_referral_discount(db, booking.order_id, referral.referral_code, "user_bob")

        assert booking.discount_amount == 50.0
        assert booking.final_amount == 50.0
        assert booking.referral_code == referral.referral_code
        assert referral.referee_discount_applied is True

    async def test_second_redemption_already_used(self, db, make_booking, make_referral):
        """Same code on two bookings, one after the other: only the first gets the discount."""
        referral = await make_referral(referrer_id="user_alice")
        first = await make_booking(customer_id="user_bob")
        second = await make_booking(customer_id="user_bob")

        await redeem_referral_discount(db, first.id, referral.referral_code, "user_bob")
        with pytest.raises(ReferralAlreadyUsed):
            await redeem_referral_discount(db, second.id, referral.referral_code, "user_bob")

        assert first.final_amount == 50.0
        assert second.final_amount == 100.0
        assert second.referral_code is None

    async def test_referrer_reward_after_friend_pays(self, db, make_booking, make_referral):
        referral = await make_referral(referrer_id="user_alice")
        friend_booking = await make_booking(customer_id="user_bob")
        own_booking = await make_booking(customer_id="user_alice", total_price=60.0, final_amount=60.0)

        await redeem_referral_discount(db, friend_booking.id, referral.referral_code, "user_bob")
        await redeem_referral_discount(db, own_booking.id, referral.referral_code, "user_alice")

        assert own_booking.discount_amount == 30.0
        assert own_booking.final_amount == 30.0
        assert referral.status == "rewarded"
        assert referral.referrer_reward_booking_id == own_booking.id

    async def test_discount_never_exceeds_amount_due(self, db, make_booking, make_referral):
        referral = await make_referral(discount_percentage=100)
        booking = await make_booking(
            customer_id="user_bob",
            charges_breakdown={"base_price": 100.0, "discount": 30.0},
            discount_amount=30.0,
            final_amount=70.0,
        )

        await redeem_referral_discount(db, booking.id, referral.referral_code, "user_bob")

        assert booking.final_amount == 0.0
        assert booking.discount_amount == 100.0

    async def test_completed_booking_rejected(self, db, make_booking, make_referral):
        referral = await make_referral()
        booking = await make_booking(status="completed")
        with pytest.raises(InvalidTransition):
            await redeem_referral_discount(db, booking.id, referral.referral_code, "user_bob")
        assert referral.status == "pending"

    async def test_one_referral_per_booking(self, db, make_booking, make_referral):
        referral = await make_referral()
        booking = await make_booking(referral_code="REFOTHER")
        with pytest.raises(ValidationError):
            await redeem_referral_discount(db, booking.id, referral.referral_code, "user_bob")

    async def test_nothing_due_keeps_referral_unclaimed(self, db, make_booking, make_referral):
        referral = await make_referral(referrer_id="user_alice")
        booking = await make_booking(
            customer_id="user_bob",
            charges_breakdown={"base_price": 100.0, "discount": 100.0},
            discount_amount=100.0,
            final_amount=0.0,
        )

        with pytest.raises(ReferralNotEligible):
            await redeem_referral_discount(db, booking.id, referral.referral_code, "user_bob")

        await db.refresh(referral)
        assert referral.status == "pending"
        assert referral.referee_id is None
        assert referral.referee_discount_applied is False
        assert booking.referral_code is None


class TestConcurrentRedemption:
    """Two sessions race on one pending code; the loser read it before the winner committed."""

    @pytest.fixture
    async def session_factory(self, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'redeem_race.db'}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        await engine.dispose()

    @staticmethod
    def _booking(customer_id: str) -> Booking:
        return Booking(
            order_id=f"T{uuid.uuid4().hex[:10].upper()}",
            customer_id=customer_id,
            address="1 Test Street",
            line_items=[{"name": "Shirt", "quantity": 1, "unit_price": 100.0, "line_total": 100.0}],
            items_summary="Shirt x 1",
            charges_breakdown={"base_price": 100.0, "discount": 0.0},
            total_price=100.0,
            discount_amount=0.0,
            final_amount=100.0,
            created_at=datetime.now(timezone.utc),
        )

    @pytest.mark.parametrize("loser_id", ["user_bob", "user_carol"])
    async def test_stale_loser_gets_already_used(self, session_factory, loser_id):
        code = "REFRACE0001"
        now = datetime.now(timezone.utc)
        winner_booking = self._booking("user_bob")
        loser_booking = self._booking(loser_id)
        async with session_factory() as setup:
            setup.add(Referral(
                referrer_id="user_alice",
                referral_code=code,
                status="pending",
                discount_percentage=50,
                created_at=now,
                expires_at=now + timedelta(days=30),
            ))
            setup.add_all([winner_booking, loser_booking])
            await setup.commit()

        loser_has_read = asyncio.Event()
        winner_done = asyncio.Event()
        original_validate = referrals.validate_referral_code

        async with session_factory() as winner_db, session_factory() as loser_db:

            async def gated_validate(db, referral_code, now=None):
                referral = await original_validate(db, referral_code, now)
                if db is loser_db:
                    loser_has_read.set()
                    await winner_done.wait()
                return referral

            async def redeem(db, booking_id, user_id, is_winner):
                try:
                    if is_winner:
                        await loser_has_read.wait()
                    await redeem_referral_discount(db, booking_id, code, user_id)
                    await db.commit()
                    return "ok"
                except ReferralAlreadyUsed:
                    await db.rollback()
                    return "AlreadyUsed"
                finally:
                    if is_winner:
                        winner_done.set()

            with patch("laundrify.services.referrals.validate_referral_code", side_effect=gated_validate):
                results = await asyncio.gather(
                    redeem(loser_db, loser_booking.id, loser_id, False),
                    redeem(winner_db, winner_booking.id, "user_bob", True),
                )

        assert results == ["AlreadyUsed", "ok"]

        async with session_factory() as check:
            referral = (await check.execute(select(Referral).where(Referral.referral_code == code))).scalar_one()
            loser = await check.get(Booking, loser_booking.id)
            winner = await check.get(Booking, winner_booking.id)

        assert referral.status == "first_payment_completed"
        assert referral.referee_id == "user_bob"
        assert referral.referee_first_booking_id == winner_booking.id
        assert winner.final_amount == 50.0
        assert loser.final_amount == 100.0
        assert loser.referral_code is None


# ---------------------------------------------------------------------------
# Admin stats and historical reconciliation
# ---------------------------------------------------------------------------


class TestBookingStats:
    async def test_counts(self, db, make_booking):
        await make_booking(status="pending")
        await make_booking(status="completed", discount_amount=10.0, final_amount=90.0)
        await make_booking(status="pending", items_summary="", final_amount=75.0)

        stats = await booking_stats(db)

        assert stats["total_bookings"] == 3
        assert stats["by_status"] == {"pending": 2, "completed": 1}
        assert stats["with_items_summary"] == 2
        assert stats["missing_items_summary"] == 1
        assert stats["with_discount_amount"] == 1
        assert stats["final_amount_mismatch"] == 1

    async def test_empty(self, db):
        stats = await booking_stats(db)
        assert stats["total_bookings"] == 0
        assert stats["final_amount_mismatch"] == 0


class TestReconcileHistoricalBookings:
    async def test_fixes_legacy_rows(self, db, make_booking):
        legacy = await make_booking(
            items_summary="",
            charges_breakdown={"base_price": 100.0, "discount": 25.0},
            discount_amount=0.0,
            final_amount=100.0,
        )
        completed = await make_booking(status="completed", completed_at=None)
        clean = await make_booking()

        result = await reconcile_historical_bookings(db)

        assert result == {"scanned": 3, "updated": 2}
        assert legacy.items_summary == "Shirt x 1"
        assert legacy.final_amount == 75.0
        assert completed.completed_at is not None
        assert clean.final_amount == 100.0
        assert (await booking_stats(db))["final_amount_mismatch"] == 0

    async def test_limit_and_batches(self, db, make_booking):
        for i in range(5):
            await make_booking(items_summary="", created_at=JAN_2025 + timedelta(minutes=i))

        result = await reconcile_historical_bookings(db, limit=3, batch_size=2)

        assert result["scanned"] == 3
        assert result["updated"] == 3
