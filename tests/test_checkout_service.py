"""
Tests for the checkout session state machine and order finalization.

Cart used by most tests: 2 x Classic Tee S at 20.00
    subtotal 40.00, tax 3.20, shipping 5.00, total 48.20
"""
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select, update

from storefront.core.exceptions import (
    CheckoutSessionExpiredError,
    NotFoundError,
    PaymentAmountMismatchError,
    PaymentNotCompletedError,
    SessionAlreadyFinalizedError,
    UpstreamUnavailableError,
    ValidationFailedError,
)
from storefront.core.identity import Identity
from storefront.core.utils import utcnow
from storefront.models import Address, CheckoutSession, CheckoutStatus, Order, ProductVariant
from storefront.schemas.checkout import AddressSubmission, CheckoutSessionResponse
from storefront.services.cart_merge import CartMergeService
from storefront.services.checkout_service import CheckoutService
from storefront.services.order_service import OrderService
from tests.conftest import VALID_ADDRESS


def _submission(**overrides):
    data = {"billing_address": dict(VALID_ADDRESS)}
    data.update(overrides)
    return AddressSubmission(**data)


async def _open_session(db, identity, catalog, cart_service, checkout_service, key="attempt-0001"):
    await cart_service.add_item(db, identity, catalog["tee"], catalog["tee_s"], 2)
    return await checkout_service.begin(db, identity, key)


async def _awaiting_payment(db, identity, catalog, cart_service, checkout_service):
    session = await _open_session(db, identity, catalog, cart_service, checkout_service)
    return await checkout_service.submit_address(db, identity, session.id, _submission())


async def _set_session(db, session_id, **values):
    await db.execute(update(CheckoutSession).where(CheckoutSession.id == session_id).values(**values))
    await db.commit()


class TestBegin:

    def test_zero_ttl_is_not_replaced_by_default(self, payment_gateway):
        assert CheckoutService(gateway=payment_gateway, ttl_minutes=0).ttl_minutes == 0
        assert CheckoutSession.create_expiry(0) <= utcnow()

    @pytest.mark.asyncio
    async def test_same_key_returns_same_session(self, db, catalog, guest, cart_service, checkout_service):
        first = await _open_session(db, guest, catalog, cart_service, checkout_service)
        second = await checkout_service.begin(db, guest, "attempt-0001")

        assert second.id == first.id
        assert first.status == CheckoutStatus.COLLECTING_ADDRESS.value
        count = await db.execute(select(func.count()).select_from(CheckoutSession))
        assert count.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_new_key_opens_new_session(self, db, catalog, guest, cart_service, checkout_service):
        first = await _open_session(db, guest, catalog, cart_service, checkout_service)
        second = await checkout_service.begin(db, guest, "attempt-0002")
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_empty_cart_cannot_check_out(self, db, catalog, guest, checkout_service):
        with pytest.raises(ValidationFailedError) as exc_info:
            await checkout_service.begin(db, guest, "attempt-0001")
        assert "cart" in exc_info.value.field_errors

    @pytest.mark.asyncio
    async def test_session_is_scoped_to_owner(self, db, catalog, guest, user, cart_service, checkout_service):
        session = await _open_session(db, guest, catalog, cart_service, checkout_service)
        with pytest.raises(NotFoundError):
            await checkout_service.get_session(db, user, session.id)


class TestSubmitAddress:

    @pytest.mark.asyncio
    async def test_freezes_totals_and_requests_exact_amount(
        self, db, catalog, guest, cart_service, checkout_service, payment_gateway
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)

        assert session.status == CheckoutStatus.AWAITING_PAYMENT.value
        assert session.subtotal_cents == 4000
        assert session.tax_cents == 320
        assert session.shipping_cents == 500
        assert session.total_cents == 4820
        assert session.item_count == 2

        intent = payment_gateway.intents[session.payment_intent_id]
        assert intent.amount == session.total_cents
        assert intent.currency == "usd"
        assert intent.metadata["checkout_session_id"] == session.id

    @pytest.mark.asyncio
    async def test_billing_mirrors_to_shipping(self, db, catalog, guest, cart_service, checkout_service):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        assert session.billing_address["country_code"] == "US"
        assert session.shipping_address == session.billing_address

    @pytest.mark.asyncio
    async def test_retry_returns_same_intent(
        self, db, catalog, guest, cart_service, checkout_service, payment_gateway
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        again = await checkout_service.submit_address(db, guest, session.id, _submission())

        assert again.payment_intent_id == session.payment_intent_id
        assert payment_gateway.create_calls == 1

    @pytest.mark.asyncio
    async def test_totals_stay_frozen_when_cart_changes(
        self, db, catalog, guest, cart_service, checkout_service
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        await cart_service.add_item(db, guest, catalog["hoodie"], catalog["hoodie_v"], 3)

        reread = await checkout_service.get_session(db, guest, session.id)
        response = CheckoutSessionResponse.from_session(reread)
        assert reread.total_cents == 4820
        assert response.total == Decimal("48.20")
        assert [line.quantity for line in response.items] == [2]

    @pytest.mark.asyncio
    async def test_invalid_address_keeps_collecting(self, db, catalog, guest, cart_service, checkout_service):
        session = await _open_session(db, guest, catalog, cart_service, checkout_service)
        bad = dict(VALID_ADDRESS, postal_code="ABC", country_code="ZZ")

        with pytest.raises(ValidationFailedError) as exc_info:
            await checkout_service.submit_address(db, guest, session.id, _submission(billing_address=bad))
        assert "billing.country_code" in exc_info.value.field_errors

        reread = await checkout_service.get_session(db, guest, session.id)
        assert reread.status == CheckoutStatus.COLLECTING_ADDRESS.value
        assert reread.total_cents is None

    @pytest.mark.asyncio
    async def test_separate_shipping_address_is_validated(self, db, catalog, guest, cart_service, checkout_service):
        session = await _open_session(db, guest, catalog, cart_service, checkout_service)
        submission = _submission(
            shipping_same_as_billing=False,
            shipping_address=dict(VALID_ADDRESS, city=""),
        )
        with pytest.raises(ValidationFailedError) as exc_info:
            await checkout_service.submit_address(db, guest, session.id, submission)
        assert "shipping.city" in exc_info.value.field_errors

    @pytest.mark.asyncio
    async def test_cart_must_be_purchasable(self, db, catalog, guest, cart_service, checkout_service):
        session = await _open_session(db, guest, catalog, cart_service, checkout_service)
        await db.execute(
            update(ProductVariant).where(ProductVariant.id == catalog["tee_s"]).values(inventory_quantity=1)
        )
        await db.commit()

        with pytest.raises(ValidationFailedError) as exc_info:
            await checkout_service.submit_address(db, guest, session.id, _submission())
        invalid = exc_info.value.details["invalid_items"]
        assert invalid[0]["max_available"] == 1

        # Cart is untouched by the failed checkout step
        summary = await cart_service.get_summary(db, guest)
        assert summary.items[0].quantity == 2

    @pytest.mark.asyncio
    async def test_payment_outage_keeps_collecting(
        self, db, catalog, guest, cart_service, checkout_service, payment_gateway
    ):
        session = await _open_session(db, guest, catalog, cart_service, checkout_service)
        payment_gateway.fail_create = UpstreamUnavailableError("payment")

        with pytest.raises(UpstreamUnavailableError):
            await checkout_service.submit_address(db, guest, session.id, _submission())

        reread = await checkout_service.get_session(db, guest, session.id)
        assert reread.status == CheckoutStatus.COLLECTING_ADDRESS.value
        assert reread.payment_intent_id is None

    @pytest.mark.asyncio
    async def test_saved_address_must_belong_to_caller(self, db, catalog, user, cart_service, checkout_service):
        stranger_address = Address(
            user_id="999",
            address_type="billing",
            first_name="Grace",
            last_name="Hopper",
            address_line_1="1 Navy Way",
            city="Arlington",
            state_province="VA",
            postal_code="22202",
            country_code="US",
        )
        db.add(stranger_address)
        await db.commit()

        session = await _open_session(db, user, catalog, cart_service, checkout_service)
        with pytest.raises(NotFoundError):
            await checkout_service.submit_address(
                db, user, session.id, AddressSubmission(billing_address_id=stranger_address.id)
            )

    @pytest.mark.asyncio
    async def test_saved_address_by_id(self, db, catalog, user, cart_service, checkout_service):
        saved = await checkout_service.address_service.create_address(
            db, user, dict(VALID_ADDRESS, address_type="both")
        )
        session = await _open_session(db, user, catalog, cart_service, checkout_service)
        session = await checkout_service.submit_address(
            db, user, session.id, AddressSubmission(billing_address_id=saved.id)
        )
        assert session.billing_address["address_line_1"] == "123 Main St"


class TestConfirm:

    @pytest.mark.asyncio
    async def test_unpaid_session_stays_awaiting_payment(
        self, db, catalog, guest, cart_service, checkout_service
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)

        with pytest.raises(PaymentNotCompletedError):
            await checkout_service.confirm(db, guest, session.id)

        reread = await checkout_service.get_session(db, guest, session.id)
        assert reread.status == CheckoutStatus.AWAITING_PAYMENT.value
        assert (await cart_service.get_summary(db, guest)).item_count == 2

    @pytest.mark.asyncio
    async def test_paid_session_finalizes_order(
        self, db, catalog, guest, cart_service, checkout_service, payment_gateway
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        payment_gateway.succeed(session.payment_intent_id)

        session, order, already = await checkout_service.confirm(db, guest, session.id)

        assert already is False
        assert session.status == CheckoutStatus.CONFIRMED.value
        assert order.total == Decimal("48.20")
        assert [(item.sku, item.quantity) for item in order.items] == [("TEE-S", 2)]
        assert (await cart_service.get_summary(db, guest)).items == []

        variant = await db.get(ProductVariant, catalog["tee_s"], populate_existing=True)
        assert variant.inventory_quantity == 8

    @pytest.mark.asyncio
    async def test_confirm_twice_is_a_distinct_error(
        self, db, catalog, guest, cart_service, checkout_service, payment_gateway
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        payment_gateway.succeed(session.payment_intent_id)
        _, order, _ = await checkout_service.confirm(db, guest, session.id)

        with pytest.raises(SessionAlreadyFinalizedError) as exc_info:
            await checkout_service.confirm(db, guest, session.id)
        assert exc_info.value.details["order_number"] == order.order_number

    @pytest.mark.asyncio
    async def test_finalization_runs_once(
        self, db, catalog, guest, cart_service, checkout_service, payment_gateway
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        payment = payment_gateway.succeed(session.payment_intent_id)
        _, order, _ = await checkout_service.confirm(db, guest, session.id)

        # Items added after the purchase must survive a repeated finalization
        await cart_service.add_item(db, guest, catalog["tee"], catalog["tee_s"], 1)
        result = await OrderService().finalize(db, session, payment)
        await db.commit()

        assert result.already_exists is True
        assert result.order_number == order.order_number
        count = await db.execute(select(func.count()).select_from(Order))
        assert count.scalar_one() == 1
        assert (await cart_service.get_summary(db, guest)).item_count == 1
        variant = await db.get(ProductVariant, catalog["tee_s"], populate_existing=True)
        assert variant.inventory_quantity == 8

    @pytest.mark.asyncio
    async def test_amount_mismatch_is_refused(
        self, db, catalog, guest, cart_service, checkout_service, payment_gateway
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        payment_gateway.succeed(session.payment_intent_id, amount=100)

        with pytest.raises(PaymentAmountMismatchError):
            await checkout_service.confirm(db, guest, session.id)

        reread = await checkout_service.get_session(db, guest, session.id)
        assert reread.status == CheckoutStatus.AWAITING_PAYMENT.value

    @pytest.mark.asyncio
    async def test_webhook_and_confirm_finalize_once(
        self, db, catalog, guest, cart_service, checkout_service, payment_gateway
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        payment = payment_gateway.succeed(session.payment_intent_id)

        order = await checkout_service.handle_payment_succeeded(db, payment)
        assert order is not None
        assert await checkout_service.handle_payment_succeeded(db, payment) is None

        with pytest.raises(SessionAlreadyFinalizedError):
            await checkout_service.confirm(db, guest, session.id)
        count = await db.execute(select(func.count()).select_from(Order))
        assert count.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_webhook_for_unknown_session_is_ignored(self, db, catalog, checkout_service, payment_gateway):
        intent = await payment_gateway.create_intent(100, "usd", {"checkout_session_id": "missing"}, "k")
        payment = payment_gateway.succeed(intent.intent_id)
        assert await checkout_service.handle_payment_succeeded(db, payment) is None


class TestAbandonment:

    @pytest.mark.asyncio
    async def test_cancel_leaves_cart_intact(
        self, db, catalog, guest, cart_service, checkout_service, payment_gateway
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        cancelled = await checkout_service.cancel(db, guest, session.id)

        assert cancelled.status == CheckoutStatus.CANCELLED.value
        assert payment_gateway.cancelled == [session.payment_intent_id]
        assert (await cart_service.get_summary(db, guest)).item_count == 2

    @pytest.mark.asyncio
    async def test_cancel_confirmed_session_fails(
        self, db, catalog, guest, cart_service, checkout_service, payment_gateway
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        payment_gateway.succeed(session.payment_intent_id)
        await checkout_service.confirm(db, guest, session.id)

        with pytest.raises(SessionAlreadyFinalizedError):
            await checkout_service.cancel(db, guest, session.id)

    @pytest.mark.asyncio
    async def test_lazy_expiry_on_read(self, db, catalog, guest, cart_service, checkout_service):
        session = await _open_session(db, guest, catalog, cart_service, checkout_service)
        await db.execute(
            update(CheckoutSession)
            .where(CheckoutSession.id == session.id)
            .values(expires_at=utcnow() - timedelta(minutes=1))
        )
        await db.commit()

        reread = await checkout_service.get_session(db, guest, session.id)
        assert reread.status == CheckoutStatus.EXPIRED.value

        with pytest.raises(CheckoutSessionExpiredError):
            await checkout_service.submit_address(db, guest, session.id, _submission())
        assert (await cart_service.get_summary(db, guest)).item_count == 2

    @pytest.mark.asyncio
    async def test_expire_stale_sessions_cancels_intents(
        self, db, catalog, guest, cart_service, checkout_service, payment_gateway
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)

        expired = await checkout_service.expire_stale_sessions(db, now=utcnow() + timedelta(hours=1))

        assert expired == 1
        assert payment_gateway.cancelled == [session.payment_intent_id]
        reread = await checkout_service.get_session(db, guest, session.id)
        assert reread.status == CheckoutStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_fresh_sessions_are_not_expired(self, db, catalog, guest, cart_service, checkout_service):
        await _open_session(db, guest, catalog, cart_service, checkout_service)
        assert await checkout_service.expire_stale_sessions(db) == 0


class TestPaidPastExpiry:

    @pytest.mark.asyncio
    async def test_read_past_ttl_keeps_paid_session_confirmable(
        self, db, catalog, guest, cart_service, checkout_service, payment_gateway
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        payment_gateway.succeed(session.payment_intent_id)
        await _set_session(db, session.id, expires_at=utcnow() - timedelta(minutes=1))

        reread = await checkout_service.get_session(db, guest, session.id)
        assert reread.status == CheckoutStatus.AWAITING_PAYMENT.value

        confirmed, order, already = await checkout_service.confirm(db, guest, session.id)
        assert already is False
        assert confirmed.status == CheckoutStatus.CONFIRMED.value
        assert order.total == Decimal("48.20")
        assert payment_gateway.cancelled == []

    @pytest.mark.asyncio
    async def test_address_retry_past_ttl_returns_paid_session(
        self, db, catalog, guest, cart_service, checkout_service, payment_gateway
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        payment_gateway.succeed(session.payment_intent_id)
        await _set_session(db, session.id, expires_at=utcnow() - timedelta(minutes=1))

        retried = await checkout_service.submit_address(db, guest, session.id, _submission())

        assert retried.status == CheckoutStatus.AWAITING_PAYMENT.value
        assert retried.payment_intent_id == session.payment_intent_id

    @pytest.mark.asyncio
    async def test_unpaid_session_past_ttl_still_expires(
        self, db, catalog, guest, cart_service, checkout_service
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        await _set_session(db, session.id, expires_at=utcnow() - timedelta(minutes=1))

        with pytest.raises(CheckoutSessionExpiredError):
            await checkout_service.confirm(db, guest, session.id)
        reread = await checkout_service.get_session(db, guest, session.id)
        assert reread.status == CheckoutStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_confirm_honors_expired_session_that_was_paid(
        self, db, catalog, guest, cart_service, checkout_service, payment_gateway
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        await _set_session(db, session.id, status=CheckoutStatus.EXPIRED.value)
        payment_gateway.succeed(session.payment_intent_id)

        confirmed, order, _ = await checkout_service.confirm(db, guest, session.id)

        assert confirmed.status == CheckoutStatus.CONFIRMED.value
        assert confirmed.order_id == order.id

    @pytest.mark.asyncio
    async def test_webhook_finalizes_expired_session(
        self, db, catalog, guest, cart_service, checkout_service, payment_gateway
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        await _set_session(db, session.id, status=CheckoutStatus.EXPIRED.value)
        payment = payment_gateway.succeed(session.payment_intent_id)

        order = await checkout_service.handle_payment_succeeded(db, payment)

        assert order is not None
        reread = await checkout_service.get_session(db, guest, session.id)
        assert reread.status == CheckoutStatus.CONFIRMED.value
        assert (await cart_service.get_summary(db, guest)).items == []

    @pytest.mark.asyncio
    async def test_cleanup_finalizes_paid_stale_session(
        self, db, catalog, guest, cart_service, checkout_service, payment_gateway
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        payment = payment_gateway.succeed(session.payment_intent_id)

        expired = await checkout_service.expire_stale_sessions(db, now=utcnow() + timedelta(hours=1))

        assert expired == 0
        assert payment_gateway.cancelled == []
        reread = await checkout_service.get_session(db, guest, session.id)
        assert reread.status == CheckoutStatus.CONFIRMED.value

        # The late webhook finds the order already in place
        assert await checkout_service.handle_payment_succeeded(db, payment) is None
        count = await db.execute(select(func.count()).select_from(Order))
        assert count.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_cleanup_leaves_session_open_when_payment_status_unknown(
        self, db, catalog, guest, cart_service, checkout_service, payment_gateway
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        outage = AsyncMock(side_effect=UpstreamUnavailableError("payment"))

        with patch.object(payment_gateway, "retrieve_intent", outage):
            expired = await checkout_service.expire_stale_sessions(db, now=utcnow() + timedelta(hours=1))

        assert expired == 0
        assert payment_gateway.cancelled == []
        reread = await checkout_service.get_session(db, guest, session.id)
        assert reread.status == CheckoutStatus.AWAITING_PAYMENT.value


class TestSignInDuringCheckout:

    @pytest.mark.asyncio
    async def test_purchased_lines_leave_the_merged_user_cart(
        self, db, catalog, guest, user, cart_service, checkout_service, payment_gateway
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        await cart_service.add_item(db, user, catalog["hoodie"], catalog["hoodie_v"], 1)
        await CartMergeService(cart_service).merge_guest_cart(db, guest.session_id, user.user_id)
        payment_gateway.succeed(session.payment_intent_id)

        confirmed, order, _ = await checkout_service.confirm(db, user, session.id)

        assert confirmed.status == CheckoutStatus.CONFIRMED.value
        summary = await cart_service.get_summary(db, user)
        assert [(line.variant_id, line.quantity) for line in summary.items] == [(catalog["hoodie_v"], 1)]
        orders = await OrderService.list_orders(db, user)
        assert [o.order_number for o in orders] == [order.order_number]

    @pytest.mark.asyncio
    async def test_guest_can_still_confirm_after_merge(
        self, db, catalog, guest, user, cart_service, checkout_service, payment_gateway
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        await CartMergeService(cart_service).merge_guest_cart(db, guest.session_id, user.user_id)
        payment_gateway.succeed(session.payment_intent_id)

        await checkout_service.confirm(db, guest, session.id)

        assert (await cart_service.get_summary(db, user)).items == []

    @pytest.mark.asyncio
    async def test_other_users_cannot_see_merged_session(
        self, db, catalog, guest, user, cart_service, checkout_service
    ):
        session = await _awaiting_payment(db, guest, catalog, cart_service, checkout_service)
        await CartMergeService(cart_service).merge_guest_cart(db, guest.session_id, user.user_id)

        with pytest.raises(NotFoundError):
            await checkout_service.get_session(db, Identity.for_user("7"), session.id)
