"""
Tests for the payment authorization state machine.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from secure_cod.domain import DiscountRule, PaymentMethod
from secure_cod.engine import OrderEngine
from secure_cod.errors import ConflictError, GatewayError, NotFoundError, ValidationError
from secure_cod.utils.config import Config

CODE = "#SMRT-1234"


def refunded_total(gateway):
    return sum((call[1] for call in gateway.calls_for("refund")), Decimal("0"))


class TestIntentAndAuthorization:
    """Intent verification and full-amount authorization."""

    def test_verify_intent_creates_lead(self, engine, checkout_record):
        """A verified checkout shows up in the leads view only."""
        order = engine.verify_intent(checkout_record)

        assert order["paymentStatus"] == "Intent Verified"
        assert order["kind"] == "leads"
        assert [o["businessOrderCode"] for o in engine.get_unified_orders("leads")] == [CODE]
        assert engine.get_unified_orders("orders") == []

    def test_verify_intent_requires_customer_details(self, engine, checkout_record):
        """Missing address or pincode is rejected before anything is written."""
        del checkout_record["pincode"]
        with pytest.raises(ValidationError, match="pincode"):
            engine.verify_intent(checkout_record)
        assert engine.get_unified_orders() == []

    def test_verify_intent_rejects_zero_total(self, engine, checkout_record):
        """An order total of zero cannot start a payment."""
        checkout_record["price"] = "0"
        with pytest.raises(ValidationError):
            engine.verify_intent(checkout_record)

    def test_authorize_converts_lead_to_order(self, engine, store, gateway, authorized_order):
        """Authorization records payment info, a new order record and tombstones the lead."""
        assert authorized_order["paymentStatus"] == "Authorized"
        assert authorized_order["kind"] == "orders"
        assert authorized_order["price"] == "900.00"
        assert gateway.calls_for("verify") == [("order_1", "pay_1", "sig_1")]

        info = store.get_payment_authorization(CODE)
        assert info.payment_id == "pay_1"
        assert info.amount == Decimal("900.00")

        assert engine.get_unified_orders("leads") == []
        assert [o["businessOrderCode"] for o in engine.get_unified_orders("orders")] == [CODE]
        assert all(lead.get("paymentStatus") != "Converted" for lead in store.list_leads())
        lead_ids = [lead["recordId"] for lead in store.list_leads()]
        assert all(store.get_overrides()[lead_id]["paymentStatus"] == "Converted" for lead_id in lead_ids)

    def test_authorize_issues_loyalty_card(self, store, authorized_order):
        """The first authorization for a phone number issues a reward card."""
        card = store.find_loyalty("9876543210")

        assert card is not None
        assert card.points == 100
        assert card.customer_phone == "919876543210"

    def test_authorize_bad_signature_writes_nothing(self, engine, store, gateway, checkout_record):
        """A forged checkout callback leaves the order at Intent Verified."""
        engine.verify_intent(checkout_record)

        with pytest.raises(GatewayError):
            engine.transition(
                CODE,
                "authorize",
                {"payment_id": "pay_1", "gateway_order_id": "order_1", "signature": "bad-signature"},
            )

        assert engine.get_order(CODE)["paymentStatus"] == "Intent Verified"
        assert store.get_payment_authorization(CODE) is None
        assert store.list_orders() == []

    def test_authorize_requires_gateway_references(self, engine, checkout_record):
        """payment_id, gateway_order_id and signature are all required."""
        engine.verify_intent(checkout_record)
        with pytest.raises(ValidationError, match="signature"):
            engine.transition(CODE, "authorize", {"payment_id": "pay_1", "gateway_order_id": "order_1"})

    def test_authorize_twice_conflicts(self, engine, authorized_order):
        """An authorized order cannot be authorized again."""
        with pytest.raises(ConflictError) as exc_info:
            engine.transition(
                CODE,
                "authorize",
                {"payment_id": "pay_2", "gateway_order_id": "order_2", "signature": "sig_2"},
            )
        assert exc_info.value.current_status == "Authorized"

    def test_verify_intent_after_authorization_conflicts(self, engine, checkout_record, authorized_order):
        """A second checkout for an existing order code is refused."""
        with pytest.raises(ConflictError):
            engine.verify_intent(checkout_record)


class TestSelfCancellationScenario:
    """#SMRT-1234: 10% collection discount, self-cancel at T0+10h, then again."""

    def test_discounted_checkout_then_self_cancel(self, engine, gateway, clock, checkout_record):
        engine.put_discount_rule(DiscountRule(id="collection_Summer", discount_percent=Decimal("10")))
        quote = engine.quote("1000", 1, PaymentMethod.SECURE_COD.value, collection_name="Summer")
        assert quote["originalPrice"] == Decimal("1000.00")
        assert quote["totalPrice"] == Decimal("900.00")

        checkout_record["price"] = str(quote["totalPrice"])
        engine.verify_intent(checkout_record)
        engine.transition(
            CODE,
            "authorize",
            {"payment_id": "pay_1", "gateway_order_id": "order_1", "signature": "sig_1"},
        )

        clock.advance(hours=10)
        assert engine.can_self_cancel(CODE) is True
        voided = engine.transition(CODE, "void-self", {})

        assert voided["paymentStatus"] == "Voided"
        assert voided["cancellationStatus"] == "Processed"
        assert voided["releaseId"].startswith("rfnd_")
        assert gateway.calls_for("refund") == [
            ("pay_1", Decimal("900.00"), "Customer cancellation within the self-service window")
        ]

        with pytest.raises(ConflictError) as exc_info:
            engine.transition(CODE, "void-self", {})
        assert exc_info.value.current_status == "Voided"
        assert len(gateway.calls_for("refund")) == 1
        assert engine.get_order(CODE)["paymentStatus"] == "Voided"

    def test_self_cancel_after_window_rejected(self, engine, gateway, clock, authorized_order):
        """Past 24 hours the customer needs a cancellation ID."""
        clock.advance(hours=24, minutes=1)

        assert engine.can_self_cancel(CODE) is False
        with pytest.raises(ValidationError, match="window"):
            engine.transition(CODE, "void-self", {})
        assert gateway.calls_for("refund") == []
        assert engine.get_order(CODE)["paymentStatus"] == "Authorized"

    def test_can_self_cancel_window_edges(self, engine, clock, authorized_order):
        clock.advance(hours=23, minutes=59)
        assert engine.can_self_cancel(CODE) is True
        clock.advance(minutes=2)
        assert engine.can_self_cancel(CODE) is False


class TestAdminCancellation:
    """Cancellation with a cancellation ID."""

    def test_void_admin_with_matching_code(self, engine, gateway, clock, authorized_order):
        clock.advance(days=3)
        code = authorized_order["cancellationId"]

        voided = engine.transition(CODE, "void-admin", {"code": code})

        assert voided["paymentStatus"] == "Voided"
        assert voided["cancellationReason"] == f"Customer cancellation with ID: {code}"
        assert len(gateway.calls_for("refund")) == 1

    def test_void_admin_with_wrong_code(self, engine, gateway, authorized_order):
        with pytest.raises(ValidationError, match="Cancellation ID"):
            engine.transition(CODE, "void-admin", {"code": "CNCL-00000000"})
        assert gateway.calls_for("refund") == []

    def test_void_admin_manual_order_without_payment_info(self, engine, gateway):
        """Manual orders never held funds, so the void is only recorded."""
        engine.put_raw_order(
            {
                "recordId": "m1",
                "businessOrderCode": "#M-1",
                "paymentStatus": "Authorized",
                "price": "450",
                "source": "manual",
            }
        )
        code = engine.get_order("#M-1")["cancellationId"]

        voided = engine.transition("#M-1", "void-admin", {"code": code})

        assert voided["paymentStatus"] == "Voided"
        assert gateway.calls == []


class TestCancellationFee:
    """Fee settlement captures the fee and refunds the rest."""

    def test_fee_on_authorized_order(self, engine, gateway, authorized_order):
        """A 150 fee on a 900 authorization captures 150 and refunds 750."""
        order = engine.transition(CODE, "charge-fee", {"amount": "150"})

        assert order["paymentStatus"] == "Fee Charged"
        assert order["cancellationFee"] == "150.00"
        assert order["feeRefundAmount"] == "750.00"
        assert order["feeCaptureId"].startswith("txn_")
        assert order["feeRefundId"].startswith("rfnd_")
        assert order["cancellationStatus"] == "Settled"
        assert gateway.calls_for("capture") == [("pay_1", Decimal("150.00"))]
        assert gateway.calls_for("refund") == [("pay_1", Decimal("750.00"), "Partial refund after cancellation fee.")]
        assert [call[0] for call in gateway.calls[-2:]] == ["capture", "refund"]

    def test_fee_after_dashboard_cancellation(self, engine, gateway, store, authorized_order):
        """A cancellation recorded outside the gateway flow still holds the funds."""
        record_id = authorized_order["orderRecordIds"][0]
        store.put_override(record_id, {"cancellationStatus": "Processed"})
        assert engine.get_order(CODE)["paymentStatus"] == "Voided"

        order = engine.transition(CODE, "charge-fee", {"amount": 150})

        assert order["paymentStatus"] == "Fee Charged"
        assert order["cancellationStatus"] == "Settled"
        assert refunded_total(gateway) == Decimal("750.00")

    def test_fee_after_released_void_conflicts(self, engine, gateway, authorized_order):
        """Once the void has released the hold there is nothing to charge against."""
        engine.transition(CODE, "void-self", {})

        with pytest.raises(ConflictError, match="already been released"):
            engine.transition(CODE, "charge-fee", {"amount": 150})

        assert gateway.calls_for("capture") == []
        assert refunded_total(gateway) == Decimal("900.00")
        assert engine.get_order(CODE)["paymentStatus"] == "Voided"

    def test_fee_not_below_total(self, engine, gateway, authorized_order):
        with pytest.raises(ValidationError, match="greater than or equal"):
            engine.transition(CODE, "charge-fee", {"amount": "900"})
        assert gateway.calls_for("capture") == []
        assert gateway.calls_for("refund") == []

    def test_fee_gateway_failure_leaves_order_untouched(self, engine, gateway, store, authorized_order):
        """No partial state: the order stays Authorized without fee fields."""
        gateway.fail_on.add("capture")

        with pytest.raises(GatewayError):
            engine.transition(CODE, "charge-fee", {"amount": "150"})

        order = engine.get_order(CODE)
        assert order["paymentStatus"] == "Authorized"
        assert "cancellationFee" not in order
        assert "feeRefundAmount" not in order
        assert gateway.calls_for("refund") == []
        assert not engine.payments.locks.is_in_flight(CODE)

    def test_refund_failure_after_capture_reports_capture(self, engine, gateway, authorized_order):
        gateway.fail_on.add("refund")

        with pytest.raises(GatewayError, match="was captured") as exc_info:
            engine.transition(CODE, "charge-fee", {"amount": "150"})

        assert exc_info.value.operation == "refund"
        assert exc_info.value.capture_id.startswith("txn_")
        order = engine.get_order(CODE)
        assert order["paymentStatus"] == "Authorized"
        assert "cancellationFee" not in order

    def test_fee_charged_only_refundable(self, engine, authorized_order):
        engine.transition(CODE, "charge-fee", {"amount": "150"})
        for action in ("capture", "void-self", "charge-fee"):
            with pytest.raises(ConflictError):
                engine.transition(CODE, action, {"amount": "10"})


class TestCaptureAndRefund:
    """Capture on delivery and admin refunds."""

    def test_capture(self, engine, gateway, authorized_order):
        order = engine.transition(CODE, "capture", {})

        assert order["paymentStatus"] == "Paid"
        assert order["captureId"].startswith("txn_")
        assert gateway.calls_for("capture") == [("pay_1", Decimal("900.00"))]

    def test_refund_paid_order(self, engine, gateway, authorized_order):
        engine.transition(CODE, "capture", {})
        order = engine.transition(CODE, "refund", {"amount": "400", "reason": "Damaged in transit"})

        assert order["paymentStatus"] == "Refunded"
        assert order["refundStatus"] == "Processed"
        assert order["refundAmount"] == "400.00"
        assert order["refundReason"] == "Damaged in transit"

    def test_refund_more_than_total_rejected(self, engine, authorized_order):
        engine.transition(CODE, "capture", {})
        with pytest.raises(ValidationError, match="exceeds"):
            engine.transition(CODE, "refund", {"amount": "901"})

    def test_refund_after_released_void_conflicts(self, engine, gateway, authorized_order):
        """The void already returned the full 900."""
        engine.transition(CODE, "void-self", {})

        with pytest.raises(ConflictError, match="nothing left to refund"):
            engine.transition(CODE, "refund", {})

        assert refunded_total(gateway) == Decimal("900.00")
        assert engine.get_order(CODE)["releasedAmount"] == "900.00"

    def test_refund_after_dashboard_cancellation_settles_it(self, engine, gateway, store, authorized_order):
        record_id = authorized_order["orderRecordIds"][0]
        store.put_override(record_id, {"cancellationStatus": "Processed"})

        order = engine.transition(CODE, "refund", {})

        assert order["paymentStatus"] == "Refunded"
        assert order["cancellationStatus"] == "Settled"
        assert refunded_total(gateway) == Decimal("900.00")

    def test_refund_after_fee_limited_to_fee(self, engine, gateway, authorized_order):
        """Only the captured fee is left to give back."""
        engine.transition(CODE, "charge-fee", {"amount": "150"})

        with pytest.raises(ValidationError, match="150.00 still refundable"):
            engine.transition(CODE, "refund", {"amount": "900"})

        order = engine.transition(CODE, "refund", {})

        assert order["refundAmount"] == "150.00"
        assert refunded_total(gateway) == Decimal("900.00")

    def test_refund_without_payment_info_needs_manual_processing(self, engine, gateway):
        engine.put_raw_order(
            {"recordId": "p1", "businessOrderCode": "#P-1", "paymentStatus": "Paid", "price": "300"}
        )

        with pytest.raises(NotFoundError, match="manual processing"):
            engine.transition("#P-1", "refund", {})
        assert engine.get_order("#P-1")["paymentStatus"] == "Paid"
        assert gateway.calls == []

    def test_unknown_order(self, engine):
        with pytest.raises(NotFoundError):
            engine.transition("#NOPE", "capture", {})

    def test_unknown_action(self, engine, authorized_order):
        with pytest.raises(ValidationError, match="Unknown action"):
            engine.transition(CODE, "teleport", {})


class TestConcurrency:
    """Single writer per order code."""

    def test_second_operation_while_in_flight_conflicts(self, engine, gateway, authorized_order):
        seen = {}

        def capture_during_refund(operation):
            if operation != "refund":
                return
            seen["in_flight"] = engine.payments.locks.is_in_flight(CODE)
            try:
                engine.transition(CODE, "capture", {})
            except ConflictError as e:
                seen["error"] = e

        gateway.on_call = capture_during_refund
        order = engine.transition(CODE, "void-self", {})

        assert seen["in_flight"] is True
        assert isinstance(seen["error"], ConflictError)
        assert gateway.calls_for("capture") == []
        assert order["paymentStatus"] == "Voided"

    def test_status_change_during_gateway_call_is_not_overwritten(self, engine, store, gateway, authorized_order):
        record_id = authorized_order["orderRecordIds"][0]

        def admin_marks_paid(operation):
            store.put_override(record_id, {"paymentStatus": "Paid"})

        gateway.on_call = admin_marks_paid

        with pytest.raises(ConflictError) as exc_info:
            engine.transition(CODE, "void-self", {})

        assert exc_info.value.current_status == "Paid"
        assert engine.get_order(CODE)["paymentStatus"] == "Paid"
        assert not engine.payments.locks.is_in_flight(CODE)

    def test_in_flight_cleared_after_success(self, engine, authorized_order):
        engine.transition(CODE, "capture", {})
        assert not engine.payments.locks.is_in_flight(CODE)

    def test_window_uses_authorization_time(self, engine, store, clock, authorized_order):
        """The window counts from the stored authorization, not from order creation."""
        info = store.get_payment_authorization(CODE)
        assert clock() - info.authorized_at == timedelta(0)

    def test_engine_sharing_the_store_is_kept_out(self, engine, store, gateway, clock, authorized_order):
        """A second engine over the same records has its own locks but meets the store claim."""
        other = OrderEngine(store, gateway, config=Config(), clock=clock)
        seen = {}

        def capture_from_other_engine(operation):
            if operation != "refund":
                return
            try:
                other.transition(CODE, "capture", {})
            except ConflictError as e:
                seen["error"] = e

        gateway.on_call = capture_from_other_engine
        order = engine.transition(CODE, "void-self", {})

        assert "in progress" in str(seen["error"])
        assert gateway.calls_for("capture") == []
        assert order["paymentStatus"] == "Voided"
        assert other.get_order(CODE)["cancellationId"] == order["cancellationId"]

    def test_locks_dropped_after_transitions(self, engine, authorized_order):
        engine.transition(CODE, "capture", {})
        assert len(engine.payments.locks) == 0
