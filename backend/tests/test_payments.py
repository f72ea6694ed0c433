"""
Tests for M-Pesa payments - PaymentService and the checkout / callback / status endpoints.

Tests cover:
- Callback processing (paid, failed, unknown order, duplicates, id fallback)
- Side effects applied exactly once (stock, notifications)
- Status polling and reconciliation with the STK query
- Checkout validation, server-side pricing, gateway failures, simulation mode
- Callback endpoint acknowledgement and signature check

The Daraja client is replaced with FakeMpesaClient or runs in simulation mode.
"""
import hashlib
import hmac
import json
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.settings import get_settings
from backend.app.models.notification import Notification
from backend.app.models.order import Order
from backend.app.models.product import Product
from backend.app.models.seller import SellerProfile
from backend.app.models.user import User
from backend.app.services.mpesa import CallbackDetails, MpesaRequestError, extract_callback_details

from backend.tests.conftest import FakeMpesaClient, auth_headers, make_order


# ============================================
# Helpers
# ============================================

def _callback_payload(
    merchant_request_id: str = "mr-100",
    checkout_request_id: str = "ws_CO_100",
    result_code: int = 0,
    result_desc: str = "The service request is processed successfully.",
    amount: float = 3500,
    receipt: str = "NLJ7RT61SV",
) -> dict:
    callback = {
        "MerchantRequestID": merchant_request_id,
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {"Item": [
            {"Name": "Amount", "Value": amount},
            {"Name": "MpesaReceiptNumber", "Value": receipt},
            {"Name": "TransactionDate", "Value": 20240305101530},
            {"Name": "PhoneNumber", "Value": 254712345678},
        ]}
    return {"Body": {"stkCallback": callback}}


def _details(**kwargs) -> CallbackDetails:
    return extract_callback_details(_callback_payload(**kwargs))


async def _reload(session: AsyncSession, model, entity_id):
    return await session.get(model, entity_id, populate_existing=True)


async def _notifications(session: AsyncSession, user_id: int):
    result = await session.execute(select(Notification).where(Notification.user_id == user_id))
    return result.scalars().all()


# ============================================
# PaymentService: callbacks
# ============================================

class TestHandleCallback:

    @pytest.mark.asyncio
    async def test_success_marks_order_paid(
        self,
        test_session: AsyncSession,
        test_pending_order: Order,
        test_product: Product,
        test_user: User,
        test_seller_user: User,
    ):
        """A success callback pays the order, decrements stock and notifies both sides."""
        from backend.app.services.payment import PaymentService

        service = PaymentService(test_session, client=FakeMpesaClient())
        outcome = await service.handle_callback(_details())
        await test_session.commit()

        assert outcome == "paid"
        order = await _reload(test_session, Order, test_pending_order.id)
        assert order.payment_status == "PAID"
        assert order.status == "CONFIRMED"
        assert order.mpesa_transaction_id == "NLJ7RT61SV"
        assert order.mpesa_result_code == "0"
        assert order.mpesa_payment_timestamp.year == 2024

        product = await _reload(test_session, Product, test_product.id)
        assert product.stock == 8

        seller_notes = await _notifications(test_session, test_seller_user.id)
        assert [n.type for n in seller_notes] == ["ORDER"]
        assert seller_notes[0].title == "New Order Received"
        assert f"#{order.id}" in seller_notes[0].message
        assert "KSh 3,500" in seller_notes[0].message

        buyer_notes = await _notifications(test_session, test_user.id)
        assert [n.type for n in buyer_notes] == ["PAYMENT"]

    @pytest.mark.asyncio
    async def test_duplicate_callback_is_noop(
        self,
        test_session: AsyncSession,
        test_pending_order: Order,
        test_product: Product,
        test_seller_user: User,
    ):
        """Side effects are applied once even if Daraja repeats the callback."""
        from backend.app.services.payment import PaymentService

        service = PaymentService(test_session, client=FakeMpesaClient())
        assert await service.handle_callback(_details()) == "paid"
        await test_session.commit()
        assert await service.handle_callback(_details()) == "duplicate"
        await test_session.commit()

        product = await _reload(test_session, Product, test_product.id)
        assert product.stock == 8
        assert len(await _notifications(test_session, test_seller_user.id)) == 1

    @pytest.mark.asyncio
    async def test_cancelled_marks_order_failed(
        self,
        test_session: AsyncSession,
        test_pending_order: Order,
        test_product: Product,
    ):
        """ResultCode 1032 (cancelled by user) fails the payment and cancels the order."""
        from backend.app.services.payment import PaymentService

        service = PaymentService(test_session, client=FakeMpesaClient())
        outcome = await service.handle_callback(_details(result_code=1032, result_desc="Request cancelled by user"))
        await test_session.commit()

        assert outcome == "failed"
        order = await _reload(test_session, Order, test_pending_order.id)
        assert order.payment_status == "FAILED"
        assert order.status == "CANCELLED"
        assert order.mpesa_result_code == "1032"
        assert order.mpesa_result_desc == "Request cancelled by user"
        product = await _reload(test_session, Product, test_product.id)
        assert product.stock == 10

    @pytest.mark.asyncio
    async def test_success_after_failure_does_not_overwrite(
        self,
        test_session: AsyncSession,
        test_pending_order: Order,
    ):
        """FAILED is terminal."""
        from backend.app.services.payment import PaymentService

        service = PaymentService(test_session, client=FakeMpesaClient())
        await service.handle_callback(_details(result_code=2001, result_desc="Wrong PIN"))
        await test_session.commit()
        assert await service.handle_callback(_details()) == "duplicate"
        await test_session.commit()

        order = await _reload(test_session, Order, test_pending_order.id)
        assert order.payment_status == "FAILED"
        assert order.mpesa_transaction_id is None

    @pytest.mark.asyncio
    async def test_unknown_order_is_ignored(self, test_session: AsyncSession, test_pending_order: Order):
        from backend.app.services.payment import PaymentService

        service = PaymentService(test_session, client=FakeMpesaClient())
        outcome = await service.handle_callback(
            _details(merchant_request_id="nope", checkout_request_id="nope")
        )

        assert outcome == "unknown_order"
        order = await _reload(test_session, Order, test_pending_order.id)
        assert order.payment_status == "PENDING"

    @pytest.mark.asyncio
    async def test_falls_back_to_checkout_request_id(self, test_session: AsyncSession, test_pending_order: Order):
        """Orders are matched by checkout id when the merchant id is unknown."""
        from backend.app.services.payment import PaymentService

        service = PaymentService(test_session, client=FakeMpesaClient())
        outcome = await service.handle_callback(_details(merchant_request_id="other", checkout_request_id="ws_CO_100"))

        assert outcome == "paid"

    @pytest.mark.asyncio
    async def test_amount_mismatch_still_pays(self, test_session: AsyncSession, test_pending_order: Order):
        """A differing amount is logged but Daraja's success is authoritative."""
        from backend.app.services.payment import PaymentService

        service = PaymentService(test_session, client=FakeMpesaClient())
        assert await service.handle_callback(_details(amount=1)) == "paid"


# ============================================
# PaymentService: status polling
# ============================================

class TestPaymentStatus:

    @pytest.mark.asyncio
    async def test_query_success_marks_paid(
        self,
        test_session: AsyncSession,
        test_pending_order: Order,
        test_user: User,
        test_product: Product,
    ):
        from backend.app.services.payment import PaymentService

        fake = FakeMpesaClient()
        fake.query_result_code = "0"
        service = PaymentService(test_session, client=fake)

        result = await service.get_payment_status(test_user, test_pending_order.id)
        await test_session.commit()

        assert fake.query_calls == ["ws_CO_100"]
        assert result["payment_status"] == "PAID"
        assert result["order_status"] == "CONFIRMED"
        assert result["message"] == "Payment completed successfully"
        assert result["total"] == 3500.0
        product = await _reload(test_session, Product, test_product.id)
        assert product.stock == 8

    @pytest.mark.asyncio
    async def test_query_cancelled(self, test_session: AsyncSession, test_pending_order: Order, test_user: User):
        from backend.app.services.payment import PaymentService

        fake = FakeMpesaClient()
        fake.query_result_code = "1032"
        fake.query_result_desc = "Request cancelled by user"
        result = await PaymentService(test_session, client=fake).get_payment_status(test_user, test_pending_order.id)

        assert result["payment_status"] == "FAILED"
        assert result["order_status"] == "CANCELLED"
        assert result["message"] == "Payment was cancelled"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["1", "1037", "2001", "1019", "1025"])
    async def test_query_other_failures(
        self,
        test_session: AsyncSession,
        test_pending_order: Order,
        test_user: User,
        code: str,
    ):
        from backend.app.services.payment import PaymentService

        fake = FakeMpesaClient()
        fake.query_result_code = code
        fake.query_result_desc = "failed"
        result = await PaymentService(test_session, client=fake).get_payment_status(test_user, test_pending_order.id)

        assert result["payment_status"] == "FAILED"
        assert result["message"].startswith("Payment failed")

    @pytest.mark.asyncio
    async def test_query_in_progress_code_keeps_order_pending(
        self,
        test_session: AsyncSession,
        test_pending_order: Order,
        test_user: User,
        test_product: Product,
    ):
        """Codes outside the final set (4999: still under processing) leave the order open for the callback."""
        from backend.app.services.payment import PaymentService

        fake = FakeMpesaClient()
        fake.query_result_code = "4999"
        fake.query_result_desc = "The transaction is still under processing"
        service = PaymentService(test_session, client=fake)

        result = await service.get_payment_status(test_user, test_pending_order.id)
        await test_session.commit()

        assert result["payment_status"] == "PENDING"
        assert result["order_status"] == "PENDING"
        assert result["message"] == "Payment is being processed. Please check your phone."

        assert await service.handle_callback(_details()) == "paid"
        await test_session.commit()
        order = await _reload(test_session, Order, test_pending_order.id)
        assert order.payment_status == "PAID"
        assert order.status == "CONFIRMED"
        product = await _reload(test_session, Product, test_product.id)
        assert product.stock == 8

    @pytest.mark.asyncio
    async def test_query_pending(self, test_session: AsyncSession, test_pending_order: Order, test_user: User):
        from backend.app.services.payment import PaymentService

        result = await PaymentService(test_session, client=FakeMpesaClient()).get_payment_status(
            test_user, test_pending_order.id
        )

        assert result["payment_status"] == "PENDING"
        assert result["message"] == "Payment is being processed. Please check your phone."

    @pytest.mark.asyncio
    async def test_query_error_returns_stored_state(
        self,
        test_session: AsyncSession,
        test_pending_order: Order,
        test_user: User,
    ):
        from backend.app.services.payment import PaymentService

        fake = FakeMpesaClient()
        fake.query_error = MpesaRequestError("M-Pesa query failed: System busy")
        result = await PaymentService(test_session, client=fake).get_payment_status(test_user, test_pending_order.id)

        assert result["payment_status"] == "PENDING"
        assert result["message"] == "Unable to check payment status. Please try again later."

    @pytest.mark.asyncio
    async def test_paid_order_is_not_queried(
        self,
        test_session: AsyncSession,
        test_pending_order: Order,
        test_user: User,
        test_product: Product,
    ):
        """A poll after the callback neither queries Daraja nor repeats side effects."""
        from backend.app.services.payment import PaymentService

        fake = FakeMpesaClient()
        fake.query_result_code = "0"
        service = PaymentService(test_session, client=fake)
        await service.handle_callback(_details())
        await test_session.commit()

        result = await service.get_payment_status(test_user, test_pending_order.id)

        assert fake.query_calls == []
        assert result["transaction_id"] == "NLJ7RT61SV"
        product = await _reload(test_session, Product, test_product.id)
        assert product.stock == 8

    @pytest.mark.asyncio
    async def test_order_without_checkout_id(
        self,
        test_session: AsyncSession,
        test_user: User,
        test_product: Product,
    ):
        from backend.app.services.payment import PaymentService

        order = await make_order(test_session, test_user, test_product)
        result = await PaymentService(test_session, client=FakeMpesaClient()).get_payment_status(test_user, order.id)

        assert result["message"] == "Payment is being processed"

    @pytest.mark.asyncio
    async def test_other_users_order_not_found(
        self,
        test_session: AsyncSession,
        test_pending_order: Order,
        test_seller_user: User,
    ):
        from backend.app.services.payment import PaymentService, PaymentOrderNotFoundError

        with pytest.raises(PaymentOrderNotFoundError):
            await PaymentService(test_session, client=FakeMpesaClient()).get_payment_status(
                test_seller_user, test_pending_order.id
            )


# ============================================
# API: checkout
# ============================================

def _checkout_body(product_id: int, quantity: int = 2, **overrides) -> dict:
    body = {
        "items": [{"product_id": product_id, "quantity": quantity}],
        "phone": "0712345678",
        "customer_name": "Jane Buyer",
        "customer_email": "jane@example.com",
    }
    body.update(overrides)
    return body


class TestCheckoutAPI:

    @pytest.mark.asyncio
    async def test_requires_auth(self, client, test_product: Product):
        response = await client.post("/api/checkout", json=_checkout_body(test_product.id))
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_checkout_sends_stk_push(
        self,
        client,
        test_session: AsyncSession,
        test_user: User,
        test_product: Product,
        fake_mpesa: FakeMpesaClient,
    ):
        """Amount is computed from catalogue prices plus the delivery fee."""
        response = await client.post(
            "/api/checkout",
            json=_checkout_body(test_product.id),
            headers=auth_headers(test_user),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["amount"] == 3500.0
        assert data["dev_mode"] is False
        assert data["checkout_request_id"] == "ws_CO_1"
        assert fake_mpesa.push_calls[0]["order_reference"] == str(data["order_id"])
        assert fake_mpesa.push_calls[0]["amount"] == Decimal("3500")

        order = await _reload(test_session, Order, data["order_id"])
        assert order.payment_method == "MPESA"
        assert order.payment_status == "PENDING"
        assert order.mpesa_merchant_request_id == "mr-1"
        assert order.mpesa_phone_number == "254712345678"
        assert order.customer_email == "jane@example.com"

    @pytest.mark.asyncio
    async def test_free_delivery_above_threshold(
        self,
        client,
        test_user: User,
        test_product: Product,
        fake_mpesa: FakeMpesaClient,
    ):
        response = await client.post(
            "/api/checkout",
            json=_checkout_body(test_product.id, quantity=4),
            headers=auth_headers(test_user),
        )
        assert response.status_code == 200
        assert response.json()["amount"] == 6000.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides,message", [
        ({"phone": "12345"}, "Please provide a valid M-Pesa phone number (e.g. 07XXXXXXXX)"),
        ({"customer_name": "   "}, "Please provide your full name"),
        ({"customer_email": "not-an-email"}, "Please provide a valid email address"),
        ({"items": []}, "Cart is empty"),
    ])
    async def test_validation(self, client, test_user: User, test_product: Product, overrides, message):
        response = await client.post(
            "/api/checkout",
            json=_checkout_body(test_product.id, **overrides),
            headers=auth_headers(test_user),
        )
        assert response.status_code == 400
        assert response.json()["detail"] == message

    @pytest.mark.asyncio
    async def test_insufficient_stock(self, client, test_user: User, test_product: Product):
        response = await client.post(
            "/api/checkout",
            json=_checkout_body(test_product.id, quantity=11),
            headers=auth_headers(test_user),
        )
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_gateway_failure_keeps_failed_order(
        self,
        client,
        test_session: AsyncSession,
        test_user: User,
        test_product: Product,
        fake_mpesa: FakeMpesaClient,
    ):
        fake_mpesa.push_error = MpesaRequestError("M-Pesa STK Push failed: Invalid PhoneNumber", "400.002.02")

        response = await client.post(
            "/api/checkout",
            json=_checkout_body(test_product.id),
            headers=auth_headers(test_user),
        )

        assert response.status_code == 400
        data = response.json()
        assert "Invalid PhoneNumber" in data["detail"]
        order = await _reload(test_session, Order, data["order_id"])
        assert order.payment_status == "FAILED"
        assert order.status == "CANCELLED"
        assert order.mpesa_result_code == "400.002.02"

    @pytest.mark.asyncio
    async def test_simulation_mode(
        self,
        client,
        test_user: User,
        test_product: Product,
    ):
        """Without Daraja credentials the STK Push is simulated and polling reports pending."""
        response = await client.post(
            "/api/checkout",
            json=_checkout_body(test_product.id),
            headers=auth_headers(test_user),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["dev_mode"] is True
        assert data["checkout_request_id"].startswith("sim_")
        assert "10 seconds" in data["message"]

        status = await client.get(f"/api/mpesa/status/{data['order_id']}", headers=auth_headers(test_user))
        assert status.status_code == 200
        assert status.json()["payment_status"] == "PENDING"

    @pytest.mark.asyncio
    async def test_frozen_seller_products_rejected(
        self,
        client,
        test_session: AsyncSession,
        test_user: User,
        test_product: Product,
        test_seller: SellerProfile,
    ):
        test_seller.frozen = True
        await test_session.commit()

        response = await client.post(
            "/api/checkout",
            json=_checkout_body(test_product.id),
            headers=auth_headers(test_user),
        )
        assert response.status_code == 400


# ============================================
# API: callback and status
# ============================================

class TestCallbackAPI:

    @pytest.mark.asyncio
    async def test_callback_pays_order(self, client, test_session: AsyncSession, test_pending_order: Order):
        response = await client.post("/api/mpesa/callback", json=_callback_payload())

        assert response.status_code == 200
        assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
        order = await _reload(test_session, Order, test_pending_order.id)
        assert order.payment_status == "PAID"

    @pytest.mark.asyncio
    async def test_unknown_order_acknowledged(self, client, test_pending_order: Order):
        response = await client.post(
            "/api/mpesa/callback",
            json=_callback_payload(merchant_request_id="x", checkout_request_id="y"),
        )
        assert response.status_code == 200
        assert response.json()["ResultCode"] == 0

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        response = await client.post(
            "/api/mpesa/callback",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_malformed_payload(self, client):
        response = await client.post("/api/mpesa/callback", json={"Body": {}})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_signature_required_when_secret_set(
        self,
        client,
        test_session: AsyncSession,
        test_pending_order: Order,
        monkeypatch,
    ):
        monkeypatch.setattr(get_settings(), "MPESA_CALLBACK_SECRET", "s3cret")
        body = json.dumps(_callback_payload()).encode()

        bad = await client.post(
            "/api/mpesa/callback",
            content=body,
            headers={"Content-Type": "application/json", "X-Mpesa-Signature": "deadbeef"},
        )
        assert bad.status_code == 401

        signature = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
        good = await client.post(
            "/api/mpesa/callback",
            content=body,
            headers={"Content-Type": "application/json", "X-Mpesa-Signature": signature},
        )
        assert good.status_code == 200
        order = await _reload(test_session, Order, test_pending_order.id)
        assert order.payment_status == "PAID"

    @pytest.mark.asyncio
    async def test_callback_probe(self, client):
        response = await client.get("/api/mpesa/callback")
        assert response.status_code == 200
        assert response.json()["message"] == "M-Pesa callback endpoint is active"
        assert "timestamp" in response.json()

    @pytest.mark.asyncio
    async def test_status_endpoint(
        self,
        client,
        test_pending_order: Order,
        test_user: User,
        fake_mpesa: FakeMpesaClient,
    ):
        fake_mpesa.query_result_code = "0"

        response = await client.get(f"/api/mpesa/status/{test_pending_order.id}", headers=auth_headers(test_user))

        assert response.status_code == 200
        data = response.json()
        assert data["order_id"] == test_pending_order.id
        assert data["payment_status"] == "PAID"
        assert data["order_status"] == "CONFIRMED"

    @pytest.mark.asyncio
    async def test_status_other_user(self, client, test_pending_order: Order, test_seller_user: User):
        response = await client.get(
            f"/api/mpesa/status/{test_pending_order.id}",
            headers=auth_headers(test_seller_user),
        )
        assert response.status_code == 404
