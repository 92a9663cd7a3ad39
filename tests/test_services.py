"""Tests for the payment orchestrator."""

import itertools
import json
import re
from collections import Counter
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import func, select

from qr_payments.config_store import ConfigStore
from qr_payments.database import (
    AuditAction,
    AuditRepository,
    Fiscalization,
    FiscalizationRepository,
    Reversal,
    ReversalRepository,
    Transaction,
    TransactionFilters,
    TransactionRepository,
    TransactionStatus,
)
from qr_payments.exceptions import TransactionNotFoundError
from qr_payments.gateways import (
    ClickPassGateway,
    CreatePaymentRequest,
    FastPayGateway,
    GatewayKind,
)
from qr_payments.services import PaymentService

from conftest import VALID_OTP

FASTPAY_OK = {
    "error_code": 0,
    "payment_id": "pay-1",
    "transaction_id": "gw-tx-1",
    "client_phone_number": "99890***4567",
    "operation_time": "2026-10-16 12:00:00",
}

CLICK_OK = {
    "error_code": 0,
    "payment_id": 9001,
    "card_type": "UZCARD",
    "masked_card_number": "8600****1234",
    "requires_confirmation": True,
}

PAYME_OK = {
    "jsonrpc": "2.0",
    "id": 1,
    "result": {
        "receipt": {"_id": "rcpt-1", "state": 0},
        "qr_code_data": "https://checkout.paycom.uz/qr/rcpt-1",
    },
}

PAYME_PAID = {"result": {"receipt": {"_id": "rcpt-1", "state": 4}}}


async def reload(session, transaction_id: str) -> Transaction:
    result = await session.execute(
        select(Transaction)
        .where(Transaction.id == transaction_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def reload_record(session, model, transaction_id: str):
    result = await session.execute(
        select(model)
        .where(model.transaction_id == transaction_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def count_transactions(session) -> int:
    result = await session.execute(select(func.count()).select_from(Transaction))
    return result.scalar_one()


async def audit_actions(session, transaction_id: str) -> Counter:
    entries = await AuditRepository(session).list_for_transaction(transaction_id)
    return Counter(entry.action for entry in entries)


def ticking_clock(start: int = 1_700_000_000):
    """Clock advancing one second per call so every header differs."""
    ticks = itertools.count(start)
    return lambda: float(next(ticks))


class TestCreatePaymentSuccess:
    """Tests for the happy path of create_payment."""

    async def test_fastpay_payment_succeeds(self, make_service, gateway_stub, db_session, fastpay_request):
        """500.00 UZS is sent as 50000 minor units and ends in success."""
        service = await make_service()
        gateway_stub.queue(FASTPAY_OK)

        result = await service.create_payment(fastpay_request)

        assert result.success is True
        assert result.data["amount_minor"] == 50000
        assert result.data["amount_major"] == "500.00"
        assert result.data["status"] == "success"
        assert result.data["gateway_payment_id"] == "pay-1"
        assert result.data["order_id"].startswith("RP_")

        request = gateway_stub.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://fastpay.test/api/apelsin-pay/merchant/v2/payment"
        body = json.loads(request.content)
        assert body["amount"] == 50000
        assert body["cashbox_code"] == "RockPoint_T01"
        assert body["service_id"] == 777
        assert body["otp_data"] == VALID_OTP
        assert body["order_id"] == result.data["order_id"]
        assert re.match(r"^12345:[0-9a-f]{40}:\d+$", request.headers["Authorization"])

        transaction = await reload(db_session, result.data["transaction_id"])
        assert transaction.status == TransactionStatus.SUCCESS.value
        assert transaction.amount_minor == 50000
        assert transaction.gateway_payment_id == "pay-1"
        assert transaction.gateway_transaction_id == "gw-tx-1"
        assert transaction.error_code == 0
        assert transaction.retry_count == 0
        assert transaction.completed_at is not None
        assert transaction.gateway_metadata["client_phone_number"] == "99890***4567"
        assert transaction.response_payload == FASTPAY_OK
        assert transaction.auth_header == request.headers["Authorization"]

    async def test_success_is_audited_without_otp(self, make_service, gateway_stub, db_session, fastpay_request):
        """Initiation and completion are audited and the OTP never reaches the log."""
        service = await make_service()
        gateway_stub.queue(FASTPAY_OK)

        result = await service.create_payment(fastpay_request)

        transaction_id = result.data["transaction_id"]
        actions = await audit_actions(db_session, transaction_id)
        assert actions == Counter({"payment_initiated": 1, "payment_completed": 1})

        entries = await AuditRepository(db_session).list_for_transaction(transaction_id)
        for entry in entries:
            assert VALID_OTP not in json.dumps(entry.details)
        completed = [e for e in entries if e.action == "payment_completed"][0]
        assert completed.http_method == "POST"
        assert completed.response_status == 200

    async def test_two_payments_get_distinct_order_ids(self, make_service, gateway_stub, db_session, fastpay_request):
        """Back-to-back payments never share an order id."""
        service = await make_service()
        gateway_stub.queue(FASTPAY_OK, {**FASTPAY_OK, "payment_id": "pay-2"})

        first = await service.create_payment(fastpay_request)
        second = await service.create_payment(fastpay_request)

        assert first.success and second.success
        assert first.data["order_id"] != second.data["order_id"]
        assert first.data["transaction_id"] != second.data["transaction_id"]
        assert await count_transactions(db_session) == 2

    async def test_fractional_amount_is_converted_exactly(self, make_service, gateway_stub, fastpay_request):
        """Amounts with tiyin are not subject to float rounding."""
        service = await make_service()
        gateway_stub.queue(FASTPAY_OK)
        request = fastpay_request.model_copy(update={"amount_major": Decimal("1234.56")})

        result = await service.create_payment(request)

        assert gateway_stub.last_json()["amount"] == 123456
        assert result.data["amount_minor"] == 123456

    async def test_mismatched_config_store_is_rejected(self, session_factory, db_session, http_client):
        """A service cannot mix one gateway with another gateway's credentials."""
        with pytest.raises(ValueError):
            PaymentService(
                db_session,
                FastPayGateway(),
                ConfigStore(session_factory, GatewayKind.CLICK_PASS),
                http_client,
            )


class TestCreatePaymentRejected:
    """Tests for requests that never reach the gateway."""

    async def test_short_otp_creates_no_row(self, make_service, gateway_stub, db_session, fastpay_request):
        """FastPay OTP data shorter than 40 characters fails validation."""
        service = await make_service()
        request = fastpay_request.model_copy(update={"otp_data": "SHORT"})

        result = await service.create_payment(request)

        assert result.success is False
        assert result.error_code == "validation_error"
        assert "at least 40 characters" in result.error
        assert gateway_stub.requests == []
        assert await count_transactions(db_session) == 0

        failures = await AuditRepository(db_session).list_by_action(AuditAction.PAYMENT_FAILED.value)
        assert len(failures) == 1
        assert failures[0].transaction_id is None
        assert failures[0].details["stage"] == "validation"

    async def test_missing_otp_fails_validation(self, make_service, gateway_stub, fastpay_request):
        """FastPay requires QR code data."""
        service = await make_service()
        request = fastpay_request.model_copy(update={"otp_data": None})

        result = await service.create_payment(request)

        assert result.error_code == "validation_error"
        assert result.error == "QR code data is required"
        assert gateway_stub.requests == []

    async def test_missing_config_creates_no_row(self, make_service, gateway_stub, db_session, fastpay_request):
        """Without credentials the payment fails before any row or request."""
        service = await make_service(configured=False)

        result = await service.create_payment(fastpay_request)

        assert result.success is False
        assert result.error_code == "configuration_error"
        assert gateway_stub.requests == []
        assert await count_transactions(db_session) == 0

        errors = await AuditRepository(db_session).list_by_action(AuditAction.ERROR_OCCURRED.value)
        assert len(errors) == 1
        assert errors[0].transaction_id is None
        assert errors[0].details["stage"] == "configuration"

    async def test_placeholder_config_is_not_configured(self, make_service, gateway_stub, db_session, fastpay_request):
        """Placeholders written by a reset count as missing credentials."""
        service = await make_service(configured=False)
        await service.config_store.reset_to_defaults()

        result = await service.create_payment(fastpay_request)

        assert result.error_code == "configuration_error"
        assert "merchant_service_user_id" in result.error
        assert gateway_stub.requests == []
        assert await count_transactions(db_session) == 0


class TestCreatePaymentFailures:
    """Tests for declines, retries and internal errors."""

    async def test_repeated_timeouts_fail_after_three_attempts(
        self, make_service, gateway_stub, db_session, recorded_sleep, fastpay_request
    ):
        """Three timeouts leave a failed row with the retry count and one failure audit."""
        service = await make_service()
        gateway_stub.queue(httpx.ReadTimeout, httpx.ReadTimeout, httpx.ReadTimeout)

        result = await service.create_payment(fastpay_request)

        assert result.success is False
        assert result.error_code == "timeout"
        assert result.retryable is True
        assert result.data["retry_count"] == 3
        assert len(gateway_stub.requests) == 3
        assert recorded_sleep.delays == [1.0, 2.0]

        transaction = await reload(db_session, result.data["transaction_id"])
        assert transaction.status == TransactionStatus.FAILED.value
        assert transaction.retry_count == 3
        assert transaction.timeout_occurred is True
        assert transaction.error_code is None
        assert transaction.completed_at is not None

        actions = await audit_actions(db_session, transaction.id)
        assert actions["payment_failed"] == 1
        assert actions["payment_initiated"] == 1
        assert actions["payment_completed"] == 0

    async def test_network_error_then_success(self, make_service, gateway_stub, db_session, recorded_sleep, fastpay_request):
        """A transient failure is retried with a fresh auth header."""
        service = await make_service()
        service.gateway = FastPayGateway(clock=ticking_clock())
        gateway_stub.queue(httpx.ConnectError, FASTPAY_OK)

        result = await service.create_payment(fastpay_request)

        assert result.success is True
        assert recorded_sleep.delays == [1.0]
        first, second = gateway_stub.requests
        assert first.headers["Authorization"] != second.headers["Authorization"]

        transaction = await reload(db_session, result.data["transaction_id"])
        assert transaction.status == TransactionStatus.SUCCESS.value
        assert transaction.retry_count == 1
        assert transaction.timeout_occurred is False
        assert transaction.auth_header == second.headers["Authorization"]

    async def test_business_decline_is_not_retried(self, make_service, gateway_stub, db_session, recorded_sleep, fastpay_request):
        """A non-zero gateway code fails the payment after a single call."""
        service = await make_service()
        gateway_stub.queue({"error_code": 5, "error_message": "Insufficient funds"})

        result = await service.create_payment(fastpay_request)

        assert result.success is False
        assert result.error_code == "gateway_declined"
        assert result.error == "Insufficient funds"
        assert result.retryable is False
        assert result.data["gateway_error_code"] == 5
        assert len(gateway_stub.requests) == 1
        assert recorded_sleep.delays == []

        transaction = await reload(db_session, result.data["transaction_id"])
        assert transaction.status == TransactionStatus.FAILED.value
        assert transaction.error_code == 5
        assert transaction.error_message == "Insufficient funds"

        actions = await audit_actions(db_session, transaction.id)
        assert actions["payment_failed"] == 1

    async def test_http_error_without_code_fails(self, make_service, gateway_stub, db_session, fastpay_request):
        """A 5xx body without an error code is a failure coded with the HTTP status."""
        service = await make_service()
        gateway_stub.queue((500, {"message": "boom"}))

        result = await service.create_payment(fastpay_request)

        assert result.success is False
        assert len(gateway_stub.requests) == 1
        transaction = await reload(db_session, result.data["transaction_id"])
        assert transaction.status == TransactionStatus.FAILED.value
        assert transaction.error_code == 500

    async def test_non_json_response_is_kept_raw(self, make_service, gateway_stub, db_session, fastpay_request):
        """An HTML error page is stored as the raw body."""
        service = await make_service()
        gateway_stub.queue((502, "<html>Bad Gateway</html>"))

        result = await service.create_payment(fastpay_request)

        transaction = await reload(db_session, result.data["transaction_id"])
        assert transaction.status == TransactionStatus.FAILED.value
        assert transaction.error_code == 502
        assert transaction.response_payload == {"raw_body": "<html>Bad Gateway</html>"}

    async def test_retry_attempts_follow_config(self, make_service, gateway_stub, db_session, recorded_sleep, fastpay_request):
        """max_retry_attempts bounds the number of calls."""
        service = await make_service(max_retry_attempts="1")
        gateway_stub.queue(httpx.ReadTimeout)

        result = await service.create_payment(fastpay_request)

        assert result.error_code == "timeout"
        assert len(gateway_stub.requests) == 1
        assert recorded_sleep.delays == []
        transaction = await reload(db_session, result.data["transaction_id"])
        assert transaction.retry_count == 1

    async def test_internal_error_fails_row(self, make_service, gateway_stub, db_session, monkeypatch, fastpay_request):
        """An unexpected exception after the insert marks the row failed with code 500."""
        service = await make_service()
        gateway_stub.queue(FASTPAY_OK)

        def explode(response, http_status):
            raise RuntimeError("parser exploded")

        monkeypatch.setattr(service.gateway, "parse_outcome", explode)

        result = await service.create_payment(fastpay_request)

        assert result.success is False
        assert result.error == "Internal error"
        assert result.error_code == "internal_error"

        transaction = await reload(db_session, result.data["transaction_id"])
        assert transaction.status == TransactionStatus.FAILED.value
        assert transaction.error_code == 500
        assert transaction.error_message == "parser exploded"

        actions = await audit_actions(db_session, transaction.id)
        assert actions["error_occurred"] == 1


class TestReversal:
    """Tests for reverse_payment."""

    async def _paid(self, service, gateway_stub, request):
        gateway_stub.queue(FASTPAY_OK)
        result = await service.create_payment(request)
        assert result.success
        return result.data

    async def test_reversal_moves_success_to_reversed(self, make_service, gateway_stub, db_session, fastpay_request):
        """An accepted reversal marks the transaction reversed."""
        service = await make_service()
        paid = await self._paid(service, gateway_stub, fastpay_request)
        gateway_stub.queue({"error_code": 0})

        result = await service.reverse_payment(paid["order_id"], "Customer returned goods", "manager-1")

        assert result.success is True
        assert result.data["status"] == "reversed"
        assert result.data["reversal_status"] == "success"

        request = gateway_stub.requests[-1]
        assert request.method == "PUT"
        assert str(request.url).endswith(f"/reversal/{paid['order_id']}")
        assert json.loads(request.content) == {"service_id": 777, "payment_id": "pay-1"}

        transaction = await reload(db_session, paid["transaction_id"])
        assert transaction.status == TransactionStatus.REVERSED.value

        reversal = await ReversalRepository(db_session).get_by_transaction_id(transaction.id)
        assert reversal.status == "success"
        assert reversal.reason == "Customer returned goods"
        assert reversal.requested_by == "manager-1"
        assert reversal.original_order_id == paid["order_id"]

        actions = await audit_actions(db_session, transaction.id)
        assert actions["reversal_requested"] == 1

    async def test_reversal_of_failed_payment_makes_no_call(self, make_service, gateway_stub, db_session, fastpay_request):
        """Only successful transactions can be reversed."""
        service = await make_service()
        gateway_stub.queue({"error_code": 5, "error_message": "Declined"})
        declined = await service.create_payment(fastpay_request)
        calls_before = len(gateway_stub.requests)

        result = await service.reverse_payment(declined.data["order_id"], "mistake", "manager-1")

        assert result.success is False
        assert result.error_code == "invalid_transition"
        assert len(gateway_stub.requests) == calls_before

        transaction = await reload(db_session, declined.data["transaction_id"])
        assert transaction.status == TransactionStatus.FAILED.value
        assert await ReversalRepository(db_session).get_by_transaction_id(transaction.id) is None

    @pytest.mark.parametrize("status", ["pending", "processing"])
    async def test_unfinished_payment_cannot_be_reversed(self, make_service, gateway_stub, db_session, status):
        """A payment still in flight is rejected before any gateway call."""
        service = await make_service()
        repo = TransactionRepository(db_session)
        transaction = await repo.create(
            gateway="fastpay",
            order_id="RP_1_INFLT1",
            transaction_id="uuid-inflight",
            amount_minor=50000,
            amount_major=Decimal("500.00"),
            request_payload={"amount": 50000},
            auth_header="12345:digest:1",
            employee_id="emp-1",
            terminal_id="T01",
        )
        if status == "processing":
            await repo.mark_processing(transaction.id, 0)
        await db_session.commit()

        result = await service.reverse_payment("RP_1_INFLT1", "refund", "manager-1")

        assert result.success is False
        assert result.error_code == "invalid_transition"
        assert gateway_stub.requests == []
        assert await repo.current_status(transaction.id) == status
        assert await ReversalRepository(db_session).get_by_transaction_id(transaction.id) is None

    async def test_declined_reversal_keeps_success_and_can_be_retried(
        self, make_service, gateway_stub, db_session, fastpay_request
    ):
        """A refused reversal leaves the payment successful; a later attempt reuses the record."""
        service = await make_service()
        paid = await self._paid(service, gateway_stub, fastpay_request)
        gateway_stub.queue({"error_code": 7, "error_message": "Reversal window closed"})

        refused = await service.reverse_payment(paid["order_id"], "refund", "manager-1")

        assert refused.success is False
        assert refused.error_code == "gateway_declined"
        assert refused.data["status"] == "success"
        assert refused.data["gateway_error_code"] == 7
        reversal = await ReversalRepository(db_session).get_by_transaction_id(paid["transaction_id"])
        assert reversal.status == "failed"
        assert reversal.error_code == 7

        gateway_stub.queue({"error_code": 0})
        accepted = await service.reverse_payment(paid["order_id"], "refund", "manager-1")

        assert accepted.success is True
        assert accepted.data["reversal_id"] == refused.data["reversal_id"]
        reversal = await ReversalRepository(db_session).get_by_transaction_id(paid["transaction_id"])
        assert reversal.attempts == 2
        assert reversal.status == "success"

    async def test_reversal_network_error_is_retryable(self, make_service, gateway_stub, db_session, fastpay_request):
        """A transport failure leaves the payment successful and reports a retryable error."""
        service = await make_service()
        paid = await self._paid(service, gateway_stub, fastpay_request)
        gateway_stub.queue(httpx.ConnectError)

        result = await service.reverse_payment(paid["order_id"], "refund", "manager-1")

        assert result.success is False
        assert result.error_code == "network_error"
        assert result.retryable is True
        transaction = await reload(db_session, paid["transaction_id"])
        assert transaction.status == TransactionStatus.SUCCESS.value

    async def test_reversal_of_reversed_payment_is_rejected(self, make_service, gateway_stub, fastpay_request):
        """A reversed transaction is terminal."""
        service = await make_service()
        paid = await self._paid(service, gateway_stub, fastpay_request)
        gateway_stub.queue({"error_code": 0})
        await service.reverse_payment(paid["order_id"], "refund", "manager-1")

        result = await service.reverse_payment(paid["order_id"], "refund again", "manager-1")

        assert result.error_code == "invalid_transition"

    async def test_unknown_order_is_not_found(self, make_service, gateway_stub):
        """Reversing an order that does not exist fails without a call."""
        service = await make_service()

        result = await service.reverse_payment("RP_0_NOPE00", "refund", "manager-1")

        assert result.error_code == "not_found"
        assert gateway_stub.requests == []


class TestFiscalization:
    """Tests for submit_fiscalization."""

    async def test_fiscalization_does_not_change_status(self, make_service, gateway_stub, db_session, fastpay_request):
        """The fiscal receipt is tracked separately from the payment status."""
        service = await make_service()
        gateway_stub.queue(FASTPAY_OK, {"error_code": 0})
        paid = await service.create_payment(fastpay_request)

        result = await service.submit_fiscalization(paid.data["transaction_id"], "https://ofd.soliq.uz/check?t=1")

        assert result.success is True
        assert result.data["fiscalization_status"] == "success"
        assert gateway_stub.last_json() == {
            "payment_id": "pay-1",
            "service_id": 777,
            "fiscal_url": "https://ofd.soliq.uz/check?t=1",
        }

        transaction = await reload(db_session, paid.data["transaction_id"])
        assert transaction.status == TransactionStatus.SUCCESS.value
        fiscalization = await FiscalizationRepository(db_session).get_by_transaction_id(transaction.id)
        assert fiscalization.fiscal_url == "https://ofd.soliq.uz/check?t=1"
        assert fiscalization.status == "success"

        actions = await audit_actions(db_session, transaction.id)
        assert actions["fiscalization_sent"] == 1

    async def test_fiscal_url_is_required(self, make_service, gateway_stub, fastpay_request):
        service = await make_service()
        gateway_stub.queue(FASTPAY_OK)
        paid = await service.create_payment(fastpay_request)

        result = await service.submit_fiscalization(paid.data["transaction_id"], "  ")

        assert result.error_code == "validation_error"
        assert len(gateway_stub.requests) == 1

    async def test_failed_payment_cannot_be_fiscalized(self, make_service, gateway_stub, fastpay_request):
        service = await make_service()
        gateway_stub.queue({"error_code": 5})
        declined = await service.create_payment(fastpay_request)

        result = await service.submit_fiscalization(declined.data["transaction_id"], "https://ofd.soliq.uz/x")

        assert result.error_code == "validation_error"
        assert len(gateway_stub.requests) == 1

    async def test_click_does_not_support_fiscalization(self, make_service, gateway_stub, click_request):
        service = await make_service(GatewayKind.CLICK_PASS)
        gateway_stub.queue(CLICK_OK)
        paid = await service.create_payment(click_request)

        result = await service.submit_fiscalization(paid.data["transaction_id"], "https://ofd.soliq.uz/x")

        assert result.error_code == "validation_error"
        assert "not supported" in result.error
        assert len(gateway_stub.requests) == 1

    async def test_declined_fiscalization_is_recorded(self, make_service, gateway_stub, db_session, fastpay_request):
        service = await make_service()
        gateway_stub.queue(FASTPAY_OK, {"error_code": 12, "error_message": "Receipt rejected"})
        paid = await service.create_payment(fastpay_request)

        result = await service.submit_fiscalization(paid.data["transaction_id"], "https://ofd.soliq.uz/x")

        assert result.error_code == "gateway_declined"
        fiscalization = await FiscalizationRepository(db_session).get_by_transaction_id(paid.data["transaction_id"])
        assert fiscalization.status == "failed"
        assert fiscalization.error_code == 12


class TestStatusCheck:
    """Tests for check_payment_status."""

    async def test_status_poll_does_not_mutate(self, make_service, gateway_stub, db_session, fastpay_request):
        """The gateway's view is reported next to the local one."""
        service = await make_service()
        gateway_stub.queue(FASTPAY_OK, {"error_code": 0, "payment_status": "REVERSED"})
        paid = await service.create_payment(fastpay_request)

        result = await service.check_payment_status(paid.data["transaction_id"])

        assert result.success is True
        assert result.data["local_status"] == "success"
        assert result.data["gateway_status"] == "REVERSED"
        assert gateway_stub.last_json() == {"payment_id": "pay-1", "service_id": 777}

        transaction = await reload(db_session, paid.data["transaction_id"])
        assert transaction.status == TransactionStatus.SUCCESS.value
        actions = await audit_actions(db_session, transaction.id)
        assert actions["status_checked"] == 1

    async def test_status_needs_gateway_payment_id(self, make_service, gateway_stub, fastpay_request):
        """A payment the gateway never acknowledged has nothing to poll."""
        service = await make_service()
        gateway_stub.queue({"error_code": 5})
        declined = await service.create_payment(fastpay_request)

        result = await service.check_payment_status(declined.data["transaction_id"])

        assert result.error_code == "validation_error"
        assert result.error == "No payment ID available for status check"
        assert len(gateway_stub.requests) == 1

    async def test_unknown_transaction(self, make_service):
        service = await make_service()

        result = await service.check_payment_status("missing-id")

        assert result.error_code == "not_found"


class TestClickPass:
    """Tests for the Click Pass flow, including confirmation."""

    async def test_click_payment(self, make_service, gateway_stub, db_session, click_request):
        """Click requests carry the OTP, the signing timestamp and the Auth header."""
        service = await make_service(GatewayKind.CLICK_PASS)
        gateway_stub.queue(CLICK_OK)

        result = await service.create_payment(click_request)

        assert result.success is True
        assert result.data["order_id"].startswith("CLICK_")
        request = gateway_stub.requests[0]
        body = json.loads(request.content)
        assert body["amount"] == 15050
        assert body["otp"] == "123456"
        assert body["service_id"] == 101
        assert body["merchant_id"] == 202
        header = request.headers["Auth"]
        assert header.startswith("303:")
        assert header.endswith(f":{body['timestamp']}")

        transaction = await reload(db_session, result.data["transaction_id"])
        assert transaction.gateway_payment_id == "9001"
        assert transaction.gateway_metadata["requires_confirmation"] is True
        assert transaction.cashbox_code is None

    async def test_click_retry_refreshes_body_timestamp(self, make_service, gateway_stub, db_session, click_request):
        """The timestamp echoed in the body follows the re-signed header."""
        service = await make_service(GatewayKind.CLICK_PASS)
        service.gateway = ClickPassGateway(clock=ticking_clock())
        gateway_stub.queue(httpx.ReadTimeout, CLICK_OK)

        result = await service.create_payment(click_request)

        assert result.success is True
        first, second = (json.loads(r.content) for r in gateway_stub.requests)
        assert first["timestamp"] != second["timestamp"]
        assert gateway_stub.requests[1].headers["Auth"].endswith(f":{second['timestamp']}")

        transaction = await reload(db_session, result.data["transaction_id"])
        assert transaction.request_payload["timestamp"] == second["timestamp"]
        assert transaction.auth_timestamp == second["timestamp"]

    async def test_click_requires_otp(self, make_service, gateway_stub, click_request):
        service = await make_service(GatewayKind.CLICK_PASS)
        request = click_request.model_copy(update={"otp_data": ""})

        result = await service.create_payment(request)

        assert result.error == "OTP data is required"
        assert gateway_stub.requests == []

    async def test_confirm_records_metadata(self, make_service, gateway_stub, db_session, click_request):
        """Confirming calls the confirm endpoint and stamps the metadata."""
        service = await make_service(GatewayKind.CLICK_PASS)
        gateway_stub.queue(CLICK_OK, {"error_code": 0})
        paid = await service.create_payment(click_request)

        result = await service.confirm_payment(paid.data["transaction_id"], "confirm", "supervisor-1")

        assert result.success is True
        assert result.data["status"] == "confirmed"
        request = gateway_stub.requests[-1]
        assert str(request.url) == "https://click.test/v2/merchant/click_pass/confirm"
        assert json.loads(request.content) == {"service_id": 101, "payment_id": "9001"}

        transaction = await reload(db_session, paid.data["transaction_id"])
        assert transaction.status == TransactionStatus.SUCCESS.value
        assert transaction.gateway_metadata["confirmed"] is True
        assert transaction.gateway_metadata["confirmed_by"] == "supervisor-1"
        assert transaction.gateway_metadata["card_type"] == "UZCARD"

    async def test_reject_reverses_payment(self, make_service, gateway_stub, db_session, click_request):
        """Rejecting at confirmation runs the reversal flow."""
        service = await make_service(GatewayKind.CLICK_PASS)
        gateway_stub.queue(CLICK_OK, {"error_code": 0})
        paid = await service.create_payment(click_request)

        result = await service.confirm_payment(paid.data["transaction_id"], "reject", "supervisor-1")

        assert result.success is True
        request = gateway_stub.requests[-1]
        assert request.method == "DELETE"
        assert str(request.url) == "https://click.test/v2/merchant/payment/reversal/101/9001"

        transaction = await reload(db_session, paid.data["transaction_id"])
        assert transaction.status == TransactionStatus.REVERSED.value

    async def test_click_status_uses_get(self, make_service, gateway_stub, click_request):
        service = await make_service(GatewayKind.CLICK_PASS)
        gateway_stub.queue(CLICK_OK, {"error_code": 0, "payment_status": 2})
        paid = await service.create_payment(click_request)

        result = await service.check_payment_status(paid.data["transaction_id"])

        assert result.success is True
        request = gateway_stub.requests[-1]
        assert request.method == "GET"
        assert str(request.url) == "https://click.test/v2/merchant/payment/status/101/9001"

    async def test_unknown_action_is_rejected(self, make_service, gateway_stub):
        service = await make_service(GatewayKind.CLICK_PASS)

        result = await service.confirm_payment("any", "approve", "supervisor-1")

        assert result.error_code == "validation_error"
        assert gateway_stub.requests == []

    async def test_fastpay_has_no_confirmation(self, make_service, gateway_stub):
        service = await make_service()

        result = await service.confirm_payment("any", "confirm", "supervisor-1")

        assert result.error_code == "validation_error"
        assert "not supported" in result.error


class TestPaymeQR:
    """Tests for the Payme receipt flow."""

    async def test_receipt_create(self, make_service, gateway_stub, db_session, payme_request):
        """receipts.create carries the amount, account data and static X-Auth header."""
        service = await make_service(GatewayKind.PAYME_QR)
        gateway_stub.queue(PAYME_OK)

        result = await service.create_payment(payme_request)

        assert result.success is True
        assert result.data["gateway_payment_id"] == "rcpt-1"
        request = gateway_stub.requests[0]
        assert request.headers["X-Auth"] == "cashbox-1:payme-key"
        assert str(request.url) == "https://payme.test/api"
        body = json.loads(request.content)
        assert body["method"] == "receipts.create"
        assert body["params"]["amount"] == 7525
        assert body["params"]["description"] == "Coffee"
        assert body["params"]["account"]["order_id"] == result.data["order_id"]
        assert body["params"]["account"]["terminal_id"] == "T03"

        transaction = await reload(db_session, result.data["transaction_id"])
        assert transaction.gateway_metadata["qr_code_data"] == "https://checkout.paycom.uz/qr/rcpt-1"
        assert transaction.gateway_metadata["receipt_state"] == 0

    async def test_rpc_error_declines(self, make_service, gateway_stub, db_session, payme_request):
        """A JSON-RPC error object is a business decline."""
        service = await make_service(GatewayKind.PAYME_QR)
        gateway_stub.queue({"error": {"code": -31001, "message": {"ru": "Неверная сумма", "en": "Invalid amount"}}})

        result = await service.create_payment(payme_request)

        assert result.error_code == "gateway_declined"
        assert result.error == "Invalid amount"
        transaction = await reload(db_session, result.data["transaction_id"])
        assert transaction.error_code == -31001

    async def test_check_and_cancel(self, make_service, gateway_stub, db_session, payme_request):
        """Status uses receipts.check and reversal uses receipts.cancel."""
        service = await make_service(GatewayKind.PAYME_QR)
        gateway_stub.queue(
            PAYME_OK,
            {"result": {"receipt": {"_id": "rcpt-1", "state": 4}}},
            {"result": {"receipt": {"_id": "rcpt-1", "state": 50}}},
        )
        paid = await service.create_payment(payme_request)

        status = await service.check_payment_status(paid.data["transaction_id"])
        assert status.data["gateway_status"] == "paid"
        assert gateway_stub.last_json()["method"] == "receipts.check"

        reversal = await service.reverse_payment(paid.data["order_id"], "refund", "manager-1")
        assert reversal.success is True
        assert gateway_stub.last_json()["method"] == "receipts.cancel"
        assert gateway_stub.last_json()["params"] == {"id": "rcpt-1"}

        transaction = await reload(db_session, paid.data["transaction_id"])
        assert transaction.status == TransactionStatus.REVERSED.value

    async def test_unpaid_receipt_cannot_be_linked_or_fiscalized(
        self, make_service, gateway_stub, db_session, payme_request
    ):
        """An issued receipt is not settled until the customer pays it."""
        service = await make_service(GatewayKind.PAYME_QR)
        gateway_stub.queue(PAYME_OK)
        issued = await service.create_payment(payme_request)
        calls_before = len(gateway_stub.requests)

        linked = await service.link_pos_sale(issued.data["transaction_id"], "sale-42")
        fiscal = await service.submit_fiscalization(issued.data["transaction_id"], "https://ofd.soliq.uz/r/1")

        assert linked.error_code == "validation_error"
        assert fiscal.error_code == "validation_error"
        assert "not been settled" in linked.error
        assert len(gateway_stub.requests) == calls_before

        transaction = await reload(db_session, issued.data["transaction_id"])
        assert transaction.pos_sale_id is None
        assert (await service.get_transaction(transaction.id))["fiscalization"] is None
        actions = await audit_actions(db_session, transaction.id)
        assert actions["error_occurred"] == 2

    async def test_confirm_waits_for_paid_receipt(self, make_service, gateway_stub, db_session, payme_request):
        """Confirming re-checks the receipt and settles it only once paid."""
        service = await make_service(GatewayKind.PAYME_QR)
        gateway_stub.queue(
            PAYME_OK,
            {"result": {"receipt": {"_id": "rcpt-1", "state": 1}}},
            PAYME_PAID,
        )
        issued = await service.create_payment(payme_request)

        waiting = await service.confirm_payment(issued.data["transaction_id"], "confirm", "supervisor-1")

        assert waiting.success is False
        assert waiting.error_code == "gateway_declined"
        assert waiting.data["gateway_status"] == "waiting_for_payment"
        assert gateway_stub.last_json()["method"] == "receipts.check"
        transaction = await reload(db_session, issued.data["transaction_id"])
        assert transaction.gateway_metadata["receipt_state"] == 0

        settled = await service.confirm_payment(issued.data["transaction_id"], "confirm", "supervisor-1")

        assert settled.success is True
        transaction = await reload(db_session, issued.data["transaction_id"])
        assert transaction.gateway_metadata["receipt_state"] == 4
        assert transaction.gateway_metadata["confirmed_by"] == "supervisor-1"
        assert transaction.status == TransactionStatus.SUCCESS.value

        linked = await service.link_pos_sale(transaction.id, "sale-42")
        assert linked.success is True

    async def test_fiscal_data(self, make_service, gateway_stub, payme_request):
        service = await make_service(GatewayKind.PAYME_QR)
        gateway_stub.queue(
            {"result": {"receipt": {"_id": "rcpt-1", "state": 4}, "qr_code_data": "qr"}},
            {"result": {"success": True}},
        )
        paid = await service.create_payment(payme_request)

        result = await service.submit_fiscalization(paid.data["transaction_id"], "https://ofd.soliq.uz/r/1")

        assert result.success is True
        body = gateway_stub.last_json()
        assert body["method"] == "receipts.set_fiscal_data"
        assert body["params"] == {"id": "rcpt-1", "fiscal_data": {"qr_code_url": "https://ofd.soliq.uz/r/1"}}


class TestLookups:
    """Tests for get_transaction, list_transactions and link_pos_sale."""

    async def test_get_transaction_includes_reversal(self, make_service, gateway_stub, fastpay_request):
        service = await make_service()
        gateway_stub.queue(FASTPAY_OK, {"error_code": 0})
        paid = await service.create_payment(fastpay_request)
        await service.reverse_payment(paid.data["order_id"], "refund", "manager-1")

        data = await service.get_transaction(paid.data["transaction_id"])

        assert data["status"] == "reversed"
        assert data["reversal"]["status"] == "success"
        assert data["fiscalization"] is None
        assert data["metadata"]["client_phone_number"] == "99890***4567"

    async def test_get_transaction_of_other_gateway_is_not_found(
        self, make_service, gateway_stub, click_request
    ):
        click_service = await make_service(GatewayKind.CLICK_PASS)
        fastpay_service = await make_service()
        gateway_stub.queue(CLICK_OK)
        paid = await click_service.create_payment(click_request)

        with pytest.raises(TransactionNotFoundError):
            await fastpay_service.get_transaction(paid.data["transaction_id"])

    async def test_list_filters_and_pages(self, make_service, gateway_stub, fastpay_request, click_request):
        """Listing is scoped to the service's gateway and paginated."""
        service = await make_service()
        click_service = await make_service(GatewayKind.CLICK_PASS)
        gateway_stub.queue(FASTPAY_OK, FASTPAY_OK, {"error_code": 5}, CLICK_OK)
        await service.create_payment(fastpay_request)
        await service.create_payment(fastpay_request)
        await service.create_payment(fastpay_request)
        await click_service.create_payment(click_request)

        items, total = await service.list_transactions()
        assert total == 3
        assert {item["gateway"] for item in items} == {"fastpay"}

        items, total = await service.list_transactions(TransactionFilters(status="success"))
        assert total == 2
        assert all(item["status"] == "success" for item in items)

        items, total = await service.list_transactions(TransactionFilters(page=2, limit=2))
        assert total == 3
        assert len(items) == 1

    async def test_link_pos_sale(self, make_service, gateway_stub, db_session, fastpay_request):
        service = await make_service()
        gateway_stub.queue(FASTPAY_OK)
        paid = await service.create_payment(fastpay_request)

        result = await service.link_pos_sale(paid.data["transaction_id"], "sale-42")

        assert result.success is True
        transaction = await reload(db_session, paid.data["transaction_id"])
        assert transaction.pos_sale_id == "sale-42"

    async def test_failed_payment_cannot_be_linked(self, make_service, gateway_stub, db_session, fastpay_request):
        service = await make_service()
        gateway_stub.queue({"error_code": 5})
        declined = await service.create_payment(fastpay_request)

        result = await service.link_pos_sale(declined.data["transaction_id"], "sale-42")

        assert result.error_code == "validation_error"
        transaction = await reload(db_session, declined.data["transaction_id"])
        assert transaction.pos_sale_id is None


class TestUnexpectedErrors:
    """Unexpected exceptions are contained, recorded and audited in every flow."""

    async def test_config_backend_error_creates_no_row(
        self, make_service, gateway_stub, db_session, monkeypatch, fastpay_request
    ):
        service = await make_service()

        async def broken_load():
            raise RuntimeError("config table unavailable")

        monkeypatch.setattr(service.config_store, "load", broken_load)

        result = await service.create_payment(fastpay_request)

        assert result.success is False
        assert result.error == "Internal error"
        assert result.data is None
        assert gateway_stub.requests == []
        assert await count_transactions(db_session) == 0
        errors = await AuditRepository(db_session).list_by_action(
            AuditAction.ERROR_OCCURRED.value, gateway="fastpay"
        )
        assert len(errors) == 1
        assert errors[0].details["stage"] == "create_payment"
        assert errors[0].employee_id == "emp-1"

    async def test_reversal_error_closes_pending_record(self, make_service, gateway_stub, db_session, fastpay_request):
        """The reversal record is failed and the payment stays successful."""
        service = await make_service()
        gateway_stub.queue(FASTPAY_OK, RuntimeError("boom"))
        paid = await service.create_payment(fastpay_request)

        result = await service.reverse_payment(paid.data["order_id"], "refund", "manager-1")

        assert result.success is False
        assert result.error == "Internal error"
        assert result.error_code == "internal_error"
        assert result.data == {"transaction_id": paid.data["transaction_id"], "order_id": paid.data["order_id"]}

        reversal = await reload_record(db_session, Reversal, paid.data["transaction_id"])
        assert reversal.status == "failed"
        assert reversal.error_message == "boom"
        assert reversal.completed_at is not None

        transaction = await reload(db_session, paid.data["transaction_id"])
        assert transaction.status == TransactionStatus.SUCCESS.value
        actions = await audit_actions(db_session, transaction.id)
        assert actions["error_occurred"] == 1
        assert actions["reversal_requested"] == 0

    async def test_failed_reversal_record_can_be_retried(self, make_service, gateway_stub, db_session, fastpay_request):
        service = await make_service()
        gateway_stub.queue(FASTPAY_OK, RuntimeError("boom"), {"error_code": 0})
        paid = await service.create_payment(fastpay_request)
        await service.reverse_payment(paid.data["order_id"], "refund", "manager-1")

        result = await service.reverse_payment(paid.data["order_id"], "refund", "manager-1")

        assert result.success is True
        reversal = await reload_record(db_session, Reversal, paid.data["transaction_id"])
        assert reversal.attempts == 2
        assert reversal.status == "success"

    async def test_fiscalization_error_closes_pending_record(
        self, make_service, gateway_stub, db_session, fastpay_request
    ):
        service = await make_service()
        gateway_stub.queue(FASTPAY_OK, RuntimeError("fiscal service crashed"))
        paid = await service.create_payment(fastpay_request)

        result = await service.submit_fiscalization(paid.data["transaction_id"], "https://ofd.soliq.uz/r/1")

        assert result.success is False
        assert result.error == "Internal error"
        fiscalization = await reload_record(db_session, Fiscalization, paid.data["transaction_id"])
        assert fiscalization.status == "failed"
        assert fiscalization.error_message == "fiscal service crashed"
        actions = await audit_actions(db_session, paid.data["transaction_id"])
        assert actions["error_occurred"] == 1
        assert actions["fiscalization_sent"] == 0

    async def test_status_check_error_is_audited(
        self, make_service, gateway_stub, db_session, monkeypatch, fastpay_request
    ):
        service = await make_service()
        gateway_stub.queue(FASTPAY_OK, {"error_code": 0, "payment_status": "COMPLETED"})
        paid = await service.create_payment(fastpay_request)

        def explode(response, http_status):
            raise RuntimeError("parser exploded")

        monkeypatch.setattr(service.gateway, "parse_outcome", explode)

        result = await service.check_payment_status(paid.data["transaction_id"])

        assert result.success is False
        assert result.error == "Internal error"
        transaction = await reload(db_session, paid.data["transaction_id"])
        assert transaction.status == TransactionStatus.SUCCESS.value
        actions = await audit_actions(db_session, transaction.id)
        assert actions["error_occurred"] == 1
        assert actions["status_checked"] == 0

    async def test_confirmation_error_leaves_metadata_untouched(
        self, make_service, gateway_stub, db_session, click_request
    ):
        service = await make_service(GatewayKind.CLICK_PASS)
        gateway_stub.queue(CLICK_OK, RuntimeError("boom"))
        paid = await service.create_payment(click_request)

        result = await service.confirm_payment(paid.data["transaction_id"], "confirm", "supervisor-1")

        assert result.success is False
        assert result.error == "Internal error"
        transaction = await reload(db_session, paid.data["transaction_id"])
        assert "confirmed" not in transaction.gateway_metadata
        errors = await AuditRepository(db_session).list_by_action(
            AuditAction.ERROR_OCCURRED.value, gateway="click_pass"
        )
        assert [e.details["stage"] for e in errors] == ["confirmation"]
        assert errors[0].employee_id == "supervisor-1"

    async def test_malformed_payme_result_is_a_decline(self, make_service, gateway_stub, db_session, payme_request):
        """A result that is not an object is recorded as a failed payment."""
        service = await make_service(GatewayKind.PAYME_QR)
        gateway_stub.queue({"result": ["rcpt-1"]})

        result = await service.create_payment(payme_request)

        assert result.error_code == "gateway_declined"
        transaction = await reload(db_session, result.data["transaction_id"])
        assert transaction.status == TransactionStatus.FAILED.value
        assert transaction.error_code == -1


def test_request_model_rejects_non_positive_amount():
    """Amounts must be positive with at most two decimals."""
    with pytest.raises(Exception):
        CreatePaymentRequest(amount_major="0", employee_id="e", terminal_id="t")
    with pytest.raises(Exception):
        CreatePaymentRequest(amount_major="1.001", employee_id="e", terminal_id="t")
