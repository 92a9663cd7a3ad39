import time
from typing import Any, Callable, Dict

from ..exceptions import ValidationError
from ..signing import AuthHeader, build_signed_header, uzum_timestamp
from .base import (
    CreatePaymentRequest,
    FastPayCredentials,
    GatewayBase,
    GatewayCall,
    GatewayKind,
    GatewayOutcome,
    coerce_error_code,
)

MIN_OTP_LENGTH = 40

PAYMENT_PATH = "/api/apelsin-pay/merchant/v2/payment"
STATUS_PATH = "/api/apelsin-pay/merchant/payment/status"
REVERSAL_PATH = "/api/apelsin-pay/merchant/v2/payment/reversal/{order_id}"
FISCAL_PATH = "/api/apelsin-pay/merchant/payment/fiscal"


class FastPayGateway(GatewayBase):
    """
    Uzum Bank FastPay: the customer shows a QR code in the Uzum app, the
    cashier scans it and the OTP payload is charged directly.

    Auth: ``merchant_service_user_id:sha1(ts + secret):ts`` in ``Authorization``
    where ``ts`` is epoch milliseconds in Tashkent time (UTC+5).
    """

    kind = GatewayKind.FASTPAY
    order_prefix = "RP"
    credentials_model = FastPayCredentials
    supports_fiscalization = True

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock

    def validate_request(self, request: CreatePaymentRequest) -> None:
        if not request.otp_data:
            raise ValidationError("QR code data is required")
        if len(request.otp_data) < MIN_OTP_LENGTH:
            raise ValidationError(
                f"QR code data must be at least {MIN_OTP_LENGTH} characters long",
                {"otp_data_length": len(request.otp_data)},
            )

    def cashbox_code(self, credentials: FastPayCredentials, request: CreatePaymentRequest) -> str:
        return f"{credentials.cashbox_code_prefix}_{request.terminal_id}"

    def build_auth_header(self, credentials: FastPayCredentials) -> AuthHeader:
        return build_signed_header(
            credentials.secret_key,
            credentials.merchant_service_user_id,
            uzum_timestamp(self._clock),
        )

    def build_create_call(
        self,
        credentials: FastPayCredentials,
        request: CreatePaymentRequest,
        order_id: str,
        transaction_id: str,
        amount_minor: int,
        auth: AuthHeader,
    ) -> GatewayCall:
        return GatewayCall(
            endpoint=credentials.url(PAYMENT_PATH),
            method="POST",
            payload={
                "amount": amount_minor,
                "cashbox_code": self.cashbox_code(credentials, request),
                "otp_data": request.otp_data,
                "order_id": order_id,
                "transaction_id": transaction_id,
                "service_id": credentials.service_id,
            },
        )

    def parse_outcome(self, response: Dict[str, Any], http_status: int) -> GatewayOutcome:
        code = coerce_error_code(response.get("error_code"), http_status)
        metadata = {
            key: response[key]
            for key in ("client_phone_number", "operation_time")
            if response.get(key) is not None
        }
        payment_id = response.get("payment_id")
        return GatewayOutcome(
            error_code=code,
            error_message=response.get("error_message") or (None if code == 0 else f"Error code: {code}"),
            gateway_payment_id=str(payment_id) if payment_id is not None else None,
            gateway_transaction_id=response.get("transaction_id"),
            gateway_status=response.get("payment_status") or response.get("status"),
            metadata=metadata,
        )

    def build_status_call(self, credentials: FastPayCredentials, transaction) -> GatewayCall:
        return GatewayCall(
            endpoint=credentials.url(STATUS_PATH),
            method="POST",
            payload={
                "payment_id": transaction.gateway_payment_id,
                "service_id": credentials.service_id,
            },
        )

    def build_reversal_call(self, credentials: FastPayCredentials, transaction) -> GatewayCall:
        return GatewayCall(
            endpoint=credentials.url(REVERSAL_PATH.format(order_id=transaction.order_id)),
            method="PUT",
            payload={
                "service_id": credentials.service_id,
                "payment_id": transaction.gateway_payment_id,
            },
        )

    def build_fiscal_call(
        self,
        credentials: FastPayCredentials,
        transaction,
        fiscal_url: str,
    ) -> GatewayCall:
        return GatewayCall(
            endpoint=credentials.url(FISCAL_PATH),
            method="POST",
            payload={
                "payment_id": transaction.gateway_payment_id,
                "service_id": credentials.service_id,
                "fiscal_url": fiscal_url,
            },
        )
