import time
from dataclasses import replace
from typing import Any, Callable, Dict

from ..exceptions import ValidationError
from ..signing import AuthHeader, build_signed_header, unix_timestamp
from .base import (
    ClickPassCredentials,
    CreatePaymentRequest,
    GatewayBase,
    GatewayCall,
    GatewayKind,
    GatewayOutcome,
    coerce_error_code,
)

PAYMENT_PATH = "/v2/merchant/click_pass/payment"
CONFIRM_PATH = "/v2/merchant/click_pass/confirm"
STATUS_PATH = "/v2/merchant/payment/status/{service_id}/{payment_id}"
REVERSAL_PATH = "/v2/merchant/payment/reversal/{service_id}/{payment_id}"


class ClickPassGateway(GatewayBase):
    """
    Click Pass: charge a card linked to the customer's Click app via the OTP
    shown in the app. Some payments come back with ``requires_confirmation``
    and are finished with :meth:`build_confirm_call`.

    Auth header ``Auth``: ``merchant_user_id:sha1(ts + secret):ts`` with ``ts``
    in epoch seconds (UTC). The same ``ts`` is echoed in the request body.
    """

    kind = GatewayKind.CLICK_PASS
    order_prefix = "CLICK"
    credentials_model = ClickPassCredentials
    auth_header_name = "Auth"
    supports_confirmation = True

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock

    def validate_request(self, request: CreatePaymentRequest) -> None:
        if not request.otp_data or not request.otp_data.strip():
            raise ValidationError("OTP data is required")

    def build_auth_header(self, credentials: ClickPassCredentials) -> AuthHeader:
        return build_signed_header(
            credentials.secret_key,
            credentials.merchant_user_id,
            unix_timestamp(self._clock),
        )

    def build_create_call(
        self,
        credentials: ClickPassCredentials,
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
                "service_id": credentials.service_id,
                "merchant_id": credentials.merchant_id,
                "amount": amount_minor,
                "order_id": order_id,
                "transaction_id": transaction_id,
                "otp": request.otp_data,
                "timestamp": auth.timestamp,
            },
        )

    def resign_call(self, call: GatewayCall, auth: AuthHeader) -> GatewayCall:
        if call.payload is None or "timestamp" not in call.payload:
            return call
        return replace(call, payload={**call.payload, "timestamp": auth.timestamp})

    def parse_outcome(self, response: Dict[str, Any], http_status: int) -> GatewayOutcome:
        code = coerce_error_code(response.get("error_code"), http_status)
        metadata = {
            key: response[key]
            for key in ("card_type", "masked_card_number", "requires_confirmation")
            if response.get(key) is not None
        }
        payment_id = response.get("payment_id")
        return GatewayOutcome(
            error_code=code,
            error_message=response.get("error_message") or response.get("error_note")
            or (None if code == 0 else "Payment failed"),
            gateway_payment_id=str(payment_id) if payment_id is not None else None,
            gateway_transaction_id=response.get("transaction_id"),
            gateway_status=response.get("payment_status"),
            metadata=metadata,
        )

    def _payment_path(self, template: str, credentials: ClickPassCredentials, transaction) -> str:
        return credentials.url(template.format(
            service_id=credentials.service_id,
            payment_id=transaction.gateway_payment_id,
        ))

    def build_status_call(self, credentials: ClickPassCredentials, transaction) -> GatewayCall:
        return GatewayCall(
            endpoint=self._payment_path(STATUS_PATH, credentials, transaction),
            method="GET",
        )

    def build_reversal_call(self, credentials: ClickPassCredentials, transaction) -> GatewayCall:
        return GatewayCall(
            endpoint=self._payment_path(REVERSAL_PATH, credentials, transaction),
            method="DELETE",
        )

    def build_confirm_call(self, credentials: ClickPassCredentials, transaction) -> GatewayCall:
        return GatewayCall(
            endpoint=credentials.url(CONFIRM_PATH),
            method="POST",
            payload={
                "service_id": credentials.service_id,
                "payment_id": transaction.gateway_payment_id,
            },
        )
