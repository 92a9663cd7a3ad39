import uuid
from typing import Any, Dict

from ..signing import AuthHeader, build_static_header
from .base import (
    UNKNOWN_ERROR_CODE,
    CreatePaymentRequest,
    GatewayBase,
    GatewayCall,
    GatewayKind,
    GatewayOutcome,
    PaymeQRCredentials,
    coerce_error_code,
)

RPC_PATH = "/api"

# Receipt states reported by receipts.check
RECEIPT_STATES = {
    0: "created",
    1: "waiting_for_payment",
    4: "paid",
    21: "cancelling",
    50: "cancelled",
}
PAID_STATE = 4

# Local code for a well-formed receipt that the customer has not paid yet
RECEIPT_NOT_PAID = -2


class PaymeQRGateway(GatewayBase):
    """
    Payme receipts over JSON-RPC. ``receipts.create`` issues a receipt whose
    QR code the customer scans in the Payme app.

    Auth: static ``cashbox_id:key_password`` in ``X-Auth``. A response is a
    success when it carries a ``result`` and no ``error`` object.

    An issued receipt is not a settled payment: the receipt state is kept in
    the transaction metadata and only state 4 (paid) counts as settled.
    ``confirm`` runs ``receipts.check`` and succeeds once the receipt is paid.
    """

    kind = GatewayKind.PAYME_QR
    order_prefix = "PAYME"
    credentials_model = PaymeQRCredentials
    auth_header_name = "X-Auth"
    supports_fiscalization = True
    supports_confirmation = True

    def _rpc(self, credentials: PaymeQRCredentials, method: str, params: Dict[str, Any]) -> GatewayCall:
        return GatewayCall(
            endpoint=credentials.url(RPC_PATH),
            method="POST",
            payload={"id": uuid.uuid4().hex, "method": method, "params": params},
        )

    def build_auth_header(self, credentials: PaymeQRCredentials) -> AuthHeader:
        return build_static_header(credentials.cashbox_id, credentials.key_password)

    def build_create_call(
        self,
        credentials: PaymeQRCredentials,
        request: CreatePaymentRequest,
        order_id: str,
        transaction_id: str,
        amount_minor: int,
        auth: AuthHeader,
    ) -> GatewayCall:
        account = {
            "order_id": order_id,
            "terminal_id": request.terminal_id,
            "employee_id": request.employee_id,
            **request.account_data,
        }
        params: Dict[str, Any] = {"amount": amount_minor, "account": account}
        if request.description:
            params["description"] = request.description
        return self._rpc(credentials, "receipts.create", params)

    def parse_outcome(self, response: Dict[str, Any], http_status: int) -> GatewayOutcome:
        error = response.get("error")
        if error is not None or "result" not in response:
            error = error if isinstance(error, dict) else {}
            message = error.get("message")
            if isinstance(message, dict):
                message = message.get("en") or message.get("ru") or next(iter(message.values()), None)
            code = coerce_error_code(error.get("code"), http_status)
            return GatewayOutcome(
                error_code=code,
                error_message=message or f"Error code: {code}",
            )

        result = response.get("result") or {}
        receipt = (result.get("receipt") or {}) if isinstance(result, dict) else None
        if not isinstance(receipt, dict):
            return GatewayOutcome(
                error_code=UNKNOWN_ERROR_CODE,
                error_message="Malformed receipt in gateway response",
            )
        state = receipt.get("state", result.get("state"))
        metadata = {"receipt_state": state} if state is not None else {}
        for key in ("qr_code_data", "pay_url"):
            if result.get(key) is not None:
                metadata[key] = result[key]
        receipt_id = receipt.get("_id")
        return GatewayOutcome(
            error_code=0,
            gateway_payment_id=str(receipt_id) if receipt_id is not None else None,
            gateway_transaction_id=receipt.get("create_transaction"),
            gateway_status=RECEIPT_STATES.get(state, str(state) if state is not None else None),
            metadata=metadata,
        )

    def parse_confirm_outcome(self, response: Dict[str, Any], http_status: int) -> GatewayOutcome:
        outcome = self.parse_outcome(response, http_status)
        if outcome.succeeded and outcome.metadata.get("receipt_state") != PAID_STATE:
            return GatewayOutcome(
                error_code=RECEIPT_NOT_PAID,
                error_message=f"Receipt is not paid (state: {outcome.gateway_status})",
                gateway_status=outcome.gateway_status,
                metadata=outcome.metadata,
            )
        return outcome

    def is_settled(self, transaction) -> bool:
        return (transaction.gateway_metadata or {}).get("receipt_state") == PAID_STATE

    def build_status_call(self, credentials: PaymeQRCredentials, transaction) -> GatewayCall:
        return self._rpc(credentials, "receipts.check", {"id": transaction.gateway_payment_id})

    def build_confirm_call(self, credentials: PaymeQRCredentials, transaction) -> GatewayCall:
        return self.build_status_call(credentials, transaction)

    def build_reversal_call(self, credentials: PaymeQRCredentials, transaction) -> GatewayCall:
        return self._rpc(credentials, "receipts.cancel", {"id": transaction.gateway_payment_id})

    def build_fiscal_call(
        self,
        credentials: PaymeQRCredentials,
        transaction,
        fiscal_url: str,
    ) -> GatewayCall:
        return self._rpc(
            credentials,
            "receipts.set_fiscal_data",
            {"id": transaction.gateway_payment_id, "fiscal_data": {"qr_code_url": fiscal_url}},
        )
