"""Payment orchestration: create, reverse, fiscalize, poll, confirm and link."""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from .audit import AuditLogger
from .config_store import ConfigStore
from .database import (
    AuditAction,
    FiscalizationRepository,
    ReversalRepository,
    TransactionFilters,
    TransactionRepository,
    TransactionStatus,
)
from .exceptions import (
    ConfigurationError,
    GatewayBusinessError,
    InvalidTransitionError,
    NetworkError,
    QRPaymentsError,
    TransactionNotFoundError,
    ValidationError,
)
from .gateways.base import (
    CreatePaymentRequest,
    GatewayBase,
    GatewayCall,
    GatewayCredentials,
    GatewayOutcome,
)
from .http_client import GatewayCallResult, GatewayHttpClient
from .identifiers import OrderIdGenerator
from .money import to_minor_units
from .retry import RetryExhaustedError, RetryPolicy, retry_with_backoff
from .signing import AuthHeader

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal error"
INTERNAL_ERROR_CODE = 500

CONFIRM_ACTIONS = ("confirm", "reject")


class PaymentResult(BaseModel):
    """Outcome returned to the HTTP adapter."""
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    retryable: bool = False

    @classmethod
    def ok(cls, data: Dict[str, Any], message: Optional[str] = None) -> "PaymentResult":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(
        cls,
        error: QRPaymentsError,
        data: Optional[Dict[str, Any]] = None,
        message: Optional[str] = None,
    ) -> "PaymentResult":
        return cls(
            success=False,
            data=data,
            error=error.message,
            error_code=error.error_code,
            message=message or error.message,
            retryable=isinstance(error, NetworkError),
        )


class PaymentService:
    """
    Drives one gateway's payments through the transaction state machine.

    The service commits its session at every durable checkpoint: the
    ``pending`` row is committed before the first network call, and each
    status write is committed before the next call.

    Example:
        async with db_manager.session() as session:
            service = PaymentService(session, FastPayGateway(), store, http_client)
            result = await service.create_payment(request)
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: GatewayBase,
        config_store: ConfigStore,
        http_client: GatewayHttpClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the service.

        Args:
            session: AsyncSession instance for database operations.
            gateway: Gateway integration this service talks to.
            config_store: Credentials for the same gateway.
            http_client: Transport for gateway calls.
            sleep: Backoff sleep, injected for tests.
        """
        if config_store.gateway != gateway.kind:
            raise ValueError(
                f"Config store is for {config_store.gateway.value}, gateway is {gateway.kind.value}"
            )
        self.session = session
        self.gateway = gateway
        self.config_store = config_store
        self.http_client = http_client
        self._sleep = sleep
        self.transaction_repo = TransactionRepository(session)
        self.reversal_repo = ReversalRepository(session)
        self.fiscalization_repo = FiscalizationRepository(session)
        self.audit = AuditLogger(session, gateway.kind)
        self.order_ids = OrderIdGenerator(
            gateway.order_prefix, self.transaction_repo.order_id_exists
        )

    @property
    def gateway_name(self) -> str:
        return self.gateway.kind.value

    # Create

    async def create_payment(self, request: CreatePaymentRequest) -> PaymentResult:
        """Charge a scanned QR/OTP code.

        Validation and configuration failures return before any transaction
        row exists. From the ``pending`` insert on, every outcome is written to
        the row and the audit log.

        Args:
            request: Validated payment request.

        Returns:
            PaymentResult whose ``data`` carries the internal transaction id and
            order id once a row exists.
        """
        scope: Dict[str, Any] = {
            "employee_id": request.employee_id,
            "terminal_id": request.terminal_id,
        }
        try:
            return await self._create_payment(request, scope)
        except Exception as e:
            return await self._internal_failure(e, "create_payment", scope)

    async def _create_payment(self, request: CreatePaymentRequest, scope: Dict[str, Any]) -> PaymentResult:
        context = {"employee_id": request.employee_id, "terminal_id": request.terminal_id}

        try:
            self.gateway.validate_request(request)
        except ValidationError as e:
            logger.info(f"{self.gateway_name} payment rejected: {e.message}")
            await self.audit.record(
                AuditAction.PAYMENT_FAILED,
                details={"stage": "validation", "reason": e.message, **e.details},
                **context,
            )
            await self.session.commit()
            return PaymentResult.fail(e)

        try:
            credentials = await self.config_store.load()
        except ConfigurationError as e:
            await self.audit.record(
                AuditAction.ERROR_OCCURRED,
                details={"stage": "configuration", "error": e.message},
                **context,
            )
            await self.session.commit()
            return PaymentResult.fail(e)

        order_id = await self.order_ids.generate_unique_order_id()
        scope["order_id"] = order_id
        transaction_id = str(uuid.uuid4())
        amount_minor = to_minor_units(request.amount_major)
        auth = self.gateway.build_auth_header(credentials)
        call = self.gateway.build_create_call(
            credentials, request, order_id, transaction_id, amount_minor, auth
        )

        transaction = await self.transaction_repo.create(
            gateway=self.gateway_name,
            order_id=order_id,
            transaction_id=transaction_id,
            amount_minor=amount_minor,
            amount_major=request.amount_major,
            request_payload=call.payload,
            auth_header=auth.header,
            auth_timestamp=auth.timestamp,
            cashbox_code=self.gateway.cashbox_code(credentials, request),
            **context,
        )
        await self.audit.record(
            AuditAction.PAYMENT_INITIATED,
            transaction_id=transaction.id,
            details={
                "order_id": order_id,
                "amount_major": str(request.amount_major),
                "amount_minor": amount_minor,
            },
            call=call,
            **context,
        )
        await self.session.commit()
        row_id = transaction.id
        scope.update(transaction_id=row_id, unfinished=True)

        base = {
            "transaction_id": row_id,
            "order_id": order_id,
            "amount_major": str(request.amount_major),
            "amount_minor": amount_minor,
        }
        return await self._send_payment(row_id, call, auth, credentials, base, context)

    async def _internal_failure(
        self,
        error: Exception,
        stage: str,
        scope: Dict[str, Any],
    ) -> PaymentResult:
        """Close out a flow that raised unexpectedly.

        Rolls back the open unit of work, fails whatever the flow had already
        committed as in-flight (an unfinished transaction, a pending reversal
        or fiscalization record) and audits ``error_occurred``.
        """
        logger.exception(f"{self.gateway_name} {stage} failed unexpectedly: {error}")
        await self.session.rollback()

        row_id = scope.get("transaction_id")
        if scope.get("unfinished") and row_id:
            await self.transaction_repo.fail_unfinished(row_id, INTERNAL_ERROR_CODE, str(error))
        if scope.get("reversal_id"):
            await self.reversal_repo.fail_pending(scope["reversal_id"], str(error))
        if scope.get("fiscalization_id"):
            await self.fiscalization_repo.fail_pending(scope["fiscalization_id"], str(error))

        details = {"stage": stage, "error": str(error)}
        if scope.get("order_id"):
            details["order_id"] = scope["order_id"]
        await self.audit.record(
            AuditAction.ERROR_OCCURRED,
            transaction_id=row_id,
            details=details,
            employee_id=scope.get("employee_id"),
            terminal_id=scope.get("terminal_id"),
        )
        await self.session.commit()

        data = {"transaction_id": row_id, "order_id": scope.get("order_id")} if row_id else None
        return PaymentResult(
            success=False,
            data=data,
            error=INTERNAL_ERROR_MESSAGE,
            error_code=getattr(error, "error_code", "internal_error"),
            message=INTERNAL_ERROR_MESSAGE,
        )

    async def _send_payment(
        self,
        row_id: str,
        call: GatewayCall,
        auth: AuthHeader,
        credentials: GatewayCredentials,
        base: Dict[str, Any],
        context: Dict[str, str],
    ) -> PaymentResult:
        policy = RetryPolicy(max_attempts=credentials.max_retry_attempts)
        current = {"call": call, "auth": auth}

        async def before_attempt(failed: int) -> None:
            values: Dict[str, Any] = {}
            if failed:
                # A fresh header per retry; the row keeps the one last sent
                fresh = self.gateway.build_auth_header(credentials)
                current["auth"] = fresh
                current["call"] = self.gateway.resign_call(current["call"], fresh)
                values.update(
                    auth_header=fresh.header,
                    auth_timestamp=fresh.timestamp,
                    request_payload=current["call"].payload,
                )
            if not await self.transaction_repo.mark_processing(row_id, failed, **values):
                status = await self.transaction_repo.current_status(row_id)
                raise InvalidTransitionError(status, TransactionStatus.PROCESSING.value)
            await self.session.commit()

        async def attempt(number: int) -> GatewayCallResult:
            prepared = current["call"]
            if credentials.enable_logging:
                logger.info(
                    f"{self.gateway_name} {base['order_id']} attempt {number + 1}/"
                    f"{policy.max_attempts}: {prepared.method} {prepared.endpoint}"
                )
            return await self.http_client.call(
                prepared.endpoint,
                prepared.method,
                prepared.payload,
                current["auth"].header,
                credentials.request_timeout_ms,
                self.gateway.auth_header_name,
            )

        try:
            result, failed_attempts = await retry_with_backoff(
                attempt, policy, before_attempt=before_attempt, sleep=self._sleep
            )
        except RetryExhaustedError as e:
            return await self._record_exhausted(row_id, e, base, context)

        outcome = self.gateway.parse_outcome(result.response, result.http_status)
        values = {
            "response_payload": result.response,
            "error_code": outcome.error_code,
            "retry_count": failed_attempts,
            "completed_at": datetime.utcnow(),
        }

        if outcome.succeeded:
            await self._advance(
                row_id,
                TransactionStatus.SUCCESS,
                gateway_payment_id=outcome.gateway_payment_id,
                gateway_transaction_id=outcome.gateway_transaction_id,
                gateway_metadata=outcome.metadata or None,
                error_message=None,
                **values,
            )
            await self.audit.record(
                AuditAction.PAYMENT_COMPLETED,
                transaction_id=row_id,
                details={
                    "order_id": base["order_id"],
                    "gateway_payment_id": outcome.gateway_payment_id,
                    "error_code": outcome.error_code,
                },
                call=current["call"],
                result=result,
                **context,
            )
            await self.session.commit()
            logger.info(f"{self.gateway_name} payment {base['order_id']} succeeded")
            return PaymentResult.ok(
                {
                    **base,
                    "status": TransactionStatus.SUCCESS.value,
                    "gateway_payment_id": outcome.gateway_payment_id,
                    "gateway_transaction_id": outcome.gateway_transaction_id,
                    "metadata": outcome.metadata,
                },
                message="Payment completed successfully",
            )

        await self._advance(
            row_id,
            TransactionStatus.FAILED,
            error_message=outcome.error_message,
            **values,
        )
        await self.audit.record(
            AuditAction.PAYMENT_FAILED,
            transaction_id=row_id,
            details={
                "order_id": base["order_id"],
                "error_code": outcome.error_code,
                "error_message": outcome.error_message,
            },
            call=current["call"],
            result=result,
            **context,
        )
        await self.session.commit()
        logger.info(
            f"{self.gateway_name} payment {base['order_id']} declined with code {outcome.error_code}"
        )
        declined = GatewayBusinessError(outcome.error_code, outcome.error_message or "Payment failed")
        return PaymentResult.fail(
            declined,
            data={
                **base,
                "status": TransactionStatus.FAILED.value,
                "gateway_error_code": outcome.error_code,
            },
        )

    async def _advance(self, row_id: str, new_status: TransactionStatus, **values: Any) -> None:
        updated = await self.transaction_repo.transition(
            row_id, TransactionStatus.PROCESSING.value, new_status.value, **values
        )
        if not updated:
            status = await self.transaction_repo.current_status(row_id)
            raise InvalidTransitionError(status, new_status.value)

    async def _record_exhausted(
        self,
        row_id: str,
        exhausted: RetryExhaustedError,
        base: Dict[str, Any],
        context: Dict[str, str],
    ) -> PaymentResult:
        last_error = exhausted.last_error
        timed_out = isinstance(last_error, TimeoutError)
        message = getattr(last_error, "message", str(last_error))

        updated = await self.transaction_repo.fail_unfinished(
            row_id,
            None,
            message,
            retry_count=exhausted.attempts,
            timeout_occurred=timed_out,
        )
        if not updated:
            status = await self.transaction_repo.current_status(row_id)
            raise InvalidTransitionError(status, TransactionStatus.FAILED.value)

        await self.audit.record(
            AuditAction.PAYMENT_FAILED,
            transaction_id=row_id,
            details={
                "order_id": base["order_id"],
                "attempts": exhausted.attempts,
                "timeout_occurred": timed_out,
                "error": message,
            },
            **context,
        )
        await self.session.commit()
        logger.error(
            f"{self.gateway_name} payment {base['order_id']} failed after "
            f"{exhausted.attempts} attempts: {message}"
        )
        return PaymentResult.fail(
            last_error if isinstance(last_error, NetworkError) else NetworkError(message),
            data={
                **base,
                "status": TransactionStatus.FAILED.value,
                "retry_count": exhausted.attempts,
                "timeout_occurred": timed_out,
            },
        )

    # Follow-up calls

    async def _call_once(
        self,
        call: GatewayCall,
        credentials: GatewayCredentials,
        parse: Optional[Callable[[Dict[str, Any], int], GatewayOutcome]] = None,
    ) -> Tuple[Optional[GatewayCallResult], GatewayOutcome, Optional[NetworkError]]:
        """One signed call without retries; network failures become a failed outcome."""
        parse = parse or self.gateway.parse_outcome
        auth = self.gateway.build_auth_header(credentials)
        call = self.gateway.resign_call(call, auth)
        try:
            result = await self.http_client.call(
                call.endpoint,
                call.method,
                call.payload,
                auth.header,
                credentials.request_timeout_ms,
                self.gateway.auth_header_name,
            )
        except NetworkError as e:
            return None, GatewayOutcome(error_code=-1, error_message=e.message), e
        return result, parse(result.response, result.http_status), None

    async def _find(self, transaction_id: str):
        transaction = await self.transaction_repo.get_by_id(transaction_id)
        if transaction is None or transaction.gateway != self.gateway_name:
            raise TransactionNotFoundError(
                f"Transaction {transaction_id} not found", {"transaction_id": transaction_id}
            )
        return transaction

    def _track(self, scope: Dict[str, Any], transaction) -> None:
        scope.update(
            transaction_id=transaction.id,
            order_id=transaction.order_id,
            terminal_id=transaction.terminal_id,
        )
        scope.setdefault("employee_id", transaction.employee_id)

    def _unsettled(self, transaction) -> Optional[ValidationError]:
        if self.gateway.is_settled(transaction):
            return None
        return ValidationError(
            "Payment has not been settled by the gateway yet",
            {"status": transaction.status, "metadata": transaction.gateway_metadata or {}},
        )

    async def _reject(
        self,
        error: QRPaymentsError,
        stage: str,
        transaction=None,
        employee_id: Optional[str] = None,
    ) -> PaymentResult:
        await self.audit.record(
            AuditAction.ERROR_OCCURRED,
            transaction_id=transaction.id if transaction is not None else None,
            details={"stage": stage, "error": error.message, **error.details},
            employee_id=employee_id,
            terminal_id=transaction.terminal_id if transaction is not None else None,
        )
        await self.session.commit()
        return PaymentResult.fail(error)

    async def reverse_payment(
        self,
        order_id: str,
        reason: str,
        requested_by: str,
    ) -> PaymentResult:
        """Reverse a successful payment in full.

        Rejected without a network call unless the transaction is ``success``.
        The transaction moves to ``reversed`` only when the gateway accepts the
        reversal; otherwise it stays ``success``.
        """
        scope: Dict[str, Any] = {"order_id": order_id, "employee_id": requested_by}
        try:
            return await self._reverse_payment(order_id, reason, requested_by, scope)
        except Exception as e:
            return await self._internal_failure(e, "reversal", scope)

    async def _reverse_payment(
        self,
        order_id: str,
        reason: str,
        requested_by: str,
        scope: Dict[str, Any],
    ) -> PaymentResult:
        transaction = await self.transaction_repo.get_by_order_id(order_id)
        if transaction is None or transaction.gateway != self.gateway_name:
            return await self._reject(
                TransactionNotFoundError(f"Order {order_id} not found", {"order_id": order_id}),
                "reversal",
                employee_id=requested_by,
            )
        self._track(scope, transaction)
        if transaction.status != TransactionStatus.SUCCESS.value:
            return await self._reject(
                InvalidTransitionError(transaction.status, TransactionStatus.REVERSED.value),
                "reversal",
                transaction,
                requested_by,
            )

        try:
            credentials = await self.config_store.load()
        except ConfigurationError as e:
            return await self._reject(e, "reversal", transaction, requested_by)

        call = self.gateway.build_reversal_call(credentials, transaction)
        reversal = await self.reversal_repo.start(
            transaction, call.payload or {}, reason, requested_by
        )
        await self.session.commit()
        scope["reversal_id"] = reversal.id

        result, outcome, network_error = await self._call_once(call, credentials)
        await self.reversal_repo.complete(
            reversal,
            result.response if result else None,
            outcome.error_code if result else None,
            outcome.error_message,
            outcome.succeeded,
        )

        reversed_now = False
        if outcome.succeeded:
            reversed_now = await self.transaction_repo.transition(
                transaction.id,
                TransactionStatus.SUCCESS.value,
                TransactionStatus.REVERSED.value,
            )

        await self.audit.record(
            AuditAction.REVERSAL_REQUESTED,
            transaction_id=transaction.id,
            details={
                "order_id": order_id,
                "reason": reason,
                "requested_by": requested_by,
                "error_code": outcome.error_code if result else None,
                "error_message": outcome.error_message,
                "reversed": reversed_now,
            },
            employee_id=requested_by,
            terminal_id=transaction.terminal_id,
            call=call,
            result=result,
        )
        await self.session.commit()

        data = {
            "transaction_id": transaction.id,
            "order_id": order_id,
            "reversal_id": reversal.id,
            "reversal_status": reversal.status,
            "status": await self.transaction_repo.current_status(transaction.id),
        }
        if network_error is not None:
            return PaymentResult.fail(network_error, data=data)
        if not outcome.succeeded:
            return PaymentResult.fail(
                GatewayBusinessError(outcome.error_code, outcome.error_message or "Reversal failed"),
                data={**data, "gateway_error_code": outcome.error_code},
            )
        if not reversed_now:
            logger.warning(f"Order {order_id} was reversed concurrently")
        logger.info(f"{self.gateway_name} order {order_id} reversed")
        return PaymentResult.ok(data, message="Payment reversed successfully")

    async def submit_fiscalization(self, transaction_id: str, fiscal_url: str) -> PaymentResult:
        """Send a fiscal receipt reference for a successful payment.

        Tracked in its own record; the transaction status is never changed.
        """
        scope: Dict[str, Any] = {}
        try:
            return await self._submit_fiscalization(transaction_id, fiscal_url, scope)
        except Exception as e:
            return await self._internal_failure(e, "fiscalization", scope)

    async def _submit_fiscalization(
        self,
        transaction_id: str,
        fiscal_url: str,
        scope: Dict[str, Any],
    ) -> PaymentResult:
        try:
            transaction = await self._find(transaction_id)
        except TransactionNotFoundError as e:
            return await self._reject(e, "fiscalization")
        self._track(scope, transaction)

        if not self.gateway.supports_fiscalization:
            return await self._reject(
                ValidationError(f"Fiscalization is not supported by {self.gateway_name}"),
                "fiscalization",
                transaction,
            )
        if not fiscal_url or not fiscal_url.strip():
            return await self._reject(
                ValidationError("Fiscal URL is required"), "fiscalization", transaction
            )
        if transaction.status != TransactionStatus.SUCCESS.value:
            return await self._reject(
                ValidationError(
                    "Only successful transactions can be fiscalized",
                    {"status": transaction.status},
                ),
                "fiscalization",
                transaction,
            )
        unsettled = self._unsettled(transaction)
        if unsettled is not None:
            return await self._reject(unsettled, "fiscalization", transaction)

        try:
            credentials = await self.config_store.load()
        except ConfigurationError as e:
            return await self._reject(e, "fiscalization", transaction)

        call = self.gateway.build_fiscal_call(credentials, transaction, fiscal_url)
        fiscalization = await self.fiscalization_repo.start(
            transaction, call.payload or {}, fiscal_url
        )
        await self.session.commit()
        scope["fiscalization_id"] = fiscalization.id

        result, outcome, network_error = await self._call_once(call, credentials)
        await self.fiscalization_repo.complete(
            fiscalization,
            result.response if result else None,
            outcome.error_code if result else None,
            outcome.error_message,
            outcome.succeeded,
        )
        await self.audit.record(
            AuditAction.FISCALIZATION_SENT,
            transaction_id=transaction.id,
            details={
                "fiscal_url": fiscal_url,
                "error_code": outcome.error_code if result else None,
                "error_message": outcome.error_message,
            },
            employee_id=transaction.employee_id,
            terminal_id=transaction.terminal_id,
            call=call,
            result=result,
        )
        await self.session.commit()

        data = {
            "transaction_id": transaction.id,
            "fiscalization_id": fiscalization.id,
            "fiscalization_status": fiscalization.status,
        }
        if network_error is not None:
            return PaymentResult.fail(network_error, data=data)
        if not outcome.succeeded:
            return PaymentResult.fail(
                GatewayBusinessError(outcome.error_code, outcome.error_message or "Fiscalization failed"),
                data=data,
            )
        return PaymentResult.ok(data, message="Fiscal data submitted")

    async def check_payment_status(self, transaction_id: str) -> PaymentResult:
        """Ask the gateway for its view of a payment.

        Read-only towards the transaction: the local status is reported next to
        the gateway's and never reconciled here.
        """
        scope: Dict[str, Any] = {}
        try:
            return await self._check_payment_status(transaction_id, scope)
        except Exception as e:
            return await self._internal_failure(e, "status_check", scope)

    async def _check_payment_status(self, transaction_id: str, scope: Dict[str, Any]) -> PaymentResult:
        try:
            transaction = await self._find(transaction_id)
        except TransactionNotFoundError as e:
            return await self._reject(e, "status_check")
        self._track(scope, transaction)

        if not transaction.gateway_payment_id:
            return await self._reject(
                ValidationError("No payment ID available for status check"),
                "status_check",
                transaction,
            )

        try:
            credentials = await self.config_store.load()
        except ConfigurationError as e:
            return await self._reject(e, "status_check", transaction)

        call = self.gateway.build_status_call(credentials, transaction)
        result, outcome, network_error = await self._call_once(call, credentials)
        await self.audit.record(
            AuditAction.STATUS_CHECKED,
            transaction_id=transaction.id,
            details={
                "gateway_payment_id": transaction.gateway_payment_id,
                "error_code": outcome.error_code if result else None,
                "gateway_status": outcome.gateway_status,
            },
            employee_id=transaction.employee_id,
            terminal_id=transaction.terminal_id,
            call=call,
            result=result,
        )
        await self.session.commit()

        data = {
            "transaction_id": transaction.id,
            "order_id": transaction.order_id,
            "local_status": transaction.status,
            "gateway_status": outcome.gateway_status,
            "gateway_response": result.response if result else None,
        }
        if network_error is not None:
            return PaymentResult.fail(network_error, data=data)
        if not outcome.succeeded:
            return PaymentResult.fail(
                GatewayBusinessError(outcome.error_code, outcome.error_message or "Status check failed"),
                data=data,
            )
        return PaymentResult.ok(data)

    async def confirm_payment(
        self,
        transaction_id: str,
        action: str,
        employee_id: str,
    ) -> PaymentResult:
        """Finish a payment the gateway has not settled on create.

        ``reject`` runs the reversal flow. ``confirm`` calls the gateway's
        confirm endpoint (Click Pass) or re-checks the receipt until it is paid
        (Payme QR), and records the confirmation in the metadata.
        """
        scope: Dict[str, Any] = {"employee_id": employee_id}
        try:
            return await self._confirm_payment(transaction_id, action, employee_id, scope)
        except Exception as e:
            return await self._internal_failure(e, "confirmation", scope)

    async def _confirm_payment(
        self,
        transaction_id: str,
        action: str,
        employee_id: str,
        scope: Dict[str, Any],
    ) -> PaymentResult:
        if not self.gateway.supports_confirmation:
            return await self._reject(
                ValidationError(f"Payment confirmation is not supported by {self.gateway_name}"),
                "confirmation",
                employee_id=employee_id,
            )
        if action not in CONFIRM_ACTIONS:
            return await self._reject(
                ValidationError(f"Action must be one of: {', '.join(CONFIRM_ACTIONS)}"),
                "confirmation",
                employee_id=employee_id,
            )
        try:
            transaction = await self._find(transaction_id)
        except TransactionNotFoundError as e:
            return await self._reject(e, "confirmation", employee_id=employee_id)
        self._track(scope, transaction)

        if action == "reject":
            return await self.reverse_payment(
                transaction.order_id, "Rejected at confirmation", employee_id
            )

        if transaction.status != TransactionStatus.SUCCESS.value:
            return await self._reject(
                ValidationError(
                    "Only successful transactions can be confirmed",
                    {"status": transaction.status},
                ),
                "confirmation",
                transaction,
                employee_id,
            )

        try:
            credentials = await self.config_store.load()
        except ConfigurationError as e:
            return await self._reject(e, "confirmation", transaction, employee_id)

        call = self.gateway.build_confirm_call(credentials, transaction)
        result, outcome, network_error = await self._call_once(
            call, credentials, self.gateway.parse_confirm_outcome
        )
        if outcome.succeeded:
            await self.transaction_repo.update_metadata(
                transaction,
                {
                    **outcome.metadata,
                    "confirmed": True,
                    "confirmed_by": employee_id,
                    "confirmed_at": datetime.utcnow().isoformat(),
                },
            )
        await self.audit.record(
            AuditAction.PAYMENT_COMPLETED if outcome.succeeded else AuditAction.ERROR_OCCURRED,
            transaction_id=transaction.id,
            details={
                "stage": "confirmation",
                "error_code": outcome.error_code if result else None,
                "error_message": outcome.error_message,
            },
            employee_id=employee_id,
            terminal_id=transaction.terminal_id,
            call=call,
            result=result,
        )
        await self.session.commit()

        data = {"transaction_id": transaction.id, "order_id": transaction.order_id}
        if network_error is not None:
            return PaymentResult.fail(network_error, data=data)
        if not outcome.succeeded:
            return PaymentResult.fail(
                GatewayBusinessError(outcome.error_code, outcome.error_message or "Confirmation failed"),
                data={**data, "gateway_status": outcome.gateway_status},
            )
        return PaymentResult.ok({**data, "status": "confirmed"}, message="Payment confirmed")

    # Lookups

    async def get_transaction(self, transaction_id: str) -> Dict[str, Any]:
        """Transaction with its reversal and fiscalization records.

        Raises:
            TransactionNotFoundError: If no transaction of this gateway has the id.
        """
        transaction = await self._find(transaction_id)
        reversal = await self.reversal_repo.get_by_transaction_id(transaction.id)
        fiscalization = await self.fiscalization_repo.get_by_transaction_id(transaction.id)
        return {
            **transaction.to_dict(),
            "reversal": reversal.to_dict() if reversal else None,
            "fiscalization": fiscalization.to_dict() if fiscalization else None,
        }

    async def list_transactions(
        self,
        filters: Optional[TransactionFilters] = None,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Page of this gateway's transactions, newest first, and the total count."""
        filters = filters or TransactionFilters()
        filters.gateway = self.gateway_name
        items, total = await self.transaction_repo.list(filters)
        return [t.to_dict() for t in items], total

    async def link_pos_sale(self, transaction_id: str, pos_sale_id: str) -> PaymentResult:
        """Attach a POS sale record to a settled, successful transaction."""
        scope: Dict[str, Any] = {}
        try:
            return await self._link_pos_sale(transaction_id, pos_sale_id, scope)
        except Exception as e:
            return await self._internal_failure(e, "link_sale", scope)

    async def _link_pos_sale(
        self,
        transaction_id: str,
        pos_sale_id: str,
        scope: Dict[str, Any],
    ) -> PaymentResult:
        try:
            transaction = await self._find(transaction_id)
        except TransactionNotFoundError as e:
            return await self._reject(e, "link_sale")
        self._track(scope, transaction)

        if transaction.status == TransactionStatus.SUCCESS.value:
            unsettled = self._unsettled(transaction)
            if unsettled is not None:
                return await self._reject(unsettled, "link_sale", transaction)

        if not await self.transaction_repo.link_pos_sale(transaction.id, pos_sale_id):
            return await self._reject(
                ValidationError(
                    "Only successful transactions can be linked to a sale",
                    {"status": transaction.status},
                ),
                "link_sale",
                transaction,
            )
        await self.session.commit()
        logger.info(f"Transaction {transaction.id} linked to sale {pos_sale_id}")
        return PaymentResult.ok(
            {"transaction_id": transaction.id, "pos_sale_id": pos_sale_id}
        )
