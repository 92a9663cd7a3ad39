import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, ClassVar, Dict, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field

from ..exceptions import ValidationError
from ..signing import AuthHeader

PLACEHOLDER = "PLACEHOLDER"
UNKNOWN_ERROR_CODE = -1


class GatewayKind(str, enum.Enum):
    FASTPAY = "fastpay"
    CLICK_PASS = "click_pass"
    PAYME_QR = "payme_qr"


# Typed credentials, one model per gateway
class GatewayCredentials(BaseModel):
    model_config = ConfigDict(extra="ignore")

    REQUIRED_KEYS: ClassVar[Tuple[str, ...]] = ()
    DEFAULTS: ClassVar[Dict[str, str]] = {}

    api_base_url: str
    request_timeout_ms: int = Field(15000, ge=1000, le=120000)
    max_retry_attempts: int = Field(3, ge=1, le=10)
    enable_logging: bool = True

    def url(self, path: str) -> str:
        return f"{self.api_base_url.rstrip('/')}{path}"


class FastPayCredentials(GatewayCredentials):
    REQUIRED_KEYS: ClassVar[Tuple[str, ...]] = (
        "merchant_service_user_id",
        "secret_key",
        "service_id",
    )
    DEFAULTS: ClassVar[Dict[str, str]] = {
        "api_base_url": "https://mobile.apelsin.uz",
        "request_timeout_ms": "15000",
        "cashbox_code_prefix": "RockPoint",
        "max_retry_attempts": "3",
        "enable_logging": "true",
    }

    merchant_service_user_id: str
    secret_key: str
    service_id: int
    cashbox_code_prefix: str = "RockPoint"


class ClickPassCredentials(GatewayCredentials):
    REQUIRED_KEYS: ClassVar[Tuple[str, ...]] = (
        "service_id",
        "merchant_id",
        "merchant_user_id",
        "secret_key",
    )
    DEFAULTS: ClassVar[Dict[str, str]] = {
        "api_base_url": "https://api.click.uz",
        "request_timeout_ms": "15000",
        "max_retry_attempts": "3",
        "enable_logging": "true",
    }

    service_id: int
    merchant_id: int
    merchant_user_id: str
    secret_key: str


class PaymeQRCredentials(GatewayCredentials):
    REQUIRED_KEYS: ClassVar[Tuple[str, ...]] = ("cashbox_id", "key_password")
    DEFAULTS: ClassVar[Dict[str, str]] = {
        "api_base_url": "https://checkout.paycom.uz",
        "request_timeout_ms": "15000",
        "max_retry_attempts": "3",
        "enable_logging": "true",
    }

    cashbox_id: str
    key_password: str


# Canonical models
class CreatePaymentRequest(BaseModel):
    amount_major: Decimal = Field(..., gt=0, max_digits=15, decimal_places=2)
    employee_id: str = Field(..., min_length=1, max_length=50)
    terminal_id: str = Field(..., min_length=1, max_length=100)
    otp_data: Optional[str] = None  # scanned QR/OTP payload, never logged
    description: Optional[str] = None
    account_data: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class GatewayCall:
    """Outbound request prepared by a gateway, before signing."""
    endpoint: str
    method: str
    payload: Optional[Dict[str, Any]] = None


@dataclass
class GatewayOutcome:
    """Gateway business result parsed from a response body."""
    error_code: int
    error_message: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    gateway_status: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.error_code == 0


def coerce_error_code(value: Any, http_status: int) -> int:
    """Normalize a gateway error code.

    A missing or non-numeric code counts as a failure: the HTTP status when it
    is an error status, else ``UNKNOWN_ERROR_CODE``.
    """
    if value is not None:
        try:
            return int(value)
        except (TypeError, ValueError):
            pass
    return http_status if http_status >= 400 else UNKNOWN_ERROR_CODE


class GatewayBase(ABC):
    """
    Per-gateway request shapes, signing and response parsing.

    Implementations are side-effect free: the orchestrator owns the network
    call, persistence and retries.
    """

    kind: ClassVar[GatewayKind]
    order_prefix: ClassVar[str]
    credentials_model: ClassVar[Type[GatewayCredentials]]
    auth_header_name: ClassVar[str] = "Authorization"
    supports_fiscalization: ClassVar[bool] = False
    supports_confirmation: ClassVar[bool] = False

    def validate_request(self, request: CreatePaymentRequest) -> None:
        """Gateway-specific input checks. Raises ValidationError."""

    def cashbox_code(
        self,
        credentials: GatewayCredentials,
        request: CreatePaymentRequest,
    ) -> Optional[str]:
        return None

    @abstractmethod
    def build_auth_header(self, credentials: GatewayCredentials) -> AuthHeader:
        """
        Sign a request. Called once per HTTP attempt, never cached.
        """
        raise NotImplementedError

    @abstractmethod
    def build_create_call(
        self,
        credentials: GatewayCredentials,
        request: CreatePaymentRequest,
        order_id: str,
        transaction_id: str,
        amount_minor: int,
        auth: AuthHeader,
    ) -> GatewayCall:
        raise NotImplementedError

    def resign_call(self, call: GatewayCall, auth: AuthHeader) -> GatewayCall:
        """Adapt a prepared call to a fresh header for a retry attempt.

        Gateways that echo the signing timestamp in the body override this.
        """
        return call

    @abstractmethod
    def parse_outcome(self, response: Dict[str, Any], http_status: int) -> GatewayOutcome:
        """
        Extract the business result of any call from a response body.
        """
        raise NotImplementedError

    def parse_confirm_outcome(self, response: Dict[str, Any], http_status: int) -> GatewayOutcome:
        return self.parse_outcome(response, http_status)

    def is_settled(self, transaction) -> bool:
        """Whether money has moved for a ``success`` transaction.

        Gateways whose create call only issues a payable document (a receipt
        the customer still has to pay) override this.
        """
        return True

    @abstractmethod
    def build_status_call(self, credentials: GatewayCredentials, transaction) -> GatewayCall:
        raise NotImplementedError

    @abstractmethod
    def build_reversal_call(self, credentials: GatewayCredentials, transaction) -> GatewayCall:
        raise NotImplementedError

    def build_fiscal_call(
        self,
        credentials: GatewayCredentials,
        transaction,
        fiscal_url: str,
    ) -> GatewayCall:
        raise ValidationError(
            f"Fiscalization is not supported by {self.kind.value}",
            {"gateway": self.kind.value},
        )

    def build_confirm_call(self, credentials: GatewayCredentials, transaction) -> GatewayCall:
        raise ValidationError(
            f"Payment confirmation is not supported by {self.kind.value}",
            {"gateway": self.kind.value},
        )
