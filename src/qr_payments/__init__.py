# qr_payments package
__version__ = "0.1.0"

from .database import (
    Transaction,
    ConfigItem,
    AuditEntry,
    Reversal,
    Fiscalization,
    TransactionStatus,
    AuditAction,
    TransactionFilters,
    init_db,
    close_db,
    get_db,
)
from .gateways import (
    GatewayKind,
    CreatePaymentRequest,
    FastPayGateway,
    ClickPassGateway,
    PaymeQRGateway,
    get_gateway,
)
from .config_store import ConfigStore, ConfigValidation
from .admin import CredentialAdmin
from .http_client import GatewayHttpClient
from .services import PaymentService, PaymentResult
from .exceptions import (
    QRPaymentsError,
    ValidationError,
    ConfigurationError,
    NetworkError,
    GatewayTimeoutError,
    GatewayBusinessError,
    InternalError,
    InvalidTransitionError,
    IdentifierGenerationError,
    TransactionNotFoundError,
)

__all__ = [
    "__version__",
    # Database
    "Transaction",
    "ConfigItem",
    "AuditEntry",
    "Reversal",
    "Fiscalization",
    "TransactionStatus",
    "AuditAction",
    "TransactionFilters",
    "init_db",
    "close_db",
    "get_db",
    # Gateways
    "GatewayKind",
    "CreatePaymentRequest",
    "FastPayGateway",
    "ClickPassGateway",
    "PaymeQRGateway",
    "get_gateway",
    # Services
    "ConfigStore",
    "ConfigValidation",
    "CredentialAdmin",
    "GatewayHttpClient",
    "PaymentService",
    "PaymentResult",
    # Errors
    "QRPaymentsError",
    "ValidationError",
    "ConfigurationError",
    "NetworkError",
    "GatewayTimeoutError",
    "GatewayBusinessError",
    "InternalError",
    "InvalidTransitionError",
    "IdentifierGenerationError",
    "TransactionNotFoundError",
]
