"""Per-gateway credential store backed by the ``gateway_config`` table."""

import os
import time
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken
from pydantic import ValidationError as SchemaError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .database.repository import ConfigRepository
from .exceptions import ConfigurationError
from .gateways.base import PLACEHOLDER, GatewayCredentials, GatewayKind
from .gateways import GATEWAYS

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300
ENCRYPTION_KEY_ENV = "CONFIG_ENCRYPTION_KEY"
MASKED_VALUE = "[ENCRYPTED]"

# Keys stored encrypted by reset_to_defaults and setup_from_env
SECRET_KEYS = frozenset({"secret_key", "key_password"})

KEY_DESCRIPTIONS: Dict[GatewayKind, Dict[str, str]] = {
    GatewayKind.FASTPAY: {
        "merchant_service_user_id": "Cash register ID provided by Uzum Bank",
        "secret_key": "Secret key provided by Uzum Bank for authentication",
        "service_id": "Branch/service identifier provided by Uzum Bank",
        "api_base_url": "Uzum Bank FastPay API base URL",
        "cashbox_code_prefix": "Prefix for cash register codes",
    },
    GatewayKind.CLICK_PASS: {
        "service_id": "Service ID provided by Click",
        "merchant_id": "Merchant ID provided by Click",
        "merchant_user_id": "Merchant user ID used to sign requests",
        "secret_key": "Secret key provided by Click for authentication",
        "api_base_url": "Click API base URL",
    },
    GatewayKind.PAYME_QR: {
        "cashbox_id": "Payme cashbox ID",
        "key_password": "Payme cashbox key",
        "api_base_url": "Payme checkout API base URL",
    },
}

COMMON_DESCRIPTIONS = {
    "request_timeout_ms": "HTTP request timeout in milliseconds",
    "max_retry_attempts": "Maximum number of attempts for a payment call",
    "enable_logging": "Enable detailed logging for debugging",
}


@dataclass
class ConfigValidation:
    is_valid: bool
    missing_keys: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "missing_keys": self.missing_keys,
            "errors": self.errors,
        }


def describe_key(kind: GatewayKind, key: str) -> Optional[str]:
    return KEY_DESCRIPTIONS[kind].get(key) or COMMON_DESCRIPTIONS.get(key)


class ConfigStore:
    """
    Credentials for one gateway, cached in-process for ``ttl_seconds``.

    The cache is checked on read and only expires with time; ``set`` does not
    invalidate it. Call :meth:`invalidate` to force a reload after a write.

    Example:
        store = ConfigStore(db_manager.session_factory, GatewayKind.FASTPAY)
        credentials = await store.load()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: GatewayKind,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        encryption_key: Optional[str] = None,
    ):
        self._session_factory = session_factory
        self.gateway = GatewayKind(gateway)
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._encryption_key = encryption_key
        self._credentials_model = GATEWAYS[self.gateway].credentials_model
        self._values: Optional[Dict[str, str]] = None
        self._credentials: Optional[GatewayCredentials] = None
        self._loaded_at: Optional[float] = None

    def _fernet(self) -> Fernet:
        key = self._encryption_key or os.getenv(ENCRYPTION_KEY_ENV)
        if not key:
            raise ConfigurationError(
                f"{ENCRYPTION_KEY_ENV} is not set; encrypted configuration is unavailable"
            )
        try:
            return Fernet(key)
        except ValueError as e:
            raise ConfigurationError(f"Invalid {ENCRYPTION_KEY_ENV}: {e}") from e

    def _encrypt(self, value: str) -> str:
        return self._fernet().encrypt(value.encode("utf-8")).decode("utf-8")

    def _decrypt(self, key: str, value: str) -> str:
        try:
            return self._fernet().decrypt(value.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise ConfigurationError(
                f"Cannot decrypt {self.gateway.value}.{key}",
                {"gateway": self.gateway.value, "key": key},
            ) from e

    def _plain_value(self, item) -> str:
        if item.is_encrypted and item.value != PLACEHOLDER:
            return self._decrypt(item.key, item.value)
        return item.value

    async def _read_values(self) -> Dict[str, str]:
        async with self._session_factory() as session:
            items = await ConfigRepository(session).list(self.gateway.value, active_only=True)
        return {item.key: self._plain_value(item) for item in items}

    def _cache_fresh(self) -> bool:
        return (
            self._loaded_at is not None
            and self._clock() - self._loaded_at < self.ttl_seconds
        )

    async def _cached_values(self) -> Dict[str, str]:
        if self._values is None or not self._cache_fresh():
            self._values = await self._read_values()
            self._credentials = None
            self._loaded_at = self._clock()
        return self._values

    def invalidate(self) -> None:
        """Drop the cache so the next read goes to the database."""
        self._values = None
        self._credentials = None
        self._loaded_at = None

    async def get(self, key: str) -> Optional[str]:
        """Return the decrypted value of an active key, or None."""
        return (await self._cached_values()).get(key)

    async def get_all(self) -> List[Dict[str, Any]]:
        """List every config item for the gateway with encrypted values masked."""
        async with self._session_factory() as session:
            items = await ConfigRepository(session).list(self.gateway.value)
        return [
            {
                "key": item.key,
                "value": MASKED_VALUE if item.is_encrypted and item.value != PLACEHOLDER else item.value,
                "description": item.description,
                "is_encrypted": item.is_encrypted,
                "is_active": item.is_active,
            }
            for item in items
        ]

    async def set(
        self,
        key: str,
        value: str,
        description: Optional[str] = None,
        encrypt: bool = False,
    ) -> None:
        """Insert or update a key.

        Raises:
            ConfigurationError: If ``encrypt`` is requested without an encryption key.
        """
        value = str(value)
        stored = self._encrypt(value) if encrypt and value != PLACEHOLDER else value
        async with self._session_factory() as session:
            await ConfigRepository(session).upsert(
                self.gateway.value,
                key,
                stored,
                description=description,
                is_encrypted=encrypt,
            )
            await session.commit()
        logger.info(f"Config {self.gateway.value}.{key} updated (encrypted={encrypt})")

    def _check(self, values: Dict[str, str]) -> ConfigValidation:
        missing = [
            key for key in self._credentials_model.REQUIRED_KEYS
            if not values.get(key) or values[key] == PLACEHOLDER
        ]
        errors = [f"Missing required configuration: {key}" for key in missing]
        if not missing:
            try:
                self._credentials_model.model_validate(self._with_defaults(values))
            except SchemaError as e:
                errors.extend(
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                )
        return ConfigValidation(is_valid=not errors, missing_keys=missing, errors=errors)

    def _with_defaults(self, values: Dict[str, str]) -> Dict[str, str]:
        merged = dict(self._credentials_model.DEFAULTS)
        merged.update(values)
        return merged

    async def validate(self) -> ConfigValidation:
        """Check the stored configuration without touching the cache."""
        return self._check(await self._read_values())

    async def load(self) -> GatewayCredentials:
        """Typed credentials for the gateway, served from cache while fresh.

        Raises:
            ConfigurationError: If a required key is absent, holds the
                placeholder, or a value fails the gateway schema.
        """
        values = await self._cached_values()
        if self._credentials is not None:
            return self._credentials

        validation = self._check(values)
        if not validation.is_valid:
            logger.error(
                f"{self.gateway.value} configuration invalid: {', '.join(validation.errors)}"
            )
            raise ConfigurationError(
                f"{self.gateway.value} is not configured: {'; '.join(validation.errors)}",
                validation.to_dict(),
            )

        self._credentials = self._credentials_model.model_validate(self._with_defaults(values))
        return self._credentials

    async def reset_to_defaults(self) -> None:
        """Write placeholders for required keys and defaults for the rest."""
        defaults = {key: PLACEHOLDER for key in self._credentials_model.REQUIRED_KEYS}
        defaults.update(self._credentials_model.DEFAULTS)
        for key, value in defaults.items():
            await self.set(
                key,
                value,
                description=describe_key(self.gateway, key),
                encrypt=key in SECRET_KEYS,
            )
        logger.info(f"{self.gateway.value} configuration reset to defaults")
