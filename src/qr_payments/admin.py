"""Credential management operations layered over the config store."""

import os
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .audit import AuditLogger
from .config_store import SECRET_KEYS, ConfigStore, ConfigValidation, describe_key
from .database import AuditAction, ConfigRepository, TransactionRepository
from .exceptions import ConfigurationError
from .gateways import GATEWAYS, GatewayKind

logger = logging.getLogger(__name__)

ENV_PREFIXES = {
    GatewayKind.FASTPAY: "UZUM",
    GatewayKind.CLICK_PASS: "CLICK",
    GatewayKind.PAYME_QR: "PAYME",
}

STATS_WINDOW = timedelta(hours=24)


class CredentialAdmin:
    """
    Set, validate, reset and test one gateway's credentials.

    Consumed by the admin HTTP routes and the CLI.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: GatewayKind,
        config_store: Optional[ConfigStore] = None,
    ):
        self.gateway = GatewayKind(gateway)
        self._session_factory = session_factory
        self.store = config_store or ConfigStore(session_factory, self.gateway)
        self._gateway_impl = GATEWAYS[self.gateway]()

    async def list_config(self) -> List[Dict[str, Any]]:
        return await self.store.get_all()

    async def set_config(
        self,
        key: str,
        value: str,
        description: Optional[str] = None,
        encrypt: Optional[bool] = None,
    ) -> None:
        """Write one key. Secrets are encrypted unless ``encrypt`` says otherwise."""
        if encrypt is None:
            encrypt = key in SECRET_KEYS
        await self.store.set(key, value, description or describe_key(self.gateway, key), encrypt)

    async def validate(self) -> ConfigValidation:
        """Validate stored configuration, auditing an invalid result."""
        validation = await self.store.validate()
        if not validation.is_valid:
            async with self._session_factory() as session:
                await AuditLogger(session, self.gateway).record(
                    AuditAction.ERROR_OCCURRED,
                    details={"stage": "config_validation", **validation.to_dict()},
                )
                await session.commit()
        return validation

    async def reset_to_defaults(self) -> Dict[str, Any]:
        await self.store.reset_to_defaults()
        self.store.invalidate()
        return {
            "config": await self.store.get_all(),
            "validation": (await self.store.validate()).to_dict(),
        }

    async def test_config(self) -> Dict[str, Any]:
        """Load credentials as the payment flow would and sign a header with them.

        No request is sent to the gateway.
        """
        validation = await self.validate()
        if not validation.is_valid:
            return {
                "success": False,
                "error": (
                    f"Configuration invalid: {', '.join(validation.missing_keys) or 'no keys'} missing. "
                    f"Errors: {', '.join(validation.errors)}"
                ),
            }

        self.store.invalidate()
        try:
            credentials = await self.store.load()
            self._gateway_impl.build_auth_header(credentials)
        except ConfigurationError as e:
            return {"success": False, "error": e.message}
        except ValueError as e:
            return {"success": False, "error": f"Cannot sign requests: {e}"}

        logger.info(f"{self.gateway.value} configuration test passed")
        return {"success": True, "message": "Configuration test passed - ready for production"}

    async def status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Configuration validity plus statistics for the last 24 hours."""
        now = now or datetime.utcnow()
        validation = await self.store.validate()
        async with self._session_factory() as session:
            last_updated = await ConfigRepository(session).last_updated(self.gateway.value)
            stats = await TransactionRepository(session).stats(
                self.gateway.value, now - STATS_WINDOW
            )
        return {
            "gateway": self.gateway.value,
            "configuration": {
                **validation.to_dict(),
                "last_updated": last_updated.isoformat() if last_updated else None,
            },
            "statistics_24h": stats,
            "timestamp": now.isoformat(),
        }

    async def setup_from_env(self, environ: Optional[Mapping[str, str]] = None) -> List[str]:
        """Copy ``{PREFIX}_{KEY}`` environment variables into the store.

        Returns:
            Keys that were written.
        """
        environ = os.environ if environ is None else environ
        prefix = ENV_PREFIXES[self.gateway]
        model = self._gateway_impl.credentials_model
        keys = list(model.REQUIRED_KEYS) + [k for k in model.DEFAULTS if k not in model.REQUIRED_KEYS]

        written = []
        for key in keys:
            value = environ.get(f"{prefix}_{key.upper()}")
            if value:
                await self.set_config(key, value)
                written.append(key)

        if written:
            logger.info(f"{self.gateway.value} configuration loaded from environment: {', '.join(written)}")
        else:
            logger.warning(f"No {prefix}_* environment variables found for {self.gateway.value}")
        return written
