"""Append-only audit trail for gateway actions."""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .database.models import AuditAction, AuditEntry
from .database.repository import AuditRepository
from .gateways.base import GatewayCall, GatewayKind
from .http_client import GatewayCallResult

logger = logging.getLogger(__name__)

# Never written to the audit log
REDACTED_KEYS = frozenset({"otp_data", "otp", "secret_key", "key_password", "auth_header"})


def redact(details: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy of ``details`` with OTP payloads and secrets removed, recursively."""
    if details is None:
        return None
    cleaned = {}
    for key, value in details.items():
        if key in REDACTED_KEYS:
            continue
        cleaned[key] = redact(value) if isinstance(value, dict) else value
    return cleaned


class AuditLogger:
    """
    Writes one audit row per state transition or external call.

    Entries join the caller's session and become durable with its next commit.
    """

    def __init__(self, session: AsyncSession, gateway: GatewayKind):
        self.gateway = GatewayKind(gateway)
        self._repo = AuditRepository(session)

    async def record(
        self,
        action: AuditAction,
        transaction_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        employee_id: Optional[str] = None,
        terminal_id: Optional[str] = None,
        call: Optional[GatewayCall] = None,
        result: Optional[GatewayCallResult] = None,
    ) -> AuditEntry:
        """Append an entry.

        Args:
            action: Audit action tag.
            transaction_id: Internal transaction id, None for actions that are
                not transaction-scoped (config errors, validation rejects).
            details: JSON-serializable context; secrets are stripped.
            employee_id: Acting employee, if known.
            terminal_id: Originating terminal, if known.
            call: Outbound request, for method and endpoint.
            result: Gateway response, for HTTP status and timing.
        """
        entry = await self._repo.append(
            gateway=self.gateway.value,
            action=AuditAction(action).value,
            transaction_id=transaction_id,
            details=redact(details),
            employee_id=employee_id,
            terminal_id=terminal_id,
            http_method=call.method if call else None,
            endpoint=call.endpoint if call else None,
            response_status=result.http_status if result else None,
            response_time_ms=result.response_time_ms if result else None,
        )
        if action in (AuditAction.PAYMENT_FAILED, AuditAction.ERROR_OCCURRED):
            logger.warning(f"{self.gateway.value} {AuditAction(action).value}: transaction={transaction_id}")
        return entry
