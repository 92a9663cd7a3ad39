"""Thin FastAPI adapter over the payment core.

Translates PaymentResult and QRPaymentsError into HTTP responses; all payment
logic lives in :mod:`qr_payments.services`.
"""

import math
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncSession

from .admin import CredentialAdmin
from .auth import PAYMENT_RATE_LIMIT, get_employee_id, limiter, verify_api_key
from .config_store import DEFAULT_TTL_SECONDS, ConfigStore
from .database import TransactionFilters, close_db, get_db, init_db
from .exceptions import QRPaymentsError
from .gateways import CreatePaymentRequest, GatewayKind, get_gateway
from .http_client import GatewayHttpClient
from .services import PaymentResult, PaymentService

logger = logging.getLogger(__name__)

# Everything not listed (declines included) is a business outcome: HTTP 200
ERROR_STATUS_CODES = {
    "validation_error": 400,
    "not_found": 404,
    "invalid_transition": 409,
    "configuration_error": 500,
    "internal_error": 500,
    "identifier_exhausted": 500,
    "network_error": 502,
    "timeout": 504,
}


def status_code_for(error_code: Optional[str]) -> int:
    return ERROR_STATUS_CODES.get(error_code, 200)


def _respond(result: PaymentResult) -> JSONResponse:
    status_code = 200 if result.success else status_code_for(result.error_code)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result.model_dump()))


class CreatePaymentBody(BaseModel):
    """Request body for creating a payment."""
    amount: Decimal = Field(..., gt=0, max_digits=15, decimal_places=2, description="Amount in UZS")
    terminal_id: str = Field(..., min_length=1, max_length=100)
    otp_data: Optional[str] = Field(default=None, description="Scanned QR/OTP payload")
    description: Optional[str] = None
    account_data: Dict[str, Any] = Field(default_factory=dict)


class ConfirmBody(BaseModel):
    action: str = Field(..., pattern="^(confirm|reject)$")


class ReverseBody(BaseModel):
    reason: str = Field(..., min_length=1)


class FiscalizeBody(BaseModel):
    fiscal_url: str = Field(..., min_length=1)


class LinkSaleBody(BaseModel):
    pos_sale_id: str = Field(..., min_length=1, max_length=36)


class ConfigUpdateBody(BaseModel):
    key: str = Field(..., min_length=1, max_length=100)
    value: str
    description: Optional[str] = None
    encrypt: Optional[bool] = None


def get_gateway_kind(gateway: str) -> GatewayKind:
    try:
        return GatewayKind(gateway)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown gateway: {gateway}") from None


async def get_payment_service(
    request: Request,
    kind: GatewayKind = Depends(get_gateway_kind),
    db: AsyncSession = Depends(get_db),
) -> PaymentService:
    state = request.app.state
    return PaymentService(db, get_gateway(kind), state.config_stores[kind], state.gateway_http)


def get_credential_admin(
    request: Request,
    kind: GatewayKind = Depends(get_gateway_kind),
) -> CredentialAdmin:
    state = request.app.state
    return CredentialAdmin(state.session_factory, kind, state.config_stores[kind])


payments_router = APIRouter(
    prefix="/api/payments/{gateway}",
    tags=["payments"],
    dependencies=[Depends(verify_api_key)],
)
admin_router = APIRouter(
    prefix="/api/admin/{gateway}",
    tags=["admin"],
    dependencies=[Depends(verify_api_key)],
)


@payments_router.post("")
@limiter.limit(PAYMENT_RATE_LIMIT)
async def create_payment(
    request: Request,
    body: CreatePaymentBody,
    employee_id: str = Depends(get_employee_id),
    service: PaymentService = Depends(get_payment_service),
):
    """
    Charge a scanned QR/OTP code.

    A declined payment is a business outcome and returns 200 with
    ``success: false``.
    """
    payment_request = CreatePaymentRequest(
        amount_major=body.amount,
        employee_id=employee_id,
        terminal_id=body.terminal_id,
        otp_data=body.otp_data,
        description=body.description,
        account_data=body.account_data,
    )
    return _respond(await service.create_payment(payment_request))


@payments_router.get("")
async def list_transactions(
    status: Optional[str] = Query(default=None),
    employee_id: Optional[str] = Query(default=None),
    terminal_id: Optional[str] = Query(default=None),
    start_date: Optional[datetime] = Query(default=None),
    end_date: Optional[datetime] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    service: PaymentService = Depends(get_payment_service),
):
    filters = TransactionFilters(
        status=status,
        employee_id=employee_id,
        terminal_id=terminal_id,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    items, total = await service.list_transactions(filters)
    return {
        "success": True,
        "data": {
            "transactions": items,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
            },
        },
    }


@payments_router.get("/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    service: PaymentService = Depends(get_payment_service),
):
    return {"success": True, "data": await service.get_transaction(transaction_id)}


@payments_router.get("/{transaction_id}/status")
async def check_status(
    transaction_id: str,
    service: PaymentService = Depends(get_payment_service),
):
    return _respond(await service.check_payment_status(transaction_id))


@payments_router.post("/{transaction_id}/confirm")
async def confirm_payment(
    transaction_id: str,
    body: ConfirmBody,
    employee_id: str = Depends(get_employee_id),
    service: PaymentService = Depends(get_payment_service),
):
    return _respond(await service.confirm_payment(transaction_id, body.action, employee_id))


@payments_router.put("/{order_id}/reverse")
async def reverse_payment(
    order_id: str,
    body: ReverseBody,
    employee_id: str = Depends(get_employee_id),
    service: PaymentService = Depends(get_payment_service),
):
    return _respond(await service.reverse_payment(order_id, body.reason, employee_id))


@payments_router.post("/{transaction_id}/fiscalize")
async def fiscalize(
    transaction_id: str,
    body: FiscalizeBody,
    service: PaymentService = Depends(get_payment_service),
):
    return _respond(await service.submit_fiscalization(transaction_id, body.fiscal_url))


@payments_router.post("/{transaction_id}/link-transaction")
async def link_pos_sale(
    transaction_id: str,
    body: LinkSaleBody,
    service: PaymentService = Depends(get_payment_service),
):
    return _respond(await service.link_pos_sale(transaction_id, body.pos_sale_id))


@admin_router.get("/config")
async def get_config(admin: CredentialAdmin = Depends(get_credential_admin)):
    validation = await admin.store.validate()
    return {
        "success": True,
        "data": {"config": await admin.list_config(), "validation": validation.to_dict()},
    }


@admin_router.put("/config")
async def update_config(
    body: ConfigUpdateBody,
    admin: CredentialAdmin = Depends(get_credential_admin),
):
    await admin.set_config(body.key, body.value, body.description, body.encrypt)
    return {"success": True, "data": {"config": await admin.list_config()}}


@admin_router.post("/config/test")
async def test_config(admin: CredentialAdmin = Depends(get_credential_admin)):
    outcome = await admin.test_config()
    return JSONResponse(status_code=200 if outcome["success"] else 400, content=outcome)


@admin_router.post("/config/reset")
async def reset_config(admin: CredentialAdmin = Depends(get_credential_admin)):
    return {"success": True, "data": await admin.reset_to_defaults()}


@admin_router.get("/status")
async def gateway_status(admin: CredentialAdmin = Depends(get_credential_admin)):
    return {"success": True, "data": await admin.status()}


async def _qr_payments_error_handler(request: Request, exc: QRPaymentsError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code_for(exc.error_code),
        content={"success": False, **exc.to_dict()},
    )


def create_app(
    database_url: Optional[str] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    config_ttl_seconds: float = DEFAULT_TTL_SECONDS,
) -> FastAPI:
    """Build the application.

    Args:
        database_url: Overrides ``DATABASE_URL``.
        http_client: Pre-built ``httpx.AsyncClient`` for gateway calls.
        config_ttl_seconds: Credential cache lifetime.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        manager = await init_db(database_url)
        app.state.session_factory = manager.session_factory
        app.state.gateway_http = GatewayHttpClient(http_client)
        app.state.config_stores = {
            kind: ConfigStore(manager.session_factory, kind, ttl_seconds=config_ttl_seconds)
            for kind in GatewayKind
        }
        logger.info("QR payments API started")
        yield
        await app.state.gateway_http.aclose()
        await close_db()

    app = FastAPI(title="QR Payments Gateway API", lifespan=lifespan)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(QRPaymentsError, _qr_payments_error_handler)
    app.include_router(payments_router)
    app.include_router(admin_router)
    return app


app = create_app()
