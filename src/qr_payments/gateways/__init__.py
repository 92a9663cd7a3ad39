"""Gateway integrations: request shapes, signing and response parsing per provider."""

from typing import Dict, Type

from .base import (
    PLACEHOLDER,
    GatewayKind,
    GatewayBase,
    GatewayCall,
    GatewayOutcome,
    GatewayCredentials,
    FastPayCredentials,
    ClickPassCredentials,
    PaymeQRCredentials,
    CreatePaymentRequest,
)
from .fastpay import FastPayGateway
from .click_pass import ClickPassGateway
from .payme_qr import PaymeQRGateway

GATEWAYS: Dict[GatewayKind, Type[GatewayBase]] = {
    GatewayKind.FASTPAY: FastPayGateway,
    GatewayKind.CLICK_PASS: ClickPassGateway,
    GatewayKind.PAYME_QR: PaymeQRGateway,
}


def get_gateway(kind) -> GatewayBase:
    """Instantiate the gateway for a kind or its string value."""
    try:
        return GATEWAYS[GatewayKind(kind)]()
    except ValueError:
        raise ValueError(f"Unknown gateway: {kind}") from None


__all__ = [
    "PLACEHOLDER",
    "GatewayKind",
    "GatewayBase",
    "GatewayCall",
    "GatewayOutcome",
    "GatewayCredentials",
    "FastPayCredentials",
    "ClickPassCredentials",
    "PaymeQRCredentials",
    "CreatePaymentRequest",
    "FastPayGateway",
    "ClickPassGateway",
    "PaymeQRGateway",
    "GATEWAYS",
    "get_gateway",
]
