# 📂 backend/hostbill/payment_gateway.py — crypto payment gateway (Confirmo) client
# -----------------------------------------------------------------------------
# Purpose:
#   • create_invoice(): payment link for one of our invoices. The customer pays
#     the USD amount in crypto; the operator is settled in
#     CONFIRMO_SETTLEMENT_CURRENCY (USDC by default).
#   • get_invoice() / cancel_invoice(): status lookup and cancellation.
#   • verify_signature(): HMAC-SHA256 of the raw webhook body, hex encoded,
#     compared in constant time.
# All calls use httpx with `Authorization: Bearer <CONFIRMO_API_KEY>`.
# -----------------------------------------------------------------------------

from __future__ import annotations

import hashlib
import hmac
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from .config import get_settings
from .utils import d2, get_logger

settings = get_settings()
log = get_logger("confirmo")


class PaymentGatewayError(Exception):
    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


class ConfirmoClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or settings.CONFIRMO_API_KEY
        if not self.api_key:
            raise PaymentGatewayError("CONFIRMO_API_KEY is not configured", 500)
        self.base_url = (base_url or settings.CONFIRMO_API_BASE).rstrip("/")
        self._transport = transport

    async def _call(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=settings.CONFIRMO_HTTP_TIMEOUT,
                transport=self._transport,
            ) as client:
                r = await client.request(method, path, json=payload, headers=headers)
                r.raise_for_status()
                return r.json()
        except httpx.HTTPStatusError as e:
            try:
                data = e.response.json()
            except ValueError:
                data = {}
            message = data.get("message") or data.get("error") or "Failed to call payment gateway"
            log.error("[Confirmo] %s %s -> %s %s", method, path, e.response.status_code, data)
            raise PaymentGatewayError(f"Confirmo Error: {message}", e.response.status_code)
        except httpx.HTTPError as e:
            log.error("[Confirmo] %s %s failed: %s", method, path, e)
            raise PaymentGatewayError(f"Confirmo Error: {e}")

    async def create_invoice(
        self,
        invoice_id: str,
        invoice_number: str,
        amount: Decimal,
        total_miners: int,
        unit_price: Decimal,
        customer_email: str,
        notify_email: Optional[str],
        settlement_currency: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = {
            "invoice": {"amount": str(d2(amount)), "currencyFrom": "USD"},
            "settlement": {"currency": settlement_currency or settings.CONFIRMO_SETTLEMENT_CURRENCY},
            "product": {
                "name": f"{settings.PROJECT_NAME} Invoice {invoice_number}",
                "description": f"Electricity charges for {total_miners} miners @ ${d2(unit_price)}/miner",
            },
            "customerEmail": customer_email,
            "notifyEmail": notify_email,
            "reference": invoice_number,
            "returnUrl": settings.confirmo_return_url(invoice_id),
            "notifyUrl": settings.confirmo_notify_url(),
        }
        log.info("[Confirmo] creating payment for %s (%s USD)", invoice_number, payload["invoice"]["amount"])
        return await self._call("POST", "/invoices", payload)

    async def get_invoice(self, gateway_invoice_id: str) -> Dict[str, Any]:
        return await self._call("GET", f"/invoices/{gateway_invoice_id}")

    async def cancel_invoice(self, gateway_invoice_id: str) -> Dict[str, Any]:
        return await self._call("DELETE", f"/invoices/{gateway_invoice_id}")
