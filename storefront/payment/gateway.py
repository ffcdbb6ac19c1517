"""
Payment — Mercado Pago クライアント

外部の決済事業者に対する送信側アダプタ。
  - Pix:   POST /v1/payments            → QR コード・コピー&ペースト用コード
  - カード: POST /checkout/preferences   → ホスト型チェックアウトの URL
  - 照会:   GET  /v1/payments/{id}       → Webhook が信頼する唯一の支払い状態

POST には注文 ID と支払い方法から作る冪等キーを必ず付ける。
事業者の 4xx は PaymentRejectedError (生のペイロード付き)、
接続不能・5xx・未設定は ProviderUnavailableError。
"""

import logging

import httpx
from pydantic import BaseModel

from ..errors import (
    PaymentNotFoundError,
    PaymentRejectedError,
    ProviderUnavailableError,
)

logger = logging.getLogger(__name__)

CURRENCY = "BRL"
DEFAULT_PAYER_EMAIL = "cliente@loja.com"
DEFAULT_PAYER_NAME = "Cliente"


class Payer(BaseModel):
    email: str | None = None
    name: str | None = None


class LineItem(BaseModel):
    title: str
    quantity: int
    unit_price: float


class PixCharge(BaseModel):
    payment_id: str
    status: str | None = None
    qr_code: str | None = None
    qr_code_base64: str | None = None


class CardCheckout(BaseModel):
    preference_id: str | None = None
    checkout_url: str | None = None
    sandbox_url: str | None = None


class ProviderPayment(BaseModel):
    id: str
    status: str | None = None
    external_reference: str | None = None
    payment_method_id: str | None = None


def idempotency_key(order_id: str, payment_method: str) -> str:
    return f"order-{order_id}-{payment_method}"


class MercadoPagoClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        access_token: str | None,
        base_url: str = "https://api.mercadopago.com",
    ):
        self.client = client
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")

    async def _send(
        self,
        method: str,
        path: str,
        json: dict | None = None,
        idempotency: str | None = None,
    ) -> httpx.Response:
        if not self.access_token:
            raise ProviderUnavailableError("Mercado Pago not configured")

        headers = {"Authorization": f"Bearer {self.access_token}"}
        if idempotency:
            headers["X-Idempotency-Key"] = idempotency
        try:
            return await self.client.request(
                method, f"{self.base_url}{path}", json=json, headers=headers
            )
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(f"Mercado Pago unreachable: {e}") from e

    @staticmethod
    def _payload(resp: httpx.Response, error_message: str) -> dict:
        try:
            data = resp.json()
        except ValueError:
            data = {"raw": resp.text}

        if resp.status_code >= 500:
            logger.error("Mercado Pago %s: HTTP %s %s", error_message, resp.status_code, data)
            raise ProviderUnavailableError(f"{error_message}: provider error {resp.status_code}")
        if resp.status_code >= 400:
            logger.warning("Mercado Pago %s: HTTP %s %s", error_message, resp.status_code, data)
            raise PaymentRejectedError(error_message, details=data)
        return data

    # ── 決済作成 ─────────────────────────────────

    async def create_pix_payment(
        self,
        order_id: str,
        amount: float,
        payer: Payer,
        notification_url: str,
    ) -> PixCharge:
        resp = await self._send(
            "POST",
            "/v1/payments",
            json={
                "transaction_amount": amount,
                "description": f"Pedido #{order_id[:8]}",
                "payment_method_id": "pix",
                "payer": {
                    "email": payer.email or DEFAULT_PAYER_EMAIL,
                    "first_name": (payer.name or DEFAULT_PAYER_NAME).split(" ")[0],
                },
                "notification_url": notification_url,
                "external_reference": order_id,
            },
            idempotency=idempotency_key(order_id, "pix"),
        )
        data = self._payload(resp, "Failed to create Pix payment")
        transaction = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
        return PixCharge(
            payment_id=str(data["id"]),
            status=data.get("status"),
            qr_code=transaction.get("qr_code"),
            qr_code_base64=transaction.get("qr_code_base64"),
        )

    async def create_card_preference(
        self,
        order_id: str,
        items: list[LineItem],
        payer: Payer,
        notification_url: str,
        back_url: str,
    ) -> CardCheckout:
        resp = await self._send(
            "POST",
            "/checkout/preferences",
            json={
                "items": [
                    {**item.model_dump(), "currency_id": CURRENCY} for item in items
                ],
                "payer": {
                    "email": payer.email or DEFAULT_PAYER_EMAIL,
                    "name": payer.name or DEFAULT_PAYER_NAME,
                },
                "external_reference": order_id,
                "notification_url": notification_url,
                "back_urls": {
                    "success": back_url,
                    "failure": back_url,
                    "pending": back_url,
                },
                "auto_return": "approved",
                "payment_methods": {
                    "excluded_payment_types": [{"id": "ticket"}],
                    "installments": 3,
                },
            },
            idempotency=idempotency_key(order_id, "card"),
        )
        data = self._payload(resp, "Failed to create card checkout")
        return CardCheckout(
            preference_id=str(data["id"]) if data.get("id") is not None else None,
            checkout_url=data.get("init_point"),
            sandbox_url=data.get("sandbox_init_point"),
        )

    # ── 照会 ─────────────────────────────────────

    async def get_payment(self, payment_id: str) -> ProviderPayment:
        """支払いの正本を事業者から取得する。Webhook 本文の状態は信用しない。"""
        resp = await self._send("GET", f"/v1/payments/{payment_id}")
        if resp.status_code == 404:
            raise PaymentNotFoundError(payment_id)
        data = self._payload(resp, "Failed to fetch payment")
        external_reference = data.get("external_reference")
        return ProviderPayment(
            id=str(data.get("id", payment_id)),
            status=data.get("status"),
            external_reference=str(external_reference) if external_reference else None,
            payment_method_id=data.get("payment_method_id"),
        )
