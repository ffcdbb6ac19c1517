"""
Checkout Orchestrator — チェックアウト

購入者が 4 段階で進める:
    住所の選択 → 配送方法の選択 → 支払い方法の選択 → 注文確定

各段階の選択は CheckoutSession (一時的な状態) にだけ保持し、
「注文確定」まで何も永続化しない。

  フロー (place_order):
  ┌─────────────────────────────────────────────────────────┐
  │  1. 住所・配送方法・支払い方法・カートを検証              │
  │  2. 注文と明細を 1 トランザクションで作成 (criado)        │
  │  3. 決済を作成                                           │
  │     ├─ 成功 → カートを空にし、支払い案内を返す           │
  │     └─ 失敗 → カートはそのまま、注文は criado のまま     │
  └─────────────────────────────────────────────────────────┘
自動リトライはしない。購入者が再度操作する。
"""

import logging
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel
from sqlalchemy.orm import sessionmaker

from ..auth import CurrentUser
from ..config import Settings
from ..errors import (
    InvalidInputError,
    ProductNotFoundError,
    StorefrontError,
    error_body,
    status_code_for,
)
from ..inventory import queries as inventory_queries
from ..order import commands as order_commands
from ..order.aggregate import OrderItem
from ..payment import commands as payment_commands
from ..payment.gateway import MercadoPagoClient
from ..publisher import EventPublisher
from ..shipping import queries as shipping_queries
from ..shipping.estimator import ShippingQuote

logger = logging.getLogger(__name__)

REQUIRED_ADDRESS_FIELDS = ("cep", "street", "number", "neighborhood", "city", "state")


class CheckoutStage(str, Enum):
    ADDRESS = "address"
    SHIPPING = "shipping"
    PAYMENT = "payment"
    PLACED = "placed"


class DeliveryAddress(BaseModel):
    cep: str = ""
    street: str = ""
    number: str = ""
    complement: str | None = None
    neighborhood: str = ""
    city: str = ""
    state: str = ""
    label: str | None = None


class CartItem(BaseModel):
    product_id: str
    size: str
    quantity: int


class Cart:
    """購入者のカート。注文確定に成功したときだけ空になる。"""

    def __init__(self, items: list[CartItem] | None = None) -> None:
        self.items: list[CartItem] = list(items or [])

    @property
    def is_empty(self) -> bool:
        return not self.items

    def clear(self) -> None:
        self.items = []


class CheckoutSession:
    """
    チェックアウトの一時状態。

    前の段階を選び直すと、それ以降の選択は無効になる。
    """

    def __init__(self, user: CurrentUser, cart: Cart) -> None:
        self.user = user
        self.cart = cart
        self.stage = CheckoutStage.ADDRESS
        self.address: DeliveryAddress | None = None
        self.quote: ShippingQuote | None = None
        self.shipping_service: str | None = None
        self.payment_method: str | None = None
        self.lines: list[OrderItem] | None = None

    def select_address(self, address: DeliveryAddress) -> None:
        missing = [f for f in REQUIRED_ADDRESS_FIELDS if not getattr(address, f).strip()]
        if missing:
            raise InvalidInputError(f"Address is missing: {', '.join(missing)}")
        self.address = address
        self.lines = None
        self.quote = None
        self.shipping_service = None
        self.payment_method = None
        self.stage = CheckoutStage.SHIPPING

    def select_shipping(self, service: str) -> None:
        if self.stage not in (CheckoutStage.SHIPPING, CheckoutStage.PAYMENT):
            raise InvalidInputError("Select a delivery address first")
        if self.quote is None:
            raise InvalidInputError("Shipping options have not been quoted")
        self.shipping_service = self.quote.option(service).service
        self.payment_method = None
        self.stage = CheckoutStage.PAYMENT

    def select_payment_method(self, method: str) -> None:
        if self.stage is not CheckoutStage.PAYMENT:
            raise InvalidInputError("Select a shipping option first")
        if method not in payment_commands.PAYMENT_METHODS:
            raise InvalidInputError(f"Invalid payment method: {method}")
        self.payment_method = method

    def ensure_ready(self) -> None:
        if self.stage is CheckoutStage.PLACED:
            raise InvalidInputError("Order already placed")
        if self.address is None:
            raise InvalidInputError("Delivery address is required")
        if self.shipping_service is None or self.quote is None:
            raise InvalidInputError("Shipping option is required")
        if self.payment_method is None:
            raise InvalidInputError("Payment method is required")
        if self.cart.is_empty:
            raise InvalidInputError("Cart is empty")


class CheckoutOrchestrator:
    """チェックアウトのオーケストレーター"""

    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: MercadoPagoClient,
        publisher: EventPublisher,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.publisher = publisher
        self.settings = settings

    async def _price_cart(self, db, cart: Cart) -> list[OrderItem]:
        """カートをサーバー側の価格で明細にする。購入時点の商品名と単価を写し取る。"""
        if cart.is_empty:
            raise InvalidInputError("Cart is empty")
        for item in cart.items:
            if item.quantity <= 0:
                raise InvalidInputError(f"Invalid quantity for product {item.product_id}")

        products = await inventory_queries.get_products(
            db, [item.product_id for item in cart.items]
        )
        lines = []
        for item in cart.items:
            product = products.get(item.product_id)
            if product is None or not product["active"]:
                raise ProductNotFoundError(item.product_id)
            if await inventory_queries.get_variant(db, item.product_id, item.size) is None:
                raise ProductNotFoundError(item.product_id, item.size)
            lines.append(OrderItem(
                product_id=item.product_id,
                product_name=product["name"],
                size=item.size,
                quantity=item.quantity,
                unit_price=product["effective_price"],
            ))
        return lines

    async def quote(self, checkout: CheckoutSession) -> ShippingQuote:
        """住所とカートから配送方法の候補を出す。見積もれなければ固定料金表。"""
        if checkout.address is None:
            raise InvalidInputError("Select a delivery address first")

        async with self.session_factory() as db:
            lines = await self._price_cart(db, checkout.cart)
            subtotal = round(sum(line.line_total for line in lines), 2)
            quote = await shipping_queries.quote_shipping(
                db,
                self.settings,
                checkout.address.cep,
                [(item.product_id, item.quantity) for item in checkout.cart.items],
                checkout.address.city,
                checkout.address.state,
                subtotal,
                fallback=True,
            )
        checkout.lines = lines
        checkout.quote = quote
        return quote

    async def place_order(self, checkout: CheckoutSession) -> dict:
        """
        注文を確定する。

        入力不正は例外で返す。決済作成の失敗は success=False の結果で返し、
        作成済みの注文 ID を含める (購入者が同じ注文で再試行できる)。
        """
        checkout.ensure_ready()
        steps: list[dict] = []
        option = checkout.quote.option(checkout.shipping_service)

        async with self.session_factory() as db:
            lines = checkout.lines or await self._price_cart(db, checkout.cart)

            # ── Step 1: 注文と明細を作成 ────────────────
            steps.append(self._step(1, "CreateOrder"))
            agg = await order_commands.create_order(
                db,
                self.publisher,
                user_id=checkout.user.id,
                items=lines,
                shipping_cost=option.price,
                shipping_service=option.service,
                shipping_deadline=option.deadline,
                payment_method=checkout.payment_method,
                address_snapshot=checkout.address.model_dump(),
            )
            steps[-1]["status"] = "COMPLETED"

            # ── Step 2: 決済を作成 ──────────────────────
            steps.append(self._step(2, "CreatePayment"))
            try:
                payment = await payment_commands.create_payment(
                    db,
                    self.gateway,
                    self.publisher,
                    order_id=agg.id,
                    user=checkout.user,
                    payment_method=checkout.payment_method,
                    notification_url=self.settings.notification_url,
                    back_url=self.settings.back_url,
                )
            except StorefrontError as e:
                logger.warning("Payment creation failed for order %s: %s", agg.id, e)
                steps[-1]["status"] = "FAILED"
                steps[-1]["error"] = str(e)
                return {
                    "success": False,
                    "status_code": status_code_for(e),
                    **error_body(e),
                    "order_id": agg.id,
                    "status": agg.status.value,
                    "cart_cleared": False,
                    "steps": steps,
                }
            steps[-1]["status"] = "COMPLETED"

        checkout.cart.clear()
        checkout.stage = CheckoutStage.PLACED
        return {
            "success": True,
            "order_id": agg.id,
            "status": payment["order_status"],
            "subtotal": agg.subtotal,
            "shipping_cost": agg.shipping_cost,
            "total": agg.total,
            "shipping_service": agg.shipping_service,
            "shipping_deadline": agg.shipping_deadline,
            "payment_method": checkout.payment_method,
            "payment": payment,
            "cart_cleared": True,
            "steps": steps,
        }

    @staticmethod
    def _step(number: int, action: str) -> dict:
        return {
            "step": number,
            "action": action,
            "status": "EXECUTING",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
