"""
Order — 注文集約 (Order Aggregate)

注文の状態と状態遷移のルールを持つ。

状態遷移 (この決済サブシステムが起こすもの):
    criado → aguardando_pagamento   (決済を作成した)
    aguardando_pagamento → pago      (決済事業者が approved を返した)
    aguardando_pagamento → cancelado (rejected / cancelled / refunded / charged_back)

separando / enviado / entregue は管理画面の物流操作で進む後続状態。
在庫の観点では pago 以降はすべて「支払い済み」として扱う。
"""

from enum import Enum

from pydantic import BaseModel

from ..db import iso, load_json


class OrderStatus(str, Enum):
    CREATED = "criado"
    AWAITING_PAYMENT = "aguardando_pagamento"
    PAID = "pago"
    PICKING = "separando"
    SHIPPED = "enviado"
    DELIVERED = "entregue"
    CANCELLED = "cancelado"


# 支払い済み (在庫を引き落とし済み) とみなす状態
PAID_STATUSES = frozenset({
    OrderStatus.PAID,
    OrderStatus.PICKING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
})

# Webhook がこれ以上状態を変えない状態
LOCKED_STATUSES = PAID_STATUSES | {OrderStatus.CANCELLED}

# 新しい決済を作成してよい状態
PAYABLE_STATUSES = frozenset({OrderStatus.CREATED, OrderStatus.AWAITING_PAYMENT})


class ProviderStatus(str, Enum):
    """Mercado Pago の payment.status"""
    PENDING = "pending"
    APPROVED = "approved"
    AUTHORIZED = "authorized"
    IN_PROCESS = "in_process"
    IN_MEDIATION = "in_mediation"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    CHARGED_BACK = "charged_back"


_TRANSITIONS: dict[ProviderStatus, OrderStatus] = {
    ProviderStatus.APPROVED: OrderStatus.PAID,
    ProviderStatus.PENDING: OrderStatus.AWAITING_PAYMENT,
    ProviderStatus.IN_PROCESS: OrderStatus.AWAITING_PAYMENT,
    ProviderStatus.AUTHORIZED: OrderStatus.AWAITING_PAYMENT,
    ProviderStatus.IN_MEDIATION: OrderStatus.AWAITING_PAYMENT,
    ProviderStatus.REJECTED: OrderStatus.CANCELLED,
    ProviderStatus.CANCELLED: OrderStatus.CANCELLED,
    ProviderStatus.REFUNDED: OrderStatus.CANCELLED,
    ProviderStatus.CHARGED_BACK: OrderStatus.CANCELLED,
}


def map_provider_status(provider_status: str | None) -> OrderStatus:
    """決済事業者のステータスを注文ステータスに変換する。未知の値は保守的に支払い待ち。"""
    try:
        status = ProviderStatus(provider_status)
    except ValueError:
        return OrderStatus.AWAITING_PAYMENT
    return _TRANSITIONS[status]


class Decision(str, Enum):
    """Webhook を受けたときに注文へ何をするか"""
    APPLY = "apply"
    ALREADY_PAID = "already_pago"
    MANUAL_REVIEW = "manual_review"
    ALREADY_CANCELLED = "already_cancelado"


class OrderItem(BaseModel):
    product_id: str
    product_name: str
    size: str
    quantity: int
    unit_price: float

    @property
    def line_total(self) -> float:
        return round(self.unit_price * self.quantity, 2)


class OrderAggregate:
    """
    注文集約 — 行 (orders + order_items) から状態を復元する。
    """

    def __init__(self) -> None:
        self.id: str | None = None
        self.user_id: str = ""
        self.status: OrderStatus = OrderStatus.CREATED
        self.subtotal: float = 0
        self.shipping_cost: float = 0
        self.total: float = 0
        self.shipping_service: str | None = None
        self.shipping_deadline: str | None = None
        self.payment_method: str | None = None
        self.payment_id: str | None = None
        self.address_snapshot: dict | None = None
        self.tracking_code: str | None = None
        self.created_at: str | None = None
        self.updated_at: str | None = None
        self.items: list[OrderItem] = []

    # ── 状態遷移の判定 ───────────────────────────

    @property
    def is_paid(self) -> bool:
        return self.status in PAID_STATUSES

    def decide(self, target: OrderStatus) -> Decision:
        """
        Webhook が示す遷移先に対する判定。

        支払い済みの注文には何もしない (在庫の二重引き落とし防止)。
        キャンセル済みの注文に approved が来た場合は自動で戻さず、
        手動確認に回す。
        """
        if self.is_paid:
            return Decision.ALREADY_PAID
        if self.status is OrderStatus.CANCELLED:
            if target is OrderStatus.PAID:
                return Decision.MANUAL_REVIEW
            return Decision.ALREADY_CANCELLED
        return Decision.APPLY

    # ── 状態適用メソッド ──────────────────────────

    def apply_payment_created(self, payment_id: str | None, payment_method: str) -> None:
        self.payment_id = payment_id
        self.payment_method = payment_method
        self.status = OrderStatus.AWAITING_PAYMENT

    def apply_payment_status(
        self,
        status: OrderStatus,
        payment_id: str,
        payment_method: str,
    ) -> None:
        self.status = status
        self.payment_id = payment_id
        self.payment_method = payment_method

    # ── 復元・変換 ───────────────────────────────

    @classmethod
    def from_row(cls, row, items: list[OrderItem] | None = None) -> "OrderAggregate":
        agg = cls()
        agg.id = str(row.id)
        agg.user_id = row.user_id
        agg.status = OrderStatus(row.status)
        agg.subtotal = float(row.subtotal)
        agg.shipping_cost = float(row.shipping_cost)
        agg.total = float(row.total)
        agg.shipping_service = row.shipping_service
        agg.shipping_deadline = row.shipping_deadline
        agg.payment_method = row.payment_method
        agg.payment_id = row.payment_id
        agg.address_snapshot = load_json(row.address_snapshot)
        agg.tracking_code = row.tracking_code
        agg.created_at = iso(row.created_at)
        agg.updated_at = iso(row.updated_at)
        agg.items = list(items or [])
        return agg

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status.value,
            "subtotal": self.subtotal,
            "shipping_cost": self.shipping_cost,
            "total": self.total,
            "shipping_service": self.shipping_service,
            "shipping_deadline": self.shipping_deadline,
            "payment_method": self.payment_method,
            "payment_id": self.payment_id,
            "address_snapshot": self.address_snapshot,
            "tracking_code": self.tracking_code,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "items": [
                {**item.model_dump(), "line_total": item.line_total}
                for item in self.items
            ],
        }
