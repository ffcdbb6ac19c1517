"""
Order — イベント定義

注文で発生した事実。過去形で命名し、order_events チャネルに発行する。
"""

from datetime import datetime

from pydantic import BaseModel


class OrderCreated(BaseModel):
    """注文が作成された (明細と同一トランザクション)"""
    order_id: str
    user_id: str
    subtotal: float
    shipping_cost: float
    total: float
    item_count: int
    timestamp: datetime


class PaymentCreated(BaseModel):
    """決済事業者に決済を作成した"""
    order_id: str
    payment_method: str
    payment_id: str | None
    timestamp: datetime


class OrderPaid(BaseModel):
    """支払いが承認され、在庫を引き落とした"""
    order_id: str
    payment_id: str
    timestamp: datetime


class OrderCancelled(BaseModel):
    """決済が拒否・取消された"""
    order_id: str
    payment_id: str
    reason: str
    timestamp: datetime


class OrderAwaitingPayment(BaseModel):
    """決済は処理中"""
    order_id: str
    payment_id: str
    timestamp: datetime
