"""
Order — コマンドハンドラ (書き込み側)

コマンドは状態を変更する操作。状態変更と監査ログを同じ
トランザクションでコミットし、コミット後に Redis Pub/Sub で
イベントを発行する (他サービスへ通知)。
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .. import audit
from ..db import dump_json
from ..errors import InvalidInputError
from ..inventory import commands as inventory_commands
from ..publisher import EventPublisher
from . import queries
from .aggregate import (
    LOCKED_STATUSES,
    PAYABLE_STATUSES,
    OrderAggregate,
    OrderItem,
    OrderStatus,
)
from .events import (
    OrderAwaitingPayment,
    OrderCancelled,
    OrderCreated,
    OrderPaid,
    PaymentCreated,
)

logger = logging.getLogger(__name__)


async def create_order(
    session: AsyncSession,
    publisher: EventPublisher,
    user_id: str,
    items: list[OrderItem],
    shipping_cost: float,
    shipping_service: str,
    shipping_deadline: str,
    payment_method: str,
    address_snapshot: dict,
) -> OrderAggregate:
    """
    注文作成コマンド

    1. orders に 1 行、order_items に明細を INSERT
    2. 監査ログを追記
    3. 1〜2 を 1 回でコミット (明細の INSERT が失敗すれば注文も残らない)
    4. OrderCreated を発行

    合計は作成時に一度だけ計算する: total = subtotal + shipping_cost
    """
    if not items:
        raise InvalidInputError("Order must have at least one item")

    now = datetime.now(timezone.utc)
    order_id = str(uuid4())
    subtotal = round(sum(item.line_total for item in items), 2)
    shipping_cost = round(shipping_cost, 2)
    total = round(subtotal + shipping_cost, 2)

    await session.execute(
        text("""
            INSERT INTO orders
                (id, user_id, status, subtotal, shipping_cost, total,
                 shipping_service, shipping_deadline, payment_method,
                 address_snapshot, created_at, updated_at)
            VALUES
                (:id, :user_id, :status, :subtotal, :shipping_cost, :total,
                 :shipping_service, :shipping_deadline, :payment_method,
                 :address_snapshot, :now, :now)
        """),
        {
            "id": order_id,
            "user_id": user_id,
            "status": OrderStatus.CREATED.value,
            "subtotal": subtotal,
            "shipping_cost": shipping_cost,
            "total": total,
            "shipping_service": shipping_service,
            "shipping_deadline": shipping_deadline,
            "payment_method": payment_method,
            "address_snapshot": dump_json(address_snapshot),
            "now": now,
        },
    )

    await session.execute(
        text("""
            INSERT INTO order_items
                (id, order_id, product_id, product_name, size, quantity, unit_price, created_at)
            VALUES
                (:id, :order_id, :product_id, :product_name, :size, :quantity, :unit_price, :now)
        """),
        [
            {
                "id": str(uuid4()),
                "order_id": order_id,
                "product_id": item.product_id,
                "product_name": item.product_name,
                "size": item.size,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "now": now,
            }
            for item in items
        ],
    )

    await audit.append_entry(
        session, user_id, "order_created", "order", order_id,
        {"subtotal": subtotal, "shipping_cost": shipping_cost, "total": total},
    )

    await session.commit()

    await publisher.publish(OrderCreated(
        order_id=order_id,
        user_id=user_id,
        subtotal=subtotal,
        shipping_cost=shipping_cost,
        total=total,
        item_count=len(items),
        timestamp=now,
    ))

    agg = OrderAggregate()
    agg.id = order_id
    agg.user_id = user_id
    agg.subtotal = subtotal
    agg.shipping_cost = shipping_cost
    agg.total = total
    agg.shipping_service = shipping_service
    agg.shipping_deadline = shipping_deadline
    agg.payment_method = payment_method
    agg.address_snapshot = address_snapshot
    agg.created_at = agg.updated_at = now.isoformat()
    agg.items = list(items)
    return agg


async def record_payment_created(
    session: AsyncSession,
    publisher: EventPublisher,
    agg: OrderAggregate,
    payment_id: str | None,
    payment_method: str,
    actor_id: str,
) -> bool:
    """
    決済作成の記録コマンド

    決済事業者が決済を作成した直後 (購入者が支払う前) に、
    決済 ID・支払い方法を記録し aguardando_pagamento に進める。
    すでに支払い済みになった注文 (Webhook が先に届いた) は戻さない。
    """
    now = datetime.now(timezone.utc)
    result = await session.execute(
        text("""
            UPDATE orders
            SET status = :status, payment_id = :payment_id,
                payment_method = :payment_method, updated_at = :now
            WHERE id = :id AND status IN :payable
        """).bindparams(bindparam("payable", expanding=True)),
        {
            "status": OrderStatus.AWAITING_PAYMENT.value,
            "payment_id": payment_id,
            "payment_method": payment_method,
            "now": now,
            "id": agg.id,
            "payable": [s.value for s in PAYABLE_STATUSES],
        },
    )
    if result.rowcount == 0:
        await session.rollback()
        logger.warning("Order %s left payable state before payment was recorded", agg.id)
        return False

    await audit.append_entry(
        session, actor_id, "payment_created", "order", agg.id,
        {
            "payment_id": payment_id,
            "payment_method": payment_method,
            "from_status": agg.status.value,
            "order_status": OrderStatus.AWAITING_PAYMENT.value,
        },
    )
    await session.commit()

    await publisher.publish(PaymentCreated(
        order_id=agg.id,
        payment_method=payment_method,
        payment_id=payment_id,
        timestamp=now,
    ))

    agg.apply_payment_created(payment_id, payment_method)
    return True


async def apply_payment_status(
    session: AsyncSession,
    publisher: EventPublisher,
    agg: OrderAggregate,
    target: OrderStatus,
    payment_id: str,
    payment_method: str,
    provider_status: str | None,
) -> bool:
    """
    決済ステータス反映コマンド (Webhook から呼ばれる)

    1. 支払い済み・キャンセル済みでない場合だけ UPDATE する (compare-and-swap)
       → 同じ注文への同時配信のうち、pago への遷移に成功するのは 1 つだけ
    2. 遷移を監査ログに記録
    3. 初めて pago になったときだけ、明細ごとに在庫を引き落とし販売数を加算
    4. 1〜3 を 1 回でコミットし、イベントを発行

    戻り値: 遷移を適用したら True、他の配信に先を越されていたら False
    """
    now = datetime.now(timezone.utc)
    result = await session.execute(
        text("""
            UPDATE orders
            SET status = :status, payment_id = :payment_id,
                payment_method = :payment_method, updated_at = :now
            WHERE id = :id AND status NOT IN :locked
        """).bindparams(bindparam("locked", expanding=True)),
        {
            "status": target.value,
            "payment_id": payment_id,
            "payment_method": payment_method,
            "now": now,
            "id": agg.id,
            "locked": [s.value for s in LOCKED_STATUSES],
        },
    )
    if result.rowcount == 0:
        await session.rollback()
        logger.info("Order %s already settled by a concurrent delivery", agg.id)
        return False

    await audit.append_entry(
        session, audit.SYSTEM_ACTOR_ID, "payment_status_changed", "order", agg.id,
        {
            "mp_status": provider_status,
            "order_status": target.value,
            "payment_id": payment_id,
        },
    )

    if target is OrderStatus.PAID:
        items = agg.items or await queries.get_order_items(session, agg.id)
        for item in items:
            await inventory_commands.decrement_variant_stock(
                session, item.product_id, item.size, item.quantity
            )
            await inventory_commands.increment_sold_count(
                session, item.product_id, item.quantity
            )

    await session.commit()

    if target is OrderStatus.PAID:
        logger.info("Stock updated for order %s", agg.id)
        event = OrderPaid(order_id=agg.id, payment_id=payment_id, timestamp=now)
    elif target is OrderStatus.CANCELLED:
        event = OrderCancelled(
            order_id=agg.id,
            payment_id=payment_id,
            reason=f"payment {provider_status}",
            timestamp=now,
        )
    else:
        event = OrderAwaitingPayment(order_id=agg.id, payment_id=payment_id, timestamp=now)
    await publisher.publish(event)

    agg.apply_payment_status(target, payment_id, payment_method)
    return True
