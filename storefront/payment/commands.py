"""
Payment — 決済作成コマンド

1. 利用者本人の注文を明細込みで読む (他人の注文は 404)
2. 支払い方法と注文状態を検証
3. Mercado Pago に決済を作成
4. 成功したら決済 ID・支払い方法を記録し aguardando_pagamento へ

決済事業者が失敗したときは注文に触れない (criado のまま再試行できる)。
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import CurrentUser
from ..errors import InvalidInputError, OrderNotFoundError
from ..order import commands as order_commands
from ..order import queries as order_queries
from ..order.aggregate import PAYABLE_STATUSES, OrderAggregate
from ..publisher import EventPublisher
from .gateway import LineItem, MercadoPagoClient, Payer

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("pix", "card")


def build_line_items(agg: OrderAggregate) -> list[LineItem]:
    """注文明細 + 送料 (0 より大きい場合) を決済事業者向けの品目にする。"""
    items = [
        LineItem(title=item.product_name, quantity=item.quantity, unit_price=item.unit_price)
        for item in agg.items
    ]
    if agg.shipping_cost > 0:
        items.append(LineItem(
            title=f"Frete ({agg.shipping_service or 'PAC'})",
            quantity=1,
            unit_price=agg.shipping_cost,
        ))
    return items


async def create_payment(
    session: AsyncSession,
    gateway: MercadoPagoClient,
    publisher: EventPublisher,
    order_id: str,
    user: CurrentUser,
    payment_method: str,
    notification_url: str,
    back_url: str,
) -> dict:
    """
    決済作成コマンド

    戻り値 (Pix):   payment_id, status, pix_qr_code, pix_qr_code_base64, pix_copy_paste, order_status
    戻り値 (カード): checkout_url, sandbox_url, order_status

    order_status は記録後の注文ステータス。決済作成中に Webhook が先に
    届いて支払い済みになっていれば、その状態 (pago など) を返す。
    """
    if payment_method not in PAYMENT_METHODS:
        raise InvalidInputError(f"Invalid payment method: {payment_method}")

    agg = await order_queries.load_order(session, order_id, user_id=user.id)
    if agg is None:
        raise OrderNotFoundError(order_id)
    if agg.status not in PAYABLE_STATUSES:
        raise InvalidInputError(f"Order {order_id} cannot be paid in status {agg.status.value}")
    # 読み取りで始まったトランザクションを閉じ、外部呼び出しの間ロックを持たない
    await session.commit()

    payer = Payer(email=user.email, name=user.name)

    if payment_method == "pix":
        charge = await gateway.create_pix_payment(
            agg.id, agg.total, payer, notification_url
        )
        order_status = await _record_payment(
            session, publisher, agg, charge.payment_id, "pix", user.id
        )
        logger.info("Pix payment %s created for order %s", charge.payment_id, agg.id)
        return {
            "payment_id": charge.payment_id,
            "status": charge.status,
            "pix_qr_code": charge.qr_code,
            "pix_qr_code_base64": charge.qr_code_base64,
            "pix_copy_paste": charge.qr_code,
            "order_status": order_status,
        }

    checkout = await gateway.create_card_preference(
        agg.id, build_line_items(agg), payer, notification_url, back_url
    )
    order_status = await _record_payment(
        session, publisher, agg, checkout.preference_id, "card", user.id
    )
    logger.info("Card checkout %s created for order %s", checkout.preference_id, agg.id)
    return {
        "checkout_url": checkout.checkout_url,
        "sandbox_url": checkout.sandbox_url,
        "order_status": order_status,
    }


async def _record_payment(
    session: AsyncSession,
    publisher: EventPublisher,
    agg: OrderAggregate,
    payment_id: str | None,
    payment_method: str,
    actor_id: str,
) -> str:
    """決済作成を記録し、記録後の注文ステータスを返す。"""
    recorded = await order_commands.record_payment_created(
        session, publisher, agg, payment_id, payment_method, actor_id
    )
    if recorded:
        return agg.status.value
    # 他の経路 (Webhook) が先に注文を進めていた
    current = await order_queries.load_order(session, agg.id)
    await session.commit()
    return current.status.value if current else agg.status.value
