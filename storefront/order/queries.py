"""
Order — クエリハンドラ (読み取り側)
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderAggregate, OrderItem


async def get_order_items(session: AsyncSession, order_id: str) -> list[OrderItem]:
    result = await session.execute(
        text("""
            SELECT product_id, product_name, size, quantity, unit_price
            FROM order_items
            WHERE order_id = :order_id
            ORDER BY created_at ASC, id ASC
        """),
        {"order_id": order_id},
    )
    return [
        OrderItem(
            product_id=str(row.product_id),
            product_name=row.product_name,
            size=row.size,
            quantity=row.quantity,
            unit_price=float(row.unit_price),
        )
        for row in result.fetchall()
    ]


async def load_order(
    session: AsyncSession,
    order_id: str,
    user_id: str | None = None,
) -> OrderAggregate | None:
    """
    注文を明細込みで読み込む。

    user_id を渡すと、その利用者の注文だけを対象にする
    (他人の注文は存在しないものとして扱う)。
    """
    sql = "SELECT * FROM orders WHERE id = :id"
    params = {"id": order_id}
    if user_id is not None:
        sql += " AND user_id = :user_id"
        params["user_id"] = user_id

    result = await session.execute(text(sql), params)
    row = result.fetchone()
    if not row:
        return None
    items = await get_order_items(session, order_id)
    return OrderAggregate.from_row(row, items)


async def get_order(
    session: AsyncSession,
    order_id: str,
    user_id: str | None = None,
) -> dict | None:
    agg = await load_order(session, order_id, user_id)
    return agg.to_dict() if agg else None


async def list_orders(session: AsyncSession, user_id: str) -> list[dict]:
    """利用者の注文一覧を新しい順に返す。"""
    result = await session.execute(
        text("SELECT * FROM orders WHERE user_id = :user_id ORDER BY created_at DESC"),
        {"user_id": user_id},
    )
    orders = []
    for row in result.fetchall():
        items = await get_order_items(session, str(row.id))
        orders.append(OrderAggregate.from_row(row, items).to_dict())
    return orders
