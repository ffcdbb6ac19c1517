"""
Inventory — コマンドハンドラ (書き込み側)

在庫の引き落としと販売数の加算。
どちらも「読んでから書く」のではなく 1 文の UPDATE で行う。
同じバリエーションに対する Webhook の同時配信や管理画面の編集と
競合しても、同じ在庫数を二重に読むことがない。

コミットは呼び出し側 (注文の状態遷移) のトランザクションで行う。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


async def decrement_variant_stock(
    session: AsyncSession,
    product_id: str,
    size: str,
    quantity: int,
) -> int:
    """
    在庫引き落としコマンド

    在庫は 0 未満にならない (不足分は 0 で止める)。
    戻り値は更新した行数 (バリエーションが無ければ 0)。
    """
    result = await session.execute(
        text("""
            UPDATE product_variants
            SET stock = CASE WHEN stock > :qty THEN stock - :qty ELSE 0 END,
                updated_at = :now
            WHERE product_id = :product_id AND size = :size
        """),
        {
            "qty": quantity,
            "now": datetime.now(timezone.utc),
            "product_id": product_id,
            "size": size,
        },
    )
    if result.rowcount == 0:
        logger.warning("No variant for product %s size %s, stock untouched", product_id, size)
    return result.rowcount


async def increment_sold_count(
    session: AsyncSession,
    product_id: str,
    quantity: int,
) -> int:
    """販売数加算コマンド"""
    result = await session.execute(
        text("""
            UPDATE products
            SET sold_count = sold_count + :qty, updated_at = :now
            WHERE id = :product_id
        """),
        {
            "qty": quantity,
            "now": datetime.now(timezone.utc),
            "product_id": product_id,
        },
    )
    if result.rowcount == 0:
        logger.warning("No product %s, sold count untouched", product_id)
    return result.rowcount
