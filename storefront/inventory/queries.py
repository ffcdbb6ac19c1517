"""
Inventory — クエリハンドラ (読み取り側)

商品 (価格・寸法・販売数) とサイズ別在庫を読む。
"""

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession


def effective_price(price: float, promo_price: float | None, is_promo: bool) -> float:
    """セール中でセール価格があればそれを、なければ通常価格を返す。"""
    return promo_price if is_promo and promo_price else price


def _product_from_row(row) -> dict:
    price = float(row.price)
    promo_price = float(row.promo_price) if row.promo_price is not None else None
    is_promo = bool(row.is_promo)
    return {
        "id": str(row.id),
        "name": row.name,
        "price": price,
        "promo_price": promo_price,
        "is_promo": is_promo,
        "effective_price": effective_price(price, promo_price, is_promo),
        "active": bool(row.active),
        "weight": float(row.weight) if row.weight is not None else None,
        "width": float(row.width) if row.width is not None else None,
        "height": float(row.height) if row.height is not None else None,
        "length": float(row.length) if row.length is not None else None,
        "sold_count": row.sold_count,
    }


async def get_products(session: AsyncSession, product_ids: list[str]) -> dict[str, dict]:
    """商品 ID → 商品 の辞書を返す。見つからない ID は含まれない。"""
    if not product_ids:
        return {}
    result = await session.execute(
        text("SELECT * FROM products WHERE id IN :ids").bindparams(
            bindparam("ids", expanding=True)
        ),
        {"ids": list(dict.fromkeys(product_ids))},
    )
    return {str(row.id): _product_from_row(row) for row in result.fetchall()}


async def get_variant(session: AsyncSession, product_id: str, size: str) -> dict | None:
    result = await session.execute(
        text("""
            SELECT id, product_id, size, stock
            FROM product_variants
            WHERE product_id = :product_id AND size = :size
        """),
        {"product_id": product_id, "size": size},
    )
    row = result.fetchone()
    if not row:
        return None
    return {
        "id": str(row.id),
        "product_id": str(row.product_id),
        "size": row.size,
        "stock": row.stock,
    }
