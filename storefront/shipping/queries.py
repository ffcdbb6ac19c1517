"""
Shipping — カートの送料見積もり

商品の寸法を DB から読み、estimator に渡す。
見つからない商品 ID は荷物に含めない。
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..errors import InvalidInputError
from ..inventory import queries as inventory_queries
from . import estimator

logger = logging.getLogger(__name__)


async def quote_shipping(
    session: AsyncSession,
    settings: Settings,
    cep: str | None,
    items: list[tuple[str, int]],
    city: str | None = None,
    state: str | None = None,
    subtotal: float | None = None,
    fallback: bool = False,
) -> estimator.ShippingQuote:
    """
    items: (product_id, quantity) のリスト

    fallback=True のとき、入力不正で見積もれなければ固定料金表を返す。
    """
    try:
        clean_cep = estimator.normalize_cep(cep)
        if not items:
            raise InvalidInputError("At least one item is required")

        products = await inventory_queries.get_products(
            session, [product_id for product_id, _ in items]
        )
        package_items = []
        for product_id, quantity in items:
            product = products.get(product_id)
            if product is None:
                logger.warning("Skipping unknown product %s in shipping quote", product_id)
                continue
            package_items.append(estimator.PackageItem(
                quantity=quantity,
                weight=product["weight"],
                width=product["width"],
                length=product["length"],
                height=product["height"],
            ))

        return estimator.quote_package(
            clean_cep,
            estimator.aggregate_package(package_items),
            city,
            state,
            subtotal,
            free_threshold=settings.free_shipping_threshold,
            free_city=settings.free_shipping_city,
            free_state=settings.free_shipping_state,
        )
    except InvalidInputError as e:
        if not fallback:
            raise
        logger.warning("Shipping estimate failed (%s), using fallback table", e)
        return estimator.fallback_quote(cep, subtotal or 0)
