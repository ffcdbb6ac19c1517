"""
Shipping — 送料見積もり (純粋関数)

荷物の重量・寸法と配送先 CEP から、配送サービスごとの料金と日数を返す。
状態を持たず DB にも触れない。

    容積重量 = 幅 × 長さ × 高さ / 6000
    実効重量 = max(実重量, 容積重量)
    料金     = 基本料金 + 実効重量 × kg 単価 + 距離係数 × 距離単価

距離係数は CEP の先頭桁 (地域) から固定表で求める。
"""

import re
import unicodedata
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel

from ..errors import InvalidInputError

DEFAULT_WEIGHT = 0.3   # kg
DEFAULT_WIDTH = 11.0   # cm
DEFAULT_LENGTH = 16.0  # cm
DEFAULT_HEIGHT = 2.0   # cm
MAX_HEIGHT = 100.0     # cm
CUBIC_DIVISOR = 6000

# CEP 先頭桁 → 発送元からのおおよその距離
DISTANCE_FACTORS = {
    0: 0.2, 1: 0.1, 2: 0.4, 3: 0.5, 4: 0.6,
    5: 0.5, 6: 0.8, 7: 0.9, 8: 0.7, 9: 0.6,
}
DEFAULT_DISTANCE_FACTOR = 0.5


@dataclass(frozen=True)
class ServiceRate:
    name: str
    base_price: float
    per_kg: float
    per_distance: float
    base_days: int
    distance_days: int


PAC = ServiceRate("PAC", base_price=12.0, per_kg=8.0, per_distance=6.0, base_days=8, distance_days=4)
SEDEX = ServiceRate("SEDEX", base_price=22.0, per_kg=14.0, per_distance=12.0, base_days=3, distance_days=2)
SERVICES = (PAC, SEDEX)

# 見積もりができないときにチェックアウトが使う固定表
FALLBACK_TABLE = {
    "PAC": (18.90, "8-12 dias úteis"),
    "SEDEX": (32.90, "3-5 dias úteis"),
}
FALLBACK_FREE_THRESHOLD = 299.0


@dataclass(frozen=True)
class PackageItem:
    """商品 1 行分。寸法が無い商品は最小値で計算する。"""
    quantity: int = 1
    weight: float | None = None
    width: float | None = None
    length: float | None = None
    height: float | None = None


@dataclass(frozen=True)
class Package:
    weight: float
    width: float
    length: float
    height: float


class ShippingOption(BaseModel):
    service: str
    price: float
    deadline: str


class ShippingQuote(BaseModel):
    destination_postal_code: str
    free_shipping: bool
    free_shipping_threshold: float
    free_reason: str | None = None
    options: list[ShippingOption]

    def option(self, service: str) -> ShippingOption:
        for opt in self.options:
            if opt.service == service.upper():
                return opt
        raise InvalidInputError(f"Unknown shipping service: {service}")


def _round_money(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def normalize_cep(cep: str | None) -> str:
    if not cep:
        raise InvalidInputError("CEP is required")
    digits = re.sub(r"\D", "", cep)
    if len(digits) != 8:
        raise InvalidInputError(f"Invalid CEP: {cep}")
    return digits


def normalize_city(city: str) -> str:
    """アクセント記号を落とし、小文字・前後空白なしにする。"""
    decomposed = unicodedata.normalize("NFD", city)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.lower().strip()


def is_free_shipping_city(
    city: str | None,
    state: str | None,
    free_city: str,
    free_state: str,
) -> bool:
    if not city or not state:
        return False
    return (
        normalize_city(city) == normalize_city(free_city)
        and state.strip().upper() == free_state.strip().upper()
    )


def aggregate_package(items: list[PackageItem]) -> Package:
    """
    複数商品を 1 つの荷物にまとめる。

    重量と高さは数量分を積み上げ、幅と長さは最大値を取る。
    高さは 100cm で頭打ち、重量は最低 0.3kg。
    """
    weight = 0.0
    width = DEFAULT_WIDTH
    length = DEFAULT_LENGTH
    height = DEFAULT_HEIGHT

    for item in items:
        qty = item.quantity or 1
        if qty < 0:
            raise InvalidInputError("Quantity must be positive")
        weight += (item.weight or DEFAULT_WEIGHT) * qty
        width = max(width, item.width or DEFAULT_WIDTH)
        length = max(length, item.length or DEFAULT_LENGTH)
        height += (item.height or DEFAULT_HEIGHT) * qty

    return Package(
        weight=max(weight, DEFAULT_WEIGHT),
        width=width,
        length=length,
        height=min(height, MAX_HEIGHT),
    )


def distance_factor(cep: str) -> float:
    return DISTANCE_FACTORS.get(int(cep[0]), DEFAULT_DISTANCE_FACTOR)


def cubic_weight(package: Package) -> float:
    return (package.width * package.length * package.height) / CUBIC_DIVISOR


def effective_weight(package: Package) -> float:
    return max(package.weight, cubic_weight(package))


def service_price(package: Package, factor: float, rate: ServiceRate) -> float:
    total = (
        rate.base_price
        + effective_weight(package) * rate.per_kg
        + factor * rate.per_distance
    )
    return _round_money(total)


def service_deadline(factor: float, rate: ServiceRate) -> str:
    return f"{round(rate.base_days + factor * rate.distance_days)} dias úteis"


def estimate(
    cep: str | None,
    items: list[PackageItem],
    city: str | None = None,
    state: str | None = None,
    subtotal: float | None = None,
    *,
    free_threshold: float = 130.0,
    free_city: str = "Para de Minas",
    free_state: str = "MG",
) -> ShippingQuote:
    """
    送料を見積もる。

    送料無料は「対象都市への配送」または「小計が閾値以上」のとき。
    無料のときは全サービスの料金が 0 になる。
    """
    clean_cep = normalize_cep(cep)
    if not items:
        raise InvalidInputError("At least one item is required")
    return quote_package(
        clean_cep,
        aggregate_package(items),
        city,
        state,
        subtotal,
        free_threshold=free_threshold,
        free_city=free_city,
        free_state=free_state,
    )


def quote_package(
    clean_cep: str,
    package: Package,
    city: str | None = None,
    state: str | None = None,
    subtotal: float | None = None,
    *,
    free_threshold: float = 130.0,
    free_city: str = "Para de Minas",
    free_state: str = "MG",
) -> ShippingQuote:
    factor = distance_factor(clean_cep)

    city_free = is_free_shipping_city(city, state, free_city, free_state)
    value_free = (subtotal or 0) >= free_threshold
    free = city_free or value_free

    return ShippingQuote(
        destination_postal_code=clean_cep,
        free_shipping=free,
        free_shipping_threshold=free_threshold,
        free_reason="city" if city_free else "value" if value_free else None,
        options=[
            ShippingOption(
                service=rate.name,
                price=0.0 if free else service_price(package, factor, rate),
                deadline=service_deadline(factor, rate),
            )
            for rate in SERVICES
        ],
    )


def fallback_quote(cep: str | None, subtotal: float) -> ShippingQuote:
    """見積もりが失敗したときの固定料金表。チェックアウトを止めないために使う。"""
    free = subtotal >= FALLBACK_FREE_THRESHOLD
    return ShippingQuote(
        destination_postal_code=re.sub(r"\D", "", cep or ""),
        free_shipping=free,
        free_shipping_threshold=FALLBACK_FREE_THRESHOLD,
        free_reason="value" if free else None,
        options=[
            ShippingOption(service=name, price=0.0 if free else price, deadline=deadline)
            for name, (price, deadline) in FALLBACK_TABLE.items()
        ],
    )
