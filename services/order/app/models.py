"""
Order Service — 読み取りモデル

DB の行から組み立てる、レスポンス用の不変なモデル。
JSON では camelCase（productId など）で出力する。
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

CENTS = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """金額を小数点以下2桁の Decimal に揃える。"""
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


class _ReadModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class Product(_ReadModel):
    id: int
    name: str
    price: Decimal
    stock: int

    @classmethod
    def from_row(cls, row) -> "Product":
        return cls(id=row.id, name=row.name, price=to_money(row.price), stock=row.stock)


class OrderItemView(_ReadModel):
    id: int
    product_id: int
    product_name: str | None = None
    quantity: int
    # 注文時点の価格スナップショット
    price: Decimal


class PaymentView(_ReadModel):
    id: int
    amount: Decimal
    status: str


class DeliveryView(_ReadModel):
    id: int
    status: str
    method: str
    address: str | None = None
    estimated_at: datetime | None = None


class OrderView(_ReadModel):
    id: int
    user_id: int
    status: str
    total: Decimal
    created_at: datetime
    updated_at: datetime
    items: list[OrderItemView]
    payment: PaymentView | None = None
    delivery: DeliveryView | None = None


class OrderEventView(_ReadModel):
    version: int
    event_type: str
    data: dict
    created_at: datetime
