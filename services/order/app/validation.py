"""
Order Service — 入力検証と価格・在庫チェック (PriceStockValidator)

検証は2段階:

    1. parse_order_request / parse_status_update
       ストレージに触れる前の1回の検証パス。最初の問題で ValidationError を送出し、
       成功すれば型付きの結果を返す。

    2. PriceStockValidator.validate
       商品を一括で読み込み、DB の価格で合計を計算し、在庫を事前チェックする。
       副作用なし。ここでの在庫チェックは早期に分かりやすいエラーを返すための
       ものであり、確定は OrderCommands.create_order 内の条件付き減算で行う。
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from .catalog import CatalogStore
from .errors import InsufficientStockError, NotFoundError, ValidationError
from .models import Product, to_money
from .statuses import DeliveryMethod, DeliveryStatus, OrderStatus, PaymentStatus, allowed_values

MAX_ITEMS = 100
MIN_QUANTITY = 1
MAX_QUANTITY = 100
MAX_ADDRESS_LENGTH = 500
# ID 列は 32bit 整数
MAX_ID = 2**31 - 1


@dataclass(frozen=True)
class RequestedItem:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class DeliverySelection:
    method: str
    # pickup の場合は受け取り場所をここに入れる
    address: str | None


@dataclass(frozen=True)
class OrderRequest:
    items: tuple[RequestedItem, ...]
    delivery: DeliverySelection


@dataclass(frozen=True)
class PricedItem:
    product_id: int
    product_name: str
    quantity: int
    price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


@dataclass(frozen=True)
class ValidatedOrder:
    items: tuple[PricedItem, ...]
    total: Decimal
    delivery: DeliverySelection


@dataclass(frozen=True)
class StatusUpdate:
    order_status: str | None = None
    payment_status: str | None = None
    delivery_status: str | None = None
    estimated_at: datetime | None = None
    provided: frozenset[str] = field(default_factory=frozenset)

    def changes(self) -> dict[str, Any]:
        """指定されたフィールドだけを返す（イベント記録用）"""
        values = {
            "orderStatus": self.order_status,
            "paymentStatus": self.payment_status,
            "deliveryStatus": self.delivery_status,
            "estimatedAt": self.estimated_at.isoformat() if self.estimated_at else None,
        }
        return {k: v for k, v in values.items() if k in self.provided}


# ── 共通チェック ─────────────────────────────────


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_valid_id(value: Any) -> bool:
    return _is_int(value) and 1 <= value <= MAX_ID


def parse_id(value: Any, name: str = "id") -> int:
    """正の整数 ID。数字だけの文字列も受け付ける（パスパラメータ用）。"""
    if isinstance(value, str):
        digits = value.strip()
        if digits.isdecimal() and len(digits) <= len(str(MAX_ID)):
            value = int(digits)
    if not _is_valid_id(value):
        raise ValidationError(f"{name} must be a positive integer up to {MAX_ID}")
    return value


def _non_blank(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


# ── 注文リクエスト ───────────────────────────────


def parse_items(raw_items: Any) -> tuple[RequestedItem, ...]:
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("The order must contain at least one item")
    if len(raw_items) > MAX_ITEMS:
        raise ValidationError(f"The order cannot contain more than {MAX_ITEMS} items")

    items: list[RequestedItem] = []
    seen: set[int] = set()
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object with productId and quantity")
        product_id = raw.get("productId")
        quantity = raw.get("quantity")
        if not _is_valid_id(product_id):
            raise ValidationError(
                f"items[{index}].productId must be a positive integer up to {MAX_ID}"
            )
        if not _is_int(quantity) or not MIN_QUANTITY <= quantity <= MAX_QUANTITY:
            raise ValidationError(
                f"items[{index}].quantity must be an integer between "
                f"{MIN_QUANTITY} and {MAX_QUANTITY}"
            )
        if product_id in seen:
            raise ValidationError(f"Product {product_id} appears more than once in the order")
        seen.add(product_id)
        items.append(RequestedItem(product_id=product_id, quantity=quantity))
    return tuple(items)


def parse_delivery(raw_delivery: Any) -> DeliverySelection:
    if raw_delivery is None:
        raw_delivery = {}
    if not isinstance(raw_delivery, dict):
        raise ValidationError("delivery must be an object")

    method = raw_delivery.get("method") or DeliveryMethod.DELIVERY.value
    if method not in allowed_values(DeliveryMethod):
        raise ValidationError(
            f"delivery.method must be one of: {', '.join(allowed_values(DeliveryMethod))}"
        )

    if method == DeliveryMethod.DELIVERY.value:
        address = _non_blank(raw_delivery.get("address"))
        if address is None:
            raise ValidationError("delivery.address is required for home delivery")
    else:
        address = _non_blank(raw_delivery.get("pickupPoint"))
        if address is None:
            raise ValidationError("delivery.pickupPoint is required for pickup")

    if len(address) > MAX_ADDRESS_LENGTH:
        raise ValidationError(
            f"delivery address must be at most {MAX_ADDRESS_LENGTH} characters"
        )
    return DeliverySelection(method=method, address=address)


def parse_order_request(raw_items: Any, raw_delivery: Any) -> OrderRequest:
    return OrderRequest(items=parse_items(raw_items), delivery=parse_delivery(raw_delivery))


# ── ステータス更新 ───────────────────────────────


def _check_enum(value: Any, enum_cls, name: str) -> str:
    allowed = allowed_values(enum_cls)
    if value not in allowed:
        raise ValidationError(f"{name} must be one of: {', '.join(allowed)}")
    return value


def parse_timestamp(value: Any, name: str = "estimatedAt") -> datetime:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be an ISO-8601 timestamp")
    text_value = value.strip()
    if text_value.endswith("Z"):
        text_value = text_value[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text_value)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 timestamp") from None


def parse_status_update(
    order_status: Any = None,
    payment_status: Any = None,
    delivery_status: Any = None,
    estimated_at: Any = None,
) -> StatusUpdate:
    """
    管理者のステータス更新を検証する。None は「指定なし」。

    どれか1つでも不正なら、何も書き込まれる前に ValidationError になる。
    """
    provided = set()
    if order_status is not None:
        _check_enum(order_status, OrderStatus, "orderStatus")
        provided.add("orderStatus")
    if payment_status is not None:
        _check_enum(payment_status, PaymentStatus, "paymentStatus")
        provided.add("paymentStatus")
    if delivery_status is not None:
        _check_enum(delivery_status, DeliveryStatus, "deliveryStatus")
        provided.add("deliveryStatus")
    if estimated_at is not None:
        estimated_at = parse_timestamp(estimated_at)
        provided.add("estimatedAt")

    if not provided:
        raise ValidationError(
            "Nothing to update: provide orderStatus, paymentStatus, "
            "deliveryStatus or estimatedAt"
        )
    return StatusUpdate(
        order_status=order_status,
        payment_status=payment_status,
        delivery_status=delivery_status,
        estimated_at=estimated_at,
        provided=frozenset(provided),
    )


# ── 価格・在庫チェック ───────────────────────────


def price_items(request: OrderRequest, catalog: dict[int, Product]) -> ValidatedOrder:
    """
    読み込んだ商品で価格を確定し、在庫を確認する。

    価格は常に商品の価格を使い、クライアントが送った値は使わない。
    """
    missing = [item.product_id for item in request.items if item.product_id not in catalog]
    if missing:
        raise NotFoundError(
            f"Unknown product id(s): {', '.join(str(i) for i in missing)}",
            missing_ids=missing,
        )

    priced: list[PricedItem] = []
    total = Decimal("0")
    for item in request.items:
        product = catalog[item.product_id]
        if product.stock < item.quantity:
            raise InsufficientStockError(
                product_id=product.id,
                product_name=product.name,
                available=product.stock,
                requested=item.quantity,
            )
        line = PricedItem(
            product_id=product.id,
            product_name=product.name,
            quantity=item.quantity,
            price=product.price,
        )
        total += line.line_total
        priced.append(line)

    return ValidatedOrder(items=tuple(priced), total=to_money(total), delivery=request.delivery)


class PriceStockValidator:
    def __init__(self, catalog: CatalogStore) -> None:
        self.catalog = catalog

    async def validate(self, session: AsyncSession, request: OrderRequest) -> ValidatedOrder:
        products = await self.catalog.fetch_products(
            session, [item.product_id for item in request.items]
        )
        return price_items(request, products)
