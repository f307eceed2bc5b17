"""
Order Service — ステータス定義

注文・支払い・配送それぞれのステータス集合と、エンジンが強制する
ルールをまとめる。

状態遷移（管理者が進める。エンジンは自動では進めない）:
    Order:    pending → paid → preparing → shipped → delivered
              pending | preparing → cancelled  (終端)
    Payment:  processing → paid | failed | cancelled | refunded
    Delivery: preparing → shipped → delivered,  任意 → cancelled

エンジンが強制するのは次の点のみ:
    - ユーザーによるキャンセルは CANCELLABLE からのみ
    - cancelled は終端（他の状態には戻せない）
    - shipped / delivered からのキャンセルでは在庫を戻さない
"""

from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PREPARING = "preparing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class DeliveryStatus(str, Enum):
    PREPARING = "preparing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class DeliveryMethod(str, Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


# ユーザーがキャンセルできる注文ステータス
CANCELLABLE: frozenset[OrderStatus] = frozenset(
    {OrderStatus.PENDING, OrderStatus.PREPARING}
)


def allowed_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def is_cancellable(status: str) -> bool:
    return status in {s.value for s in CANCELLABLE}


def is_terminal(status: str) -> bool:
    return status == OrderStatus.CANCELLED.value


def has_shipped(status: str) -> bool:
    """商品が倉庫を出た後のステータスか（キャンセルしても在庫には戻さない）"""
    return status in (OrderStatus.SHIPPED.value, OrderStatus.DELIVERED.value)
