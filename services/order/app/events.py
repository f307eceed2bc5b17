"""
Order Service — イベント定義

エンジンの書き込みごとに1つのイベントを生成する。
イベントは同じトランザクション内で order_events に記録され、
コミット後に Redis Pub/Sub で通知される。
イベントは過去形で命名し、不変として扱う。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class OrderEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: int
    timestamp: datetime

    @property
    def event_type(self) -> str:
        return type(self).__name__


class OrderCreatedItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: int
    quantity: int
    price: Decimal


class OrderCreated(OrderEvent):
    """注文が作成された（在庫は減算済み）"""
    user_id: int
    total: Decimal
    items: list[OrderCreatedItem]
    delivery_method: str


class OrderCancelled(OrderEvent):
    """注文がキャンセルされた（在庫は戻し済み）"""
    user_id: int
    cancelled_by: int
    previous_status: str
    restocked: dict[int, int]


class OrderStatusUpdated(OrderEvent):
    """管理者がステータスを更新した"""
    updated_by: int
    changes: dict
    restocked: dict[int, int] = {}
