"""
Order Service — クエリ (読み取り側)

注文を明細・支払い・配送と一緒に組み立てて返す。
一覧は1つの読み取りトランザクション内で行い、N+1 を避けるため
明細・支払い・配送は注文 ID の集合でまとめて読む。
"""

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store
from .db import MONEY, TIMESTAMP, Database
from .errors import AuthorizationError, NotFoundError
from .models import (
    DeliveryView,
    OrderEventView,
    OrderItemView,
    OrderView,
    PaymentView,
    to_money,
)

_ORDER_COLUMNS = "id, user_id, status, total, created_at, updated_at"
_ORDER_TYPES = {"total": MONEY, "created_at": TIMESTAMP, "updated_at": TIMESTAMP}


async def _hydrate(session: AsyncSession, order_rows: list) -> list[OrderView]:
    if not order_rows:
        return []
    ids = [row.id for row in order_rows]

    item_rows = (
        await session.execute(
            text("""
                SELECT oi.id, oi.order_id, oi.product_id, oi.quantity, oi.price,
                       p.name AS product_name
                FROM order_items oi
                LEFT OUTER JOIN products p ON p.id = oi.product_id
                WHERE oi.order_id IN :ids
                ORDER BY oi.id
            """)
            .bindparams(bindparam("ids", expanding=True))
            .columns(price=MONEY),
            {"ids": ids},
        )
    ).fetchall()
    payment_rows = (
        await session.execute(
            text("SELECT id, order_id, amount, status FROM payments WHERE order_id IN :ids")
            .bindparams(bindparam("ids", expanding=True))
            .columns(amount=MONEY),
            {"ids": ids},
        )
    ).fetchall()
    delivery_rows = (
        await session.execute(
            text("""
                SELECT id, order_id, status, method, address, estimated_at
                FROM deliveries
                WHERE order_id IN :ids
            """)
            .bindparams(bindparam("ids", expanding=True))
            .columns(estimated_at=TIMESTAMP),
            {"ids": ids},
        )
    ).fetchall()

    items_by_order: dict[int, list[OrderItemView]] = {i: [] for i in ids}
    for row in item_rows:
        items_by_order[row.order_id].append(
            OrderItemView(
                id=row.id,
                product_id=row.product_id,
                product_name=row.product_name,
                quantity=row.quantity,
                price=to_money(row.price),
            )
        )
    payment_by_order = {
        row.order_id: PaymentView(id=row.id, amount=to_money(row.amount), status=row.status)
        for row in payment_rows
    }
    delivery_by_order = {
        row.order_id: DeliveryView(
            id=row.id,
            status=row.status,
            method=row.method,
            address=row.address,
            estimated_at=row.estimated_at,
        )
        for row in delivery_rows
    }

    return [
        OrderView(
            id=row.id,
            user_id=row.user_id,
            status=row.status,
            total=to_money(row.total),
            created_at=row.created_at,
            updated_at=row.updated_at,
            items=items_by_order[row.id],
            payment=payment_by_order.get(row.id),
            delivery=delivery_by_order.get(row.id),
        )
        for row in order_rows
    ]


async def load_order(session: AsyncSession, order_id: int) -> OrderView | None:
    """注文を1件、明細・支払い・配送付きで読み込む。"""
    result = await session.execute(
        text(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = :id").columns(**_ORDER_TYPES),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    hydrated = await _hydrate(session, [row])
    return hydrated[0]


class OrderQueries:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def list_user_orders(self, user_id: int) -> list[OrderView]:
        """自分の注文一覧（新しい順）"""
        async with self.db.snapshot() as session:
            result = await session.execute(
                text(f"""
                    SELECT {_ORDER_COLUMNS}
                    FROM orders
                    WHERE user_id = :user_id
                    ORDER BY created_at DESC, id DESC
                """).columns(**_ORDER_TYPES),
                {"user_id": user_id},
            )
            return await _hydrate(session, result.fetchall())

    async def list_all_orders(self) -> list[OrderView]:
        """全注文一覧（管理者用、新しい順）"""
        async with self.db.snapshot() as session:
            result = await session.execute(
                text(
                    f"SELECT {_ORDER_COLUMNS} FROM orders ORDER BY created_at DESC, id DESC"
                ).columns(**_ORDER_TYPES),
            )
            return await _hydrate(session, result.fetchall())

    async def get_order(self, order_id: int, user_id: int, is_admin: bool = False) -> OrderView:
        async with self.db.snapshot() as session:
            order = await load_order(session, order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if order.user_id != user_id and not is_admin:
            raise AuthorizationError("You are not allowed to view this order")
        return order

    async def get_order_events(self, order_id: int) -> list[OrderEventView]:
        async with self.db.snapshot() as session:
            exists = (
                await session.execute(
                    text("SELECT id FROM orders WHERE id = :id"), {"id": order_id}
                )
            ).fetchone()
            if not exists:
                raise NotFoundError(f"Order {order_id} not found")
            events = await event_store.load_events(session, order_id)
        return [OrderEventView(**e) for e in events]
