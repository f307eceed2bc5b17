"""
Order Service — コマンドハンドラ (書き込み側)

注文の作成・キャンセル・ステータス更新を、それぞれ1つのトランザクション
（原子的な単位）として実行する。

    create_order         : Order + OrderItems + Payment + Delivery を作成し在庫を減らす
    cancel_order         : 在庫を戻し、注文・支払い・配送をキャンセルにする
    update_order_status  : 管理者によるステータス更新

在庫の競合について:
    PriceStockValidator の在庫チェックは事前チェックにすぎない。
    作成トランザクションの中で条件付き減算 (stock >= qty のときだけ減らす) を行い、
    1件でも失敗したらトランザクション全体をロールバックする。

イベントはトランザクション内で order_events に記録し、
コミット後に Redis Pub/Sub で通知する。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import String, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store
from .catalog import CatalogStore
from .db import MONEY, TIMESTAMP, Database
from .errors import (
    AuthorizationError,
    ConflictError,
    InsufficientStockError,
    InternalError,
    InvalidStateError,
    NotFoundError,
    OrderEngineError,
)
from .events import (
    OrderCancelled,
    OrderCreated,
    OrderCreatedItem,
    OrderStatusUpdated,
)
from .models import OrderItemView, OrderView
from .publisher import EventPublisher
from .queries import load_order
from .statuses import (
    CANCELLABLE,
    DeliveryStatus,
    OrderStatus,
    PaymentStatus,
    has_shipped,
    is_cancellable,
    is_terminal,
)
from .validation import (
    OrderRequest,
    PriceStockValidator,
    StatusUpdate,
    ValidatedOrder,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class OrderCommands:
    def __init__(
        self,
        db: Database,
        catalog: CatalogStore,
        publisher: EventPublisher,
    ) -> None:
        self.db = db
        self.catalog = catalog
        self.publisher = publisher
        self.validator = PriceStockValidator(catalog)

    # ── 注文作成 ─────────────────────────────────

    async def create_order(self, user_id: int, request: OrderRequest) -> OrderView:
        """
        注文作成コマンド

        1. 商品を読み込み、DB の価格で合計を計算して在庫を事前チェック
        2. 1つのトランザクションで Order / OrderItems / 在庫減算 / Payment / Delivery
        3. コミット後に OrderCreated を発行
        """
        try:
            async with self.db.snapshot() as session:
                validated = await self.validator.validate(session, request)

            async with self.db.transaction() as session:
                order, event = await self._materialize_order(session, user_id, validated)
        except OrderEngineError as exc:
            logger.warning("create_order failed for user %s: %s", user_id, exc.message)
            raise

        logger.info(
            "Order %s created for user %s (total %s, %d items)",
            order.id,
            user_id,
            order.total,
            len(order.items),
        )
        await self.publisher.publish(event)
        return order

    async def _materialize_order(
        self,
        session: AsyncSession,
        user_id: int,
        validated: ValidatedOrder,
    ) -> tuple[OrderView, OrderCreated]:
        now = _now()

        # 1. 条件付き在庫減算（商品 ID 順）
        for item in sorted(validated.items, key=lambda i: i.product_id):
            applied = await self.catalog.try_decrement_stock(
                session, item.product_id, item.quantity
            )
            if not applied:
                await self._raise_stock_race_lost(session, item.product_id, item.quantity)

        # 2. Order
        result = await session.execute(
            text("""
                INSERT INTO orders (user_id, status, total, created_at, updated_at)
                VALUES (:user_id, :status, :total, :now, :now)
                RETURNING id
            """).bindparams(
                bindparam("total", type_=MONEY),
                bindparam("now", type_=TIMESTAMP),
            ),
            {
                "user_id": user_id,
                "status": OrderStatus.PENDING.value,
                "total": validated.total,
                "now": now,
            },
        )
        order_id = result.scalar_one()

        # 3. OrderItems（価格スナップショット）
        await session.execute(
            text("""
                INSERT INTO order_items (order_id, product_id, quantity, price)
                VALUES (:order_id, :product_id, :quantity, :price)
            """).bindparams(bindparam("price", type_=MONEY)),
            [
                {
                    "order_id": order_id,
                    "product_id": item.product_id,
                    "quantity": item.quantity,
                    "price": item.price,
                }
                for item in validated.items
            ],
        )

        # 4. Payment
        await session.execute(
            text("""
                INSERT INTO payments (order_id, amount, status, created_at, updated_at)
                VALUES (:order_id, :amount, :status, :now, :now)
            """).bindparams(
                bindparam("amount", type_=MONEY),
                bindparam("now", type_=TIMESTAMP),
            ),
            {
                "order_id": order_id,
                "amount": validated.total,
                "status": PaymentStatus.PROCESSING.value,
                "now": now,
            },
        )

        # 5. Delivery
        await session.execute(
            text("""
                INSERT INTO deliveries (order_id, status, method, address, estimated_at, updated_at)
                VALUES (:order_id, :status, :method, :address, NULL, :now)
            """).bindparams(bindparam("now", type_=TIMESTAMP)),
            {
                "order_id": order_id,
                "status": DeliveryStatus.PREPARING.value,
                "method": validated.delivery.method,
                "address": validated.delivery.address,
                "now": now,
            },
        )

        event = OrderCreated(
            order_id=order_id,
            user_id=user_id,
            total=validated.total,
            items=[
                OrderCreatedItem(
                    product_id=item.product_id, quantity=item.quantity, price=item.price
                )
                for item in validated.items
            ],
            delivery_method=validated.delivery.method,
            timestamp=now,
        )
        await event_store.append_event(session, event)

        # 6. 完全な注文を返す
        order = await load_order(session, order_id)
        if order is None:
            raise InternalError()
        return order, event

    async def _raise_stock_race_lost(
        self, session: AsyncSession, product_id: int, requested: int
    ) -> None:
        """条件付き減算が効かなかった理由をトランザクション内で確認して送出する。"""
        product = await self.catalog.get_product(session, product_id)
        if product is None:
            raise NotFoundError(
                f"Unknown product id(s): {product_id}", missing_ids=[product_id]
            )
        raise InsufficientStockError(
            product_id=product.id,
            product_name=product.name,
            available=product.stock,
            requested=requested,
        )

    # ── キャンセル ───────────────────────────────

    async def cancel_order(self, order_id: int, user_id: int) -> OrderView:
        """
        注文キャンセルコマンド

        在庫を戻し、注文・支払い・配送をキャンセルにする。
        ステータスの条件付き更新で二重キャンセル（在庫の二重加算）を防ぐ。
        """
        try:
            async with self.db.transaction() as session:
                order = await load_order(session, order_id)
                if order is None:
                    raise NotFoundError(f"Order {order_id} not found")
                if order.user_id != user_id:
                    raise AuthorizationError("You are not allowed to cancel this order")
                if is_terminal(order.status):
                    raise InvalidStateError("Order is already cancelled")
                if not is_cancellable(order.status):
                    raise InvalidStateError(
                        f'Only pending or preparing orders can be cancelled (current status "{order.status}")'
                    )

                now = _now()
                await self._mark_cancelled(session, order, now)
                restocked = await self._restock(session, order.items)
                await self._cascade_cancel(session, order, now)

                event = OrderCancelled(
                    order_id=order_id,
                    user_id=order.user_id,
                    cancelled_by=user_id,
                    previous_status=order.status,
                    restocked=restocked,
                    timestamp=now,
                )
                await event_store.append_event(session, event)
                cancelled = await load_order(session, order_id)
        except OrderEngineError as exc:
            logger.warning(
                "cancel_order failed for order %s by user %s: %s",
                order_id,
                user_id,
                exc.message,
            )
            raise

        logger.info("Order %s cancelled by user %s", order_id, user_id)
        await self.publisher.publish(event)
        return cancelled

    async def _mark_cancelled(
        self,
        session: AsyncSession,
        order: OrderView,
        now: datetime,
        allowed_from: frozenset[str] | None = None,
    ) -> None:
        """
        条件付きのステータス更新。読み込み後に別の書き込みが先にコミットしていた
        場合は 0 行更新になる。

            ユーザーのキャンセル (allowed_from なし) : InvalidStateError
            管理者のキャンセル (allowed_from あり)   : ConflictError（再試行可）
        """
        user_cancel = allowed_from is None
        if user_cancel:
            allowed_from = frozenset(s.value for s in CANCELLABLE)
        result = await session.execute(
            text("""
                UPDATE orders
                SET status = :status, updated_at = :now
                WHERE id = :id AND status IN :allowed
            """).bindparams(
                bindparam("allowed", expanding=True),
                bindparam("now", type_=TIMESTAMP),
            ),
            {
                "id": order.id,
                "status": OrderStatus.CANCELLED.value,
                "now": now,
                "allowed": sorted(allowed_from),
            },
        )
        if result.rowcount != 1:
            if user_cancel:
                raise InvalidStateError("Order is already cancelled")
            raise ConflictError("Order status changed concurrently, please retry")

    async def _restock(
        self, session: AsyncSession, items: list[OrderItemView]
    ) -> dict[int, int]:
        restocked: dict[int, int] = {}
        for item in sorted(items, key=lambda i: i.product_id):
            if await self.catalog.increment_stock(session, item.product_id, item.quantity):
                restocked[item.product_id] = item.quantity
        return restocked

    async def _cascade_cancel(
        self, session: AsyncSession, order: OrderView, now: datetime
    ) -> None:
        if order.payment is not None:
            await session.execute(
                text("UPDATE payments SET status = :status, updated_at = :now WHERE id = :id")
                .bindparams(bindparam("now", type_=TIMESTAMP)),
                {"id": order.payment.id, "status": PaymentStatus.CANCELLED.value, "now": now},
            )
        if order.delivery is not None:
            await session.execute(
                text("UPDATE deliveries SET status = :status, updated_at = :now WHERE id = :id")
                .bindparams(bindparam("now", type_=TIMESTAMP)),
                {"id": order.delivery.id, "status": DeliveryStatus.CANCELLED.value, "now": now},
            )

    # ── ステータス更新（管理者） ─────────────────

    async def update_order_status(
        self,
        order_id: int,
        admin_id: int,
        status_update: StatusUpdate,
    ) -> OrderView:
        """
        管理者によるステータス更新コマンド

        status_update は parse_status_update で検証済み。
        指定されたフィールドはすべて更新されるか、何も更新されないかのどちらか。
        支払い・配送・注文の間の順序関係は強制しない。
        """
        try:
            async with self.db.transaction() as session:
                order = await load_order(session, order_id)
                if order is None:
                    raise NotFoundError(f"Order {order_id} not found")

                now = _now()
                restocked: dict[int, int] = {}
                new_status = status_update.order_status
                if new_status is not None and new_status != order.status:
                    if is_terminal(order.status):
                        raise InvalidStateError(
                            "Order is cancelled; its status can no longer be changed"
                        )
                    if is_terminal(new_status):
                        # 出荷前なら管理者によるキャンセルも在庫を戻す（1回だけ）
                        await self._mark_cancelled(
                            session, order, now, allowed_from=frozenset({order.status})
                        )
                        if not has_shipped(order.status):
                            restocked = await self._restock(session, order.items)
                    else:
                        await self._set_order_status(session, order, new_status, now)

                await self._apply_payment_and_delivery(session, order, status_update, now)

                event = OrderStatusUpdated(
                    order_id=order_id,
                    updated_by=admin_id,
                    changes=status_update.changes(),
                    restocked=restocked,
                    timestamp=now,
                )
                await event_store.append_event(session, event)
                updated = await load_order(session, order_id)
        except OrderEngineError as exc:
            logger.warning(
                "update_order_status failed for order %s by admin %s: %s",
                order_id,
                admin_id,
                exc.message,
            )
            raise

        logger.info(
            "Order %s updated by admin %s: %s", order_id, admin_id, status_update.changes()
        )
        await self.publisher.publish(event)
        return updated

    async def _set_order_status(
        self, session: AsyncSession, order: OrderView, new_status: str, now: datetime
    ) -> None:
        # 読み込み後に別の書き込みで変わっていないことを条件にする
        result = await session.execute(
            text("""
                UPDATE orders
                SET status = :status, updated_at = :now
                WHERE id = :id AND status = :current
            """).bindparams(bindparam("now", type_=TIMESTAMP)),
            {"id": order.id, "status": new_status, "current": order.status, "now": now},
        )
        if result.rowcount != 1:
            raise ConflictError("Order status changed concurrently, please retry")

    async def _apply_payment_and_delivery(
        self,
        session: AsyncSession,
        order: OrderView,
        status_update: StatusUpdate,
        now: datetime,
    ) -> None:
        if status_update.payment_status is not None:
            if order.payment is None:
                raise NotFoundError(f"Order {order.id} has no payment record")
            await session.execute(
                text("UPDATE payments SET status = :status, updated_at = :now WHERE id = :id")
                .bindparams(bindparam("now", type_=TIMESTAMP)),
                {"id": order.payment.id, "status": status_update.payment_status, "now": now},
            )

        if status_update.delivery_status is None and "estimatedAt" not in status_update.provided:
            return
        if order.delivery is None:
            raise NotFoundError(f"Order {order.id} has no delivery record")
        # 指定されなかった列は COALESCE で現在の値のまま
        await session.execute(
            text("""
                UPDATE deliveries
                SET status = COALESCE(:status, status),
                    estimated_at = COALESCE(:estimated_at, estimated_at),
                    updated_at = :now
                WHERE id = :id
            """).bindparams(
                bindparam("status", type_=String),
                bindparam("estimated_at", type_=TIMESTAMP),
                bindparam("now", type_=TIMESTAMP),
            ),
            {
                "id": order.delivery.id,
                "status": status_update.delivery_status,
                "estimated_at": status_update.estimated_at,
                "now": now,
            },
        )
