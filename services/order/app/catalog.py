"""
Order Service — カタログストア

商品の価格・在庫の正となるデータへのアクセス。
エンジンが使うのは次の3つだけ:

    - ID 集合による一括読み取り
    - 条件付き在庫減算  (stock >= qty のときだけ減らす)
    - 在庫加算          (キャンセル時の戻し)

すべて呼び出し元のセッション（トランザクション）の中で実行する。
"""

import logging
from collections.abc import Iterable

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import MONEY
from .models import Product

logger = logging.getLogger(__name__)


class CatalogStore:
    async def fetch_products(
        self,
        session: AsyncSession,
        product_ids: Iterable[int],
    ) -> dict[int, Product]:
        """指定 ID の商品を1回のクエリで読み込む。存在しない ID は結果に含まれない。"""
        ids = sorted(set(product_ids))
        if not ids:
            return {}
        result = await session.execute(
            text("SELECT id, name, price, stock FROM products WHERE id IN :ids")
            .bindparams(bindparam("ids", expanding=True))
            .columns(price=MONEY),
            {"ids": ids},
        )
        return {row.id: Product.from_row(row) for row in result.fetchall()}

    async def get_product(self, session: AsyncSession, product_id: int) -> Product | None:
        found = await self.fetch_products(session, [product_id])
        return found.get(product_id)

    async def try_decrement_stock(
        self,
        session: AsyncSession,
        product_id: int,
        quantity: int,
    ) -> bool:
        """
        条件付き減算: UPDATE ... SET stock = stock - :qty WHERE stock >= :qty

        チェックと書き込みは1文で行われる。実際に行が更新されたかどうかを返す。
        False の場合、呼び出し元はトランザクション全体を中止しなければならない。
        """
        result = await session.execute(
            text("""
                UPDATE products
                SET stock = stock - :qty
                WHERE id = :id AND stock >= :qty
            """),
            {"id": product_id, "qty": quantity},
        )
        return result.rowcount == 1

    async def increment_stock(
        self,
        session: AsyncSession,
        product_id: int,
        quantity: int,
    ) -> bool:
        result = await session.execute(
            text("UPDATE products SET stock = stock + :qty WHERE id = :id"),
            {"id": product_id, "qty": quantity},
        )
        if result.rowcount != 1:
            logger.warning(
                "Stock not restored: product %s no longer exists (quantity %s)",
                product_id,
                quantity,
            )
            return False
        return True
