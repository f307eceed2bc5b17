"""
Order Service — データベース

テーブル定義と、エンジン全体で使うトランザクション境界を提供する。

Database は明示的に生成・破棄するサービス:
    db = Database(settings.database_url)
    await db.create_schema()
    async with db.transaction() as session: ...   # 書き込み（原子的な単位）
    async with db.snapshot() as session: ...      # 一覧などの読み取り
    await db.close()
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .errors import ConflictError, InternalError

logger = logging.getLogger(__name__)

MONEY = Numeric(12, 2)
TIMESTAMP = DateTime(timezone=True)

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(200), nullable=False),
    Column("price", MONEY, nullable=False),
    Column("stock", Integer, nullable=False, default=0),
    CheckConstraint("price > 0", name="ck_products_price_positive"),
    CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("status", String(20), nullable=False),
    Column("total", MONEY, nullable=False),
    Column("created_at", TIMESTAMP, nullable=False),
    Column("updated_at", TIMESTAMP, nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, ForeignKey("orders.id"), nullable=False, index=True),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("price", MONEY, nullable=False),
    CheckConstraint("quantity BETWEEN 1 AND 100", name="ck_order_items_quantity"),
)

payments = Table(
    "payments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, ForeignKey("orders.id"), nullable=False, unique=True),
    Column("amount", MONEY, nullable=False),
    Column("status", String(20), nullable=False),
    Column("created_at", TIMESTAMP, nullable=False),
    Column("updated_at", TIMESTAMP, nullable=False),
)

deliveries = Table(
    "deliveries",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, ForeignKey("orders.id"), nullable=False, unique=True),
    Column("status", String(20), nullable=False),
    Column("method", String(20), nullable=False),
    Column("address", String(500), nullable=True),
    Column("estimated_at", TIMESTAMP, nullable=True),
    Column("updated_at", TIMESTAMP, nullable=False),
)

order_events = Table(
    "order_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, ForeignKey("orders.id"), nullable=False, index=True),
    Column("event_type", String(50), nullable=False),
    Column("event_data", Text, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", TIMESTAMP, nullable=False),
    UniqueConstraint("order_id", "version", name="uq_order_events_version"),
)


# ── エラー変換 ───────────────────────────────────

# PostgreSQL: serialization_failure / deadlock_detected
_RETRYABLE_SQLSTATES = {"40001", "40P01"}


def _is_retryable(exc: SQLAlchemyError) -> bool:
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _RETRYABLE_SQLSTATES:
        return True
    message = str(orig).lower()
    return "database is locked" in message or "database is busy" in message


def translate_error(exc: SQLAlchemyError) -> ConflictError | InternalError:
    """ストアの例外を呼び出し元に返せるエラーへ変換する。詳細は返さない。"""
    if _is_retryable(exc):
        return ConflictError()
    return InternalError()


# ── SQLite 用設定 ────────────────────────────────


def _configure_sqlite(engine: AsyncEngine) -> None:
    """
    SQLite では書き込みトランザクションを BEGIN IMMEDIATE で開始し、
    書き込みを1つずつ直列化する。読み取り (sqlite_begin="DEFERRED") は
    書き込み中でも待たずに読める。外部キー制約も有効にする。
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # ドライバ側の暗黙の BEGIN を止め、下の begin で自前で発行する
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        mode = conn.get_execution_options().get("sqlite_begin", "IMMEDIATE")
        conn.exec_driver_sql(f"BEGIN {mode}")


class Database:
    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        self.engine = create_async_engine(url, echo=echo)
        if self.engine.dialect.name == "sqlite":
            _configure_sqlite(self.engine)
        self.session_factory = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self.read_session_factory = sessionmaker(
            self.engine.execution_options(sqlite_begin="DEFERRED"),
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def drop_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.drop_all)

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        書き込み用の原子的な単位。

        ブロック内で例外が発生した場合はすべてロールバックされる。
        OrderEngineError はそのまま伝播し、ストアの例外は変換して送出する。
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            error = translate_error(exc)
            if error.retryable:
                logger.warning("Transaction conflict: %s", exc)
            else:
                logger.exception("Storage failure inside transaction")
            raise error from exc

    @asynccontextmanager
    async def snapshot(self) -> AsyncIterator[AsyncSession]:
        """読み取り専用。1つのトランザクション内で一貫したスナップショットを読む。"""
        try:
            async with self.read_session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            logger.exception("Storage failure while reading")
            raise translate_error(exc) from exc
