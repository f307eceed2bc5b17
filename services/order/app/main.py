"""
Order Service — FastAPI エントリーポイント

Command (書き込み) と Query (読み取り) のエンドポイントを分離する。
書き込みはすべて OrderCommands が1つのトランザクションで実行する。

依存サービス (Database / EventPublisher) は lifespan で生成・破棄し、
app.state 経由でエンドポイントに渡す。テストでは create_app() に
生成済みの Database を渡して差し替える。
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .auth import Principal, get_principal, require_admin
from .catalog import CatalogStore
from .commands import OrderCommands
from .config import Settings
from .db import Database
from .errors import InternalError, OrderEngineError
from .logging_config import setup_logging
from .models import OrderEventView, OrderView
from .publisher import EventPublisher
from .queries import OrderQueries
from .validation import parse_id, parse_order_request, parse_status_update

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────
# 値の検証は validation.py で行うため、ここでは形だけを受け取る


class CreateOrderRequest(BaseModel):
    items: Any = None
    delivery: Any = None


class UpdateStatusRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    order_status: Any = None
    payment_status: Any = None
    delivery_status: Any = None
    estimated_at: Any = None


# ── 依存関係 ─────────────────────────────────────


def _install_services(app: FastAPI, db: Database, publisher: EventPublisher) -> None:
    app.state.db = db
    app.state.commands = OrderCommands(db, CatalogStore(), publisher)
    app.state.queries = OrderQueries(db)


def get_commands(request: Request) -> OrderCommands:
    return request.app.state.commands


def get_queries(request: Request) -> OrderQueries:
    return request.app.state.queries


# ── エラーハンドラ ───────────────────────────────


async def handle_engine_error(request: Request, exc: OrderEngineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s -> %s", request.method, request.url.path, exc.kind)
    else:
        logger.warning(
            "%s %s -> %s: %s", request.method, request.url.path, exc.kind, exc.message
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def handle_request_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    logger.warning("%s %s -> malformed request", request.method, request.url.path)
    return JSONResponse(
        status_code=400,
        content={"error": "validation_error", "message": "Malformed request"},
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error = InternalError()
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# ── アプリケーション ─────────────────────────────


def create_app(
    settings: Settings | None = None,
    *,
    db: Database | None = None,
    publisher: EventPublisher | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if db is not None:
            # 外から渡されたサービスのライフサイクルは呼び出し元が管理する
            yield
            return
        setup_logging(settings.log_level)
        database = Database(settings.database_url, echo=settings.db_echo)
        if settings.create_schema:
            await database.create_schema()
        events = EventPublisher.from_url(settings.redis_url, settings.events_channel)
        _install_services(app, database, events)
        logger.info("Order service started")
        try:
            yield
        finally:
            await events.close()
            await database.close()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    if db is not None:
        _install_services(app, db, publisher or EventPublisher(None, settings.events_channel))

    app.add_exception_handler(OrderEngineError, handle_engine_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    # ── Command Endpoints (書き込み側) ───────────

    @app.post("/orders", status_code=201, response_model=OrderView)
    async def cmd_create_order(
        req: CreateOrderRequest,
        principal: Principal = Depends(get_principal),
        commands: OrderCommands = Depends(get_commands),
    ):
        """注文作成コマンド"""
        order_request = parse_order_request(req.items, req.delivery)
        return await commands.create_order(principal.user_id, order_request)

    @app.patch("/orders/{order_id}/cancel", response_model=OrderView)
    async def cmd_cancel_order(
        order_id: str,
        principal: Principal = Depends(get_principal),
        commands: OrderCommands = Depends(get_commands),
    ):
        """注文キャンセルコマンド（注文者本人のみ）"""
        return await commands.cancel_order(parse_id(order_id, "order id"), principal.user_id)

    @app.patch("/admin/orders/{order_id}/status", response_model=OrderView)
    async def cmd_update_order_status(
        order_id: str,
        req: UpdateStatusRequest,
        principal: Principal = Depends(require_admin),
        commands: OrderCommands = Depends(get_commands),
    ):
        """ステータス更新コマンド（管理者のみ）"""
        oid = parse_id(order_id, "order id")
        status_update = parse_status_update(
            order_status=req.order_status,
            payment_status=req.payment_status,
            delivery_status=req.delivery_status,
            estimated_at=req.estimated_at,
        )
        return await commands.update_order_status(oid, principal.user_id, status_update)

    # ── Query Endpoints (読み取り側) ─────────────

    @app.get("/orders/me", response_model=list[OrderView])
    async def query_my_orders(
        principal: Principal = Depends(get_principal),
        queries: OrderQueries = Depends(get_queries),
    ):
        """自分の注文一覧（新しい順）"""
        return await queries.list_user_orders(principal.user_id)

    @app.get("/orders/{order_id}", response_model=OrderView)
    async def query_get_order(
        order_id: str,
        principal: Principal = Depends(get_principal),
        queries: OrderQueries = Depends(get_queries),
    ):
        """注文詳細（本人または管理者）"""
        return await queries.get_order(
            parse_id(order_id, "order id"), principal.user_id, is_admin=principal.is_admin
        )

    @app.get("/admin/orders", response_model=list[OrderView])
    async def query_all_orders(
        principal: Principal = Depends(require_admin),
        queries: OrderQueries = Depends(get_queries),
    ):
        """全注文一覧（管理者のみ）"""
        return await queries.list_all_orders()

    @app.get("/admin/orders/{order_id}/events", response_model=list[OrderEventView])
    async def query_order_events(
        order_id: str,
        principal: Principal = Depends(require_admin),
        queries: OrderQueries = Depends(get_queries),
    ):
        """注文の変更履歴（管理者のみ）"""
        return await queries.get_order_events(parse_id(order_id, "order id"))

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-service"}

    return app


app = create_app()
