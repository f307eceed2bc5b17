"""
Order Service — 注文履歴 (order_events)

エンジンの書き込みを追記専用で記録する。
(order_id, version) はユニークで、同じ注文への同時書き込みは
片方が ConflictError になる（楽観的並行性制御）。
"""

import json
from datetime import datetime, timezone

from sqlalchemy import bindparam, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .db import TIMESTAMP
from .errors import ConflictError
from .events import OrderEvent


async def append_event(session: AsyncSession, event: OrderEvent) -> int:
    result = await session.execute(
        text("SELECT COALESCE(MAX(version), 0) FROM order_events WHERE order_id = :order_id"),
        {"order_id": event.order_id},
    )
    new_version = result.scalar_one() + 1
    try:
        await session.execute(
            text("""
                INSERT INTO order_events
                    (order_id, event_type, event_data, version, created_at)
                VALUES
                    (:order_id, :evt_type, :evt_data, :version, :now)
            """).bindparams(bindparam("now", type_=TIMESTAMP)),
            {
                "order_id": event.order_id,
                "evt_type": event.event_type,
                "evt_data": event.model_dump_json(),
                "version": new_version,
                "now": datetime.now(timezone.utc),
            },
        )
    except IntegrityError as exc:
        raise ConflictError() from exc
    return new_version


async def load_events(session: AsyncSession, order_id: int) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT event_type, event_data, version, created_at
            FROM order_events
            WHERE order_id = :order_id
            ORDER BY version ASC
        """).columns(created_at=TIMESTAMP),
        {"order_id": order_id},
    )
    return [
        {
            "event_type": row.event_type,
            "data": json.loads(row.event_data),
            "version": row.version,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]
