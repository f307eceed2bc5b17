"""
Order Service — 設定

環境変数から設定を読み込む。モジュール読み込み時に接続を作るのではなく、
create_app() で Settings を一度だけ構築し、各コンポーネントへ明示的に渡す。
"""

import os
from dataclasses import dataclass


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///./orders.db"
    # None の場合はイベント発行を行わない
    redis_url: str | None = None
    events_channel: str = "order_events"
    log_level: str = "INFO"
    db_echo: bool = False
    create_schema: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ.get("DATABASE_URL", cls.database_url),
            redis_url=os.environ.get("REDIS_URL") or None,
            events_channel=os.environ.get("ORDER_EVENTS_CHANNEL", cls.events_channel),
            log_level=os.environ.get("LOG_LEVEL", cls.log_level).upper(),
            db_echo=_env_flag("DB_ECHO", cls.db_echo),
            create_schema=_env_flag("CREATE_SCHEMA", cls.create_schema),
        )
