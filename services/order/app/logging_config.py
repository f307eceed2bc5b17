"""
Order Service — ロギング設定

アプリ全体のログ出力形式を統一する。各モジュールは
logging.getLogger(__name__) でロガーを取得するだけでよい。
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(levelname)s - [PID:%(process)d] - %(name)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """
    ルートロガーを設定する。

    - 出力先: stdout（Docker / Kubernetes 向け）
    - SQLAlchemy のエンジンログは WARNING 以上に抑える
    """
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
