from __future__ import annotations

import logging
import sys
from typing import Optional, TextIO

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def configure_logging(level: str = "WARNING", *, stream: Optional[TextIO] = None) -> None:
    """
    配置根 logger（CLI 与 supervisor 进程入口各调用一次）。

    参数：
    - level：日志级别名
    - stream：输出流；默认 stderr（supervisor 的 stderr 即 `supervisor.log`）
    """

    logging.basicConfig(level=level, format=LOG_FORMAT, stream=stream or sys.stderr, force=True)
