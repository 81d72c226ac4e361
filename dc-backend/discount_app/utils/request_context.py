"""
连接上下文与日志格式

每个连接设置一个 connection_id，所有日志记录都会带上它。
"""
import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone

connection_id_ctx_var: ContextVar[str] = ContextVar("connection_id", default="-")


class ConnectionIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.connection_id = connection_id_ctx_var.get()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "connection_id": getattr(record, "connection_id", "-"),
        }
        peer = getattr(record, "peer", None)
        if peer:
            payload["peer"] = peer
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


TEXT_FORMAT = "%(asctime)s %(levelname)s [%(connection_id)s] %(name)s: %(message)s"
