"""
TCP 服务 - 接受连接并为每个连接创建会话

连接数量不设上限，读取也没有超时：慢速或静默的客户端会一直占用自己的会话。
stop 会等待正在处理的请求完成，卡在半个帧上的客户端会让 stop 一直等待。
"""
import asyncio
import logging
from typing import Dict, Iterable, Optional

from discount_app.handlers.session import (
    DEFAULT_CODE_LENGTHS,
    DEFAULT_MAX_GENERATE_COUNT,
    ConnectionSession,
)
from discount_app.services.code_registry import CodeRegistry

logger = logging.getLogger(__name__)


class DiscountCodeServer:
    """持有注册表并把每个连接交给 ConnectionSession"""

    def __init__(
        self,
        registry: CodeRegistry,
        host: str = "0.0.0.0",
        port: int = 5001,
        max_generate_count: int = DEFAULT_MAX_GENERATE_COUNT,
        code_lengths: Iterable[int] = DEFAULT_CODE_LENGTHS,
        metrics_enabled: bool = False,
    ):
        self.registry = registry
        self.host = host
        self.port = port
        self.max_generate_count = max_generate_count
        self.code_lengths = tuple(code_lengths)
        self.metrics_enabled = metrics_enabled
        self._server: Optional[asyncio.AbstractServer] = None
        self._sessions: Dict[asyncio.Task, ConnectionSession] = {}

    @property
    def bound_port(self) -> int:
        """实际监听的端口（port=0 时由系统分配）"""
        if self._server is None or not self._server.sockets:
            return self.port
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_client, self.host, self.port)
        logger.info("Server started on %s:%d", self.host, self.bound_port)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        await self._server.serve_forever()

    async def stop(self) -> None:
        server, self._server = self._server, None
        if server is not None:
            server.close()
        # 不取消进行中的请求：会话处理完当前帧后自行退出，wait_closed 会等待所有连接关闭
        for session in list(self._sessions.values()):
            session.request_stop()
        if self._sessions:
            await asyncio.gather(*self._sessions, return_exceptions=True)
        if server is not None:
            await server.wait_closed()
        logger.info("Server stopped")

    async def __aenter__(self) -> "DiscountCodeServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        session = ConnectionSession(
            self.registry,
            reader,
            writer,
            max_generate_count=self.max_generate_count,
            code_lengths=self.code_lengths,
            metrics_enabled=self.metrics_enabled,
        )
        task = asyncio.current_task()
        if task is not None:
            self._sessions[task] = session
        try:
            await session.run()
        finally:
            if task is not None:
                self._sessions.pop(task, None)
