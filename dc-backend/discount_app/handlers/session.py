"""
连接会话 - 单个 TCP 连接的请求/响应循环

状态流转：
    AWAITING_REQUEST_TYPE -> GENERATING / REDEEMING -> AWAITING_REQUEST_TYPE -> ... -> CLOSED

协议没有重新同步的标记，帧格式错误、未知请求类型、持久化失败都会直接断开连接，不发送响应。
"""
import asyncio
import enum
import logging
import time
import uuid
from typing import Iterable, Optional

from discount_app import protocol
from discount_app.exceptions import CodeStoreError, FramingError
from discount_app.services.code_registry import CodeRegistry
from discount_app.utils.metrics import (
    CODES_GENERATED,
    OPEN_CONNECTIONS,
    REQUEST_COUNT,
    REQUEST_LATENCY,
    get_outcome_name,
)
from discount_app.utils.request_context import connection_id_ctx_var

logger = logging.getLogger(__name__)

DEFAULT_MAX_GENERATE_COUNT = 2000
DEFAULT_CODE_LENGTHS = (7, 8)


class SessionState(enum.Enum):
    AWAITING_REQUEST_TYPE = "awaiting_request_type"
    GENERATING = "generating"
    REDEEMING = "redeeming"
    CLOSED = "closed"


class ConnectionSession:
    """
    处理一个连接上的所有请求

    Args:
        registry: 服务进程持有的兑换码注册表
        reader / writer: asyncio 流
        max_generate_count: 单次生成数量上限
        code_lengths: 允许的兑换码长度
        metrics_enabled: 是否记录 Prometheus 指标
    """

    def __init__(
        self,
        registry: CodeRegistry,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        max_generate_count: int = DEFAULT_MAX_GENERATE_COUNT,
        code_lengths: Iterable[int] = DEFAULT_CODE_LENGTHS,
        metrics_enabled: bool = False,
    ):
        self.registry = registry
        self.reader = reader
        self.writer = writer
        self.max_generate_count = max_generate_count
        self.code_lengths = frozenset(code_lengths)
        self.metrics_enabled = metrics_enabled
        self.connection_id = uuid.uuid4().hex[:12]
        self.state = SessionState.AWAITING_REQUEST_TYPE
        self.requests_handled = 0
        self._stopping = False
        self._read_task: Optional[asyncio.Future] = None

    @property
    def peer(self) -> Optional[str]:
        peername = self.writer.get_extra_info("peername")
        if not peername:
            return None
        if isinstance(peername, tuple):
            return f"{peername[0]}:{peername[1]}"
        return str(peername)

    async def run(self) -> None:
        """运行请求循环直到对端关闭或出现不可恢复的错误"""
        token = connection_id_ctx_var.set(self.connection_id)
        if self.metrics_enabled:
            OPEN_CONNECTIONS.inc()
        logger.info("Client connected", extra={"peer": self.peer})

        try:
            while not self._stopping and await self._serve_one():
                self.requests_handled += 1
        except FramingError as exc:
            logger.warning("帧格式错误，断开连接: %s", exc.message)
        except (ConnectionResetError, BrokenPipeError) as exc:
            logger.info("连接被对端重置: %s", exc)
        except CodeStoreError as exc:
            logger.error("兑换码持久化失败，断开连接: %s", exc.message, exc_info=True)
        except Exception as exc:
            logger.error(f"Client error: {exc}", exc_info=True)
        finally:
            self.state = SessionState.CLOSED
            await self._close()
            if self.metrics_enabled:
                OPEN_CONNECTIONS.dec()
            logger.info("Client disconnected after %d requests", self.requests_handled)
            connection_id_ctx_var.reset(token)

    def request_stop(self) -> None:
        """
        请求结束会话

        正在处理的请求会完整执行并发送响应，之后不再读取新请求；
        空闲等待请求类型字节时立即结束。
        """
        self._stopping = True
        if self._read_task is not None:
            self._read_task.cancel()

    async def _serve_one(self) -> bool:
        """处理一个请求，返回 False 表示对端已正常关闭"""
        self.state = SessionState.AWAITING_REQUEST_TYPE
        self._read_task = asyncio.ensure_future(protocol.read_request_type(self.reader))
        try:
            request_type = await self._read_task
        except asyncio.CancelledError:
            if self._stopping and self._read_task.cancelled():
                return False
            raise
        finally:
            self._read_task = None
        if request_type is None:
            return False

        if request_type == protocol.REQUEST_GENERATE:
            self.state = SessionState.GENERATING
            await self._timed("generate", self._handle_generate)
        elif request_type == protocol.REQUEST_REDEEM:
            self.state = SessionState.REDEEMING
            await self._timed("redeem", self._handle_redeem)
        else:
            raise FramingError(f"未知的请求类型: 0x{request_type:02x}")
        return True

    async def _timed(self, request_type: str, handler) -> None:
        start = time.perf_counter()
        outcome = "error"
        try:
            outcome = await handler()
        finally:
            if self.metrics_enabled:
                REQUEST_COUNT.labels(request_type, outcome).inc()
                REQUEST_LATENCY.labels(request_type).observe(time.perf_counter() - start)

    async def _handle_generate(self) -> str:
        request = await protocol.read_generate_request(self.reader)

        if request.count > self.max_generate_count:
            logger.info("GenerateRequest failed: too many codes requested (%d > %d)",
                        request.count, self.max_generate_count)
            await self._send(protocol.encode_generate_failure())
            return "rejected"
        if request.length not in self.code_lengths:
            logger.info("GenerateRequest failed: length %d not in %s",
                        request.length, sorted(self.code_lengths))
            await self._send(protocol.encode_generate_failure())
            return "rejected"

        logger.info("GenerateRequest: Count=%d, Length=%d", request.count, request.length)
        codes = await self.registry.generate(request.count, request.length)
        if self.metrics_enabled:
            CODES_GENERATED.inc(len(codes))
        await self._send(protocol.encode_generate_success(codes))
        return "success"

    async def _handle_redeem(self) -> str:
        request = await protocol.read_redeem_request(self.reader)
        result = await self.registry.redeem(request.code)
        logger.info("UseCodeRequest: result=%s", result.name)
        await self._send(protocol.encode_redeem_response(result))
        return get_outcome_name(result)

    async def _send(self, payload: bytes) -> None:
        self.writer.write(payload)
        await self.writer.drain()

    async def _close(self) -> None:
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionResetError, BrokenPipeError):
            pass
