"""
兑换码客户端

使用方式:
    async with DiscountCodeClient("127.0.0.1", 5001) as client:
        response = await client.generate(5, 7)
        result = await client.redeem(response.codes[0])
"""
import argparse
import asyncio
import logging
from typing import Optional

from discount_app import protocol
from discount_app.services.code_registry import UseCodeResult

logger = logging.getLogger(__name__)


class DiscountCodeClient:
    def __init__(self, host: str = "127.0.0.1", port: int = 5001):
        self.host = host
        self.port = port
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        # 协议按顺序应答，同一连接上的请求必须串行
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        self._reader, self._writer = await asyncio.open_connection(self.host, self.port)

    async def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError):
                pass
            self._writer = None
            self._reader = None

    async def __aenter__(self) -> "DiscountCodeClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _streams(self):
        if self._reader is None or self._writer is None:
            raise RuntimeError("client is not connected")
        return self._reader, self._writer

    async def generate(self, count: int, length: int) -> protocol.GenerateResponse:
        """请求生成兑换码，服务端拒绝时返回 success=False"""
        reader, writer = self._streams()
        async with self._lock:
            writer.write(protocol.encode_generate_request(count, length))
            await writer.drain()
            return await protocol.read_generate_response(reader)

    async def redeem(self, code: str) -> UseCodeResult:
        reader, writer = self._streams()
        async with self._lock:
            writer.write(protocol.encode_redeem_request(code))
            await writer.drain()
            return await protocol.read_redeem_response(reader)


async def run_demo(host: str, port: int, count: int, length: int, redeem: Optional[str]) -> int:
    async with DiscountCodeClient(host, port) as client:
        logger.info("[CLIENT] Connected to %s:%d", host, port)

        response = await client.generate(count, length)
        if not response.success:
            logger.error("[CLIENT] Generation failed")
            return 1
        logger.info("[CLIENT] The server generated %d codes", len(response.codes))
        for code in response.codes:
            print(code)

        code = redeem or (response.codes[0] if response.codes else None)
        if code is not None:
            result = await client.redeem(code)
            logger.info("[CLIENT] UseCode %s -> %s", code, result.name)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Discount code demo client")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=5001)
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--length", type=int, default=7)
    parser.add_argument("--redeem", help="code to redeem (defaults to the first generated code)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(message)s")
    return asyncio.run(run_demo(args.host, args.port, args.count, args.length, args.redeem))


if __name__ == "__main__":
    raise SystemExit(main())
