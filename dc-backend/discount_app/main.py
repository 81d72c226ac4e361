"""
服务主入口
"""
import asyncio
import logging
import signal

import sentry_sdk
from prometheus_client import start_http_server
from sentry_sdk.integrations.asyncio import AsyncioIntegration

from discount_app.config import get_settings, Settings
from discount_app.server import DiscountCodeServer
from discount_app.services.code_registry import CodeRegistry
from discount_app.services.code_store import build_code_store
from discount_app.utils.request_context import ConnectionIdFilter, JsonFormatter, TEXT_FORMAT

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    handler = logging.StreamHandler()
    if settings.log_json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    handler.addFilter(ConnectionIdFilter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)

    for name in ("asyncio", "sqlalchemy.engine", "aiosqlite"):
        logging.getLogger(name).setLevel(logging.WARNING)


async def init_sentry(settings: Settings) -> None:
    # AsyncioIntegration 需要在事件循环内初始化
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            integrations=[AsyncioIntegration()],
            traces_sample_rate=settings.sentry_traces_sample_rate,
        )


def init_metrics(settings: Settings) -> None:
    if settings.metrics_enabled:
        start_http_server(settings.metrics_port)
        logger.info("Metrics exposed on port %d", settings.metrics_port)


async def serve(settings: Settings) -> None:
    """加载兑换码并运行服务，直到收到停止信号"""
    await init_sentry(settings)
    store = build_code_store(settings)
    registry = await CodeRegistry.create(store)
    server = DiscountCodeServer(
        registry,
        host=settings.host,
        port=settings.port,
        max_generate_count=settings.max_generate_count,
        code_lengths=settings.code_lengths,
        metrics_enabled=settings.metrics_enabled,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows 不支持 add_signal_handler
            pass

    try:
        async with server:
            serve_task = asyncio.create_task(server.serve_forever())
            await stop_event.wait()
            serve_task.cancel()
            await asyncio.gather(serve_task, return_exceptions=True)
    finally:
        await store.close()


def main() -> None:
    settings = get_settings()
    settings.validate_settings()
    configure_logging(settings)
    init_metrics(settings)
    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
