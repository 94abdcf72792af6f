# run_server.py
import asyncio
import contextlib

from uvicorn.importer import import_from_string

from gateway.core.config import Settings
from gateway.core.logging import setup_logging
from gateway.server import GatewayServer


async def main() -> None:
    settings = Settings()
    setup_logging(settings.LOG_LEVEL, serialize=settings.LOG_JSON)
    handler = import_from_string(settings.HANDLER)
    server = GatewayServer(settings.gateway_config(), handler, title=settings.APP_NAME)
    await server.start()
    try:
        await server.wait()
    finally:
        await server.stop()


if __name__ == "__main__":
    # Gateway listens on GATEWAY_HOST:GATEWAY_PORT (127.0.0.1:8787 by default)
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())
