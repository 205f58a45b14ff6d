import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable, Callable

import config
from channels import ChannelError, ChannelMessage, ChannelRegistry, IngestionScheduler, build_registry

log = logging.getLogger("courier")

ReplyHandler = Callable[[ChannelMessage], Awaitable[str | None]]


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
def configure_logging(level: int = logging.INFO) -> None:
    config.LOG_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(config.LOG_DIR / "courier.log"),
        ],
    )


async def echo_handler(message: ChannelMessage) -> str | None:
    """Reply with the inbound text. Useful for checking a channel end to end."""
    return message.content


# ---------------------------------------------------------------------------
# Courier core
# ---------------------------------------------------------------------------
class Courier:
    def __init__(
        self,
        registry: ChannelRegistry | None = None,
        handler: ReplyHandler | None = None,
    ):
        self.registry = registry
        self.handler = handler
        self.scheduler: IngestionScheduler | None = None
        self.loop: asyncio.AbstractEventLoop | None = None
        self._server = None

    # --- Message processing ---

    async def process_message(self, message: ChannelMessage) -> None:
        log.info(
            "Inbound %s message %s from %s (%d chars)",
            message.channel, message.id, message.sender, len(message.content),
        )
        if self.handler is None:
            return

        reply = await self.handler(message)
        if not reply:
            return

        try:
            await self.registry.send(message.channel, reply, message.reply_target)
        except ChannelError:
            log.error(
                "Reply via %s to %s failed", message.channel, message.reply_target,
                exc_info=True,
            )

    # --- Main loop ---

    async def run(self) -> None:
        self.loop = asyncio.get_running_loop()

        if self.registry is None:
            self.registry = build_registry(config.load_channel_settings())
        if not len(self.registry):
            log.warning("No channels configured; add entries to %s", config.CHANNELS_FILE)

        self.scheduler = IngestionScheduler(self.registry, queue_size=config.DELIVERY_QUEUE_SIZE)
        tasks = [asyncio.create_task(self.scheduler.run(self.process_message), name="dispatcher")]

        if config.WEB_ENABLED:
            import uvicorn
            from web import create_app

            app = create_app(self.registry, self.scheduler)
            self._server = uvicorn.Server(
                uvicorn.Config(app, host=config.WEB_HOST, port=config.WEB_PORT, log_level="info")
            )
            tasks.append(asyncio.create_task(self._server.serve(), name="web"))
            log.info("Gateway listening on http://%s:%d", config.WEB_HOST, config.WEB_PORT)

        try:
            await asyncio.gather(*tasks)
        finally:
            await self.registry.aclose()
            log.info("Courier shut down.")

    def _begin_shutdown(self) -> None:
        if self.scheduler is not None:
            self.scheduler.sink.close()
        if self._server is not None:
            self._server.should_exit = True

    def shutdown(self, *_args) -> None:
        log.info("Shutdown signal received...")
        if self.loop is not None:
            self.loop.call_soon_threadsafe(self._begin_shutdown)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main():
    configure_logging()

    courier = Courier(handler=echo_handler if config.ECHO_MODE else None)

    # Handle graceful shutdown
    signal.signal(signal.SIGINT, courier.shutdown)
    signal.signal(signal.SIGTERM, courier.shutdown)

    try:
        asyncio.run(courier.run())
    except KeyboardInterrupt:
        log.info("Interrupted.")


if __name__ == "__main__":
    main()
