"""Relay daemon that tails the journal and sends entries to Telegram."""

import asyncio
import signal
import socket

import structlog

from telelog.config import Config
from telelog.metrics import ENTRIES, SERVICE_INFO, start_metrics_server

from .dispatcher import Dispatcher
from .entry import Entry
from .journal import JournalSource
from .rules import RuleEngine
from .telegram import TelegramClient

log = structlog.get_logger()


class RelayDaemon:
    """Everything one relay process needs, built once at startup.

    The rule engine is read-only after construction; the dispatcher owns all
    mutable delivery state. Tests can build a fresh daemon per case.
    """

    def __init__(
        self,
        config: Config,
        source: JournalSource | None = None,
        client: TelegramClient | None = None,
    ):
        """Initialize the relay daemon.

        Args:
            config: Loaded configuration (credentials must be present)
            source: Journal source (default: tail the local journal)
            client: Bot API client (default: built from config.telegram)
        """
        self.config = config
        tg = config.telegram
        self.rules = RuleEngine.from_config(config.filters)
        self.source = source or JournalSource()
        self.client = client or TelegramClient(
            api_key=config.api_key,
            chat_id=config.chat_id,
            api_url=tg.api_url,
        )
        self.dispatcher = Dispatcher(
            self.client,
            flush_seconds=tg.flush_seconds,
            send_interval=tg.send_interval,
            max_attempts=tg.max_attempts,
            max_pending_blocks=tg.max_pending_blocks,
            max_backoff_seconds=tg.max_backoff_seconds,
        )
        self._stop_event = asyncio.Event()

    async def handle_entry(self, entry: Entry) -> None:
        """Filter one entry and hand it to the dispatcher if it passes."""
        if self.rules.should_suppress(entry):
            ENTRIES.labels(outcome="suppressed").inc()
            return
        await self.dispatcher.accept(entry)

    async def _ingest(self) -> None:
        async for entry in self.source:
            await self.handle_entry(entry)

    def stop(self) -> None:
        """Ask the daemon to flush and exit."""
        if not self._stop_event.is_set():
            log.info("Received stop signal")
            self._stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.stop)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    async def send_test_message(self) -> bool:
        """Send a test message to verify the bot token and chat id."""
        result = await self.dispatcher.send_message(
            f"<b>telelog</b> test message from <code>{socket.gethostname()}</code>"
        )
        await self.client.aclose()
        return result.ok

    async def run(self) -> None:
        """Run until SIGTERM/SIGINT, then make one last flush."""
        log.info(
            "Starting relay daemon",
            chat_id=self.client.chat_id,
            rule_groups=len(self.rules.rule_set),
            flush_seconds=self.dispatcher.flush_seconds,
        )
        SERVICE_INFO.info({"host": socket.gethostname()})
        if self.config.metrics_port:
            start_metrics_server(self.config.metrics_port, health_check=self.dispatcher.healthy)

        self.source.open(self.rules.native)
        self._install_signal_handlers()
        self.dispatcher.start()

        ingest = asyncio.create_task(self._ingest(), name="telelog-ingest")
        stop = asyncio.create_task(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait({ingest, stop}, return_when=asyncio.FIRST_COMPLETED)
            if ingest in done:
                # Surface a crashed reader instead of exiting quietly
                stop.cancel()
                ingest.result()
            else:
                ingest.cancel()
                await asyncio.gather(ingest, return_exceptions=True)
        finally:
            self._remove_signal_handlers()
            await self.shutdown()

    async def shutdown(self) -> None:
        """Best-effort final flush, then release resources."""
        timeout = self.config.telegram.shutdown_timeout
        try:
            await asyncio.wait_for(self.dispatcher.flush(), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning(
                "Final flush timed out",
                timeout=timeout,
                pending=len(self.dispatcher.pending),
            )
        await self.dispatcher.close()
        await self.client.aclose()
        await self.source.close()
        log.info("Relay daemon stopped")


def run_relay(config: Config) -> None:
    """Run the relay daemon until it is signalled to stop.

    Raises:
        MissingCredentialsError: if no bot token or chat id is configured
    """

    async def _main() -> None:
        await RelayDaemon(config).run()

    asyncio.run(_main())
