"""Command receiver for push-based event collection.

Browser-side collaborators (navigation watcher, chat capture, popup and
settings pages) connect over TCP and send newline-delimited JSON
commands. Every request line gets exactly one JSON response line.

A connection that sends ``{"type": "Subscribe"}`` additionally receives
every outbound event (status changes, block on/off, redirects) as JSON
lines until it disconnects.

Supports:
- Newline-delimited JSON over TCP
- Optional IP allowlist for security
- Graceful shutdown on SIGINT/SIGTERM
"""

import asyncio
import json
import logging
import signal
from dataclasses import dataclass, field
from typing import Any

from trafficlight.models import OutboundEvent
from trafficlight.router import EventRouter

logger = logging.getLogger(__name__)

MAX_LINE_BYTES = 1024 * 1024


@dataclass
class ReceiverConfig:
    """Configuration for the command receiver."""

    port: int = 8765
    bind_address: str = "127.0.0.1"
    allowed_ips: list[str] = field(default_factory=list)  # Empty = allow all


def decode_line(line: bytes) -> Any:
    """Decode one request line.

    Raises:
        ValueError: If the line is not valid UTF-8 JSON
    """
    try:
        return json.loads(line.decode("utf-8"))
    except UnicodeDecodeError as e:
        raise ValueError(f"Invalid encoding: {e}") from e
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON: {e.msg}") from e


def encode_line(data: dict[str, Any]) -> bytes:
    return (json.dumps(data, default=str) + "\n").encode("utf-8")


class CommandReceiver:
    """Async TCP receiver feeding the event router."""

    def __init__(self, config: ReceiverConfig, router: EventRouter) -> None:
        """Initialize the command receiver.

        Args:
            config: Receiver configuration
            router: Router that executes commands and publishes events
        """
        self.config = config
        self.router = router
        self._server: asyncio.Server | None = None
        self._running = False
        self.stats = {"connections": 0, "commands": 0, "errors": 0}

    async def start(self) -> None:
        """Start listening."""
        self._server = await asyncio.start_server(
            self._handle_connection,
            self.config.bind_address,
            self.config.port,
            limit=MAX_LINE_BYTES,
        )
        self._running = True
        logger.info(f"Command receiver listening on {self.config.bind_address}:{self.config.port}")

    async def stop(self) -> None:
        """Stop the command receiver."""
        self._running = False

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("Command receiver stopped")

    @property
    def is_running(self) -> bool:
        """Check if the receiver is running."""
        return self._running

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        peer = writer.get_extra_info("peername")
        source_ip = peer[0] if peer else "unknown"

        if self.config.allowed_ips and source_ip not in self.config.allowed_ips:
            logger.debug(f"Rejected connection from {source_ip} (not in allowlist)")
            writer.close()
            return

        self.stats["connections"] += 1
        logger.debug(f"Connection from {peer}")

        write_lock = asyncio.Lock()

        async def send(data: dict[str, Any]) -> None:
            async with write_lock:
                writer.write(encode_line(data))
                await writer.drain()

        async def forward_event(event: OutboundEvent) -> None:
            await send(event.to_dict())

        subscribed = False
        try:
            while True:
                try:
                    line = await reader.readline()
                except (asyncio.LimitOverrunError, ValueError):
                    await send({"ok": False, "error": "Line too long"})
                    break
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue

                try:
                    payload = decode_line(line)
                except ValueError as e:
                    self.stats["errors"] += 1
                    await send({"ok": False, "error": str(e)})
                    continue

                if isinstance(payload, dict) and payload.get("type") == "Subscribe":
                    if not subscribed:
                        self.router.subscribe(forward_event)
                        subscribed = True
                    await send({"ok": True, "subscribed": True})
                    continue

                self.stats["commands"] += 1
                try:
                    response = await self.router.handle_payload(payload)
                except Exception as e:
                    logger.error(f"Error handling command: {e}")
                    response = {"ok": False, "error": "Internal error"}
                if not response.get("ok"):
                    self.stats["errors"] += 1
                await send(response)
        except ConnectionError as e:
            logger.debug(f"Connection from {peer} lost: {e}")
        finally:
            if subscribed:
                self.router.unsubscribe(forward_event)
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass
            logger.debug(f"Connection closed from {peer}")

    async def run_forever(self) -> None:
        """Run the receiver until interrupted."""
        await self.start()

        # Set up signal handlers for graceful shutdown
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def signal_handler() -> None:
            logger.info("Shutdown signal received")
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, signal_handler)
            except NotImplementedError:
                # Signal handlers not supported on this platform (e.g., Windows)
                pass

        try:
            await stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, ValueError):
                    pass
            await self.stop()
