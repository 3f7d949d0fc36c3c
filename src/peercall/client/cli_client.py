"""Terminal client for room chat and peer-to-peer calls.

Joins a room on the signal bus, prints chat messages, and places, accepts,
rejects and ends calls from slash commands. Remote audio is played through
the configured output device.
"""

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path

from peercall.bus import BusRecord, SignalBus, SignalSendError, create_signal_bus
from peercall.chat import ChatRoom
from peercall.config import CallConfig
from peercall.media import AiortcMediaCapture, RemoteAudioSink
from peercall.negotiator import CallEvent, CallEventKind, CallNegotiator, CallState
from peercall.transport import create_aiortc_peer_connection
from peercall.utils.logging import setup_logging

logger = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  /call <user-id> - Call a user in the room
  /accept         - Accept the incoming call
  /reject         - Reject the incoming call
  /hangup         - End the current call
  /status         - Show call status
  /quit           - Exit client
  /help           - Show this help
"""


def format_record(record: BusRecord) -> str:
    """Render a chat record as one terminal line."""
    ts = datetime.fromtimestamp(record.created_at).strftime("%H:%M:%S")
    return f"[{ts}] {record.sender_name or record.sender_id}: {record.body}"


class CLIClient:
    """Interactive room client."""

    def __init__(
        self,
        user_id: str,
        user_name: str,
        config: CallConfig,
        bus: SignalBus | None = None,
    ) -> None:
        """Initialize CLI client.

        Args:
            user_id: Identity used in the room and as the call address
            user_name: Display name shown to other participants
            config: Call configuration
            bus: Signal bus to use instead of the configured backend
        """
        self.user_id = user_id
        self.user_name = user_name
        self.config = config
        self.running = True

        self.bus = bus or create_signal_bus(config.signal_bus)
        self.negotiator = CallNegotiator(
            user_id=user_id,
            user_name=user_name,
            bus=self.bus,
            media=AiortcMediaCapture(config.media),
            peer_factory=create_aiortc_peer_connection,
            config=config,
        )
        self.chat = ChatRoom(
            self.bus,
            self.negotiator,
            user_id,
            user_name,
            history_limit=config.signal_bus.history_size,
        )
        self.audio_sink = RemoteAudioSink(config.media)

        # Sink start/stop is async; tasks are kept until they finish
        self._sink_tasks: set[asyncio.Task[None]] = set()

        self.negotiator.add_listener(self.on_call_event)
        self.chat.add_listener(self.on_chat_message)
        self.bus.on_disconnect(self.on_bus_disconnected)

    def on_chat_message(self, record: BusRecord) -> None:
        print(f"\n{format_record(record)}")

    def on_bus_disconnected(self, error: Exception) -> None:
        """Stop the client once the room can no longer deliver records."""
        self.running = False
        print(f"\n❌ Connection to room lost: {error}")
        print("Press Enter to exit")

    def on_call_event(self, event: CallEvent) -> None:
        negotiator = event.negotiator

        if event.kind is CallEventKind.INCOMING_CALL:
            incoming = negotiator.incoming_call
            if incoming is not None:
                print(
                    f"\n📞 Incoming call from {incoming.caller_name or incoming.caller_id}"
                    " (/accept or /reject)"
                )

        elif event.kind is CallEventKind.STATE:
            if negotiator.state is not CallState.ENDED:
                print(f"\n• Call state: {negotiator.state.value}")

        elif event.kind is CallEventKind.REMOTE_STREAM:
            self._schedule_sink_update(negotiator.remote_stream)

    def _schedule_sink_update(self, track: object) -> None:
        if track is None:
            coro = self.audio_sink.stop()
        else:
            coro = self.audio_sink.render(track)  # type: ignore[arg-type]

        task = asyncio.ensure_future(coro)
        self._sink_tasks.add(task)
        task.add_done_callback(self._sink_tasks.discard)

    def status_text(self) -> str:
        negotiator = self.negotiator
        lines = [f"State: {negotiator.state.value}"]
        if negotiator.peer_id:
            lines.append(f"Peer: {negotiator.peer_id}")
        if negotiator.incoming_call is not None:
            lines.append(f"Incoming call from: {negotiator.incoming_call.caller_id}")
        latency = negotiator.metrics.connect_latency_ms
        if latency is not None:
            lines.append(f"Connect latency: {latency:.0f} ms")
        return "\n".join(lines)

    async def handle_command(self, text: str) -> None:
        """Run one line of user input (slash command or chat text).

        Args:
            text: Stripped, non-empty input line
        """
        if not text.startswith("/"):
            try:
                await self.chat.send_text(text)
            except SignalSendError as e:
                print(f"❌ Message not sent: {e}")
            return

        command, _, argument = text[1:].partition(" ")
        command = command.lower()
        argument = argument.strip()

        if command == "quit":
            self.running = False
            print("\nGoodbye!")

        elif command == "help":
            print(HELP_TEXT)

        elif command == "call":
            if not argument:
                print("Usage: /call <user-id>")
            elif argument == self.user_id:
                print("You cannot call yourself")
            elif self.negotiator.is_busy:
                print("A call is already in progress")
            else:
                await self.negotiator.initiate_call(argument)

        elif command == "accept":
            if self.negotiator.incoming_call is None:
                print("No incoming call")
            else:
                await self.negotiator.accept_call()

        elif command == "reject":
            if self.negotiator.incoming_call is None:
                print("No incoming call")
            else:
                await self.negotiator.reject_call()

        elif command == "hangup":
            await self.negotiator.end_call()

        elif command == "status":
            print(self.status_text())

        else:
            print(f"Unknown command: {command}")
            print("Type /help for available commands")

    async def input_loop(self) -> None:
        """Handle user input from stdin."""
        print("\n" + "=" * 60)
        print(f"peercall - room '{self.config.signal_bus.room}' as {self.user_name}")
        print("=" * 60)
        print(HELP_TEXT)
        print("Enter text to chat, or a command (starting with /):\n")

        loop = asyncio.get_running_loop()

        while self.running:
            try:
                text = await loop.run_in_executor(None, input, "")
                text = text.strip()
                if text:
                    await self.handle_command(text)

            except EOFError:
                # Handle Ctrl+D
                self.running = False
                break
            except Exception as e:
                logger.error(f"Input error: {e}")

    async def run(self) -> None:
        """Run the CLI client."""
        await self.bus.start()
        try:
            await self.chat.start()
            for record in self.chat.messages:
                print(format_record(record))

            loop = asyncio.get_running_loop()

            def signal_handler() -> None:
                self.running = False

            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, signal_handler)

            try:
                await self.input_loop()
            finally:
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.remove_signal_handler(sig)
        finally:
            await self.negotiator.end_call()
            await self.chat.stop()
            await self.audio_sink.stop()
            await self.bus.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Room chat with peer-to-peer voice calls")
    parser.add_argument("--user-id", required=True, help="Your user id in the room")
    parser.add_argument("--name", required=True, help="Display name shown to others")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file",
    )
    parser.add_argument("--room", default=None, help="Room to join (overrides config)")
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser


def main() -> None:
    """Main entry point for CLI client."""
    args = build_parser().parse_args()

    try:
        config = CallConfig.from_yaml_with_defaults(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    if args.room:
        config.signal_bus.room = args.room

    setup_logging("DEBUG" if args.verbose else config.log_level)

    client = CLIClient(user_id=args.user_id, user_name=args.name, config=config)
    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)
    except ConnectionError as e:
        logger.error(f"Client error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
