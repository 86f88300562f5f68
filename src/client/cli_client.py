"""Command-line client for joining a voice room.

Connects to the signaling server, joins (or creates) a room and keeps a peer
connection to every other participant. Outgoing audio comes from a file (or
silence); incoming audio is drained.

Commands while in the room:
    m           toggle mute
    n <name>    change display name
    q           leave and exit
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer
from dotenv import load_dotenv

from src.client.room_id import generate_room_id
from src.client.room_manager import RoomManager, RoomState
from src.client.rtc_adapter import LocalAudioTrack
from src.client.signaling_client import SignalingClient

logger = logging.getLogger(__name__)


class CLIClient:
    """Interactive room participant."""

    def __init__(
        self,
        server_url: str,
        room_id: str,
        display_name: str | None = None,
        audio_file: str | None = None,
        verbose: bool = False,
    ) -> None:
        """Initialize CLI client.

        Args:
            server_url: Signaling server WebSocket URL
            room_id: Room to join
            display_name: Optional display name
            audio_file: Optional audio file to stream instead of silence
            verbose: Enable verbose logging
        """
        self.server_url = server_url
        self.room_id = room_id
        self.display_name = display_name
        self.audio_file = audio_file
        self.running = True

        self._player: MediaPlayer | None = None
        self._sinks: dict[str, MediaBlackhole] = {}
        self._last_participants: list[str] = []

        level = logging.DEBUG if verbose else logging.INFO
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%H:%M:%S",
        )

        self.manager = RoomManager(
            SignalingClient(),
            server_url,
            local_track=LocalAudioTrack(self._open_source()),
        )
        self.manager.on_state_change(self.print_state)

    def _open_source(self) -> MediaStreamTrack | None:
        if not self.audio_file:
            return None
        self._player = MediaPlayer(self.audio_file)
        return self._player.audio

    def print_state(self, state: RoomState) -> None:
        """Print membership changes and errors."""
        labels = [p.display_label() for p in state.participants]
        if labels != self._last_participants:
            self._last_participants = labels
            print(f"\n[{state.room_id}] {len(labels)} participant(s): {', '.join(labels)}")
            if state.is_muted:
                print("(muted)")

        if state.last_error:
            print(f"\nServer error: {state.last_error}")

        for participant in state.participants:
            track = self.manager.get_remote_track(participant.id)
            if track is not None and participant.id not in self._sinks:
                sink = MediaBlackhole()
                sink.addTrack(track)
                self._sinks[participant.id] = sink
                asyncio.ensure_future(sink.start())

    async def input_loop(self) -> None:
        """Read commands from stdin until quit."""
        print("\nCommands: m = toggle mute, n <name> = rename, q = quit\n")

        while self.running:
            try:
                line = await asyncio.to_thread(sys.stdin.readline)
            except Exception as e:
                logger.error(f"Input error: {e}")
                continue

            if not line:
                # EOF (Ctrl+D)
                self.running = False
                break

            command = line.strip()
            if command == "q":
                self.running = False
            elif command == "m":
                muted = self.manager.toggle_mute()
                print("Muted" if muted else "Unmuted")
            elif command.startswith("n "):
                try:
                    await self.manager.update_display_name(command[2:])
                except RuntimeError as e:
                    print(f"Cannot rename: {e}")
            elif command:
                print(f"Unknown command: {command}")

    async def wait_for_stop(self) -> None:
        while self.running:
            await asyncio.sleep(0.2)

    async def run(self) -> None:
        """Join the room and run until quit or interrupt."""
        await self.manager.join_room(self.room_id, self.display_name)
        print(f"Joining room {self.room_id} on {self.server_url}")

        def signal_handler() -> None:
            self.running = False

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        input_task = asyncio.create_task(self.input_loop())
        try:
            await self.wait_for_stop()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

            input_task.cancel()
            await self.manager.leave_room()
            for sink in self._sinks.values():
                await sink.stop()
            print("Left room")


async def run_client(server_url: str, config: dict[str, Any] | None = None) -> None:
    """Run CLI client joining a room on the signaling server.

    Args:
        server_url: Signaling server WebSocket URL
        config: Optional client configuration
    """
    config = config or {}
    client = CLIClient(
        server_url=server_url,
        room_id=config.get("room") or generate_room_id(),
        display_name=config.get("name"),
        audio_file=config.get("audio_file"),
        verbose=config.get("verbose", False),
    )
    await client.run()


def main() -> None:
    """Main entry point for CLI client."""
    load_dotenv()

    parser = argparse.ArgumentParser(description="Command-line voice room client")
    parser.add_argument(
        "--server",
        type=str,
        default="ws://localhost:8081",
        help="Signaling server URL (default: ws://localhost:8081)",
    )
    parser.add_argument(
        "--room",
        type=str,
        default=None,
        help="Room id to join (generated when omitted)",
    )
    parser.add_argument(
        "--name",
        type=str,
        default=None,
        help="Display name",
    )
    parser.add_argument(
        "--audio-file",
        type=str,
        default=None,
        help="Audio file to stream instead of silence",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    config = {
        "room": args.room,
        "name": args.name,
        "audio_file": args.audio_file,
        "verbose": args.verbose,
    }

    try:
        asyncio.run(run_client(args.server, config))
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)
    except OSError as e:
        logger.error(f"Could not reach signaling server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
