"""Unit tests for the command-line room client."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.client.cli_client import CLIClient, run_client
from src.client.room_id import is_valid_room_id
from src.client.room_manager import ParticipantView, RoomState


@pytest.fixture
def client() -> CLIClient:
    return CLIClient(server_url="ws://localhost:8081", room_id="R1", display_name="Al")


class TestPrintState:
    """Test state rendering."""

    def test_prints_membership_once(self, client: CLIClient, capsys: pytest.CaptureFixture[str]) -> None:
        state = RoomState(
            room_id="R1",
            local_participant_id="me",
            participants=[ParticipantView("me", "Al", is_local=True), ParticipantView("abcdef123")],
        )

        client.print_state(state)
        client.print_state(state)

        out = capsys.readouterr().out
        assert out.count("2 participant(s): Al (You), User abcdef") == 1

    def test_prints_server_error(self, client: CLIClient, capsys: pytest.CaptureFixture[str]) -> None:
        client.print_state(RoomState(last_error="Room is full (maximum 5 participants)"))

        assert "Server error: Room is full" in capsys.readouterr().out


class TestInputLoop:
    """Test interactive commands."""

    @pytest.mark.asyncio
    async def test_commands(self, client: CLIClient, capsys: pytest.CaptureFixture[str]) -> None:
        client.manager.toggle_mute = MagicMock(return_value=True)  # type: ignore[method-assign]
        client.manager.update_display_name = AsyncMock()  # type: ignore[method-assign]
        stdin = MagicMock()
        stdin.readline.side_effect = ["m\n", "n Zed\n", "dance\n", "q\n"]

        with patch("src.client.cli_client.sys.stdin", stdin):
            await client.input_loop()

        assert client.running is False
        client.manager.toggle_mute.assert_called_once()
        client.manager.update_display_name.assert_awaited_once_with("Zed")
        out = capsys.readouterr().out
        assert "Muted" in out
        assert "Unknown command: dance" in out

    @pytest.mark.asyncio
    async def test_eof_stops(self, client: CLIClient) -> None:
        stdin = MagicMock()
        stdin.readline.return_value = ""

        with patch("src.client.cli_client.sys.stdin", stdin):
            await client.input_loop()

        assert client.running is False

    @pytest.mark.asyncio
    async def test_rename_outside_room_reported(
        self, client: CLIClient, capsys: pytest.CaptureFixture[str]
    ) -> None:
        stdin = MagicMock()
        stdin.readline.side_effect = ["n Zed\n", "q\n"]

        with patch("src.client.cli_client.sys.stdin", stdin):
            await client.input_loop()

        assert "Cannot rename: Not in a room" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_run_client_generates_room_id() -> None:
    with patch.object(CLIClient, "run", AsyncMock()) as run, patch(
        "src.client.cli_client.CLIClient.__init__", return_value=None
    ) as init:
        await run_client("ws://localhost:8081", {"name": "Al"})

    run.assert_awaited_once()
    room_id = init.call_args.kwargs["room_id"]
    assert is_valid_room_id(room_id)
    assert init.call_args.kwargs["display_name"] == "Al"
