"""Unit tests for SignalingController dispatch."""

import pytest

from src.signaling.controller import Dispatch, SignalingController
from src.signaling.metrics import MetricsCollector
from src.signaling.store import RoomStore
from src.signaling.transport.websocket_protocol import (
    AnswerMessage,
    DisplayNameUpdatedMessage,
    ErrorMessage,
    IceServer,
    JoinedMessage,
    JoinMessage,
    LeaveMessage,
    OfferMessage,
    ParticipantJoinedMessage,
    ParticipantLeftMessage,
    UpdateDisplayNameMessage,
)

ICE_SERVERS = [IceServer(urls="stun:stun.example.org:3478")]


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def controller(metrics: MetricsCollector) -> SignalingController:
    return SignalingController(RoomStore(), ice_servers=ICE_SERVERS, metrics=metrics)


def join(controller: SignalingController, client_id: str, room_id: str = "R1", name: str | None = None) -> Dispatch:
    return controller.handle_message(
        client_id, JoinMessage(room_id=room_id, display_name=name), None
    )


def only_error(dispatch: Dispatch, client_id: str) -> ErrorMessage:
    assert len(dispatch.outbound) == 1
    item = dispatch.outbound[0]
    assert item.recipient_id == client_id
    assert isinstance(item.message, ErrorMessage)
    return item.message


class TestJoin:
    """Test join handling."""

    def test_first_join(self, controller: SignalingController) -> None:
        dispatch = join(controller, "a", name="Alice")

        assert dispatch.room_id == "R1"
        assert len(dispatch.outbound) == 1
        joined = dispatch.outbound[0].message
        assert isinstance(joined, JoinedMessage)
        assert joined.you_id == "a"
        assert joined.participants == []
        assert joined.ice_servers == ICE_SERVERS

    def test_second_join_notifies_existing(self, controller: SignalingController) -> None:
        join(controller, "a", name="Alice")
        dispatch = join(controller, "b", name=" Bob ")

        recipients = [item.recipient_id for item in dispatch.outbound]
        assert recipients == ["b", "a"]

        joined = dispatch.outbound[0].message
        assert isinstance(joined, JoinedMessage)
        assert [(p.id, p.display_name) for p in joined.participants] == [("a", "Alice")]

        notice = dispatch.outbound[1].message
        assert isinstance(notice, ParticipantJoinedMessage)
        assert notice.participant.id == "b"
        assert notice.participant.display_name == "Bob"

    def test_room_full_error(self, controller: SignalingController) -> None:
        for pid in "abcde":
            join(controller, pid)

        dispatch = join(controller, "f")

        error = only_error(dispatch, "f")
        assert error.code == "ROOM_FULL"
        assert dispatch.room_id is None
        assert controller.store.find_room("R1").participant_count == 5

    def test_join_while_in_room(self, controller: SignalingController) -> None:
        join(controller, "a")
        dispatch = controller.handle_message("a", JoinMessage(room_id="R2"), "R1")

        assert only_error(dispatch, "a").code == "ALREADY_IN_ROOM"
        assert dispatch.room_id == "R1"
        assert not controller.store.room_exists("R2")

    def test_name_too_long(self, controller: SignalingController) -> None:
        dispatch = join(controller, "a", name="n" * 51)

        assert only_error(dispatch, "a").code == "NAME_TOO_LONG"
        assert controller.store.count() == 0


class TestRelay:
    """Test offer/answer/ice-candidate forwarding."""

    def test_offer_forwarded_verbatim(self, controller: SignalingController) -> None:
        join(controller, "a")
        join(controller, "b")
        offer = OfferMessage(to="b", from_="a", sdp="v=0 offer")

        dispatch = controller.handle_message("a", offer, "R1")

        assert len(dispatch.outbound) == 1
        assert dispatch.outbound[0].recipient_id == "b"
        assert dispatch.outbound[0].message is offer

    def test_relay_requires_room(self, controller: SignalingController) -> None:
        dispatch = controller.handle_message("a", AnswerMessage(to="b", from_="a", sdp="x"), None)
        assert only_error(dispatch, "a").code == "NOT_IN_ROOM"

    def test_recipient_not_in_room(self, controller: SignalingController) -> None:
        join(controller, "a")
        join(controller, "b")

        dispatch = controller.handle_message("a", OfferMessage(to="c", from_="a", sdp="x"), "R1")

        assert only_error(dispatch, "a").code == "RECIPIENT_NOT_IN_ROOM"

    def test_relay_with_forged_sender_rejected(self, controller: SignalingController) -> None:
        join(controller, "a")
        join(controller, "b")
        join(controller, "c")

        dispatch = controller.handle_message("a", OfferMessage(to="c", from_="b", sdp="x"), "R1")

        assert only_error(dispatch, "a").code == "SENDER_NOT_IN_ROOM"

    def test_relay_counted(self, controller: SignalingController, metrics: MetricsCollector) -> None:
        join(controller, "a")
        join(controller, "b")
        controller.handle_message("a", OfferMessage(to="b", from_="a", sdp="x"), "R1")

        assert metrics.get_summary()["relays_total"] == 1


class TestDisplayName:
    """Test display name updates."""

    def test_broadcast_to_all_members(self, controller: SignalingController) -> None:
        join(controller, "a")
        join(controller, "b")

        dispatch = controller.handle_message(
            "a", UpdateDisplayNameMessage(from_="a", display_name="  Zed "), "R1"
        )

        assert sorted(item.recipient_id for item in dispatch.outbound) == ["a", "b"]
        for item in dispatch.outbound:
            assert isinstance(item.message, DisplayNameUpdatedMessage)
            assert item.message.participant_id == "a"
            assert item.message.display_name == "Zed"

    def test_empty_name_rejected(self, controller: SignalingController) -> None:
        join(controller, "a")
        dispatch = controller.handle_message(
            "a", UpdateDisplayNameMessage(from_="a", display_name="   "), "R1"
        )

        assert only_error(dispatch, "a").code == "EMPTY_NAME"

    def test_renaming_someone_else_rejected(self, controller: SignalingController) -> None:
        join(controller, "a", name="Alice")
        join(controller, "b", name="Bob")

        dispatch = controller.handle_message(
            "a", UpdateDisplayNameMessage(from_="b", display_name="Mallory"), "R1"
        )

        assert only_error(dispatch, "a").code == "SENDER_NOT_IN_ROOM"
        assert controller.store.find_room("R1").get_participant("b").display_name == "Bob"

    def test_rename_requires_room(self, controller: SignalingController) -> None:
        dispatch = controller.handle_message(
            "a", UpdateDisplayNameMessage(from_="a", display_name="Zed"), None
        )
        assert only_error(dispatch, "a").code == "NOT_IN_ROOM"


class TestLeaveAndDisconnect:
    """Test explicit leave and transport disconnect cleanup."""

    def test_disconnect_notifies_remaining(self, controller: SignalingController) -> None:
        join(controller, "a")
        join(controller, "b")
        join(controller, "c")

        outbound = controller.handle_disconnect("a", "R1")

        assert sorted(item.recipient_id for item in outbound) == ["b", "c"]
        for item in outbound:
            assert isinstance(item.message, ParticipantLeftMessage)
            assert item.message.id == "a"

    def test_last_disconnect_deletes_room_silently(self, controller: SignalingController) -> None:
        join(controller, "a")

        assert controller.handle_disconnect("a", "R1") == []
        assert not controller.store.room_exists("R1")

    def test_disconnect_without_room(self, controller: SignalingController) -> None:
        assert controller.handle_disconnect("a", None) == []

    def test_explicit_leave_clears_association(self, controller: SignalingController) -> None:
        join(controller, "a")
        join(controller, "b")

        dispatch = controller.handle_message("a", LeaveMessage(from_="a"), "R1")

        assert dispatch.room_id is None
        assert [item.recipient_id for item in dispatch.outbound] == ["b"]
        assert controller.handle_disconnect("a", dispatch.room_id) == []

    def test_leave_without_room(self, controller: SignalingController) -> None:
        dispatch = controller.handle_message("a", LeaveMessage(from_="a"), None)
        assert only_error(dispatch, "a").code == "NOT_IN_ROOM"

    def test_rooms_gauge_tracks_store(
        self, controller: SignalingController, metrics: MetricsCollector
    ) -> None:
        join(controller, "a", room_id="R1")
        join(controller, "b", room_id="R2")
        assert metrics.get_summary()["rooms_active"] == 2

        controller.handle_disconnect("a", "R1")
        assert metrics.get_summary()["rooms_active"] == 1


def test_unknown_message_object(controller: SignalingController) -> None:
    """Test a message outside the protocol yields an error without state change."""

    class Bogus:
        type = "bogus"

    dispatch = controller.handle_message("a", Bogus(), None)

    assert only_error(dispatch, "a").code == "UNKNOWN_MESSAGE_TYPE"
    assert controller.store.count() == 0
