"""Peer negotiation engine ("perfect negotiation" with a polite peer).

One ``PeerSession`` per remote participant holds the connection handle and
the negotiation flags. The flags and handle form a unit guarded by a
per-peer ``asyncio.Lock``, so an incoming offer never observes a half-applied
local offer and ``close_all`` never tears down a peer mid-negotiation.

Glare resolution: when both sides offer at once, the peer whose id sorts
lower (lexicographic string order) is polite. The polite peer rolls back its
own offer and answers; the impolite peer ignores the incoming offer and keeps
its own. Both sides decide independently, so the order is part of the wire
contract.

ICE candidates that arrive before a session exists, or before its remote
description is applied, are buffered per peer and flushed once the remote
description is set.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Signaling states
STABLE = "stable"
HAVE_LOCAL_OFFER = "have-local-offer"
HAVE_REMOTE_OFFER = "have-remote-offer"
CLOSED = "closed"

# Connection states after which a session is torn down
TERMINAL_CONNECTION_STATES = frozenset({"failed", "closed"})


@dataclass(frozen=True)
class SessionDescription:
    """SDP payload with its role (``offer`` or ``answer``)."""

    type: str
    sdp: str


IceCandidateHandler = Callable[[dict[str, Any] | None], None]
TrackHandler = Callable[[Any], None]
ConnectionStateHandler = Callable[[str], None]


class PeerConnection(ABC):
    """Abstract WebRTC peer connection.

    Implementations wrap a real WebRTC stack (see ``rtc_adapter``) or a test
    double. Callbacks are plain callables invoked from the event loop.
    """

    def __init__(self) -> None:
        self._ice_candidate_handlers: list[IceCandidateHandler] = []
        self._track_handlers: list[TrackHandler] = []
        self._state_handlers: list[ConnectionStateHandler] = []

    @property
    @abstractmethod
    def signaling_state(self) -> str:
        """One of stable / have-local-offer / have-remote-offer / closed."""

    @property
    @abstractmethod
    def connection_state(self) -> str:
        """new / connecting / connected / disconnected / failed / closed."""

    @property
    @abstractmethod
    def local_description(self) -> SessionDescription | None:
        """Currently applied local description, if any."""

    @abstractmethod
    async def create_offer(self) -> SessionDescription: ...

    @abstractmethod
    async def create_answer(self) -> SessionDescription: ...

    @abstractmethod
    async def set_local_description(self, description: SessionDescription) -> None: ...

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None: ...

    @abstractmethod
    async def rollback(self) -> None:
        """Discard a pending local offer and return to stable."""

    @abstractmethod
    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None:
        """Apply a remote RTCIceCandidateInit dict."""

    @abstractmethod
    def add_track(self, track: Any) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    # ===== Callbacks =====

    def on_ice_candidate(self, handler: IceCandidateHandler) -> None:
        self._ice_candidate_handlers.append(handler)

    def on_track(self, handler: TrackHandler) -> None:
        self._track_handlers.append(handler)

    def on_connection_state_change(self, handler: ConnectionStateHandler) -> None:
        self._state_handlers.append(handler)

    def _emit_ice_candidate(self, candidate: dict[str, Any] | None) -> None:
        for handler in list(self._ice_candidate_handlers):
            handler(candidate)

    def _emit_track(self, track: Any) -> None:
        for handler in list(self._track_handlers):
            handler(track)

    def _emit_connection_state(self, state: str) -> None:
        for handler in list(self._state_handlers):
            handler(state)


PeerConnectionFactory = Callable[[str], PeerConnection]


@dataclass
class PeerSession:
    """Negotiation state for one remote peer."""

    peer_id: str
    connection: PeerConnection
    making_offer: bool = False
    ignore_offer: bool = False
    is_negotiating: bool = False
    remote_description_set: bool = False
    pending_candidates: list[dict[str, Any]] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class PeerNegotiationEngine:
    """Drives offer/answer exchange with every remote peer in the mesh."""

    def __init__(
        self,
        factory: PeerConnectionFactory,
        local_id: str | None = None,
        on_peer_state_change: Callable[[str, str], None] | None = None,
    ) -> None:
        """Initialize engine.

        Args:
            factory: Builds a ready-to-use PeerConnection for a peer id
                (local tracks already added)
            local_id: Local participant id; may be set later via ``local_id``
            on_peer_state_change: Called with (peer_id, connection_state)
        """
        self._factory = factory
        self._local_id = local_id
        self._on_peer_state_change = on_peer_state_change

        self._sessions: dict[str, PeerSession] = {}
        # Candidates received before any session exists for the peer
        self._early_candidates: dict[str, list[dict[str, Any]]] = {}
        self._close_tasks: set[asyncio.Task[None]] = set()

    @property
    def local_id(self) -> str | None:
        return self._local_id

    @local_id.setter
    def local_id(self, value: str | None) -> None:
        self._local_id = value

    def is_polite(self, peer_id: str) -> bool:
        """True if this side yields during glare with ``peer_id``."""
        if self._local_id is None:
            return False
        return self._local_id < peer_id

    def has_session(self, peer_id: str) -> bool:
        return peer_id in self._sessions

    def get_session(self, peer_id: str) -> PeerSession | None:
        return self._sessions.get(peer_id)

    def active_peer_ids(self) -> list[str]:
        return list(self._sessions)

    def get_connection_state(self, peer_id: str) -> str | None:
        session = self._sessions.get(peer_id)
        if session is None:
            return None
        return session.connection.connection_state

    def ensure_session(self, peer_id: str) -> PeerSession:
        """Get the session for a peer, creating its connection on first use."""
        session = self._sessions.get(peer_id)
        if session is not None:
            return session

        connection = self._factory(peer_id)
        session = PeerSession(peer_id=peer_id, connection=connection)
        session.pending_candidates.extend(self._early_candidates.pop(peer_id, []))
        self._sessions[peer_id] = session

        connection.on_connection_state_change(
            lambda state: self._handle_connection_state(session, state)
        )

        logger.debug("Peer session created", extra={"peer_id": peer_id})
        return session

    async def create_offer(self, peer_id: str) -> SessionDescription | None:
        """Create and apply a local offer for ``peer_id``.

        Returns:
            The offer to send, or None if a negotiation is already in flight
            or the connection is not stable

        Raises:
            Exception: Whatever the underlying connection raised; flags are
                cleared before propagating
        """
        session = self.ensure_session(peer_id)

        async with session.lock:
            connection = session.connection
            if session.is_negotiating or connection.signaling_state != STABLE:
                logger.debug(
                    "Skipping offer, negotiation in progress",
                    extra={"peer_id": peer_id, "signaling_state": connection.signaling_state},
                )
                return None

            session.is_negotiating = True
            session.making_offer = True
            try:
                offer = await connection.create_offer()
                await connection.set_local_description(offer)
                logger.debug("Local offer applied", extra={"peer_id": peer_id})
                return connection.local_description or offer
            finally:
                session.making_offer = False
                session.is_negotiating = False

    async def handle_incoming_offer(self, peer_id: str, sdp: str) -> SessionDescription | None:
        """Apply a remote offer and produce an answer, unless it loses glare.

        Returns:
            The answer to send, or None if the offer was ignored
        """
        session = self.ensure_session(peer_id)

        async with session.lock:
            connection = session.connection
            collision = session.making_offer or connection.signaling_state != STABLE
            polite = self.is_polite(peer_id)
            session.ignore_offer = collision and not polite

            if session.ignore_offer:
                logger.info(
                    "Ignoring colliding offer (impolite side)",
                    extra={"peer_id": peer_id, "signaling_state": connection.signaling_state},
                )
                return None

            if connection.signaling_state != STABLE:
                logger.info(
                    "Rolling back local offer (polite side)",
                    extra={"peer_id": peer_id, "signaling_state": connection.signaling_state},
                )
                await connection.rollback()
                session.remote_description_set = False

            await connection.set_remote_description(SessionDescription(type="offer", sdp=sdp))
            session.remote_description_set = True
            await self._flush_candidates(session)

            answer = await connection.create_answer()
            await connection.set_local_description(answer)
            logger.debug("Local answer applied", extra={"peer_id": peer_id})
            return connection.local_description or answer

    async def handle_incoming_answer(self, peer_id: str, sdp: str) -> bool:
        """Apply a remote answer to our outstanding offer.

        Returns:
            False (logged) if there is no outstanding local offer for the peer
        """
        session = self._sessions.get(peer_id)
        if session is None:
            logger.warning("Answer from unknown peer", extra={"peer_id": peer_id})
            return False

        async with session.lock:
            connection = session.connection
            if connection.signaling_state != HAVE_LOCAL_OFFER:
                logger.warning(
                    "Answer without outstanding offer",
                    extra={"peer_id": peer_id, "signaling_state": connection.signaling_state},
                )
                return False

            await connection.set_remote_description(SessionDescription(type="answer", sdp=sdp))
            session.remote_description_set = True
            await self._flush_candidates(session)
            logger.debug("Remote answer applied", extra={"peer_id": peer_id})
            return True

    async def handle_incoming_ice_candidate(self, peer_id: str, candidate: dict[str, Any]) -> None:
        """Apply a remote ICE candidate, buffering it if it arrived early."""
        session = self._sessions.get(peer_id)
        if session is None:
            self._early_candidates.setdefault(peer_id, []).append(candidate)
            logger.debug("Buffered ICE candidate for unknown peer", extra={"peer_id": peer_id})
            return

        async with session.lock:
            if not session.remote_description_set:
                session.pending_candidates.append(candidate)
                logger.debug("Buffered ICE candidate", extra={"peer_id": peer_id})
                return

            await self._apply_candidate(session, candidate)

    async def close(self, peer_id: str) -> None:
        """Tear down one peer session. Idempotent."""
        self._early_candidates.pop(peer_id, None)
        session = self._sessions.pop(peer_id, None)
        if session is None:
            return

        async with session.lock:
            await session.connection.close()

        logger.info("Peer session closed", extra={"peer_id": peer_id})

    async def close_all(self) -> None:
        for peer_id in list(self._sessions):
            await self.close(peer_id)
        self._early_candidates.clear()

    # ===== Internals =====

    async def _flush_candidates(self, session: PeerSession) -> None:
        pending, session.pending_candidates = session.pending_candidates, []
        for candidate in pending:
            await self._apply_candidate(session, candidate)

    async def _apply_candidate(self, session: PeerSession, candidate: dict[str, Any]) -> None:
        try:
            await session.connection.add_ice_candidate(candidate)
        except Exception as e:
            if session.ignore_offer:
                # Candidates for an offer we ignored are expected to fail
                logger.debug(
                    "Dropped ICE candidate for ignored offer",
                    extra={"peer_id": session.peer_id, "error": str(e)},
                )
            else:
                logger.warning(
                    "Failed to add ICE candidate",
                    extra={"peer_id": session.peer_id, "error": str(e)},
                )

    def _handle_connection_state(self, session: PeerSession, state: str) -> None:
        logger.debug(
            "Peer connection state changed",
            extra={"peer_id": session.peer_id, "state": state},
        )

        if self._on_peer_state_change is not None:
            self._on_peer_state_change(session.peer_id, state)

        if state in TERMINAL_CONNECTION_STATES and self._sessions.get(session.peer_id) is session:
            # Close outside the callback: the session lock may be held by the caller
            task = asyncio.ensure_future(self.close(session.peer_id))
            self._close_tasks.add(task)
            task.add_done_callback(self._close_tasks.discard)
