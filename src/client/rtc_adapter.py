"""aiortc-backed peer connection and local audio track.

``AiortcPeerConnection`` implements the ``PeerConnection`` interface used by
the negotiation engine. aiortc gathers ICE candidates during
``setLocalDescription`` and embeds them in the SDP, so no trickle candidates
are emitted locally; remote trickle candidates are still accepted.

aiortc has no SDP rollback, so ``rollback()`` replaces the underlying
RTCPeerConnection with a fresh one carrying the same configuration and
tracks.
"""

import asyncio
import fractions
import logging
from typing import Any

import numpy as np
from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp
from av import AudioFrame

from src.client.audio_level import AudioLevelMeter
from src.client.negotiation import PeerConnection, SessionDescription
from src.signaling.transport.websocket_protocol import IceServer

logger = logging.getLogger(__name__)

SAMPLE_RATE = 48000
FRAME_DURATION_MS = 20


def build_rtc_configuration(ice_servers: list[IceServer]) -> RTCConfiguration:
    """Translate ``joined.iceServers`` entries into an aiortc configuration."""
    return RTCConfiguration(
        iceServers=[
            RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
            for server in ice_servers
        ]
    )


def candidate_from_init(init: dict[str, Any]) -> Any:
    """Convert an RTCIceCandidateInit dict into an aiortc RTCIceCandidate.

    Returns:
        RTCIceCandidate, or None for the end-of-candidates marker

    Raises:
        ValueError: If the candidate line cannot be parsed
    """
    line = init.get("candidate")
    if not line:
        return None

    if line.startswith("candidate:"):
        line = line[len("candidate:") :]

    # foundation component protocol priority ip port "typ" type
    if len(line.split()) < 8:
        raise ValueError(f"Invalid ICE candidate: {init.get('candidate')!r}")

    try:
        candidate = candidate_from_sdp(line)
    except (IndexError, ValueError) as e:
        raise ValueError(f"Invalid ICE candidate: {init.get('candidate')!r}") from e

    candidate.sdpMid = init.get("sdpMid")
    candidate.sdpMLineIndex = init.get("sdpMLineIndex")
    return candidate


class AiortcPeerConnection(PeerConnection):
    """PeerConnection over aiortc's RTCPeerConnection."""

    def __init__(self, ice_servers: list[IceServer] | None = None) -> None:
        """Initialize peer connection.

        Args:
            ice_servers: STUN/TURN servers from the ``joined`` message
        """
        super().__init__()
        self._configuration = build_rtc_configuration(ice_servers or [])
        self._tracks: list[MediaStreamTrack] = []
        self._pc = self._create_pc()

    @property
    def signaling_state(self) -> str:
        return str(self._pc.signalingState)

    @property
    def connection_state(self) -> str:
        return str(self._pc.connectionState)

    @property
    def local_description(self) -> SessionDescription | None:
        description = self._pc.localDescription
        if description is None:
            return None
        return SessionDescription(type=description.type, sdp=description.sdp)

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def rollback(self) -> None:
        old = self._pc
        # Swap first so the old connection's state events are ignored
        self._pc = self._create_pc()
        await old.close()
        logger.debug("Peer connection recreated for rollback")

    async def add_ice_candidate(self, candidate: dict[str, Any]) -> None:
        ice_candidate = candidate_from_init(candidate)
        if ice_candidate is None:
            return
        await self._pc.addIceCandidate(ice_candidate)

    def add_track(self, track: MediaStreamTrack) -> None:
        self._tracks.append(track)
        self._pc.addTrack(track)

    async def close(self) -> None:
        await self._pc.close()

    def _create_pc(self) -> RTCPeerConnection:
        pc = RTCPeerConnection(configuration=self._configuration)

        @pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            if pc is self._pc:
                self._emit_connection_state(pc.connectionState)

        @pc.on("track")
        def on_track(track: MediaStreamTrack) -> None:
            if pc is self._pc:
                logger.info("Remote track received", extra={"kind": track.kind})
                self._emit_track(track)

        for track in self._tracks:
            pc.addTrack(track)

        return pc


class LocalAudioTrack(MediaStreamTrack):
    """Outgoing microphone track with mute and level metering.

    Frames come from a source track (a capture device or file player) or,
    without one, paced silence. Muting replaces samples with zeros so the
    remote side keeps receiving frames.
    """

    kind = "audio"

    def __init__(
        self,
        source: MediaStreamTrack | None = None,
        meter: AudioLevelMeter | None = None,
        sample_rate: int = SAMPLE_RATE,
        frame_ms: int = FRAME_DURATION_MS,
    ) -> None:
        super().__init__()
        self._source = source
        self._meter = meter or AudioLevelMeter()
        self._sample_rate = sample_rate
        self._samples_per_frame = int(sample_rate * frame_ms / 1000)
        self._time_base = fractions.Fraction(1, sample_rate)
        self._pts = 0
        self.muted = False

    @property
    def level(self) -> float:
        return self._meter.level

    @property
    def source(self) -> MediaStreamTrack | None:
        return self._source

    def replace_source(self, source: MediaStreamTrack | None) -> None:
        """Switch input without renegotiating; the old source is stopped."""
        old, self._source = self._source, source
        if old is not None and old is not source:
            old.stop()

    async def recv(self) -> AudioFrame:
        if self._source is not None:
            frame = await self._source.recv()
        else:
            frame = await self._silence()

        samples = frame.to_ndarray()
        if self.muted:
            samples = np.zeros_like(samples)
            frame = self._rebuild(frame, samples)

        self._meter.update(samples)
        return frame

    def stop(self) -> None:
        if self._source is not None:
            self._source.stop()
        super().stop()

    async def _silence(self) -> AudioFrame:
        await asyncio.sleep(self._samples_per_frame / self._sample_rate)
        pcm = np.zeros((1, self._samples_per_frame), dtype=np.int16)
        frame = AudioFrame.from_ndarray(pcm, format="s16", layout="mono")
        frame.sample_rate = self._sample_rate
        frame.time_base = self._time_base
        frame.pts = self._pts
        self._pts += self._samples_per_frame
        return frame

    @staticmethod
    def _rebuild(original: AudioFrame, samples: np.ndarray) -> AudioFrame:
        frame = AudioFrame.from_ndarray(
            samples, format=original.format.name, layout=original.layout.name
        )
        frame.sample_rate = original.sample_rate
        # Source frames may carry no timing; the sender stamps them later
        if original.time_base is not None:
            frame.time_base = original.time_base
        if original.pts is not None:
            frame.pts = original.pts
        return frame
