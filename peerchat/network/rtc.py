"""
Peer transport capability and its aiortc implementation.

The handshake and chat layers only see the PeerConnection / DataChannel
interfaces below; AiortcPeerConnection backs them with a real WebRTC stack.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

logger = logging.getLogger(__name__)

OPEN = "open"
CLOSED = "closed"


@dataclass(frozen=True)
class SessionDescription:
    type: str
    sdp: str

    def to_dict(self) -> dict:
        return {"type": self.type, "sdp": self.sdp}

    @classmethod
    def from_dict(cls, data: dict) -> "SessionDescription":
        return cls(type=data["type"], sdp=data["sdp"])


class DataChannel(ABC):
    """Ordered, message-preserving channel opened once negotiation completes."""

    @property
    @abstractmethod
    def ready_state(self) -> str:
        ...

    @abstractmethod
    def send(self, data: str):
        ...

    @abstractmethod
    def on_open(self, callback: Callable[[], None]):
        ...

    @abstractmethod
    def on_message(self, callback: Callable[[str], None]):
        ...

    @abstractmethod
    def on_close(self, callback: Callable[[], None]):
        ...

    @abstractmethod
    def close(self):
        ...


class PeerConnection(ABC):
    @abstractmethod
    async def create_offer(self) -> SessionDescription:
        ...

    @abstractmethod
    async def create_answer(self) -> SessionDescription:
        ...

    @abstractmethod
    async def set_local_description(self, description: SessionDescription):
        ...

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription):
        ...

    @property
    @abstractmethod
    def local_description(self) -> Optional[SessionDescription]:
        """The effective local description once set, candidates included where the stack embeds them."""

    @abstractmethod
    def on_local_candidate(self, callback: Callable[[dict], None]):
        ...

    @abstractmethod
    async def add_remote_candidate(self, candidate: dict):
        ...

    @abstractmethod
    def create_data_channel(self, label: str) -> DataChannel:
        ...

    @abstractmethod
    def on_data_channel(self, callback: Callable[[DataChannel], None]):
        ...

    @abstractmethod
    def on_failure(self, callback: Callable[[str], None]):
        """Registers a callback for fatal connection failures."""

    @abstractmethod
    async def close(self):
        ...


ConnectionFactory = Callable[[], PeerConnection]


def build_rtc_configuration(ice_servers: Iterable[dict]) -> RTCConfiguration:
    servers = [
        RTCIceServer(urls=server["urls"], username=server.get("username"), credential=server.get("credential"))
        for server in ice_servers
    ]
    return RTCConfiguration(iceServers=servers)


def candidate_to_aiortc(candidate: dict):
    """Converts a browser-style candidate dict into an aiortc RTCIceCandidate."""
    line = candidate.get("candidate") or ""
    if line.startswith("a="):
        line = line[2:]
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    if not line:
        raise ValueError("Empty ICE candidate")
    ice_candidate = candidate_from_sdp(line)
    ice_candidate.sdpMid = candidate.get("sdpMid")
    ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
    return ice_candidate


class AiortcDataChannel(DataChannel):
    def __init__(self, channel: RTCDataChannel):
        self._channel = channel

    @property
    def label(self) -> str:
        return self._channel.label

    @property
    def ready_state(self) -> str:
        return self._channel.readyState

    def send(self, data: str):
        self._channel.send(data)

    def on_open(self, callback):
        self._channel.on("open", callback)
        # Channels announced by the remote side are already open on delivery
        if self._channel.readyState == OPEN:
            asyncio.get_running_loop().call_soon(callback)

    def on_message(self, callback):
        @self._channel.on("message")
        def _on_message(message):
            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            callback(message)

    def on_close(self, callback):
        self._channel.on("close", callback)

    def close(self):
        if self._channel.readyState != CLOSED:
            self._channel.close()


class AiortcPeerConnection(PeerConnection):
    """
    PeerConnection backed by aiortc.

    aiortc gathers every local candidate while setting the local description
    and embeds them in the SDP, so on_local_candidate callbacks never fire;
    the description read back from local_description carries the candidates.
    """

    def __init__(self, ice_servers: Iterable[dict] = ()):
        self._pc = RTCPeerConnection(configuration=build_rtc_configuration(ice_servers))
        self._failure_callbacks = []

        @self._pc.on("connectionstatechange")
        def _on_state_change():
            logger.info("Peer connection state: %s", self._pc.connectionState)
            if self._pc.connectionState == "failed":
                for callback in list(self._failure_callbacks):
                    callback("connection failed")

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def set_local_description(self, description):
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def set_remote_description(self, description):
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    @property
    def local_description(self):
        local = self._pc.localDescription
        if local is None:
            return None
        return SessionDescription(type=local.type, sdp=local.sdp)

    def on_local_candidate(self, callback):
        """No-op: aiortc never trickles, local candidates ride in local_description."""

    async def add_remote_candidate(self, candidate):
        await self._pc.addIceCandidate(candidate_to_aiortc(candidate))

    def create_data_channel(self, label):
        return AiortcDataChannel(self._pc.createDataChannel(label))

    def on_data_channel(self, callback):
        @self._pc.on("datachannel")
        def _on_datachannel(channel):
            callback(AiortcDataChannel(channel))

    def on_failure(self, callback):
        self._failure_callbacks.append(callback)

    async def close(self):
        self._failure_callbacks.clear()
        await self._pc.close()


def aiortc_connection_factory(ice_servers: Iterable[dict]) -> ConnectionFactory:
    ice_servers = tuple(ice_servers)

    def factory() -> PeerConnection:
        return AiortcPeerConnection(ice_servers)

    return factory
