import os

import pytest

from peerchat.config import DEFAULT_ICE_SERVERS, Config
from peerchat.core.session_manager import Session
from peerchat.core.state_machine import SessionState
from peerchat.network.rtc import (
    AiortcPeerConnection,
    SessionDescription,
    aiortc_connection_factory,
    build_rtc_configuration,
    candidate_to_aiortc,
)
from peerchat.network.signaling import InMemorySignalingStore

BROWSER_CANDIDATE = {
    "candidate": "candidate:842163049 1 udp 1677729535 203.0.113.7 61665 typ srflx raddr 10.0.0.2 rport 61665",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}


def test_candidate_conversion():
    candidate = candidate_to_aiortc(BROWSER_CANDIDATE)
    assert candidate.ip == "203.0.113.7"
    assert candidate.port == 61665
    assert candidate.type == "srflx"
    assert candidate.sdpMid == "0"
    assert candidate.sdpMLineIndex == 0


def test_empty_candidate_is_rejected():
    with pytest.raises(ValueError):
        candidate_to_aiortc({"candidate": "", "sdpMid": "0", "sdpMLineIndex": 0})


def test_description_dict_round_trip():
    description = SessionDescription(type="offer", sdp="v=0\r\n")
    assert SessionDescription.from_dict(description.to_dict()) == description


def test_default_ice_servers_are_configured():
    configuration = build_rtc_configuration(DEFAULT_ICE_SERVERS)
    assert len(configuration.iceServers) == 2
    turn = configuration.iceServers[1]
    assert turn.username == "openrelayproject"
    assert "turn:openrelay.metered.ca:443" in turn.urls


@pytest.mark.skipif(os.environ.get("PEERCHAT_RTC_INTEGRATION") != "1",
                    reason="needs a network interface for ICE; set PEERCHAT_RTC_INTEGRATION=1")
@pytest.mark.asyncio
async def test_two_aiortc_peers_chat(until):
    store = InMemorySignalingStore()
    config = Config(ice_servers=(), disconnect_grace=0.1)
    factory = aiortc_connection_factory(config.ice_servers)
    alice = Session("Alice", store, factory, config)
    bob = Session("Bob", store, factory, config)

    session_id = await alice.begin_as_initiator()
    await bob.join_as_responder(session_id)
    await until(lambda: alice.state is SessionState.CHATTING and bob.state is SessionState.CHATTING,
                timeout=20.0)

    alice.send_chat_message("hi")
    await until(lambda: bob.messages and bob.messages[-1].text == "hi", timeout=5.0)

    await alice.disconnect()
    await bob.disconnect()
    assert session_id not in store


@pytest.mark.asyncio
async def test_local_candidates_ride_in_the_description():
    connection = AiortcPeerConnection(())
    seen = []
    connection.on_local_candidate(seen.append)
    connection.create_data_channel("chat")
    offer = await connection.create_offer()
    assert offer.type == "offer"
    assert seen == []
    await connection.close()
