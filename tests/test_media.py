"""Tests covering the loopback media engine and protocol schemas."""

from __future__ import annotations

import asyncio

import pytest
from pydantic import ValidationError

from conftest import OFFER

from switchboard.api.schemas import IceCandidateRequest, IncomingCallResponseRequest
from switchboard.media import (
    EndOfStream,
    IceCandidateFound,
    LoopbackMediaEngine,
    MediaEngineError,
    RecordingNotFound,
)
from switchboard.media.loopback import build_answer


def test_answer_mirrors_offer_directions() -> None:
    offer = "v=0\r\ns=-\r\nm=audio 9 RTP/AVP 0\r\na=sendonly\r\nm=video 9 RTP/AVP 96\r\n"

    answer = build_answer(offer).split("\r\n")

    assert answer[0] == "v=0"
    audio = answer.index("m=audio 9 RTP/AVP 0")
    video = answer.index("m=video 9 RTP/AVP 96")
    assert "a=recvonly" in answer[audio:video]
    assert "a=sendrecv" in answer[video:]


@pytest.mark.parametrize("offer", ["", "garbage", "v=0\r\ns=-\r\n"])
def test_answer_rejects_unusable_offers(offer: str) -> None:
    with pytest.raises(MediaEngineError):
        build_answer(offer)


def test_release_is_idempotent() -> None:
    engine = LoopbackMediaEngine()

    async def scenario():
        pipeline = await engine.create_paired_pipeline("alice", "bob")
        await engine.release(pipeline.pipeline_id)
        await engine.release(pipeline.pipeline_id)
        await engine.release("unknown")
        return pipeline

    pipeline = asyncio.run(scenario())

    assert engine.released == [pipeline.pipeline_id]
    assert engine.active_pipelines == []


def test_released_pipeline_refuses_negotiation() -> None:
    engine = LoopbackMediaEngine()

    async def scenario():
        pipeline = await engine.create_paired_pipeline("alice", "bob")
        await engine.release(pipeline.pipeline_id)
        await engine.generate_answer(pipeline.caller_endpoint, OFFER)

    with pytest.raises(MediaEngineError):
        asyncio.run(scenario())


def test_recording_enables_playback_and_events() -> None:
    engine = LoopbackMediaEngine()
    events = []
    engine.subscribe(events.append)

    async def scenario():
        with pytest.raises(RecordingNotFound):
            await engine.create_playback_pipeline("alice")
        pipeline = await engine.create_paired_pipeline("alice", "bob")
        await engine.gather_candidates(pipeline.caller_endpoint)
        await engine.start_recording(pipeline)
        playback = await engine.create_playback_pipeline("alice")
        await engine.start_playback(playback)
        engine.finish_playback(playback.pipeline_id)
        return pipeline, playback

    pipeline, playback = asyncio.run(scenario())

    assert engine.has_recording("alice") and engine.has_recording("bob")
    assert playback.pipeline_id in engine.playing
    assert isinstance(events[0], IceCandidateFound)
    assert events[0].endpoint == pipeline.caller_endpoint
    assert events[-1] == EndOfStream(pipeline_id=playback.pipeline_id)


def test_flat_and_nested_candidates_parse_identically() -> None:
    flat = IceCandidateRequest.model_validate(
        {"id": "onIceCandidate", "candidate": "candidate:1", "sdpMid": "audio", "sdpMLineIndex": 0}
    )
    nested = IceCandidateRequest.model_validate(
        {
            "id": "onIceCandidate",
            "candidate": {"candidate": "candidate:1", "sdpMid": "audio", "sdpMLineIndex": 0},
        }
    )

    assert flat.to_candidate() == nested.to_candidate()
    assert flat.to_candidate().to_dict() == {
        "candidate": "candidate:1",
        "sdpMid": "audio",
        "sdpMLineIndex": 0,
    }


def test_incoming_call_response_requires_known_answer() -> None:
    with pytest.raises(ValidationError):
        IncomingCallResponseRequest.model_validate({"callResponse": "maybe", "from": "alice"})
