"""
Tests for downstream frame encoders.
"""

import json
import pytest
from grappa import should

from jiutian_proxy.encoders import (
    DONE_SENTINEL,
    ENCODERS,
    EVAL_DURATION,
    LOAD_DURATION,
    PROMPT_EVAL_DURATION,
    TOTAL_DURATION,
    encode_frame,
)
from jiutian_proxy.models import Dialect, Finish, TextDelta, Usage
from .conftest import TEST_MODEL, make_session


def decode(frame: bytes):
    frame.startswith(b"data: ") | should.be.true
    frame.endswith(b"\n\n") | should.be.true
    return json.loads(frame[len(b"data: "):].decode())


def finished_session(dialect, text="2*3=6", prompt_length=5, usage=None):
    session = make_session(dialect, prompt_length)
    for char in text:
        session.append(TextDelta(text=char))
    session.usage = usage
    return session


@pytest.mark.parametrize("dialect", list(Dialect))
def test_every_dialect_has_an_encoder(dialect):
    ENCODERS[dialect].dialect | should.equal(dialect)


@pytest.mark.parametrize(
    "dialect, expected",
    [
        (Dialect.GENERATE_COMPAT, {"response": "6", "done": False}),
        (Dialect.CHAT_COMPAT, {"message": {"role": "assistant", "content": "6"}, "done": False}),
    ],
)
def test_compat_content_frames(dialect, expected):
    """Each text delta becomes one JSON object in the data: framing"""
    session = make_session(dialect)
    payload = decode(encode_frame(TextDelta(text="6"), dialect, session))

    payload | should.have.keys("model", "created_at")
    payload["model"] | should.equal(TEST_MODEL)
    payload["created_at"].endswith("Z") | should.be.true
    for key, value in expected.items():
        payload[key] | should.equal(value)


@pytest.mark.parametrize("dialect", [Dialect.GENERATE_COMPAT, Dialect.CHAT_COMPAT])
def test_compat_skips_non_text_events(dialect):
    session = make_session(dialect)

    encode_frame(TextDelta(text=""), dialect, session) | should.be.none
    encode_frame(Usage(prompt_tokens=3), dialect, session) | should.be.none
    encode_frame(Finish(index=1), dialect, session) | should.be.none


def test_generate_terminal_frame():
    """Terminal generate frame carries synthesized timings and counts"""
    session = finished_session(Dialect.GENERATE_COMPAT, usage=Usage(prompt_tokens=9))
    payload = decode(encode_frame(Finish(reason="stop"), Dialect.GENERATE_COMPAT, session, terminal=True))

    payload["response"] | should.equal("")
    payload["done"] | should.be.true
    payload["done_reason"] | should.equal("stop")
    payload["context"] | should.equal([1, 2, 3])
    payload["eval_count"] | should.equal(5)
    payload["prompt_eval_count"] | should.equal(9)
    payload["total_duration"] | should.equal(TOTAL_DURATION)
    payload["load_duration"] | should.equal(LOAD_DURATION)
    payload["prompt_eval_duration"] | should.equal(PROMPT_EVAL_DURATION)
    payload["eval_duration"] | should.equal(EVAL_DURATION)


def test_generate_prompt_eval_count_falls_back_to_prompt_length():
    session = finished_session(Dialect.GENERATE_COMPAT, prompt_length=5)
    payload = decode(encode_frame(Finish(), Dialect.GENERATE_COMPAT, session, terminal=True))

    payload["prompt_eval_count"] | should.equal(5)


def test_chat_terminal_frame_omits_prompt_fields():
    """Chat terminal frame mirrors the timings but has no context / prompt count"""
    session = finished_session(Dialect.CHAT_COMPAT, text="你好")
    payload = decode(encode_frame(Finish(), Dialect.CHAT_COMPAT, session, terminal=True))

    payload["message"] | should.equal({"role": "assistant", "content": ""})
    payload["done"] | should.be.true
    payload["eval_count"] | should.equal(2)
    payload["total_duration"] | should.equal(TOTAL_DURATION)
    ("context" in payload) | should.be.false
    ("prompt_eval_count" in payload) | should.be.false


def test_raw_forwards_frame_bytes_unchanged():
    frame = b'data: {"choices": [{"delta": {"text": "6"}}]}\n\n'
    session = make_session(Dialect.RAW)

    encode_frame(TextDelta(text="6", raw=frame), Dialect.RAW, session) | should.equal(frame)
    encode_frame(TextDelta(text="6"), Dialect.RAW, session) | should.be.none


def test_raw_terminal_forwards_finish_frame_then_done_sentinel():
    frame = b'data: {"choices": [{"delta": {}, "finish_reason": "stop"}]}\n\n'
    session = make_session(Dialect.RAW)

    encode_frame(Finish(raw=frame), Dialect.RAW, session, terminal=True) | should.equal(frame)
    ENCODERS[Dialect.RAW].closing(session) | should.equal(DONE_SENTINEL)


@pytest.mark.parametrize("dialect", [Dialect.GENERATE_COMPAT, Dialect.CHAT_COMPAT])
def test_compat_dialects_end_on_their_summary_frame(dialect):
    encoder = ENCODERS[dialect]

    encoder.forwards_trailing | should.be.false
    encoder.closing(make_session(dialect)) | should.be.none


@pytest.mark.parametrize("dialect", list(Dialect))
def test_error_frames_carry_error_field(dialect):
    session = make_session(dialect)
    payload = decode(ENCODERS[dialect].error(session, "upstream stream error", "reset by peer"))

    payload["error"] | should.equal("upstream stream error")
    payload["detail"] | should.equal("reset by peer")
