from __future__ import annotations

import asyncio
import json
from decimal import Decimal

import pytest
from finance_sync.models import SyncState, SyncSummary
from finance_sync.progress import (
    EventName,
    FrameDecoder,
    Phase,
    complete_event,
    describe_step,
    encode_frame,
    error_event,
    iter_frames,
    iter_frames_sync,
    progress_event,
)


def _sample_stream() -> str:
    return "".join(
        [
            progress_event(step="loginSuccess", message="Login successful ✓", percent=35, phase=Phase.AUTHENTICATION, success=True).encode(),
            ": keep-alive\n\n",
            progress_event(step="saving", message="Saving", percent=80, phase="saving", details={"count": 3}).encode(),
            complete_event(SyncSummary(saved_transactions=3, accounts=1)).encode(),
        ]
    )


def test_encode_frame_is_single_line_json() -> None:
    frame = encode_frame("progress", {"message": "a\nb", "amount": Decimal("1.50")})
    event_line, data_line, blank, end = frame.split("\n")
    assert event_line == "event: progress"
    assert json.loads(data_line.removeprefix("data: ")) == {"message": "a\nb", "amount": 1.5}
    assert (blank, end) == ("", "")


def test_decoder_handles_every_chunk_split() -> None:
    payload = _sample_stream().encode("utf-8")
    expected = [(f.event, f.data) for f in iter_frames_sync([payload])]
    assert [e for e, _ in expected] == ["progress", "progress", "complete"]

    for size in (1, 2, 3, 5, 7, 64):
        chunks = [payload[i : i + size] for i in range(0, len(payload), size)]
        got = [(f.event, f.data) for f in iter_frames_sync(chunks)]
        assert got == expected, f"chunk size {size}"


def test_decoder_keeps_partial_line_and_crlf() -> None:
    decoder = FrameDecoder()
    assert decoder.feed("event: error\r\ndata: {\"mess") == []
    assert decoder.pending == 'data: {"mess'
    assert decoder.last_event == "error"
    frames = decoder.feed('age": "boom"}\r\n\r\n')
    assert [(f.event, f.data) for f in frames] == [("error", {"message": "boom"})]
    assert frames[0].to_event().event is EventName.ERROR


def test_decoder_flush_emits_unterminated_frame_and_text_data() -> None:
    decoder = FrameDecoder()
    assert decoder.feed("data: not json") == []
    (frame,) = decoder.flush()
    assert (frame.event, frame.data) == ("message", "not json")
    assert frame.to_event() is None


def test_iter_frames_pulls_lazily() -> None:
    pulled: list[int] = []

    async def chunks():
        for i, part in enumerate(_sample_stream().split("\n\n")):
            pulled.append(i)
            yield part + "\n\n"

    async def first_frame():
        async for frame in iter_frames(chunks()):
            return frame, list(pulled)

    frame, pulled_so_far = asyncio.run(first_frame())
    assert frame.data["step"] == "loginSuccess"
    assert pulled_so_far == [0]


def test_step_table_and_unknown_steps() -> None:
    assert describe_step("loginSuccess").percent == 35
    assert describe_step("loginSuccess").state is SyncState.AUTHENTICATING
    assert describe_step("fetchingTransactions").phase is Phase.DATA_FETCHING
    unknown = describe_step("solvingCaptcha")
    assert (unknown.percent, unknown.phase, unknown.state) == (50, Phase.PROCESSING, SyncState.PROCESSING)


@pytest.mark.parametrize(
    ("event", "terminal"),
    [
        (progress_event(step="x", message="x", percent=150, phase="processing"), False),
        (complete_event(SyncSummary()), True),
        (error_event("boom", hint="retry later", attempts_made=2), True),
    ],
)
def test_event_payloads(event, terminal: bool) -> None:
    assert event.is_terminal is terminal
    if event.event is EventName.PROGRESS:
        assert event.data["percent"] == 100
        assert event.data["completedSteps"] == []
    elif event.event is EventName.COMPLETE:
        assert event.data["percent"] == 100
        assert "savedTransactions" in event.data["summary"]
    else:
        assert event.data == {"message": "boom", "attemptsMade": 2, "hint": "retry later"}
