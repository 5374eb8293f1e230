"""Progress events and their line-delimited wire format.

A sync session reports itself as a sequence of typed events:

- ``progress``: ``{step, message, percent, phase, success, completedSteps, details?}``
- ``complete``: ``{message, summary}``, always the last event of a good run
- ``error``: ``{message, hint?, attemptsMade}``, always the last event of a failed run

On the wire each event is one frame::

    event: progress
    data: {"step": "loginSuccess", "percent": 35, ...}
    <blank line>

``encode_frame`` produces frames. ``FrameDecoder`` is the consumer side: feed
it chunks as they arrive (bytes or text, split anywhere, even inside a UTF-8
sequence) and it returns the frames completed so far, keeping the partial
remainder buffered. ``iter_frames`` wraps it around an async chunk iterator;
because it only pulls the next chunk once the previous frames were consumed,
a slow consumer slows the producer down instead of growing a buffer.
"""

from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from .models import SyncState, SyncSummary


class EventName(StrEnum):
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


class Phase(StrEnum):
    INITIALIZATION = "initialization"
    AUTHENTICATION = "authentication"
    DATA_FETCHING = "data_fetching"
    PROCESSING = "processing"
    SAVING = "saving"
    RETRY = "retry"
    COMPLETE = "complete"


@dataclass(frozen=True, slots=True)
class StepInfo:
    message: str
    percent: int
    phase: Phase
    state: SyncState
    success: bool | None = None


# Source step name -> how it is reported. Percentages are floors; a session's
# reported percent never moves backwards.
STEP_TABLE: Mapping[str, StepInfo] = {
    "initializing": StepInfo("Initializing source...", 5, Phase.INITIALIZATION, SyncState.INIT, True),
    "startScraping": StepInfo("Starting sync...", 10, Phase.INITIALIZATION, SyncState.INIT, True),
    "loginStarted": StepInfo(
        "Navigating to login page...", 20, Phase.AUTHENTICATION, SyncState.AUTHENTICATING
    ),
    "loginWaitingForOTP": StepInfo(
        "Waiting for OTP verification...", 25, Phase.AUTHENTICATION, SyncState.AUTHENTICATING
    ),
    "changePassword": StepInfo(
        "Password change required", 30, Phase.AUTHENTICATION, SyncState.AUTHENTICATING, False
    ),
    "loginSuccess": StepInfo(
        "Login successful", 35, Phase.AUTHENTICATION, SyncState.AUTHENTICATING, True
    ),
    "loginFailed": StepInfo("Login failed", 35, Phase.AUTHENTICATION, SyncState.AUTHENTICATING, False),
    "fetchingTransactions": StepInfo(
        "Fetching transactions...", 45, Phase.DATA_FETCHING, SyncState.FETCHING
    ),
    "gettingAccountDetails": StepInfo(
        "Retrieving account details...", 50, Phase.DATA_FETCHING, SyncState.FETCHING
    ),
    "accountDetailsReceived": StepInfo(
        "Account details received", 55, Phase.DATA_FETCHING, SyncState.FETCHING, True
    ),
    "processingAccount": StepInfo("Processing account...", 60, Phase.PROCESSING, SyncState.PROCESSING),
    "processingTransactions": StepInfo(
        "Processing transactions...", 65, Phase.PROCESSING, SyncState.PROCESSING
    ),
    "fetchingCategory": StepInfo(
        "Fetching transaction category...", 70, Phase.PROCESSING, SyncState.PROCESSING
    ),
    "endScraping": StepInfo("Source finished", 75, Phase.PROCESSING, SyncState.PROCESSING, True),
}

SAVING_PERCENT = 80
SAVED_PERCENT = 90


def describe_step(step: str) -> StepInfo:
    """Look up ``step``; unknown steps report as processing at 50%."""

    info = STEP_TABLE.get(step)
    if info is not None:
        return info
    return StepInfo(f"{step or 'Processing'}...", 50, Phase.PROCESSING, SyncState.PROCESSING)


# ---- Events -------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    event: EventName
    data: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.event is not EventName.PROGRESS

    def encode(self) -> str:
        return encode_frame(self.event, self.data)


def progress_event(
    *,
    step: str,
    message: str,
    percent: int,
    phase: Phase | str,
    success: bool | None = None,
    completed_steps: Iterable[str] = (),
    details: Mapping[str, Any] | None = None,
) -> ProgressEvent:
    data: dict[str, Any] = {
        "step": step,
        "message": message,
        "percent": max(0, min(100, int(percent))),
        "phase": str(phase),
        "success": success,
        "completedSteps": list(completed_steps),
    }
    if details:
        data["details"] = dict(details)
    return ProgressEvent(EventName.PROGRESS, data)


def complete_event(summary: SyncSummary, *, message: str = "Sync completed successfully") -> ProgressEvent:
    return ProgressEvent(
        EventName.COMPLETE,
        {"message": message, "percent": 100, "summary": summary.model_dump(by_alias=True)},
    )


def error_event(message: str, *, hint: str | None = None, attempts_made: int = 1) -> ProgressEvent:
    data: dict[str, Any] = {"message": message, "attemptsMade": attempts_made}
    if hint:
        data["hint"] = hint
    return ProgressEvent(EventName.ERROR, data)


# ---- Encoding -----------------------------------------------------------------


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, (date, datetime)):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def encode_frame(event: str, data: Any) -> str:
    """``event: <name>\\ndata: <json>\\n\\n``; the JSON is always one line."""

    payload = json.dumps(data, ensure_ascii=False, default=_json_default, separators=(",", ":"))
    return f"event: {event}\ndata: {payload}\n\n"


# ---- Decoding -----------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Frame:
    event: str
    data: Any
    raw: str

    def to_event(self) -> ProgressEvent | None:
        """The engine event carried by this frame; ``None`` for other event names."""

        try:
            name = EventName(self.event)
        except ValueError:
            return None
        return ProgressEvent(name, self.data if isinstance(self.data, Mapping) else {})


class FrameDecoder:
    """Incremental decoder: ``feed`` chunks, get completed ``Frame`` objects back.

    Lines end in ``\\n`` (a trailing ``\\r`` is dropped); a blank line closes a
    frame. ``event:`` sets the name of the frame being built (``last_event``
    keeps the most recent one seen), ``data:`` lines are joined with newlines
    and parsed as JSON when possible, and lines starting with ``:`` are
    comments (keep-alives).
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self._event: str | None = None
        self._data: list[str] = []
        self.last_event: str | None = None

    @property
    def pending(self) -> str:
        """Text received but not yet terminated by a newline."""

        return self._buffer

    def feed(self, chunk: bytes | str) -> list[Frame]:
        text = chunk if isinstance(chunk, str) else self._utf8.decode(chunk)
        if not text:
            return []
        self._buffer += text
        frames: list[Frame] = []
        start = 0
        while True:
            idx = self._buffer.find("\n", start)
            if idx < 0:
                break
            line = self._buffer[start:idx]
            start = idx + 1
            frame = self._consume_line(line[:-1] if line.endswith("\r") else line)
            if frame is not None:
                frames.append(frame)
        self._buffer = self._buffer[start:]
        return frames

    def flush(self) -> list[Frame]:
        """Finish the stream: process any unterminated line and pending frame."""

        frames = self.feed(self._utf8.decode(b"", final=True))
        if self._buffer:
            line, self._buffer = self._buffer, ""
            frame = self._consume_line(line.rstrip("\r"))
            if frame is not None:
                frames.append(frame)
        frame = self._dispatch()
        if frame is not None:
            frames.append(frame)
        return frames

    def _consume_line(self, line: str) -> Frame | None:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
            self.last_event = value
        elif name == "data":
            self._data.append(value)
        return None

    def _dispatch(self) -> Frame | None:
        if not self._data:
            self._event = None
            return None
        raw = "\n".join(self._data)
        event = self._event or "message"
        self._event = None
        self._data = []
        try:
            data = json.loads(raw)
        except ValueError:
            data = raw
        return Frame(event=event, data=data, raw=raw)


async def iter_frames(chunks: AsyncIterable[bytes | str]) -> AsyncIterator[Frame]:
    decoder = FrameDecoder()
    async for chunk in chunks:
        for frame in decoder.feed(chunk):
            yield frame
    for frame in decoder.flush():
        yield frame


def iter_frames_sync(chunks: Iterable[bytes | str]) -> Iterator[Frame]:
    decoder = FrameDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
    yield from decoder.flush()


__all__ = [
    "STEP_TABLE",
    "EventName",
    "Frame",
    "FrameDecoder",
    "Phase",
    "ProgressEvent",
    "StepInfo",
    "complete_event",
    "describe_step",
    "encode_frame",
    "error_event",
    "iter_frames",
    "iter_frames_sync",
    "progress_event",
]
