"""Upstream event-stream decoding.

The provider streams ``data: <json>`` events separated by a blank line. Chat
endpoints carry text at ``choices[i].delta.content``, plain completions at
``choices[i].delta.text``; both map onto the same event types. Every event
produced from a frame is yielded in order (text, usage, finish) and the last
one carries the frame's raw bytes so a pass-through writer can forward the
frame unchanged exactly once.
"""

import json
import logging
import re
from typing import AsyncIterable, AsyncIterator, Callable, Iterator, List, Optional

from .errors import FrameParseError, UpstreamConnectError
from .models import Finish, TextDelta, UpstreamEvent, Usage

logger = logging.getLogger(__name__)

FRAME_SEPARATOR = re.compile(rb"\r\n\r\n|\n\n")
DONE_MARKER = "[DONE]"
IGNORED_FIELDS = ("event", "id", "retry")


def _log_parse_error(error: FrameParseError) -> None:
    logger.warning(f"Dropping malformed upstream frame: {error} ({error.frame[:200]!r})")


class UpstreamFrameDecoder:
    """
    Incremental decoder for one upstream stream.

    Bytes are buffered until a full frame boundary has been seen, so frames
    split across network reads are reassembled. A malformed frame is reported
    through ``on_error`` and dropped; decoding carries on with the next frame.
    Not restartable: use a fresh decoder per session.
    """

    def __init__(self, on_error: Optional[Callable[[FrameParseError], None]] = None):
        self._buffer = b""
        self._on_error = on_error or _log_parse_error
        self.done = False
        self.frames = 0

    def feed(self, chunk: bytes) -> Iterator[UpstreamEvent]:
        """Add bytes read from the network and yield the events of every completed frame."""
        self._buffer += chunk
        while True:
            match = FRAME_SEPARATOR.search(self._buffer)
            if not match:
                break
            frame = self._buffer[: match.end()]
            self._buffer = self._buffer[match.end() :]
            yield from self._decode_frame(frame)

    def flush(self) -> Iterator[UpstreamEvent]:
        """Decode whatever is left once the upstream body has ended."""
        frame, self._buffer = self._buffer, b""
        if frame.strip():
            yield from self._decode_frame(frame)

    async def decode(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[UpstreamEvent]:
        """Lazily turn an async byte stream into upstream events."""
        async for chunk in chunks:
            for event in self.feed(chunk):
                yield event
            if self.done:
                return
        for event in self.flush():
            yield event

    def _decode_frame(self, frame: bytes) -> Iterator[UpstreamEvent]:
        try:
            events = self.parse_frame(frame)
        except FrameParseError as e:
            self._on_error(e)
            return
        self.frames += 1
        yield from events

    def parse_frame(self, frame: bytes) -> List[UpstreamEvent]:
        """Parse one complete frame into its events."""
        try:
            text = frame.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FrameParseError(f"frame is not valid UTF-8: {e}", frame=repr(frame)) from e

        data_lines = []
        for line in text.splitlines():
            if not line or line.startswith(":"):
                continue
            field, sep, value = line.partition(":")
            if not sep:
                raise FrameParseError(f"unexpected line in frame: {line!r}", frame=text)
            if value.startswith(" "):
                value = value[1:]
            if field == "data":
                data_lines.append(value)
            elif field not in IGNORED_FIELDS:
                raise FrameParseError(f"unknown field {field!r}", frame=text)

        if not data_lines:
            return []

        data = "\n".join(data_lines)
        if data.strip() == DONE_MARKER:
            self.done = True
            return []

        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            raise FrameParseError(f"invalid JSON: {e.msg}", frame=text) from e
        if not isinstance(payload, dict):
            raise FrameParseError("frame payload is not a JSON object", frame=text)

        events = self.events_from_payload(payload)
        if events:
            events[-1].raw = frame
        return events

    @staticmethod
    def events_from_payload(payload: dict) -> List[UpstreamEvent]:
        """
        Map one upstream JSON object onto events.

        Distinguishes slot-level text deltas, slot-level completion markers and
        the top-level usage object. An upstream ``error`` object is fatal.
        """
        if "error" in payload and not payload.get("choices"):
            error = payload["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise UpstreamConnectError("upstream stream reported an error", detail=message)

        choices = payload.get("choices") or []
        if not isinstance(choices, list):
            raise FrameParseError("choices is not a list", frame=json.dumps(payload))

        deltas: List[UpstreamEvent] = []
        finishes: List[UpstreamEvent] = []
        for position, choice in enumerate(choices):
            if not isinstance(choice, dict):
                raise FrameParseError("choice is not an object", frame=json.dumps(payload))
            index = choice.get("index", position)
            if not isinstance(index, int):
                raise FrameParseError("choice index is not an integer", frame=json.dumps(payload))

            delta = choice.get("delta") or {}
            if not isinstance(delta, dict):
                raise FrameParseError("delta is not an object", frame=json.dumps(payload))
            if "content" in delta:
                text = delta.get("content")
            elif "text" in delta:
                text = delta.get("text")
            else:
                text = choice.get("text")
            if text is not None and not isinstance(text, str):
                raise FrameParseError("delta text is not a string", frame=json.dumps(payload))

            reason = choice.get("finish_reason")
            if text is not None or not reason:
                deltas.append(TextDelta(index=index, text=text or ""))
            if reason:
                finishes.append(Finish(index=index, reason=str(reason)))

        events = deltas
        usage = payload.get("usage")
        if isinstance(usage, dict):
            try:
                events.append(
                    Usage(
                        prompt_tokens=usage.get("prompt_tokens") or 0,
                        completion_tokens=usage.get("completion_tokens") or 0,
                        total_tokens=usage.get("total_tokens") or 0,
                    )
                )
            except ValueError as e:
                raise FrameParseError(f"invalid usage object: {e}", frame=json.dumps(payload)) from e
        events.extend(finishes)
        return events
