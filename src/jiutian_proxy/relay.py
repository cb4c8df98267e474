"""Streaming translation relay.

Drives one TranslationSession through its lifecycle::

    OPEN -> STREAMING -> FINISHING -> CLOSED
      \\          \\
       -> FAILED   -> FAILED

and from any non-terminal state to CLOSED when the client goes away.
Upstream bytes are decoded lazily and every event is encoded and handed to
the client before the next upstream chunk is read, so a slow client slows
the upstream read instead of growing a buffer.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import httpx

from .config import relay_logger
from .decoder import UpstreamFrameDecoder
from .encoders import get_encoder
from .errors import DownstreamWriteError, FrameParseError, ProxyError, UpstreamConnectError
from .models import Finish, SessionState, TextDelta, TranslationSession, UpstreamEvent, Usage

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    SessionState.OPEN: {SessionState.STREAMING, SessionState.FAILED, SessionState.CLOSED},
    SessionState.STREAMING: {SessionState.FINISHING, SessionState.FAILED, SessionState.CLOSED},
    SessionState.FINISHING: {SessionState.CLOSED, SessionState.FAILED},
    SessionState.CLOSED: set(),
    SessionState.FAILED: set(),
}

TRUNCATED_MESSAGE = "upstream stream ended before completion"
STREAM_ERROR_MESSAGE = "upstream stream error"


class InvalidTransition(RuntimeError):
    pass


class TranslationRelay:
    """
    Relay one upstream stream to one client in the session's dialect.

    Args:
        session: The per-request state; owned by this relay only
        opener: Coroutine function returning an open upstream stream
            (anything with ``aiter_bytes()`` and ``aclose()``)
        expose_errors: Include error detail in mid-stream error frames
    """

    def __init__(
        self,
        session: TranslationSession,
        opener: Callable[[], Awaitable[Any]],
        expose_errors: bool = False,
    ):
        self.session = session
        self.encoder = get_encoder(session.dialect)
        self._opener = opener
        self.expose_errors = expose_errors
        self.upstream = None
        self.frames_written = 0

    def transition(self, state: SessionState) -> None:
        current = self.session.state
        if state not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransition(f"cannot move session from {current.value} to {state.value}")
        relay_logger.debug(f"Session {self.session.model}/{self.session.dialect.value}: {current.value} -> {state.value}")
        self.session.state = state

    async def open(self) -> None:
        """Open the upstream call. Errors here happen before any byte reaches the client."""
        if self.session.state != SessionState.OPEN:
            raise InvalidTransition(f"session is already {self.session.state.value}")
        try:
            self.upstream = await self._opener()
        except ProxyError as e:
            self.transition(SessionState.FAILED)
            relay_logger.error(f"Failed to open upstream stream: {e.message} ({e.detail})")
            raise
        except asyncio.CancelledError:
            self.transition(SessionState.CLOSED)
            raise
        self.transition(SessionState.STREAMING)
        relay_logger.info(f"Streaming {self.session.dialect.value} session for model {self.session.model}")

    def _drop_frame(self, error: FrameParseError) -> None:
        self.session.dropped_frames += 1
        relay_logger.warning(f"Dropping malformed upstream frame: {error} ({error.frame[:200]!r})")

    def handle(self, event: UpstreamEvent) -> Optional[bytes]:
        """Apply one event to the session and return the bytes to write, if any."""
        session = self.session
        if session.is_terminal:
            return None

        if session.state == SessionState.FINISHING:
            # trailing frames after the last finish marker are forwarded as-is
            if isinstance(event, Usage):
                session.usage = event
            return self.encoder.content(event, session)

        if isinstance(event, TextDelta):
            session.append(event)
            return self.encoder.content(event, session)

        if isinstance(event, Usage):
            session.usage = event
            return self.encoder.content(event, session)

        if isinstance(event, Finish):
            if not session.finish_slot(event.index):
                return self.encoder.content(event, session)
            self.transition(SessionState.FINISHING)
            return self.encoder.terminal(event, session)

        return None

    def error_frame(self, message: str, detail: Optional[str] = None) -> bytes:
        return self.encoder.error(self.session, message, detail if self.expose_errors else None)

    def _cancel(self) -> None:
        if not self.session.is_terminal:
            self.transition(SessionState.CLOSED)
            relay_logger.info("Client disconnected, cancelling upstream stream")

    async def aclose(self) -> None:
        """Release the upstream call however the response ended. Safe to call repeatedly."""
        self._cancel()
        await self._close_upstream()

    async def _close_upstream(self) -> None:
        if self.upstream is None:
            return
        try:
            await self.upstream.aclose()
        except httpx.HTTPError as e:
            logger.warning(f"Error closing upstream stream: {str(e)}")

    async def stream(self) -> AsyncIterator[bytes]:
        """Yield downstream frames; exactly one terminal (or error) frame ends the stream."""
        if self.session.state == SessionState.OPEN:
            await self.open()

        decoder = UpstreamFrameDecoder(on_error=self._drop_frame)
        events = decoder.decode(self.upstream.aiter_bytes())
        try:
            async for event in events:
                frame = self.handle(event)
                if frame:
                    self.frames_written += 1
                    yield frame
                if self.session.state == SessionState.FINISHING and not self.encoder.forwards_trailing:
                    break

            if self.session.state == SessionState.FINISHING:
                closing = self.encoder.closing(self.session)
                self.transition(SessionState.CLOSED)
                relay_logger.info(
                    f"Completed {self.session.dialect.value} session: "
                    f"eval_count={self.session.text_length}, dropped_frames={self.session.dropped_frames}"
                )
                if closing:
                    self.frames_written += 1
                    yield closing
                return

            self.transition(SessionState.FAILED)
            relay_logger.error(f"{TRUNCATED_MESSAGE} (done marker seen: {decoder.done})")
            self.frames_written += 1
            yield self.error_frame(TRUNCATED_MESSAGE, f"{self.session.text_length} characters received")
        except UpstreamConnectError as e:
            self.transition(SessionState.FAILED)
            relay_logger.error(f"Upstream reported an error mid-stream: {e.detail}")
            self.frames_written += 1
            yield self.error_frame(STREAM_ERROR_MESSAGE, e.detail)
        except httpx.HTTPError as e:
            self.transition(SessionState.FAILED)
            relay_logger.error(f"Upstream stream failed: {str(e)}")
            self.frames_written += 1
            yield self.error_frame(STREAM_ERROR_MESSAGE, str(e))
        except (GeneratorExit, asyncio.CancelledError):
            self._cancel()
            raise
        finally:
            await events.aclose()
            await self._close_upstream()

    async def pump(self, write: Callable[[bytes], Awaitable[None]]) -> SessionState:
        """
        Write every frame through ``write``, awaiting each write before reading on.

        A DownstreamWriteError (or OSError) from ``write`` means the client is
        gone: the upstream is cancelled and nothing else is written.
        """
        frames = self.stream()
        try:
            async for frame in frames:
                try:
                    await write(frame)
                except (DownstreamWriteError, OSError):
                    self._cancel()
                    break
        finally:
            await frames.aclose()
        return self.session.state
