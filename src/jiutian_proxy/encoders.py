"""Downstream frame encoders, one per dialect.

Each encoder is a stateless mapping from an upstream event (plus a read-only
view of the session) to the bytes written to the client. Compat dialects
write one JSON object per frame using the same ``data: ...`` framing as the
upstream, so clients can keep a single event-stream parser.

Timing fields of the compat dialects are synthesized placeholders: the
upstream does not report timing breakdowns, so these are fixed values and
not measurements.
"""

import json
from datetime import datetime
from typing import Any, Dict, Optional

from .models import Dialect, Finish, TextDelta, TranslationSession, UpstreamEvent, utc_now

DONE_SENTINEL = b"data: [DONE]\n\n"

# Synthesized, not measured (nanoseconds)
TOTAL_DURATION = 5_000_000_000
LOAD_DURATION = 1_000_000
PROMPT_EVAL_DURATION = 100_000_000
EVAL_DURATION = 4_000_000_000
CONTEXT_PLACEHOLDER = [1, 2, 3]


def sse_frame(payload: Dict[str, Any]) -> bytes:
    """Serialize one JSON object as an event-stream frame."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode()


def format_timestamp(moment: Optional[datetime] = None) -> str:
    moment = moment or utc_now()
    return moment.isoformat().replace("+00:00", "Z")


def synthesized_timings() -> Dict[str, int]:
    return {
        "total_duration": TOTAL_DURATION,
        "load_duration": LOAD_DURATION,
        "prompt_eval_duration": PROMPT_EVAL_DURATION,
        "eval_duration": EVAL_DURATION,
    }


class RawEncoder:
    """
    Pass-through: upstream frames are forwarded byte for byte.

    Frames that arrive after the last finish marker (a trailing usage frame)
    are forwarded too; the stream ends with the done sentinel once the
    upstream sends its own or closes.
    """

    dialect = Dialect.RAW
    forwards_trailing = True

    def content(self, event: UpstreamEvent, session: TranslationSession) -> Optional[bytes]:
        return event.raw or None

    def terminal(self, event: Finish, session: TranslationSession) -> bytes:
        return event.raw

    def closing(self, session: TranslationSession) -> Optional[bytes]:
        return DONE_SENTINEL

    def error(self, session: TranslationSession, message: str, detail: Optional[str] = None) -> bytes:
        return sse_frame({"error": message, "detail": detail})


class GenerateEncoder:
    """Ollama-style /api/generate frames."""

    dialect = Dialect.GENERATE_COMPAT
    forwards_trailing = False

    def _base(self, session: TranslationSession) -> Dict[str, Any]:
        return {"model": session.model, "created_at": format_timestamp()}

    def content(self, event: UpstreamEvent, session: TranslationSession) -> Optional[bytes]:
        if not isinstance(event, TextDelta) or not event.text:
            return None
        payload = self._base(session)
        payload.update({"response": event.text, "done": False})
        return sse_frame(payload)

    def summary(self, session: TranslationSession, text: str, reason: str) -> Dict[str, Any]:
        payload = self._base(session)
        payload.update(
            {
                "response": text,
                "done": True,
                "done_reason": reason,
                "context": list(CONTEXT_PLACEHOLDER),
                "prompt_eval_count": session.prompt_eval_count,
                "eval_count": session.text_length,
            }
        )
        payload.update(synthesized_timings())
        return payload

    def terminal(self, event: Finish, session: TranslationSession) -> bytes:
        return sse_frame(self.summary(session, "", event.reason))

    def closing(self, session: TranslationSession) -> Optional[bytes]:
        return None

    def error(self, session: TranslationSession, message: str, detail: Optional[str] = None) -> bytes:
        payload = self._base(session)
        payload.update({"error": message, "detail": detail, "done": True})
        return sse_frame(payload)


class ChatEncoder(GenerateEncoder):
    """Ollama-style /api/chat frames."""

    dialect = Dialect.CHAT_COMPAT

    def content(self, event: UpstreamEvent, session: TranslationSession) -> Optional[bytes]:
        if not isinstance(event, TextDelta) or not event.text:
            return None
        payload = self._base(session)
        payload.update({"message": {"role": "assistant", "content": event.text}, "done": False})
        return sse_frame(payload)

    def summary(self, session: TranslationSession, text: str, reason: str) -> Dict[str, Any]:
        payload = self._base(session)
        payload.update(
            {
                "message": {"role": "assistant", "content": text},
                "done": True,
                "done_reason": reason,
                "eval_count": session.text_length,
            }
        )
        payload.update(synthesized_timings())
        return payload


ENCODERS = {
    Dialect.RAW: RawEncoder(),
    Dialect.GENERATE_COMPAT: GenerateEncoder(),
    Dialect.CHAT_COMPAT: ChatEncoder(),
}


def get_encoder(dialect: Dialect):
    return ENCODERS[dialect]


def encode_frame(event: UpstreamEvent, dialect: Dialect, session: TranslationSession, terminal: bool = False) -> Optional[bytes]:
    """Encode one event for ``dialect``; ``terminal`` selects the closing frame for a Finish."""
    encoder = ENCODERS[dialect]
    if terminal:
        return encoder.terminal(event, session)
    return encoder.content(event, session)

