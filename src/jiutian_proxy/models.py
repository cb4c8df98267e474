"""Data models and schemas for the JiuTian proxy."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Any, Optional, Set, Union
from pydantic import BaseModel, ConfigDict, Field


class Message(BaseModel):
    """Chat message model."""
    model_config = ConfigDict(extra="allow")

    role: str
    content: str


class CompletionRequest(BaseModel):
    """Request model for /api/completions (OpenAI-style, passed through)."""
    model_config = ConfigDict(extra="allow")

    model: str
    prompt: str
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    history: Optional[List[Any]] = None
    stream: Optional[bool] = False


class ChatRequest(BaseModel):
    """Request model for /api/chat (OpenAI-style, passed through)."""
    model_config = ConfigDict(extra="allow")

    model: str
    messages: List[Message]
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    stream: Optional[bool] = False


class Options(BaseModel):
    """Sampling options of the Ollama-style surfaces."""
    model_config = ConfigDict(extra="allow")

    temperature: Optional[float] = None
    top_p: Optional[float] = None


class GenerateRequest(BaseModel):
    """Request model for /api/generate."""
    model_config = ConfigDict(extra="allow")

    model: str
    prompt: str
    stream: Optional[bool] = True
    system: Optional[str] = None
    options: Optional[Options] = None


class CompatChatRequest(BaseModel):
    """Request model for the Ollama-style variant of /api/chat."""
    model_config = ConfigDict(extra="allow")

    model: str
    messages: List[Message]
    stream: Optional[bool] = True
    options: Optional[Options] = None


class Credential(BaseModel):
    """A short-lived signed token for one upstream call."""
    token: str
    issued_at: int
    expires_at: int

    @property
    def authorization(self) -> str:
        return f"Bearer {self.token}"


class TextDelta(BaseModel):
    """Incremental text for one output slot."""
    index: int = 0
    text: str = ""
    # Bytes of the upstream frame this event closes; empty for earlier events of the same frame
    raw: bytes = b""


class Finish(BaseModel):
    """A slot has completed."""
    index: int = 0
    reason: str = "stop"
    raw: bytes = b""


class Usage(BaseModel):
    """Token accounting, sent with the final upstream frame."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    raw: bytes = b""


UpstreamEvent = Union[TextDelta, Finish, Usage]


class Dialect(str, Enum):
    RAW = "raw"
    GENERATE_COMPAT = "generate_compat"
    CHAT_COMPAT = "chat_compat"


class SessionState(str, Enum):
    OPEN = "open"
    STREAMING = "streaming"
    FINISHING = "finishing"
    CLOSED = "closed"
    FAILED = "failed"


TERMINAL_STATES = {SessionState.CLOSED, SessionState.FAILED}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TranslationSession(BaseModel):
    """
    Per-request relay state.

    Owned by the single task handling the request; never shared.
    """
    model: str
    dialect: Dialect
    prompt_length: int = 0
    started_at: datetime = Field(default_factory=utc_now)
    state: SessionState = SessionState.OPEN
    chunks: List[str] = Field(default_factory=list)
    text_length: int = 0
    open_slots: Set[int] = Field(default_factory=set)
    finished_slots: Set[int] = Field(default_factory=set)
    usage: Optional[Usage] = None
    dropped_frames: int = 0

    @property
    def accumulated_text(self) -> str:
        return "".join(self.chunks)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def append(self, delta: TextDelta) -> None:
        self.open_slots.add(delta.index)
        if delta.text:
            self.chunks.append(delta.text)
            self.text_length += len(delta.text)

    def finish_slot(self, index: int) -> bool:
        """Mark a slot finished; return True once every open slot has finished."""
        self.open_slots.add(index)
        self.finished_slots.add(index)
        return self.finished_slots >= self.open_slots

    @property
    def prompt_eval_count(self) -> int:
        if self.usage is not None and self.usage.prompt_tokens:
            return self.usage.prompt_tokens
        return self.prompt_length


class ModelDetails(BaseModel):
    format: str = "api"
    family: str = "jiutian"
    parameter_size: str = ""
    quantization_level: str = ""


class ModelTag(BaseModel):
    """One entry of the /api/tags listing."""
    name: str
    model: str
    modified_at: str
    size: int = 0
    digest: str = ""
    details: ModelDetails = Field(default_factory=ModelDetails)


class TagsResponse(BaseModel):
    models: List[ModelTag]
