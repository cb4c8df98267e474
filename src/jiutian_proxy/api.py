"""FastAPI application and routes for the JiuTian proxy."""

import hashlib
import json
import logging
import traceback
from functools import partial
from typing import Any, Dict, List, Optional, Type

from fastapi import FastAPI, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ValidationError

from . import config
from . import upstream
from .encoders import format_timestamp, get_encoder
from .errors import InvalidRequestError, ProxyError, UnsupportedModelError
from .models import (
    ChatRequest,
    CompatChatRequest,
    CompletionRequest,
    Dialect,
    GenerateRequest,
    ModelTag,
    Options,
    TagsResponse,
    TextDelta,
    TranslationSession,
    Usage,
    utc_now,
)
from .relay import TranslationRelay

logger = logging.getLogger(__name__)

app = FastAPI(title="JiuTian Proxy")

STARTED_AT = utc_now()
STREAM_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}
# Keys only Ollama-style clients send; their presence selects the compat chat dialect
COMPAT_CHAT_KEYS = ("options", "keep_alive", "format")
SENSITIVE_KEYS = ("apiKey", "api_key")


def error_response(exc: ProxyError) -> Response:
    """Structured JSON error for failures discovered before streaming starts."""
    settings = config.settings
    content: Dict[str, Any] = {
        "error": exc.message,
        "detail": exc.detail if (exc.public or settings.expose_errors) else None,
    }
    if settings.expose_errors:
        content["stack"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return Response(
        content=json.dumps(content, ensure_ascii=False),
        status_code=exc.status_code,
        media_type="application/json",
    )


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError) -> Response:
    logger.error(f"{request.method} {request.url.path} failed: {exc.message} ({exc.detail})")
    return error_response(exc)


async def read_json(request: Request) -> Dict[str, Any]:
    logger.info(f"{request.method} {request.url.path}")
    body = await request.body()
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise InvalidRequestError("invalid JSON body", detail=e.msg) from e
    if not isinstance(data, dict):
        raise InvalidRequestError("request body must be a JSON object")

    logged = {k: v for k, v in data.items() if k not in SENSITIVE_KEYS}
    logger.info(f"Request body: {json.dumps(logged, ensure_ascii=False)[:1000]}")
    return data


def parse_body(model_cls: Type[BaseModel], data: Dict[str, Any]) -> Any:
    try:
        return model_cls.model_validate(data)
    except ValidationError as e:
        raise InvalidRequestError("invalid request body", detail=str(e)) from e


def check_model(requested: str) -> None:
    """Reject any model other than the one this proxy fronts, before any upstream call."""
    supported = config.settings.model
    if requested != supported:
        raise UnsupportedModelError(requested, supported)


def sampling(options: Optional[Options]) -> Dict[str, float]:
    if options is None:
        return {}
    values = {"temperature": options.temperature, "top_p": options.top_p}
    return {k: v for k, v in values.items() if v is not None}


def json_response(content: Dict[str, Any]) -> Response:
    return Response(
        content=json.dumps(content, ensure_ascii=False),
        status_code=200,
        media_type="application/json",
    )


class RelayResponse(StreamingResponse):
    """
    Event-stream response over one relay.

    Starlette stops iterating the body when the client disconnects but leaves
    the generator suspended, so the relay is closed here whichever way the
    response ends.
    """

    def __init__(self, relay: TranslationRelay):
        self.relay = relay
        super().__init__(relay.stream(), media_type="text/event-stream", headers=STREAM_HEADERS)

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.body_iterator.aclose()
            await self.relay.aclose()


async def relay_response(session: TranslationSession, path: str, payload: Dict[str, Any]) -> Response:
    """Open the upstream stream and hand the relay to a streaming response."""
    settings = config.settings
    relay = TranslationRelay(
        session,
        partial(upstream.open_stream, path, payload, settings),
        expose_errors=settings.expose_errors,
    )
    await relay.open()
    return RelayResponse(relay)


async def compat_single_shot(session: TranslationSession, path: str, payload: Dict[str, Any]) -> Response:
    """Non-streaming compat call: one upstream round trip, one summary object."""
    result = await upstream.forward(path, payload, config.settings)
    text = upstream.extract_text(result)
    session.append(TextDelta(text=text))

    usage = result.get("usage")
    if isinstance(usage, dict):
        session.usage = Usage(
            prompt_tokens=usage.get("prompt_tokens") or 0,
            completion_tokens=usage.get("completion_tokens") or 0,
            total_tokens=usage.get("total_tokens") or 0,
        )
    choices = result.get("choices") or [{}]
    reason = choices[0].get("finish_reason") or "stop"
    return json_response(get_encoder(session.dialect).summary(session, text, reason))


@app.post("/api/completions")
async def completions(request: Request) -> Response:
    """OpenAI-style completions; streaming responses are passed through frame by frame."""
    data = await read_json(request)
    body = parse_body(CompletionRequest, data)
    check_model(body.model)

    if body.stream:
        session = TranslationSession(model=body.model, dialect=Dialect.RAW, prompt_length=len(body.prompt))
        return await relay_response(session, upstream.COMPLETIONS_PATH, data)

    result = await upstream.forward(upstream.COMPLETIONS_PATH, data, config.settings)
    return json_response(result)


@app.post("/api/chat")
async def chat(request: Request) -> Response:
    """
    Chat endpoint shared by two dialects:
    - OpenAI-style bodies are passed through (streamed frames unchanged)
    - Ollama-style bodies (carrying options / keep_alive / format) are translated
    """
    data = await read_json(request)
    if any(key in data for key in COMPAT_CHAT_KEYS):
        return await compat_chat(data)

    body = parse_body(ChatRequest, data)
    check_model(body.model)

    if body.stream:
        prompt_length = sum(len(m.content) for m in body.messages)
        session = TranslationSession(model=body.model, dialect=Dialect.RAW, prompt_length=prompt_length)
        return await relay_response(session, upstream.CHAT_COMPLETIONS_PATH, data)

    result = await upstream.forward(upstream.CHAT_COMPLETIONS_PATH, data, config.settings)
    return json_response(result)


async def compat_chat(data: Dict[str, Any]) -> Response:
    body = parse_body(CompatChatRequest, data)
    check_model(body.model)

    messages = [m.model_dump() for m in body.messages]
    payload: Dict[str, Any] = {"model": body.model, "messages": messages, "stream": bool(body.stream)}
    payload.update(sampling(body.options))

    session = TranslationSession(
        model=body.model,
        dialect=Dialect.CHAT_COMPAT,
        prompt_length=sum(len(m.content) for m in body.messages),
    )
    if body.stream:
        return await relay_response(session, upstream.CHAT_COMPLETIONS_PATH, payload)
    return await compat_single_shot(session, upstream.CHAT_COMPLETIONS_PATH, payload)


@app.post("/api/generate")
async def generate(request: Request) -> Response:
    """Ollama-style generate, backed by the upstream completions endpoint."""
    data = await read_json(request)
    body = parse_body(GenerateRequest, data)
    check_model(body.model)

    prompt = body.prompt
    if body.system:
        prompt = f"{body.system}\n\n{prompt}"
    payload: Dict[str, Any] = {"model": body.model, "prompt": prompt, "stream": bool(body.stream)}
    payload.update(sampling(body.options))

    session = TranslationSession(model=body.model, dialect=Dialect.GENERATE_COMPAT, prompt_length=len(prompt))
    if body.stream:
        return await relay_response(session, upstream.COMPLETIONS_PATH, payload)
    return await compat_single_shot(session, upstream.COMPLETIONS_PATH, payload)


@app.get("/api/tags")
async def tags():
    """Static listing of the single fronted model."""
    model = config.settings.model
    listing = TagsResponse(
        models=[
            ModelTag(
                name=model,
                model=model,
                modified_at=format_timestamp(STARTED_AT),
                digest=hashlib.sha256(model.encode()).hexdigest(),
            )
        ]
    )
    return listing.model_dump()


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "ok", "timestamp": format_timestamp()}


ENDPOINTS: List[str] = [
    "GET  /health",
    "GET  /api/tags",
    "POST /api/completions",
    "POST /api/chat",
    "POST /api/generate",
]


def main() -> None:
    import uvicorn

    settings = config.settings
    logger.info(f"Service starting: http://localhost:{settings.port}")
    for endpoint in ENDPOINTS:
        logger.info(f"  {endpoint}")
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
