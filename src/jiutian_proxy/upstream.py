"""Calls to the upstream JiuTian API."""

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from .auth import mint
from .config import Settings
from .errors import UpstreamConnectError

logger = logging.getLogger(__name__)

COMPLETIONS_PATH = "/completions"
CHAT_COMPLETIONS_PATH = "/chat/completions"


class UpstreamStream:
    """
    An open streaming upstream response.

    Owns both the httpx client and the response so that closing the stream
    releases the connection. ``aclose`` may be called more than once.
    """

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response):
        self.client = client
        self.response = response
        self.closed = False

    @property
    def status_code(self) -> int:
        return self.response.status_code

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        async for chunk in self.response.aiter_bytes():
            yield chunk

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.response.aclose()
        finally:
            await self.client.aclose()


def _headers(settings: Settings) -> Dict[str, str]:
    credential = mint(settings.api_key, settings.token_lifetime)
    return {
        "Content-Type": "application/json",
        "Authorization": credential.authorization,
    }


def _error_detail(status_code: int, content: bytes) -> str:
    text = content.decode(errors="replace") if isinstance(content, bytes) else str(content)
    try:
        error_content = json.loads(text)
    except json.JSONDecodeError:
        return f"upstream returned HTTP {status_code}: {text[:500]}"
    return f"upstream returned HTTP {status_code}: {json.dumps(error_content, ensure_ascii=False)[:500]}"


async def open_stream(path: str, payload: Dict[str, Any], settings: Settings) -> UpstreamStream:
    """
    Issue a streaming POST to the upstream and return the open response.

    Args:
        path: Upstream path, e.g. "/chat/completions"
        payload: JSON body; ``stream`` is forced to true
        settings: Runtime settings (base URL, API key, timeout)

    Raises:
        CredentialError: the credential could not be minted
        UpstreamConnectError: the upstream is unreachable or answered non-2xx
    """
    headers = _headers(settings)
    body = dict(payload)
    body["stream"] = True
    target_url = f"{settings.base_url}{path}"
    logger.info(f"Opening upstream stream at {target_url}")

    client = httpx.AsyncClient(timeout=settings.timeout)
    try:
        request = client.build_request(
            "POST",
            target_url,
            content=json.dumps(body, ensure_ascii=False).encode(),
            headers=headers,
        )
        response = await client.send(request, stream=True)
    except httpx.HTTPError as e:
        await client.aclose()
        logger.error(f"Error connecting to upstream {target_url}: {str(e)}")
        raise UpstreamConnectError("upstream model call failed", detail=str(e)) from e
    except BaseException:
        await client.aclose()
        raise

    if not 200 <= response.status_code < 300:
        try:
            content = await response.aread()
        except httpx.HTTPError:
            content = b""
        finally:
            await response.aclose()
            await client.aclose()
        logger.error(f"Upstream rejected stream request with status {response.status_code}")
        raise UpstreamConnectError(
            "upstream model call failed",
            detail=_error_detail(response.status_code, content),
            upstream_status=response.status_code,
        )

    return UpstreamStream(client, response)


async def forward(path: str, payload: Dict[str, Any], settings: Settings) -> Dict[str, Any]:
    """
    One-shot, non-streaming call. Returns the decoded upstream JSON.

    Raises:
        CredentialError: the credential could not be minted
        UpstreamConnectError: transport error, non-2xx status or a body that is
            not a JSON object
    """
    headers = _headers(settings)
    target_url = f"{settings.base_url}{path}"
    logger.info(f"Calling upstream at {target_url}")

    client = httpx.AsyncClient()
    try:
        response = await client.post(
            target_url,
            content=json.dumps(payload, ensure_ascii=False).encode(),
            headers=headers,
            timeout=settings.timeout,
        )
        content = await response.aread()
    except httpx.HTTPError as e:
        logger.error(f"Error calling upstream {target_url}: {str(e)}")
        raise UpstreamConnectError("upstream model call failed", detail=str(e)) from e
    finally:
        await client.aclose()

    if not 200 <= response.status_code < 300:
        raise UpstreamConnectError(
            "upstream model call failed",
            detail=_error_detail(response.status_code, content),
            upstream_status=response.status_code,
        )
    try:
        if isinstance(content, bytes):
            content = content.decode()
        result = json.loads(content)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise UpstreamConnectError("upstream returned a non-JSON body", detail=str(e)) from e
    if not isinstance(result, dict):
        raise UpstreamConnectError(
            "upstream returned an unexpected body",
            detail=f"expected a JSON object, got {type(result).__name__}",
        )
    return result


def extract_text(result: Optional[Dict[str, Any]]) -> str:
    """Pull the generated text out of a non-streaming upstream response."""
    choices = (result or {}).get("choices") or []
    if not choices:
        return ""
    choice = choices[0]
    message = choice.get("message") or {}
    if "content" in message:
        return message.get("content") or ""
    return choice.get("text") or ""
