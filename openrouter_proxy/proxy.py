import json
import logging
import math
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Dict, List, Optional, Tuple, cast
from urllib.parse import parse_qsl

import httpx
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse

from openrouter_proxy.config import Config
from openrouter_proxy.errors import PoolExhausted, StreamInterrupted, UpstreamError
from openrouter_proxy.retry import RetryCoordinator

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset(
    {
        "host",
        "connection",
        "keep-alive",
        "transfer-encoding",
        "te",
        "trailer",
        "upgrade",
        "proxy-authorization",
        "proxy-authenticate",
        "content-encoding",
        "content-length",
    }
)

SENSITIVE_HEADERS = frozenset({"authorization", "x-api-key", "cookie"})

# Epoch values above this are milliseconds.
_EPOCH_MILLIS_THRESHOLD = 10**11


def sanitize_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Redact credentials before headers reach the logs."""
    return {
        k: ("REDACTED" if k.lower() in SENSITIVE_HEADERS else v)
        for k, v in headers.items()
    }


def _prepare_headers(
    request_headers: Dict[str, str], secret: str, config: Config
) -> Dict[str, str]:
    """Strip hop-by-hop headers and the caller's authorization, inject ours."""
    headers = {
        k: v
        for k, v in request_headers.items()
        if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() != "authorization"
    }
    present = {k.lower() for k in headers}
    headers["authorization"] = f"Bearer {secret}"
    if "http-referer" not in present:
        headers["http-referer"] = config.http_referer
    if "x-title" not in present:
        headers["x-title"] = config.site_name
    return headers


def _is_streaming_body(body: bytes) -> bool:
    if not body:
        return False
    try:
        payload = json.loads(body)
    except ValueError:
        return False
    return isinstance(payload, dict) and payload.get("stream") is True


def _finite_float(raw: str) -> Optional[float]:
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def _parse_reset_at(
    headers: httpx.Headers, now: Optional[datetime] = None
) -> Optional[datetime]:
    """Work out when a rate limit lifts from upstream response headers.

    ``X-RateLimit-Reset`` is an epoch timestamp (seconds, or milliseconds
    for large values); ``Retry-After`` is either delay seconds or an
    HTTP date. Unusable values yield None so the pool's cooldown applies.
    """
    now = now or datetime.now(timezone.utc)

    reset_raw = headers.get("x-ratelimit-reset")
    if reset_raw:
        reset_value = _finite_float(reset_raw)
        if reset_value is not None:
            if reset_value > _EPOCH_MILLIS_THRESHOLD:
                reset_value /= 1000
            try:
                return datetime.fromtimestamp(reset_value, tz=timezone.utc)
            except (ValueError, OverflowError, OSError):
                return None

    retry_after = headers.get("retry-after")
    if retry_after:
        delay = _finite_float(retry_after)
        if delay is not None:
            try:
                return now + timedelta(seconds=delay)
            except (ValueError, OverflowError, OSError):
                return None
        try:
            parsed = parsedate_to_datetime(retry_after)
        except (TypeError, ValueError):
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    return None


def _error_from_response(response: httpx.Response, is_stream: bool = False) -> UpstreamError:
    message = response.reason_phrase or f"Upstream returned {response.status_code}"
    error_type = "upstream_error"
    try:
        data = response.json()
        error_obj = data.get("error", {}) if isinstance(data, dict) else None
        if isinstance(error_obj, dict):
            error_dict = cast(Dict[str, object], error_obj)
            message = str(error_dict.get("message") or message)
            error_type = str(error_dict.get("type") or error_type)
    except ValueError:
        text = response.text.strip()
        if text:
            message = text

    reset_at = _parse_reset_at(response.headers) if response.status_code == 429 else None
    return UpstreamError(
        response.status_code,
        message,
        error_type=error_type,
        reset_at=reset_at,
        is_stream=is_stream,
    )


def _error_response(
    status_code: int,
    message: str,
    error_type: str,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    return JSONResponse(
        content={"error": {"message": message, "type": error_type}},
        status_code=status_code,
        headers=headers,
    )


def _stream_error_event(error: StreamInterrupted) -> bytes:
    payload = {"error": {"message": error.message, "type": error.error_type}}
    return f"data: {json.dumps(payload)}\n\n".encode()


async def proxy_request(
    request: Request,
    coordinator: RetryCoordinator,
    http_client: httpx.AsyncClient,
    config: Config,
    upstream_path: str,
) -> Response:
    """
    Forward an OpenAI-style request to OpenRouter using a pooled key.

    Flow:
    1. Read the body; ``"stream": true`` selects SSE streaming
    2. Run an attempt through the retry coordinator, which picks the key:
       a. Inject ``Authorization: Bearer <key>``, referer and title headers
       b. Forward via httpx
       c. 429 / 5xx / transport errors raise ``UpstreamError`` and may be
          retried with another key; other 4xx are passed straight through
    3. No key available -> 503 with Retry-After
    4. Streaming: once upstream answers 2xx, bytes are relayed as they
       arrive; a failure mid-stream becomes an in-band SSE error event
    """

    body = await request.body()
    request_headers = dict(request.headers)
    query_params: List[Tuple[str, str]] = parse_qsl(
        request.url.query, keep_blank_values=True
    )
    is_streaming = request.method == "POST" and _is_streaming_body(body)
    url = f"/v1/{upstream_path}"

    async def attempt(secret: str) -> httpx.Response:
        extra = {"timeout": httpx.Timeout(10.0, read=None)} if is_streaming else {}
        upstream_request = http_client.build_request(
            method=request.method,
            url=url,
            content=body,
            headers=_prepare_headers(request_headers, secret, config),
            params=tuple(query_params),
            **extra,
        )
        try:
            response = await http_client.send(upstream_request, stream=is_streaming)
        except httpx.TimeoutException as exc:
            logger.error("Timeout forwarding to OpenRouter (%s)", url)
            raise UpstreamError(
                504, "Upstream request timed out", error_type="timeout"
            ) from exc
        except httpx.RequestError as exc:
            logger.error("Request error: %s", exc)
            raise UpstreamError(
                502, f"Upstream request failed: {exc}", error_type="upstream_unreachable"
            ) from exc

        if response.status_code >= 400:
            if is_streaming:
                await response.aread()
                await response.aclose()
            raise _error_from_response(response, is_stream=is_streaming)
        return response

    try:
        response = await coordinator.run(attempt)
    except PoolExhausted as exc:
        return _error_response(
            503, str(exc), "no_available_keys", headers={"Retry-After": "60"}
        )
    except UpstreamError as exc:
        return _error_response(exc.status, exc.message, exc.error_type)

    if is_streaming:
        return _stream_response(response)

    resp_headers = {
        k: v for k, v in response.headers.items() if k.lower() not in HOP_BY_HOP_HEADERS
    }
    media_type = cast(Optional[str], response.headers.get("content-type"))
    return Response(
        content=response.content,
        status_code=response.status_code,
        headers=resp_headers,
        media_type=media_type,
    )


def _stream_response(upstream: httpx.Response) -> StreamingResponse:
    """Relay an open upstream stream. Nothing here is retried."""

    async def stream_generator():
        try:
            async for chunk in upstream.aiter_bytes():
                if chunk:
                    yield chunk
        except httpx.HTTPError as exc:
            interrupted = StreamInterrupted(f"Upstream stream interrupted: {exc}")
            logger.error("%s", interrupted.message)
            yield _stream_error_event(interrupted)
        finally:
            await upstream.aclose()

    media_type = cast(
        Optional[str], upstream.headers.get("content-type", "text/event-stream")
    )
    return StreamingResponse(
        stream_generator(),
        status_code=upstream.status_code,
        media_type=media_type,
        headers={"Cache-Control": "no-cache"},
    )
