"""
Stream relay for Chatgate.

Executes one upstream call and re-emits it as a normalized event sequence:
zero or more ChunkEvents followed by exactly one CompleteEvent or ErrorEvent
(or nothing further once cancelled).

Streaming backends send newline-delimited ``data: <json>`` frames. Network
reads can split a frame anywhere, including inside a multi-byte character,
so bytes are decoded incrementally and only complete lines are parsed.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from contextlib import suppress
from typing import Any, AsyncIterator, Optional, Sequence

import httpx

from chatgate.config import GatewayConfig
from chatgate.errors import (
    EmptyResponseError,
    EmptyStreamError,
    ErrorKind,
    MalformedFrameError,
    UpstreamHTTPError,
    UpstreamUnavailableError,
    error_for_status,
)
from chatgate.schemas import (
    ChunkEvent,
    CompleteEvent,
    Credential,
    ErrorEvent,
    Message,
    Route,
    StreamEvent,
    TransportMode,
)


logger = logging.getLogger("chatgate.relay")

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class FrameParser:
    """
    Incremental parser for ``data:`` event frames.

    Feed it raw bytes as they arrive; it returns the text deltas of every
    complete line seen so far and keeps any trailing partial line buffered.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.frames_parsed = 0
        self.malformed_frames = 0
        self.done = False

    def feed(self, data: bytes) -> list[str]:
        """
        Consume bytes and return deltas from completed lines.

        A delta may be an empty string: the frame parsed but carried no text.
        """
        self._buffer += self._decoder.decode(data)
        deltas = []
        while True:
            newline = self._buffer.find("\n")
            if newline < 0:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1:]
            delta = self._parse_line(line)
            if delta is not None:
                deltas.append(delta)
        return deltas

    def flush(self) -> list[str]:
        """Parse whatever is left once the stream has ended."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        delta = self._parse_line(tail)
        return [] if delta is None else [delta]

    def _parse_line(self, line: str) -> Optional[str]:
        line = line.strip()
        if not line or line.startswith(":"):
            return None  # blank separator or keep-alive comment
        if not line.startswith(DATA_PREFIX):
            return None  # event:, id:, retry: fields

        payload = line[len(DATA_PREFIX):].strip()
        if not payload:
            return None
        if payload == DONE_SENTINEL:
            self.done = True
            return None

        try:
            frame = json.loads(payload)
        except json.JSONDecodeError as exc:
            self.malformed_frames += 1
            logger.warning("Skipping malformed frame (%s): %.200s", exc, payload)
            return None

        delta = extract_delta(frame)
        if delta is None:
            self.malformed_frames += 1
            logger.warning("Skipping frame with unexpected shape: %.200s", payload)
            return None

        self.frames_parsed += 1
        return delta


def extract_delta(frame: Any) -> Optional[str]:
    """
    Pull the text delta out of a decoded frame.

    Accepts the OpenAI-style ``choices[0].delta.content`` shape and the
    edge-function ``{"type": "chunk", "content": ...}`` shape.

    Returns:
        The delta text ("" for frames without text), or None if the frame
        has neither shape.
    """
    if not isinstance(frame, dict):
        return None

    if "type" in frame:
        if frame.get("type") != "chunk":
            return ""
        content = frame.get("content")
        return content if isinstance(content, str) else ""

    choices = frame.get("choices")
    if not isinstance(choices, list):
        return None
    if not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) else ""


def extract_batch_text(body: dict) -> Optional[str]:
    """Full text of a batch response: ``response``, else ``choices[0].message.content``."""
    text = body.get("response")
    if isinstance(text, str):
        return text
    choices = body.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str):
            return content
    return None


class StreamRelay:
    """
    Executes upstream calls and normalizes their results.

    The sequence returned by ``execute`` is lazy and single-pass: nothing is
    sent upstream until it is iterated, and it cannot be replayed. A caller
    that needs the full text must accumulate chunks or wait for Complete.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        config: Optional[GatewayConfig] = None,
    ):
        """
        Initialize the relay.

        Args:
            client: Shared HTTP client. Created lazily if not provided.
            config: Gateway configuration (timeouts, public API key).
        """
        self.config = config or GatewayConfig()
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def execute(
        self,
        messages: Sequence[Message],
        credential: Optional[Credential],
        route: Route,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Run one upstream call.

        Args:
            messages: Conversation so far, oldest first.
            credential: Bearer credential, or None for anonymous access.
            route: Resolved endpoint and transport.
            cancel: Optional cancellation signal.

        Returns:
            Async iterator of StreamEvent.
        """
        if route.transport == TransportMode.STREAM:
            return self._stream(messages, credential, route, cancel)
        return self._batch(messages, credential, route, cancel)

    # -------------------------------------------------------------------------
    # Request helpers
    # -------------------------------------------------------------------------

    def _headers(self, credential: Optional[Credential]) -> dict[str, str]:
        if credential is not None:
            return {"Authorization": f"Bearer {credential.token}"}
        return {"apikey": self.config.public_api_key}

    def _payload(self, messages: Sequence[Message], route: Route) -> dict[str, Any]:
        return {
            "model": route.model_id,
            "messages": [message.to_wire() for message in messages],
        }

    @staticmethod
    def _decode_error_body(raw: bytes) -> Optional[dict]:
        try:
            body = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        return body if isinstance(body, dict) else None

    # -------------------------------------------------------------------------
    # Stream transport
    # -------------------------------------------------------------------------

    async def _stream(
        self,
        messages: Sequence[Message],
        credential: Optional[Credential],
        route: Route,
        cancel: Optional[asyncio.Event],
    ) -> AsyncIterator[StreamEvent]:
        if cancel is not None and cancel.is_set():
            return

        payload = self._payload(messages, route)
        payload["stream"] = True
        # Long generations are expected: only connecting is bounded.
        timeout = httpx.Timeout(None, connect=self.config.connect_timeout_seconds)

        parser = FrameParser()
        parts: list[str] = []

        try:
            async with self.client.stream(
                "POST",
                route.endpoint,
                json=payload,
                headers=self._headers(credential),
                timeout=timeout,
            ) as response:
                if response.status_code >= 400:
                    body = self._decode_error_body(await response.aread())
                    error = error_for_status(response.status_code, body)
                    logger.warning(
                        "Upstream %s returned %d (%s)", route.family, response.status_code, error.kind.value
                    )
                    yield ErrorEvent.from_exception(error)
                    return

                chunks = response.aiter_bytes()
                while True:
                    # A silent upstream must not delay cancellation until its next byte.
                    try:
                        data = await self._await_unless_cancelled(anext(chunks), cancel)
                    except StopAsyncIteration:
                        break
                    if data is None or (cancel is not None and cancel.is_set()):
                        logger.info("Stream for %s cancelled after %d chunks", route.model_id, len(parts))
                        return
                    for delta in parser.feed(data):
                        if not delta:
                            continue
                        if cancel is not None and cancel.is_set():
                            logger.info("Stream for %s cancelled after %d chunks", route.model_id, len(parts))
                            return
                        parts.append(delta)
                        yield ChunkEvent(delta)

                for delta in parser.flush():
                    if delta and not (cancel is not None and cancel.is_set()):
                        parts.append(delta)
                        yield ChunkEvent(delta)

        except httpx.RequestError as exc:
            logger.warning("Upstream %s unreachable at %s: %s", route.family, route.endpoint, exc)
            yield ErrorEvent.from_exception(
                UpstreamUnavailableError("Network error. Please check your connection and try again.")
            )
            return

        if cancel is not None and cancel.is_set():
            return

        if parser.malformed_frames:
            logger.info("Stream for %s skipped %d malformed frames", route.model_id, parser.malformed_frames)

        if parser.frames_parsed == 0:
            yield ErrorEvent.from_exception(
                EmptyStreamError("No streaming data received from the AI service.")
            )
            return

        text = "".join(parts)
        if not text.strip():
            yield ErrorEvent.from_exception(
                EmptyResponseError("Empty response received from the AI service.")
            )
            return

        yield CompleteEvent(text=text, model=route.model_id)

    # -------------------------------------------------------------------------
    # Batch transport
    # -------------------------------------------------------------------------

    async def _batch(
        self,
        messages: Sequence[Message],
        credential: Optional[Credential],
        route: Route,
        cancel: Optional[asyncio.Event],
    ) -> AsyncIterator[StreamEvent]:
        if cancel is not None and cancel.is_set():
            return

        timeout = httpx.Timeout(
            self.config.batch_timeout_seconds,
            connect=self.config.connect_timeout_seconds,
        )
        request = self.client.post(
            route.endpoint,
            json=self._payload(messages, route),
            headers=self._headers(credential),
            timeout=timeout,
        )

        try:
            response = await self._await_unless_cancelled(request, cancel)
        except httpx.TimeoutException:
            logger.warning("Upstream %s timed out after %.0fs", route.family, self.config.batch_timeout_seconds)
            yield ErrorEvent.from_exception(
                UpstreamHTTPError("The AI service timed out. Please try again.", status=408)
            )
            return
        except httpx.RequestError as exc:
            logger.warning("Upstream %s unreachable at %s: %s", route.family, route.endpoint, exc)
            yield ErrorEvent.from_exception(
                UpstreamUnavailableError("Network error. Please check your connection and try again.")
            )
            return

        if response is None:
            logger.info("Batch request for %s cancelled", route.model_id)
            return

        yield self._batch_event(response, route)

    def _batch_event(self, response: httpx.Response, route: Route) -> StreamEvent:
        if response.status_code >= 400:
            error = error_for_status(response.status_code, self._decode_error_body(response.content))
            logger.warning("Upstream %s returned %d (%s)", route.family, response.status_code, error.kind.value)
            return ErrorEvent.from_exception(error)

        if not response.content.strip():
            return ErrorEvent.from_exception(EmptyResponseError("Empty response received from the AI service."))

        try:
            body = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("Malformed batch body from %s: %s", route.family, exc)
            return ErrorEvent.from_exception(MalformedFrameError("The AI service returned an unreadable response."))

        if not isinstance(body, dict):
            return ErrorEvent.from_exception(MalformedFrameError("The AI service returned an unreadable response."))

        if body.get("error"):
            return ErrorEvent.from_exception(UpstreamHTTPError(str(body["error"]), status=response.status_code))

        text = extract_batch_text(body)
        if text is None:
            return ErrorEvent.from_exception(MalformedFrameError("The AI service response had no text."))
        if not text.strip():
            return ErrorEvent.from_exception(EmptyResponseError("Empty response received from the AI service."))

        usage = body.get("usage") if isinstance(body.get("usage"), dict) else None
        return CompleteEvent(text=text, model=route.model_id, usage=usage)

    @staticmethod
    async def _await_unless_cancelled(awaitable, cancel: Optional[asyncio.Event]) -> Any:
        """Await ``awaitable``; return None if ``cancel`` fires first."""
        if cancel is None:
            return await awaitable

        request_task = asyncio.ensure_future(awaitable)
        cancel_task = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {request_task, cancel_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            request_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if request_task in done:
            return request_task.result()

        request_task.cancel()
        with suppress(asyncio.CancelledError):
            await request_task
        return None


def is_auth_failure(event: StreamEvent) -> bool:
    return isinstance(event, ErrorEvent) and event.kind == ErrorKind.AUTH_EXPIRED


__all__ = [
    "FrameParser",
    "StreamRelay",
    "extract_delta",
    "extract_batch_text",
    "is_auth_failure",
]
