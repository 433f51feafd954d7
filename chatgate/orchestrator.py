"""
Request orchestrator for Chatgate.

The single entry point for sending a chat message. One call walks:

    Idle -> Locked -> Authorizing -> Routing -> Streaming -> Done

and any failure goes straight back to Idle. The per-client lock is released
on every exit path, including cancellation and a consumer that stops
iterating early.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Union

from chatgate.config import GatewayConfig
from chatgate.errors import RequestCancelledError, RequestInProgressError
from chatgate.locks import LockLease, LockRegistry
from chatgate.persistence import PersistenceWriter
from chatgate.quota import Identity, QuotaGate
from chatgate.registry import ProviderRouter
from chatgate.relay import StreamRelay, is_auth_failure
from chatgate.schemas import (
    CompleteEvent,
    ErrorEvent,
    Exchange,
    Message,
    Role,
    StreamEvent,
)
from chatgate.session_cache import SessionCache


logger = logging.getLogger("chatgate.orchestrator")

# One attempt plus one retry after a credential refresh.
MAX_ATTEMPTS = 2


class OrchestratorState(str, Enum):
    """Pipeline states for one client."""
    IDLE = "idle"
    LOCKED = "locked"
    AUTHORIZING = "authorizing"
    ROUTING = "routing"
    STREAMING = "streaming"
    DONE = "done"


MessageInput = Union[Message, Mapping[str, Any]]


def coerce_messages(messages: Sequence[MessageInput]) -> List[Message]:
    """
    Turn caller input into sanitized Messages.

    Dicts with ``role`` and ``content`` are accepted alongside Message
    objects. Messages whose content is empty after sanitizing are dropped.

    Raises:
        ValueError: If no non-empty user message remains.
    """
    result = []
    for item in messages:
        if isinstance(item, Message):
            message = Message.create(item.role, item.content, model=item.model, id=item.id, created_at=item.created_at)
        else:
            message = Message.create(item["role"], item.get("content"), model=item.get("model"))
        if message.content:
            result.append(message)

    if not any(m.role == Role.USER for m in result):
        raise ValueError("At least one non-empty user message is required")
    return result


class ChatOrchestrator:
    """
    Drives Gate -> Router -> Relay for one request per client at a time.

    Example:
        ```python
        orchestrator = ChatOrchestrator(gate, cache, router, relay, writer)

        async for event in orchestrator.send(messages, "DeepSeek-V3", identity):
            if event.type == "chunk":
                print(event.text, end="")
        ```
    """

    def __init__(
        self,
        gate: QuotaGate,
        cache: SessionCache,
        router: ProviderRouter,
        relay: StreamRelay,
        writer: Optional[PersistenceWriter] = None,
        locks: Optional[LockRegistry] = None,
        config: Optional[GatewayConfig] = None,
    ):
        self.config = config or GatewayConfig()
        self.gate = gate
        self.cache = cache
        self.router = router
        self.relay = relay
        self.writer = writer
        self.locks = locks or LockRegistry(self.config)
        self._states: Dict[str, OrchestratorState] = {}

    def state(self, key: str) -> OrchestratorState:
        """Current pipeline state for a client key."""
        return self._states.get(key, OrchestratorState.IDLE)

    async def send(
        self,
        messages: Sequence[MessageInput],
        model_id: str,
        identity: Identity,
        cancel: Optional[asyncio.Event] = None,
        conversation_id: Optional[str] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Send a conversation and stream back normalized events.

        Args:
            messages: Conversation so far; the last user message is the new one.
            model_id: Requested model.
            identity: Caller identity.
            cancel: Set to stop the request; no further events are emitted.
            conversation_id: Stored conversation to append to. None keeps the
                exchange ephemeral.

        Yields:
            ChunkEvents, then one CompleteEvent or ErrorEvent. Nothing follows
            a cancellation.
        """
        prepared = coerce_messages(messages)
        key = identity.lock_key

        try:
            lease = await self.locks.acquire(key)
        except RequestInProgressError as exc:
            yield ErrorEvent.from_exception(exc)
            return

        self._states[key] = OrchestratorState.LOCKED
        heartbeat = asyncio.ensure_future(lease.keep_alive(self.config.lock_stale_seconds / 3))
        try:
            async with aclosing(self._pipeline(lease, prepared, model_id, identity, cancel, conversation_id)) as events:
                async for event in events:
                    lease.touch()
                    yield event
        finally:
            heartbeat.cancel()
            # A force-released holder must not clear its successor's state.
            if lease.release():
                self._states.pop(key, None)

    async def complete(
        self,
        messages: Sequence[MessageInput],
        model_id: str,
        identity: Identity,
        conversation_id: Optional[str] = None,
    ) -> CompleteEvent:
        """
        Run a request to completion and return the final event.

        Raises:
            GatewayError: The typed error for any ErrorEvent.
        """
        result: Optional[CompleteEvent] = None
        async for event in self.send(messages, model_id, identity, conversation_id=conversation_id):
            if isinstance(event, ErrorEvent):
                raise event.to_exception()
            if isinstance(event, CompleteEvent):
                result = event
        if result is None:
            raise RequestCancelledError("The request was cancelled.")
        return result

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    async def _pipeline(
        self,
        lease: LockLease,
        messages: List[Message],
        model_id: str,
        identity: Identity,
        cancel: Optional[asyncio.Event],
        conversation_id: Optional[str],
    ) -> AsyncIterator[StreamEvent]:
        key = identity.lock_key
        self._enter(lease, OrchestratorState.AUTHORIZING)

        # A user id only counts when backed by a credential.
        credential = await self.cache.get_credential()
        authenticated = identity.is_authenticated and credential is not None
        if identity.is_authenticated and not authenticated:
            logger.info("No credential for user %s; applying anonymous quota", identity.user_id)

        decision = await self.gate.authorize(identity, authenticated)
        if not decision.allowed:
            logger.info("Request from %s denied: %s", key, decision.kind.value)
            yield ErrorEvent(
                kind=decision.kind,
                message=decision.message,
                status=429,
                details=decision.details,
            )
            return

        # Counted on acceptance so a later upstream failure still uses budget.
        await self.gate.record(identity, authenticated)

        for attempt in range(MAX_ATTEMPTS):
            credential = await self.cache.get_credential()

            self._enter(lease, OrchestratorState.ROUTING)
            route = self.router.resolve(model_id)

            self._enter(lease, OrchestratorState.STREAMING)
            retry = False
            async with aclosing(self.relay.execute(messages, credential, route, cancel)) as events:
                first = True
                async for event in events:
                    if first and is_auth_failure(event) and attempt + 1 < MAX_ATTEMPTS:
                        logger.info("Credential rejected for %s; refreshing and retrying once", key)
                        self.cache.invalidate()
                        retry = True
                        break
                    first = False
                    if isinstance(event, CompleteEvent):
                        self._enter(lease, OrchestratorState.DONE)
                        user_id = identity.user_id if authenticated else None
                        self._schedule_write(messages, event, user_id, conversation_id)
                    yield event

            if not retry:
                return

    def _enter(self, lease: LockLease, state: OrchestratorState) -> None:
        if lease.active:
            self._states[lease.lock.key] = state

    def _schedule_write(
        self,
        messages: List[Message],
        event: CompleteEvent,
        user_id: Optional[str],
        conversation_id: Optional[str],
    ) -> None:
        if conversation_id is None or self.writer is None:
            return

        user_message = next(m for m in reversed(messages) if m.role == Role.USER)
        assistant_message = Message.create(Role.ASSISTANT, event.text, model=event.model)
        self.writer.schedule(
            Exchange(
                conversation_id=conversation_id,
                user_message=user_message,
                assistant_message=assistant_message,
                ordinal=len(messages) - 1,
                user_id=user_id,
            )
        )
