"""
Chatgate - streaming chat gateway.

Accepts a chat message, checks it against a message quota, routes it to one
of several upstream model backends and streams the answer back as one
normalized event protocol.

Simple usage:
    from chatgate import create_gateway, Identity

    gateway = create_gateway()
    identity = Identity(client_id="browser-1", fingerprint="fp_abc123")

    async for event in gateway.send([{"role": "user", "content": "Hi"}], "DeepSeek-V3", identity):
        print(event.to_wire())

Single-turn helper:
    result = await gateway.complete(messages, "mistral-small-latest", identity)
    print(result.text)
"""

from typing import Optional

import httpx

from chatgate.config import GatewayConfig, configure_logging
from chatgate.errors import (
    ErrorKind,
    GatewayError,
    AuthExpiredError,
    ForbiddenError,
    QuotaExceededError,
    RateLimitedError,
    UpstreamUnavailableError,
    UpstreamHTTPError,
    EmptyStreamError,
    EmptyResponseError,
    MalformedFrameError,
    RequestCancelledError,
    RequestInProgressError,
)
from chatgate.fingerprint import ClientAttributes, identify
from chatgate.ledger import UsageLedgerStore, InMemoryTwoSlotStore, SQLiteTwoSlotStore
from chatgate.locks import LockRegistry
from chatgate.orchestrator import ChatOrchestrator, OrchestratorState
from chatgate.persistence import (
    PersistenceWriter,
    InMemoryConversationStore,
    SQLiteConversationStore,
    generate_conversation_title,
)
from chatgate.quota import Identity, QuotaGate, InMemoryQuotaCounter
from chatgate.registry import ProviderRouter
from chatgate.relay import StreamRelay
from chatgate.schemas import (
    Message,
    Conversation,
    Role,
    ChunkEvent,
    CompleteEvent,
    ErrorEvent,
    StreamEvent,
)
from chatgate.session_cache import SessionCache, StaticAuthProvider, AuthProvider


def create_gateway(
    config: Optional[GatewayConfig] = None,
    auth_provider: Optional[AuthProvider] = None,
    client: Optional[httpx.AsyncClient] = None,
    persistent: bool = False,
) -> ChatOrchestrator:
    """Wire up a gateway with default collaborators.

    Args:
        config: Gateway configuration. Defaults to GatewayConfig.from_env().
        auth_provider: Source of user credentials. Defaults to anonymous.
        client: Shared HTTP client for upstream calls.
        persistent: Store ledgers and conversations in SQLite at config.db_path.

    Returns:
        A ready ChatOrchestrator

    Example:
        gateway = create_gateway(auth_provider=StaticAuthProvider("token"))
        result = await gateway.complete(messages, "claude-3-haiku-20240307", identity)
    """
    config = config or GatewayConfig.from_env()

    if persistent:
        slots = SQLiteTwoSlotStore(db_path=config.db_path)
        store = SQLiteConversationStore(db_path=config.db_path)
    else:
        slots = InMemoryTwoSlotStore()
        store = InMemoryConversationStore()

    return ChatOrchestrator(
        gate=QuotaGate(ledger=UsageLedgerStore(slots=slots, config=config), config=config),
        cache=SessionCache(
            auth_provider or StaticAuthProvider(),
            ttl_seconds=config.session_ttl_seconds,
            timeout_seconds=config.auth_timeout_seconds,
        ),
        router=ProviderRouter(config),
        relay=StreamRelay(client=client, config=config),
        writer=PersistenceWriter(store, max_queue=config.persistence_queue_size),
        locks=LockRegistry(config),
        config=config,
    )


__version__ = "0.1.0"
