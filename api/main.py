"""FastAPI server for Chatgate."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from chatgate import __version__
from chatgate.config import GatewayConfig
from chatgate.fingerprint import ClientAttributes, identify
from chatgate.ledger import SQLiteTwoSlotStore, UsageLedgerStore
from chatgate.locks import LockRegistry
from chatgate.orchestrator import ChatOrchestrator
from chatgate.persistence import (
    PersistenceWriter,
    SQLiteConversationStore,
    generate_conversation_title,
)
from chatgate.quota import Identity, QuotaGate
from chatgate.registry import ProviderRouter
from chatgate.relay import StreamRelay
from chatgate.schemas import sanitize_content
from chatgate.session_cache import SessionCache, StaticAuthProvider


def _get_api_key() -> Optional[str]:
    return os.getenv("CHATGATE_API_KEY")


def _require_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    api_key = _get_api_key()
    if api_key and x_api_key != api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


@dataclass
class Services:
    """Long-lived collaborators shared by every request."""
    config: GatewayConfig
    gate: QuotaGate
    router: ProviderRouter
    relay: StreamRelay
    writer: PersistenceWriter
    locks: LockRegistry

    def orchestrator(self, token: Optional[str]) -> ChatOrchestrator:
        # Credentials arrive per request, so each request gets its own cache.
        cache = SessionCache(
            StaticAuthProvider(token),
            ttl_seconds=self.config.session_ttl_seconds,
            timeout_seconds=self.config.auth_timeout_seconds,
        )
        return ChatOrchestrator(
            gate=self.gate,
            cache=cache,
            router=self.router,
            relay=self.relay,
            writer=self.writer,
            locks=self.locks,
            config=self.config,
        )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        config = GatewayConfig.from_env()
        _services = Services(
            config=config,
            gate=QuotaGate(
                ledger=UsageLedgerStore(slots=SQLiteTwoSlotStore(config.db_path), config=config),
                config=config,
            ),
            router=ProviderRouter(config),
            relay=StreamRelay(config=config),
            writer=PersistenceWriter(
                SQLiteConversationStore(config.db_path),
                max_queue=config.persistence_queue_size,
            ),
            locks=LockRegistry(config),
        )
    return _services


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _user_id(x_user_id: Optional[str], token: Optional[str]) -> Optional[str]:
    """A user id is only honoured alongside a bearer credential."""
    if x_user_id and token is None:
        raise HTTPException(status_code=401, detail="X-User-Id requires a bearer token")
    return x_user_id or None


app = FastAPI(title="Chatgate API", version=__version__)


class ChatMessage(BaseModel):
    role: str = Field(..., pattern="^(user|assistant)$")
    content: str


class ClientInfo(BaseModel):
    client_id: str = Field(..., min_length=1)
    fingerprint: Optional[str] = None
    attributes: Optional[Dict[str, Any]] = None

    def fingerprint_id(self) -> str:
        if self.fingerprint:
            return self.fingerprint
        return identify(ClientAttributes.from_dict(self.attributes))


class ChatRequest(ClientInfo):
    messages: List[ChatMessage] = Field(..., min_length=1)
    model: str = "DeepSeek-V3"
    conversation_id: Optional[str] = None


class ConversationRequest(BaseModel):
    first_message: str = ""
    model: str = "DeepSeek-V3"


def _identity(client: ClientInfo, user_id: Optional[str]) -> Identity:
    return Identity(client_id=client.client_id, fingerprint=client.fingerprint_id(), user_id=user_id)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/models", dependencies=[Depends(_require_api_key)])
def models(services: Services = Depends(get_services)) -> List[Dict[str, Any]]:
    return services.router.list_models()


@app.post("/chat", dependencies=[Depends(_require_api_key)])
async def chat(
    req: ChatRequest,
    authorization: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> StreamingResponse:
    token = _bearer_token(authorization)
    orchestrator = services.orchestrator(token)
    identity = _identity(req, _user_id(x_user_id, token))
    messages = [m.model_dump() for m in req.messages]
    if not any(m["role"] == "user" and sanitize_content(m["content"]) for m in messages):
        raise HTTPException(status_code=422, detail="At least one non-empty user message is required")

    async def frames() -> AsyncIterator[str]:
        async for event in orchestrator.send(
            messages,
            req.model,
            identity,
            conversation_id=req.conversation_id,
        ):
            yield json.dumps(event.to_wire()) + "\n"

    return StreamingResponse(frames(), media_type="application/x-ndjson")


@app.get("/usage", dependencies=[Depends(_require_api_key)])
async def usage(
    client_id: str,
    fingerprint: str,
    authorization: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    user_id = _user_id(x_user_id, _bearer_token(authorization))
    identity = Identity(client_id=client_id, fingerprint=fingerprint, user_id=user_id)
    return await services.gate.usage(identity, identity.is_authenticated)


@app.post("/session", dependencies=[Depends(_require_api_key)])
async def start_session(req: ClientInfo, services: Services = Depends(get_services)) -> Dict[str, Any]:
    identity = _identity(req, None)
    await services.gate.start_session(identity)
    result = await services.gate.usage(identity, False)
    result["fingerprint"] = identity.fingerprint
    return result


@app.post("/conversations", dependencies=[Depends(_require_api_key)])
def create_conversation(
    req: ConversationRequest,
    authorization: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    conversation = services.writer.store.create_conversation(
        user_id=_user_id(x_user_id, _bearer_token(authorization)),
        title=generate_conversation_title(req.first_message),
        model=req.model,
    )
    return {
        "id": conversation.id,
        "title": conversation.title,
        "model": conversation.model,
        "created_at": conversation.created_at.isoformat(),
    }


@app.get("/conversations/{conversation_id}", dependencies=[Depends(_require_api_key)])
def get_conversation(conversation_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
    conversation = services.writer.store.get_conversation(conversation_id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {
        "id": conversation.id,
        "title": conversation.title,
        "model": conversation.model,
        "updated_at": conversation.updated_at.isoformat(),
        "messages": [
            {
                "role": m.role.value,
                "content": m.content,
                "model": m.model,
                "created_at": m.created_at.isoformat(),
            }
            for m in conversation.messages
        ],
    }
