"""
Data schemas for Chatgate.

Messages, conversations, credentials, the anonymous usage ledger and the
normalized stream events that flow from the relay to the caller.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Optional, Union
import re
import uuid

from chatgate.errors import ErrorKind, GatewayError, error_for_kind


class Role(str, Enum):
    """Author of a message."""
    USER = "user"
    ASSISTANT = "assistant"


class TransportMode(str, Enum):
    """How a backend delivers its answer."""
    STREAM = "stream"
    BATCH = "batch"


# C0 and C1 control characters except tab, newline and carriage return.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_BOM = "\ufeff"


def sanitize_content(content: Any) -> str:
    """
    Clean message text before it is stored or sent upstream.

    Strips control characters and byte-order marks, trims surrounding
    whitespace and re-encodes to valid UTF-8.

    Args:
        content: Raw content. Non-strings are converted with ``str()``.

    Returns:
        Sanitized text (possibly empty).
    """
    if content is None:
        return ""
    if not isinstance(content, str):
        content = str(content)

    cleaned = _CONTROL_CHARS.sub("", content).replace(_BOM, "").strip()
    return cleaned.encode("utf-8", errors="replace").decode("utf-8")


@dataclass(frozen=True)
class Message:
    """A single chat message. Immutable once created."""
    role: Role
    content: str
    model: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def create(
        cls,
        role: Union[Role, str],
        content: Any,
        model: Optional[str] = None,
        **kwargs: Any,
    ) -> "Message":
        """Create a message with sanitized content."""
        return cls(role=Role(role), content=sanitize_content(content), model=model, **kwargs)

    def to_wire(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass
class Conversation:
    """
    Ordered sequence of messages.

    Owned by a user, or ephemeral for the current browser session when
    ``user_id`` is None.
    """
    title: str
    model: str
    user_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    messages: list[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_ephemeral(self) -> bool:
        return self.user_id is None

    def append(self, message: Message) -> None:
        """
        Append a message, keeping creation order.

        Raises:
            ValueError: If the message is older than the last message.
        """
        if self.messages and message.created_at < self.messages[-1].created_at:
            raise ValueError(
                f"Message {message.id} is older than the last message in conversation {self.id}"
            )
        self.messages.append(message)
        self.touch(message.created_at)

    def touch(self, at: datetime) -> None:
        """Advance updated_at; never moves it backwards."""
        if at > self.updated_at:
            self.updated_at = at


@dataclass(frozen=True)
class Credential:
    """Short-lived authentication credential."""
    token: str
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class UsageLedger:
    """
    Anonymous daily usage counter for one browser.

    Replaced wholesale on every change, never mutated.
    """
    count: int
    reset_at: datetime
    fingerprint: str
    session_start: datetime

    def with_count(self, count: int) -> "UsageLedger":
        return replace(self, count=count)

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "reset_at": self.reset_at.timestamp(),
            "fingerprint": self.fingerprint,
            "session_start": self.session_start.timestamp(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], tz=None) -> "UsageLedger":
        """
        Rebuild a ledger from ``to_dict`` output.

        Raises:
            KeyError, TypeError, ValueError: If the payload is incomplete.
        """
        count = int(data["count"])
        if count < 0:
            raise ValueError(f"Negative ledger count: {count}")
        return cls(
            count=count,
            reset_at=datetime.fromtimestamp(float(data["reset_at"]), tz=tz),
            fingerprint=str(data["fingerprint"]),
            session_start=datetime.fromtimestamp(float(data["session_start"]), tz=tz),
        )


@dataclass(frozen=True)
class Route:
    """Where and how a model is served."""
    model_id: str
    family: str
    transport: TransportMode
    endpoint: str


# =============================================================================
# STREAM EVENTS
# =============================================================================

@dataclass(frozen=True)
class ChunkEvent:
    """One incremental piece of generated text."""
    text: str

    type = "chunk"

    def to_wire(self) -> dict[str, Any]:
        return {"type": "chunk", "content": self.text}


@dataclass(frozen=True)
class CompleteEvent:
    """Terminal event carrying the full accumulated text."""
    text: str
    model: str
    usage: Optional[dict[str, Any]] = None

    type = "complete"

    def to_wire(self) -> dict[str, Any]:
        frame: dict[str, Any] = {"type": "complete", "content": self.text, "model": self.model}
        if self.usage:
            frame["usage"] = self.usage
        return frame


@dataclass(frozen=True)
class ErrorEvent:
    """Typed failure surfaced to the caller."""
    kind: ErrorKind
    message: str
    status: Optional[int] = None
    details: dict[str, Any] = field(default_factory=dict)

    type = "error"

    @classmethod
    def from_exception(cls, exc: GatewayError) -> "ErrorEvent":
        return cls(kind=exc.kind, message=exc.message, status=exc.status, details=dict(exc.details))

    def to_exception(self) -> GatewayError:
        return error_for_kind(self.kind, self.message, status=self.status, details=self.details)

    def to_wire(self) -> dict[str, Any]:
        frame: dict[str, Any] = {"type": "error", "kind": self.kind.value, "message": self.message}
        if self.status is not None:
            frame["status"] = self.status
        for key, value in self.details.items():
            if value is None:
                continue
            frame[key] = value.isoformat() if isinstance(value, datetime) else value
        return frame


StreamEvent = Union[ChunkEvent, CompleteEvent, ErrorEvent]


@dataclass(frozen=True)
class Exchange:
    """A finished user/assistant pair handed to the persistence writer."""
    conversation_id: str
    user_message: Message
    assistant_message: Message
    ordinal: int  # Position of the user message in the conversation
    user_id: Optional[str] = None
