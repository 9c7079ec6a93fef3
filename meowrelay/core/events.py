"""
Inbound events emitted by the transport.

Every notification the messaging network delivers is translated by the
transport adapter into exactly one of the frozen dataclasses below.  The
router keys its dispatch table on these classes, so adding a variant here
means adding it to ``INBOUND_EVENT_TYPES`` and giving the router a handler.
"""

from dataclasses import dataclass
from typing import Any, Optional, Union


@dataclass(frozen=True)
class QuotedMessage:
    """The message a reply refers to."""
    body: str
    message_id: str
    sender: str


@dataclass(frozen=True)
class TextMessage:
    message_id: str
    sender: str
    chat: str
    body: str = ""
    from_self: bool = False
    is_group: bool = False
    media_type: str = ""          # "" for text, else e.g. "image", "video"
    quoted: Optional[QuotedMessage] = None

    @property
    def is_plain(self) -> bool:
        """True when the message does not reply to another message."""
        return self.quoted is None

    @property
    def quoted_text(self) -> str:
        return self.quoted.body if self.quoted is not None else ""


@dataclass(frozen=True)
class HistorySyncBlob:
    data: Any


@dataclass(frozen=True)
class AppStateSyncComplete:
    name: str


@dataclass(frozen=True)
class ConnectionEstablished:
    pass


@dataclass(frozen=True)
class PushNameChanged:
    name: str = ""


@dataclass(frozen=True)
class StreamReplaced:
    pass


@dataclass(frozen=True)
class KeepAliveTimeout:
    error_count: int = 1
    error: str = ""


@dataclass(frozen=True)
class KeepAliveRestored:
    pass


InboundEvent = Union[
    TextMessage,
    HistorySyncBlob,
    AppStateSyncComplete,
    ConnectionEstablished,
    PushNameChanged,
    StreamReplaced,
    KeepAliveTimeout,
    KeepAliveRestored,
]

INBOUND_EVENT_TYPES: tuple[type, ...] = (
    TextMessage,
    HistorySyncBlob,
    AppStateSyncComplete,
    ConnectionEstablished,
    PushNameChanged,
    StreamReplaced,
    KeepAliveTimeout,
    KeepAliveRestored,
)
