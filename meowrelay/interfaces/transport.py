"""
Transport protocol.

The router, the command dispatcher and the lifecycle supervisor only talk
to the messaging network through this protocol.  ``matrix_transport``
implements it on top of mautrix; the test-suite implements it with an
in-memory fake.

Every coroutine raises :class:`~meowrelay.core.types.TransportError` on
failure.  Identities (chats, users, groups) are plain strings in the
network's own notation; ``parse_identity`` turns operator input into one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, AsyncIterator, Optional, Protocol, runtime_checkable

from meowrelay.core.events import InboundEvent
from meowrelay.core.replies import OutboundReply


@dataclass(frozen=True)
class SendResult:
    message_id: str
    timestamp: float      # unix seconds, as reported (or observed) for the send


@dataclass(frozen=True)
class UploadedMedia:
    url: str
    mime_type: str
    size: int
    file_name: str = ""


@dataclass(frozen=True)
class NetworkCheck:
    query: str
    is_on_network: bool
    identity: str
    display_name: str = ""


@dataclass(frozen=True)
class AvatarInfo:
    id: str
    url: str


@runtime_checkable
class Transport(Protocol):
    display_name: str
    app_state_categories: tuple[str, ...]
    critical_app_state: str

    # -- lifecycle ----------------------------------------------------------
    async def connect(self) -> None: ...
    async def disconnect(self) -> None: ...
    async def logout(self) -> None: ...
    def events(self) -> AsyncIterator[InboundEvent]: ...

    # -- identities ---------------------------------------------------------
    def parse_identity(self, arg: str) -> str: ...
    def is_group(self, identity: str) -> bool: ...

    # -- sending ------------------------------------------------------------
    async def send_message(self, reply: OutboundReply) -> SendResult: ...
    async def send_reaction(self, chat: str, message_id: str, reaction: str,
                            from_me: bool = False) -> SendResult: ...
    async def revoke_message(self, chat: str, message_id: str) -> SendResult: ...
    async def upload_image(self, data: bytes, mime_type: str,
                           file_name: str = "") -> UploadedMedia: ...
    async def send_image(self, chat: str, media: UploadedMedia,
                         caption: str = "") -> SendResult: ...

    # -- presence / profile -------------------------------------------------
    async def send_presence(self, state: str) -> None: ...
    async def send_chat_presence(self, chat: str, state: str, media: str = "") -> None: ...
    async def subscribe_presence(self, identity: str) -> Any: ...
    async def set_status_message(self, text: str) -> None: ...

    # -- app state ----------------------------------------------------------
    async def fetch_app_state(self, name: str, full_sync: bool = False) -> Any: ...
    async def request_app_state_keys(self, key_ids: list[bytes]) -> None: ...

    # -- queries ------------------------------------------------------------
    async def is_on_network(self, queries: list[str]) -> list[NetworkCheck]: ...
    async def get_privacy_settings(self) -> Any: ...
    async def get_user_info(self, identities: list[str]) -> dict[str, Any]: ...
    async def get_avatar(self, identity: str, *, preview: bool = False,
                         is_community: bool = False,
                         existing_id: str = "") -> Optional[AvatarInfo]: ...
    async def get_group_info(self, group: str) -> Any: ...
    async def get_sub_groups(self, group: str) -> list[Any]: ...
    async def get_community_participants(self, group: str) -> list[str]: ...
    async def get_joined_groups(self) -> list[Any]: ...
    async def get_invite_link(self, group: str, reset: bool = False) -> str: ...
    async def resolve_invite_link(self, link: str) -> Any: ...
    async def resolve_business_link(self, link: str) -> Any: ...
    async def join_invite_link(self, link: str) -> str: ...
    async def get_status_privacy(self) -> Any: ...
    async def set_disappearing_timer(self, chat: str, timer: timedelta) -> None: ...
