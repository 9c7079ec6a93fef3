"""
Matrix transport

Implements the :class:`~meowrelay.interfaces.transport.Transport` protocol on
top of mautrix-python.  Sync callbacks are translated into the inbound
event dataclasses and queued; ``events()`` drains that queue for the router.

Mapping onto Matrix:

  chat / group          a room; rooms with more than two members are groups
  quoted message        ``m.in_reply_to`` (the replied-to event is fetched)
  poll                  ``org.matrix.msc3381.poll.start``
  reaction / revoke     ``m.reaction`` / redaction
  push name             the bot's own display name
  app state             account data (``m.push_rules`` is the critical type)
  disappearing timer    ``m.room.retention`` state event
  invite link           ``https://matrix.to/#/<alias or room id>``

Sync loop notifications become lifecycle events: every failed sync is a
``KeepAliveTimeout``, the first success after failures a
``KeepAliveRestored``, the very first sync a ``ConnectionEstablished``
followed by a ``HistorySyncBlob`` holding the raw sync response, and an
``M_UNKNOWN_TOKEN`` (the session was logged out elsewhere) a
``StreamReplaced``.

Login happens in one of three ways: a configured access token, a password
login, or, with neither, interactive SSO pairing through the pairing
endpoint.  New credentials are written back to config.yaml.

End-to-end encryption is not supported; encrypted rooms are ignored.
"""

import asyncio
import logging
import os as _os
import secrets
import tempfile as _tempfile
import threading as _threading
import time
from collections.abc import MutableMapping as _Mapping
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, AsyncIterator, Optional
from urllib.parse import unquote, urlparse

import aiohttp
from ruamel.yaml import YAML as _YAML
from ruamel.yaml.scalarstring import DoubleQuotedScalarString as _DQStr

from mautrix.client import Client, InternalEventType
from mautrix.client.dispatcher import MembershipEventDispatcher
from mautrix.client.state_store.memory import MemoryStateStore
from mautrix.errors import MatrixError, MNotFound, MUnknownToken
from mautrix.types import (
    DeviceID,
    EventID,
    EventType,
    Filter,
    PresenceState,
    RoomAlias,
    RoomEventFilter,
    RoomFilter,
    RoomID,
    UserID,
)

from meowrelay.core.events import (
    AppStateSyncComplete,
    ConnectionEstablished,
    HistorySyncBlob,
    InboundEvent,
    KeepAliveRestored,
    KeepAliveTimeout,
    PushNameChanged,
    QuotedMessage,
    StreamReplaced,
    TextMessage,
)
from meowrelay.core.replies import OutboundReply, PollSpec
from meowrelay.core.types import InvalidIdentityError, TransportError
from meowrelay.infra.paths import CONFIG_FILE
from meowrelay.interfaces.transport import AvatarInfo, NetworkCheck, SendResult, UploadedMedia

logger = logging.getLogger(__name__)

POLL_START = EventType.find("org.matrix.msc3381.poll.start", EventType.Class.MESSAGE)
ROOM_RETENTION = EventType.find("m.room.retention", EventType.Class.STATE)
SECRET_REQUEST = EventType.find("m.secret.request", EventType.Class.TO_DEVICE)

APP_STATE_CATEGORIES = ("m.push_rules", "m.direct", "m.ignored_user_list")
CRITICAL_APP_STATE = "m.push_rules"

_TEXT_MSGTYPES = {"m.text", "m.notice", "m.emote"}
_MEDIA_MSGTYPES = {
    "m.image": "image",
    "m.video": "video",
    "m.audio": "audio",
    "m.file": "document",
    "m.location": "location",
}
_TYPING_TIMEOUT_MS = 30_000
_FULL_SYNC_TIMELINE_LIMIT = 500
_MATRIX_TO = "https://matrix.to/#/"

_config_write_lock = _threading.Lock()


# ---------------------------------------------------------------------------
# Config write-back
# ---------------------------------------------------------------------------

def _update_config_yaml(config_path: Path, access_token: str, device_id: str,
                        user_id: Optional[str] = None) -> None:
    """Write new credentials back into config.yaml (in-place).

    ruamel.yaml round-trips the file so comments and key order survive.
    Values are stored as double-quoted scalars so PyYAML's safe_load()
    always reads them back as strings.  The write goes through a tempfile
    and os.replace so a crash never leaves a truncated file.
    """
    if not config_path.exists():
        return

    yaml = _YAML()
    yaml.preserve_quotes = True

    with _config_write_lock:
        try:
            with config_path.open(encoding="utf-8") as f:
                data = yaml.load(f)
        except Exception:  # noqa: BLE001
            logger.warning("Failed to parse %s, credentials not saved", config_path, exc_info=True)
            return

        if not isinstance(data, _Mapping) or not isinstance(data.get("matrix"), _Mapping):
            logger.warning("'matrix' section missing in %s, credentials not saved", config_path)
            return

        data["matrix"]["access_token"] = _DQStr(access_token)
        data["matrix"]["device_id"] = _DQStr(device_id)
        if user_id:
            data["matrix"]["user_id"] = _DQStr(user_id)

        fd, tmp_path = _tempfile.mkstemp(
            dir=str(config_path.parent), suffix=".tmp", prefix=".config_",
        )
        try:
            with _os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
                fd = -1  # fdopen took ownership of the descriptor
                yaml.dump(data, f)
            _os.replace(tmp_path, str(config_path))
        except BaseException:
            if fd >= 0:
                _os.close(fd)
            try:
                _os.unlink(tmp_path)
            except OSError:
                pass
            raise


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _type_name(event_type: Any) -> str:
    return getattr(event_type, "t", None) or str(event_type)


def _sync_payload(args: tuple, kwargs: dict) -> dict:
    """Internal sync events arrive either as one dict or as keyword arguments."""
    if args and isinstance(args[0], dict):
        return args[0]
    return kwargs


def poll_content(poll: PollSpec) -> dict:
    answers = [
        {"id": str(i), "org.matrix.msc1767.text": option}
        for i, option in enumerate(poll.options, start=1)
    ]
    fallback = "\n".join(
        [poll.question] + [f"{i}. {option}" for i, option in enumerate(poll.options, start=1)]
    )
    return {
        "org.matrix.msc3381.poll.start": {
            "question": {"org.matrix.msc1767.text": poll.question},
            "kind": "org.matrix.msc3381.poll.disclosed",
            "max_selections": poll.max_selectable,
            "answers": answers,
        },
        "org.matrix.msc1767.text": fallback,
    }


def text_content(reply: OutboundReply) -> dict:
    content: dict = {"msgtype": "m.text", "body": reply.text}
    if reply.quote is not None:
        content["m.relates_to"] = {"m.in_reply_to": {"event_id": reply.quote.stanza_id}}
    return content


def invite_target(link: str) -> str:
    """Extract the room alias, room id or user id from a matrix.to link."""
    link = link.strip()
    if link.startswith(_MATRIX_TO):
        target = link[len(_MATRIX_TO):]
    else:
        parsed = urlparse(link)
        target = parsed.fragment.lstrip("/") if parsed.fragment else link
    target = unquote(target.split("?", 1)[0])
    if not target or target[0] not in "#!@" or ":" not in target:
        raise InvalidIdentityError(f"Not a Matrix invite link: {link}")
    return target


def _strip_reply_fallback(body: str) -> str:
    """Drop the ``> <@user> quoted`` lines clients prepend to replies."""
    lines = body.splitlines()
    if not lines or not lines[0].startswith("> "):
        return body
    while lines and lines[0].startswith(">"):
        lines.pop(0)
    while lines and not lines[0].strip():
        lines.pop(0)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Config and transport
# ---------------------------------------------------------------------------

@dataclass
class MatrixConfig:
    homeserver: str
    user_id: str = ""
    access_token: str = ""
    device_id: str = ""
    password: str = ""
    default_server: str = ""      # bare identities resolve to @<id>:<default_server>
    device_name: str = "meowrelay"

    @property
    def server_name(self) -> str:
        if self.default_server:
            return self.default_server
        _, _, server = self.user_id.partition(":")
        return server or urlparse(self.homeserver).hostname or ""


class MatrixTransport:
    """Transport on a Matrix homeserver.

    Call ``connect()`` to log in and start the sync loop; events are then
    available through ``events()`` until the process exits.  The queue
    survives reconnects.
    """

    app_state_categories = APP_STATE_CATEGORIES
    critical_app_state = CRITICAL_APP_STATE

    def __init__(self, config: MatrixConfig, pairing=None, full_history_sync: bool = False,
                 config_path: Path = CONFIG_FILE) -> None:
        self._cfg = config
        self._pairing = pairing
        self._full_history_sync = full_history_sync
        self._config_path = config_path
        self._client: Optional[Client] = None
        self._sync_task: Optional[asyncio.Future] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._send_lock = asyncio.Lock()
        self._sync_failures = 0
        self._first_sync_seen = False
        self._reactions: dict[tuple[str, str], EventID] = {}
        self._direct_rooms: dict[str, RoomID] = {}
        self._presence = PresenceState.ONLINE
        self._status_message = ""
        self._background_tasks: set[asyncio.Task] = set()
        self.display_name = ""

    @property
    def client(self) -> Client:
        if self._client is None:
            raise TransportError("Not connected")
        return self._client

    @property
    def default_server(self) -> str:
        return self._cfg.server_name

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if self._client is not None:
            await self.disconnect()

        if not self._cfg.access_token:
            if self._cfg.password:
                await self._password_login()
            elif self._pairing is not None:
                await self._pair()
            else:
                raise TransportError(
                    "no access_token and no password configured, and pairing is disabled"
                )

        client = self._setup_client()
        try:
            whoami = await client.whoami()
        except MUnknownToken:
            await client.api.session.close()
            if not self._cfg.password:
                raise TransportError(
                    "Matrix access token is invalid or expired. Add 'password' to the "
                    "matrix section of config.yaml or clear access_token to pair again."
                )
            logger.info("Token expired, re-authenticating with stored password...")
            await self._password_login()
            client = self._setup_client()
            whoami = await self._guard(client.whoami())
        except (MatrixError, aiohttp.ClientError, OSError) as exc:
            await client.api.session.close()
            raise TransportError(f"Could not reach {self._cfg.homeserver}: {exc}") from exc

        self._cfg.user_id = str(whoami.user_id)
        client.mxid = whoami.user_id
        self._client = client
        try:
            self.display_name = await client.get_displayname(whoami.user_id) or ""
        except MatrixError as exc:
            logger.warning("Could not fetch own display name: %s", exc)

        self._first_sync_seen = False
        self._sync_failures = 0
        client.ignore_initial_sync = True
        self._sync_task = client.start(self._sync_filter())
        logger.info("Matrix connected as %s (device %s) on %s",
                    self._cfg.user_id, self._cfg.device_id or "?", self._cfg.homeserver)

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        client.stop()
        self._sync_task = None
        try:
            await client.api.session.close()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Error closing Matrix HTTP session: %s", exc)
        logger.info("Matrix disconnected")

    async def logout(self) -> None:
        await self._guard(self.client.logout())
        self._cfg.access_token = ""
        self._cfg.device_id = ""
        await asyncio.to_thread(_update_config_yaml, self._config_path, "", "")
        await self.disconnect()

    async def events(self) -> AsyncIterator[InboundEvent]:
        while True:
            yield await self._queue.get()

    def _emit(self, evt: InboundEvent) -> None:
        self._queue.put_nowait(evt)

    def _sync_filter(self) -> Optional[Filter]:
        if not self._full_history_sync:
            return None
        return Filter(room=RoomFilter(timeline=RoomEventFilter(limit=_FULL_SYNC_TIMELINE_LIMIT)))

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def _login(self, payload: dict) -> None:
        """POST to the login API, update config in memory and on disk."""
        hs = self._cfg.homeserver.rstrip("/")
        payload = dict(payload, initial_device_display_name=self._cfg.device_name)
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(f"{hs}/_matrix/client/v3/login", json=payload) as resp:
                    data = await resp.json()
        except (aiohttp.ClientError, OSError) as exc:
            raise TransportError(f"Matrix login failed: {exc}") from exc

        if "access_token" not in data:
            raise TransportError(
                f"Matrix login failed: {data.get('error', 'unknown error')} "
                f"({data.get('errcode', '')})"
            )

        self._cfg.access_token = data["access_token"]
        self._cfg.device_id = data.get("device_id", "")
        self._cfg.user_id = data.get("user_id", self._cfg.user_id)
        await asyncio.to_thread(
            _update_config_yaml, self._config_path,
            self._cfg.access_token, self._cfg.device_id, self._cfg.user_id,
        )
        logger.info("Login successful. device_id=%s, credentials written to %s",
                    self._cfg.device_id, self._config_path)

    async def _password_login(self) -> None:
        await self._login({
            "type": "m.login.password",
            "identifier": {"type": "m.id.user", "user": self._cfg.user_id},
            "password": self._cfg.password,
        })

    async def _pair(self) -> None:
        """Wait for the operator to sign in through the pairing QR code."""
        await self._pairing.start()
        try:
            token = await self._pairing.wait_for_login_token()
        finally:
            await self._pairing.stop()
        await self._login({"type": "m.login.token", "token": token})

    # ------------------------------------------------------------------
    # Client setup and sync callbacks
    # ------------------------------------------------------------------

    def _setup_client(self) -> Client:
        client = Client(
            mxid=UserID(self._cfg.user_id),
            device_id=DeviceID(self._cfg.device_id),
            base_url=self._cfg.homeserver,
            token=self._cfg.access_token,
            state_store=MemoryStateStore(),
        )
        client.add_dispatcher(MembershipEventDispatcher)
        client.add_event_handler(EventType.ROOM_MESSAGE, self._on_message)
        client.add_event_handler(EventType.STICKER, self._on_sticker)
        client.add_event_handler(EventType.ROOM_MEMBER, self._on_member)
        client.add_event_handler(InternalEventType.INVITE, self._on_invite)
        client.add_event_handler(InternalEventType.SYNC_SUCCESSFUL, self._on_sync_successful)
        client.add_event_handler(InternalEventType.SYNC_ERRORED, self._on_sync_errored)
        client.add_event_handler(InternalEventType.SYNC_STOPPED, self._on_sync_stopped)
        return client

    async def _on_sync_successful(self, *args: object, **kwargs: object) -> None:
        data = _sync_payload(args, kwargs).get("data") or {}
        if self._sync_failures:
            logger.info("Matrix sync recovered after %d failure(s)", self._sync_failures)
            self._sync_failures = 0
            self._emit(KeepAliveRestored())
        if not self._first_sync_seen:
            self._first_sync_seen = True
            self._emit(ConnectionEstablished())
            self._emit(HistorySyncBlob(data))
            for room_id in (data.get("rooms") or {}).get("invite") or {}:
                self._spawn(self._join(RoomID(room_id)), name="accept-pending-invite")
        for evt in (data.get("account_data") or {}).get("events") or []:
            name = evt.get("type") if isinstance(evt, dict) else None
            if name:
                self._emit(AppStateSyncComplete(name))

    async def _on_sync_errored(self, *args: object, **kwargs: object) -> None:
        error = _sync_payload(args, kwargs).get("error")
        self._sync_failures += 1
        logger.warning("Matrix sync error: %s", error)
        self._emit(KeepAliveTimeout(error_count=self._sync_failures, error=str(error or "")))

    async def _on_sync_stopped(self, *args: object, **kwargs: object) -> None:
        exc = _sync_payload(args, kwargs).get("error")
        if isinstance(exc, MUnknownToken):
            logger.warning("Access token was revoked, the session was taken over elsewhere")
            self._emit(StreamReplaced())
        elif exc is not None:
            logger.error("Matrix sync loop stopped: %s", exc)

    async def _on_invite(self, evt) -> None:
        await self._join(evt.room_id)

    async def _join(self, room_id: RoomID) -> None:
        logger.info("Accepting invite to %s", room_id)
        try:
            await self.client.join_room(room_id)
        except (MatrixError, TransportError) as exc:
            logger.error("Failed to join room %s: %s", room_id, exc)

    async def _on_member(self, evt) -> None:
        if str(evt.state_key) != self._cfg.user_id:
            return
        name = getattr(evt.content, "displayname", None) or ""
        if not name or name == self.display_name:
            return
        self.display_name = name
        self._emit(PushNameChanged(name))

    async def _on_message(self, evt) -> None:
        msgtype = str(getattr(evt.content, "msgtype", "") or "")
        if msgtype in _TEXT_MSGTYPES:
            media_type = ""
        elif msgtype in _MEDIA_MSGTYPES:
            media_type = _MEDIA_MSGTYPES[msgtype]
        else:
            logger.debug("Ignoring %s message %s", msgtype or "untyped", evt.event_id)
            return
        await self._emit_message(evt, media_type)

    async def _on_sticker(self, evt) -> None:
        await self._emit_message(evt, "sticker")

    async def _emit_message(self, evt, media_type: str) -> None:
        room_id = str(evt.room_id)
        body = ""
        quoted = None
        if not media_type:
            body = _strip_reply_fallback(getattr(evt.content, "body", "") or "")
            quoted = await self._fetch_quoted(evt)
        self._emit(TextMessage(
            message_id=str(evt.event_id),
            sender=str(evt.sender),
            chat=room_id,
            body=body,
            from_self=str(evt.sender) == self._cfg.user_id,
            is_group=await self._is_group_room(RoomID(room_id)),
            media_type=media_type,
            quoted=quoted,
        ))

    async def _fetch_quoted(self, evt) -> Optional[QuotedMessage]:
        get_reply_to = getattr(evt.content, "get_reply_to", None)
        reply_to = get_reply_to() if get_reply_to else None
        if not reply_to:
            return None
        try:
            orig = await self.client.get_event(evt.room_id, reply_to)
        except (MatrixError, TransportError) as exc:
            logger.debug("Could not fetch replied-to event %s: %s", reply_to, exc)
            return QuotedMessage(body="", message_id=str(reply_to), sender="")
        orig_body = getattr(getattr(orig, "content", None), "body", None) or ""
        return QuotedMessage(
            body=_strip_reply_fallback(orig_body),
            message_id=str(reply_to),
            sender=str(orig.sender),
        )

    async def _is_group_room(self, room_id: RoomID) -> bool:
        # The store only knows every member once a full list was fetched;
        # get_joined_members caches one.
        client = self.client
        try:
            if await client.state_store.has_full_member_list(room_id):
                members = await client.state_store.get_members(room_id)
            else:
                members = list(await client.get_joined_members(room_id))
        except MatrixError as exc:
            logger.warning("Could not count members of %s, treating it as a group: %s",
                           room_id, exc)
            return True
        return len(members) > 2

    def _spawn(self, coro, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def parse_identity(self, arg: str) -> str:
        """Turn operator input into a Matrix id.

        ``@user:server``, ``!room:server`` and ``#alias:server`` pass through;
        a bare token (e.g. a phone number) becomes ``@<token>:<default server>``.
        """
        arg = arg.strip()
        if arg.startswith("+"):
            arg = arg[1:]
        if not arg:
            raise InvalidIdentityError("Invalid JID: empty identity")
        if arg[0] in "@!#":
            local, sep, server = arg[1:].partition(":")
            if not sep or not local or not server:
                raise InvalidIdentityError(f"Invalid JID {arg}: expected {arg[0]}<local part>:<server>")
            return arg
        if ":" in arg or any(ch.isspace() for ch in arg):
            raise InvalidIdentityError(f"Invalid JID {arg}")
        if not self.default_server:
            raise InvalidIdentityError(f"Invalid JID {arg}: no default server configured")
        return f"@{arg.lower()}:{self.default_server}"

    def is_group(self, identity: str) -> bool:
        return identity[:1] in ("!", "#")

    async def _room(self, identity: str) -> RoomID:
        """Resolve a chat identity to a room, opening a direct chat for users."""
        if identity.startswith("#"):
            info = await self._guard(self.client.resolve_room_alias(RoomAlias(identity)))
            return info.room_id
        if identity.startswith("@"):
            return await self._direct_room(identity)
        return RoomID(identity)

    async def _direct_room(self, user_id: str) -> RoomID:
        if user_id in self._direct_rooms:
            return self._direct_rooms[user_id]
        try:
            direct = await self.client.get_account_data("m.direct")
        except MNotFound:
            direct = {}
        except MatrixError as exc:
            raise TransportError(str(exc)) from exc
        rooms = (direct or {}).get(user_id) or []
        if rooms:
            room_id = RoomID(rooms[-1])
        else:
            room_id = await self._guard(self.client.create_room(is_direct=True, invitees=[UserID(user_id)]))
            logger.info("Opened direct chat %s with %s", room_id, user_id)
        self._direct_rooms[user_id] = room_id
        return room_id

    async def _guard(self, coro):
        try:
            return await coro
        except (MatrixError, aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            raise TransportError(str(exc) or type(exc).__name__) from exc

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(self, reply: OutboundReply) -> SendResult:
        room_id = await self._room(reply.chat)
        if reply.poll is not None:
            event_type, content = POLL_START, poll_content(reply.poll)
        else:
            event_type, content = EventType.ROOM_MESSAGE, text_content(reply)
        async with self._send_lock:
            event_id = await self._guard(self.client.send_message_event(room_id, event_type, content))
        return SendResult(message_id=str(event_id), timestamp=time.time())

    async def send_reaction(self, chat: str, message_id: str, reaction: str,
                            from_me: bool = False) -> SendResult:
        room_id = await self._room(chat)
        key = (str(room_id), message_id)
        if not reaction:
            reaction_id = self._reactions.pop(key, None)
            if reaction_id is None:
                raise TransportError(f"No reaction of ours on {message_id} to remove")
            event_id = await self._guard(self.client.redact(room_id, reaction_id))
        else:
            event_id = await self._guard(self.client.react(room_id, EventID(message_id), reaction))
            self._reactions[key] = event_id
        return SendResult(message_id=str(event_id), timestamp=time.time())

    async def revoke_message(self, chat: str, message_id: str) -> SendResult:
        room_id = await self._room(chat)
        event_id = await self._guard(self.client.redact(room_id, EventID(message_id)))
        return SendResult(message_id=str(event_id), timestamp=time.time())

    async def upload_image(self, data: bytes, mime_type: str, file_name: str = "") -> UploadedMedia:
        mxc_uri = await self._guard(self.client.upload_media(
            data, mime_type=mime_type, filename=file_name or None,
        ))
        return UploadedMedia(url=str(mxc_uri), mime_type=mime_type, size=len(data), file_name=file_name)

    async def send_image(self, chat: str, media: UploadedMedia, caption: str = "") -> SendResult:
        room_id = await self._room(chat)
        content = {
            "msgtype": "m.image",
            "body": caption or media.file_name or "image",
            "url": media.url,
            "info": {"mimetype": media.mime_type, "size": media.size},
        }
        if caption and media.file_name:
            content["filename"] = media.file_name
        async with self._send_lock:
            event_id = await self._guard(
                self.client.send_message_event(room_id, EventType.ROOM_MESSAGE, content))
        return SendResult(message_id=str(event_id), timestamp=time.time())

    # ------------------------------------------------------------------
    # Presence / profile
    # ------------------------------------------------------------------

    async def send_presence(self, state: str) -> None:
        self._presence = PresenceState.ONLINE if state == "available" else PresenceState.UNAVAILABLE
        await self._guard(self.client.set_presence(self._presence, status=self._status_message or None))

    async def send_chat_presence(self, chat: str, state: str, media: str = "") -> None:
        room_id = await self._room(chat)
        if media:
            logger.debug("Matrix has no %s chat presence, sending plain typing", media)
        timeout = _TYPING_TIMEOUT_MS if state == "composing" else 0
        await self._guard(self.client.set_typing(room_id, timeout=timeout))

    async def subscribe_presence(self, identity: str) -> Any:
        # Matrix pushes presence for users sharing a room; fetch the current value.
        return await self._guard(self.client.get_presence(UserID(identity)))

    async def set_status_message(self, text: str) -> None:
        self._status_message = text
        await self._guard(self.client.set_presence(self._presence, status=text))

    # ------------------------------------------------------------------
    # App state
    # ------------------------------------------------------------------

    async def fetch_app_state(self, name: str, full_sync: bool = False) -> Any:
        if full_sync:
            logger.debug("Account data %s is always fetched in full", name)
        try:
            data = await self.client.get_account_data(name)
        except MNotFound:
            data = {}
        except MatrixError as exc:
            raise TransportError(str(exc)) from exc
        self._emit(AppStateSyncComplete(name))
        return data

    async def request_app_state_keys(self, key_ids: list[bytes]) -> None:
        user_id = UserID(self._cfg.user_id)
        for key_id in key_ids:
            content = {
                "action": "request",
                "name": key_id.hex(),
                "requesting_device_id": self._cfg.device_id,
                "request_id": secrets.token_hex(8),
            }
            await self._guard(self.client.send_to_device(
                SECRET_REQUEST, {user_id: {DeviceID("*"): content}},
            ))

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def is_on_network(self, queries: list[str]) -> list[NetworkCheck]:
        results = []
        for query in queries:
            identity = self.parse_identity(query)
            try:
                profile = await self.client.get_profile(UserID(identity))
            except MNotFound:
                results.append(NetworkCheck(query, False, identity))
                continue
            except MatrixError as exc:
                raise TransportError(str(exc)) from exc
            results.append(NetworkCheck(query, True, identity, getattr(profile, "displayname", "") or ""))
        return results

    async def get_privacy_settings(self) -> Any:
        try:
            ignored = await self.client.get_account_data("m.ignored_user_list")
        except MNotFound:
            ignored = {}
        except MatrixError as exc:
            raise TransportError(str(exc)) from exc
        return {
            "presence": self._presence.value,
            "ignored_users": sorted((ignored or {}).get("ignored_users") or {}),
        }

    async def get_user_info(self, identities: list[str]) -> dict[str, Any]:
        info: dict[str, Any] = {}
        for identity in identities:
            profile = await self._guard(self.client.get_profile(UserID(identity)))
            entry = {
                "displayname": getattr(profile, "displayname", None),
                "avatar_url": str(getattr(profile, "avatar_url", "") or ""),
            }
            try:
                presence = await self.client.get_presence(UserID(identity))
                entry["presence"] = str(presence.presence.value)
            except MatrixError as exc:
                logger.debug("No presence for %s: %s", identity, exc)
            info[identity] = entry
        return info

    async def get_avatar(self, identity: str, *, preview: bool = False,
                         is_community: bool = False, existing_id: str = "") -> Optional[AvatarInfo]:
        if self.is_group(identity) or is_community:
            room_id = await self._room(identity)
            try:
                content = await self.client.get_state_event(room_id, EventType.ROOM_AVATAR)
            except MNotFound:
                return None
            except MatrixError as exc:
                raise TransportError(str(exc)) from exc
            mxc = str(getattr(content, "url", "") or "")
        else:
            mxc = str(await self._guard(self.client.get_avatar_url(UserID(identity))) or "")
        if not mxc or mxc == existing_id:
            return None
        return AvatarInfo(id=mxc, url=self._media_url(mxc, preview))

    def _media_url(self, mxc: str, preview: bool) -> str:
        server, _, media_id = mxc[len("mxc://"):].partition("/")
        hs = self._cfg.homeserver.rstrip("/")
        if preview:
            return f"{hs}/_matrix/media/v3/thumbnail/{server}/{media_id}?width=96&height=96&method=scale"
        return f"{hs}/_matrix/media/v3/download/{server}/{media_id}"

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def _room_summary(self, room_id: RoomID) -> dict:
        state = await self._guard(self.client.get_state(room_id))
        summary: dict[str, Any] = {"room_id": str(room_id), "name": "", "topic": "",
                                   "alias": "", "encrypted": False, "creator": ""}
        for evt in state:
            name = _type_name(evt.type)
            if name == "m.room.name":
                summary["name"] = getattr(evt.content, "name", "") or ""
            elif name == "m.room.topic":
                summary["topic"] = getattr(evt.content, "topic", "") or ""
            elif name == "m.room.canonical_alias":
                summary["alias"] = str(getattr(evt.content, "canonical_alias", "") or "")
            elif name == "m.room.encryption":
                summary["encrypted"] = True
            elif name == "m.room.create":
                summary["creator"] = str(getattr(evt, "sender", "") or "")
        members = await self._guard(self.client.get_joined_members(room_id))
        summary["members"] = len(members)
        return summary

    async def get_group_info(self, group: str) -> Any:
        return await self._room_summary(await self._room(group))

    async def get_sub_groups(self, group: str) -> list[Any]:
        room_id = await self._room(group)
        state = await self._guard(self.client.get_state(room_id))
        children = []
        for evt in state:
            if _type_name(evt.type) != "m.space.child":
                continue
            content = evt.content.serialize() if hasattr(evt.content, "serialize") else evt.content
            if content:
                children.append(str(evt.state_key))
        return children

    async def get_community_participants(self, group: str) -> list[str]:
        room_id = await self._room(group)
        members = await self._guard(self.client.get_joined_members(room_id))
        return sorted(str(user_id) for user_id in members)

    async def get_joined_groups(self) -> list[Any]:
        groups = []
        for room_id in await self._guard(self.client.get_joined_rooms()):
            if await self._is_group_room(room_id):
                groups.append(await self._room_summary(room_id))
        return groups

    async def get_invite_link(self, group: str, reset: bool = False) -> str:
        room_id = await self._room(group)
        if reset:
            localpart = f"meow-{secrets.token_hex(4)}"
            alias = f"#{localpart}:{self.default_server}"
            await self._guard(self.client.add_room_alias(room_id=room_id, alias_localpart=localpart))
            await self._guard(self.client.send_state_event(
                room_id, EventType.ROOM_CANONICAL_ALIAS, {"alias": alias},
            ))
            return _MATRIX_TO + alias
        try:
            content = await self.client.get_state_event(room_id, EventType.ROOM_CANONICAL_ALIAS)
            alias = str(getattr(content, "canonical_alias", "") or "")
        except MNotFound:
            alias = ""
        except MatrixError as exc:
            raise TransportError(str(exc)) from exc
        return _MATRIX_TO + (alias or str(room_id))

    async def resolve_invite_link(self, link: str) -> Any:
        target = invite_target(link)
        if target.startswith("@"):
            raise InvalidIdentityError(f"{link} points to a user, not a group")
        if target.startswith("#"):
            info = await self._guard(self.client.resolve_room_alias(RoomAlias(target)))
            return {"alias": target, "room_id": str(info.room_id), "servers": list(info.servers)}
        return {"alias": "", "room_id": target, "servers": []}

    async def resolve_business_link(self, link: str) -> Any:
        target = invite_target(link)
        if not target.startswith("@"):
            raise InvalidIdentityError(f"{link} does not point to a user")
        profile = await self._guard(self.client.get_profile(UserID(target)))
        return {
            "user_id": target,
            "displayname": getattr(profile, "displayname", None),
            "avatar_url": str(getattr(profile, "avatar_url", "") or ""),
        }

    async def join_invite_link(self, link: str) -> str:
        target = invite_target(link)
        if target.startswith("@"):
            raise InvalidIdentityError(f"{link} points to a user, not a group")
        room_id = await self._guard(self.client.join_room(target))
        return str(room_id)

    async def get_status_privacy(self) -> Any:
        # Presence is visible to every user sharing a room; there is no per-audience setting.
        return {"audience": "users sharing a room", "status": self._status_message}

    async def set_disappearing_timer(self, chat: str, timer: timedelta) -> None:
        room_id = await self._room(chat)
        lifetime_ms = int(timer.total_seconds() * 1000)
        content = {"max_lifetime": lifetime_ms} if lifetime_ms > 0 else {}
        await self._guard(self.client.send_state_event(room_id, ROOM_RETENTION, content))
