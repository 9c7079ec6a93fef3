"""Shared fakes for the meowrelay test-suite."""

import asyncio
import itertools
from datetime import timedelta
from typing import Any, Optional

import pytest

from meowrelay.core.events import TextMessage
from meowrelay.core.types import InvalidIdentityError, TransportError
from meowrelay.interfaces.transport import AvatarInfo, NetworkCheck, SendResult, UploadedMedia


class FakeTransport:
    """In-memory Transport that records every call.

    ``fail`` maps a method name to the exception it should raise;
    ``fail_chats`` makes ``send_message`` fail for specific chats only.
    """

    app_state_categories = ("m.push_rules", "m.direct", "m.ignored_user_list")
    critical_app_state = "m.push_rules"

    def __init__(self, display_name: str = "Meow Bot") -> None:
        self.display_name = display_name
        self.calls: list[tuple[str, tuple, dict]] = []
        self.sent: list = []
        self.fail: dict[str, Exception] = {}
        self.fail_chats: set[str] = set()
        self.queue: asyncio.Queue = asyncio.Queue()
        self.connect_count = 0
        self.disconnect_count = 0
        self._ids = itertools.count(1)

    def _record(self, name: str, *args, **kwargs) -> None:
        self.calls.append((name, args, kwargs))
        if name in self.fail:
            raise self.fail[name]

    def called(self, name: str) -> list[tuple[tuple, dict]]:
        return [(args, kwargs) for call, args, kwargs in self.calls if call == name]

    def _result(self) -> SendResult:
        return SendResult(message_id=f"$sent{next(self._ids)}", timestamp=1700000000.0)

    # -- lifecycle -----------------------------------------------------------
    async def connect(self) -> None:
        self.connect_count += 1
        self._record("connect")

    async def disconnect(self) -> None:
        self.disconnect_count += 1
        self._record("disconnect")

    async def logout(self) -> None:
        self._record("logout")

    async def events(self):
        while True:
            evt = await self.queue.get()
            if evt is None:
                return
            yield evt

    # -- identities ----------------------------------------------------------
    def parse_identity(self, arg: str) -> str:
        arg = arg.lstrip("+")
        if not arg:
            raise InvalidIdentityError("Invalid JID: empty identity")
        if arg[0] in "@!#":
            if ":" not in arg[1:]:
                raise InvalidIdentityError(f"Invalid JID {arg}")
            return arg
        return f"@{arg}:example.org"

    def is_group(self, identity: str) -> bool:
        return identity[:1] in ("!", "#")

    # -- sending -------------------------------------------------------------
    async def send_message(self, reply) -> SendResult:
        self._record("send_message", reply)
        if reply.chat in self.fail_chats:
            raise TransportError(f"cannot deliver to {reply.chat}")
        self.sent.append(reply)
        return self._result()

    async def send_reaction(self, chat, message_id, reaction, from_me=False) -> SendResult:
        self._record("send_reaction", chat, message_id, reaction, from_me=from_me)
        return self._result()

    async def revoke_message(self, chat, message_id) -> SendResult:
        self._record("revoke_message", chat, message_id)
        return self._result()

    async def upload_image(self, data, mime_type, file_name="") -> UploadedMedia:
        self._record("upload_image", data, mime_type, file_name)
        return UploadedMedia(url="mxc://example.org/abc", mime_type=mime_type,
                             size=len(data), file_name=file_name)

    async def send_image(self, chat, media, caption="") -> SendResult:
        self._record("send_image", chat, media, caption=caption)
        return self._result()

    # -- presence / profile --------------------------------------------------
    async def send_presence(self, state) -> None:
        self._record("send_presence", state)

    async def send_chat_presence(self, chat, state, media="") -> None:
        self._record("send_chat_presence", chat, state, media)

    async def subscribe_presence(self, identity) -> Any:
        self._record("subscribe_presence", identity)
        return {"presence": "online"}

    async def set_status_message(self, text) -> None:
        self._record("set_status_message", text)

    # -- app state -----------------------------------------------------------
    async def fetch_app_state(self, name, full_sync=False) -> Any:
        self._record("fetch_app_state", name, full_sync=full_sync)
        return {}

    async def request_app_state_keys(self, key_ids) -> None:
        self._record("request_app_state_keys", key_ids)

    # -- queries -------------------------------------------------------------
    async def is_on_network(self, queries) -> list[NetworkCheck]:
        self._record("is_on_network", queries)
        return [NetworkCheck(q, True, self.parse_identity(q), "") for q in queries]

    async def get_privacy_settings(self) -> Any:
        self._record("get_privacy_settings")
        return {"presence": "online"}

    async def get_user_info(self, identities) -> dict[str, Any]:
        self._record("get_user_info", identities)
        return {identity: {"displayname": "x"} for identity in identities}

    async def get_avatar(self, identity, *, preview=False, is_community=False,
                         existing_id="") -> Optional[AvatarInfo]:
        self._record("get_avatar", identity, preview=preview,
                     is_community=is_community, existing_id=existing_id)
        return AvatarInfo(id="mxc://example.org/av", url="https://example.org/av")

    async def get_group_info(self, group) -> Any:
        self._record("get_group_info", group)
        return {"room_id": group}

    async def get_sub_groups(self, group) -> list[Any]:
        self._record("get_sub_groups", group)
        return []

    async def get_community_participants(self, group) -> list[str]:
        self._record("get_community_participants", group)
        return []

    async def get_joined_groups(self) -> list[Any]:
        self._record("get_joined_groups")
        return [{"room_id": "!g:example.org"}]

    async def get_invite_link(self, group, reset=False) -> str:
        self._record("get_invite_link", group, reset=reset)
        return f"https://matrix.to/#/{group}"

    async def resolve_invite_link(self, link) -> Any:
        self._record("resolve_invite_link", link)
        return {}

    async def resolve_business_link(self, link) -> Any:
        self._record("resolve_business_link", link)
        return {}

    async def join_invite_link(self, link) -> str:
        self._record("join_invite_link", link)
        return "!joined:example.org"

    async def get_status_privacy(self) -> Any:
        self._record("get_status_privacy")
        return {}

    async def set_disappearing_timer(self, chat, timer: timedelta) -> None:
        self._record("set_disappearing_timer", chat, timer)


class FakeCompletion:
    """Completion collaborator returning canned choices or raising."""

    def __init__(self, choices: Optional[list[str]] = None,
                 error: Optional[Exception] = None) -> None:
        self.choices = choices if choices is not None else [" Hello there"]
        self.error = error
        self.prompts: list[str] = []
        self.params: list = []
        self.closed = False

    async def complete(self, prompt, params):
        self.prompts.append(prompt)
        self.params.append(params)
        if self.error is not None:
            raise self.error
        return list(self.choices)

    async def close(self) -> None:
        self.closed = True


class FakeDiagnostics:
    def __init__(self, output: str = "OS: Linux\n", error: Optional[Exception] = None) -> None:
        self.output = output
        self.error = error
        self.intents: list = []

    async def run(self, intent):
        self.intents.append(intent)
        if self.error is not None:
            raise self.error
        return self.output


class FakeHistoryWriter:
    def __init__(self) -> None:
        self.blobs: list = []

    async def write(self, data):
        self.blobs.append(data)


def direct_message(body: str = "", **kwargs) -> TextMessage:
    fields = dict(message_id="$m1", sender="@alice:example.org",
                  chat="!dm:example.org", body=body)
    fields.update(kwargs)
    return TextMessage(**fields)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def completion():
    return FakeCompletion()


@pytest.fixture
def diagnostics():
    return FakeDiagnostics()


@pytest.fixture
def history_writer():
    return FakeHistoryWriter()
