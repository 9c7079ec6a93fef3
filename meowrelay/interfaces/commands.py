"""
Operator Command Dispatcher

Executes the commands typed on the local console.  A line is split on
whitespace; the first token (case-insensitive) is the verb, the rest are
positional arguments.  Each command runs on its own task, so commands may
finish out of the order they were typed.

Every command either logs a success summary at INFO or a specific error.
Invalid arguments print the usage line and abort only that command;
collaborator failures are logged and never retried.

Identities are given in the network's notation.  A bare token without a
sigil (e.g. a phone number, optionally prefixed with ``+``) is taken as a
user on the default server.
"""

from __future__ import annotations

import asyncio
import io
import logging
import mimetypes
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

from PIL import Image, UnidentifiedImageError

from meowrelay.core.replies import PollSpec, poll_message, text_message
from meowrelay.core.types import CommandUsageError, InvalidIdentityError, TransportError
from meowrelay.update_checker import UpdateStatus

logger = logging.getLogger(__name__)

CommandFn = Callable[[list[str]], Awaitable[None]]

PRESENCE_STATES = ("available", "unavailable")
CHAT_PRESENCE_STATES = ("composing", "paused")
CHAT_PRESENCE_MEDIA = ("", "audio")


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OperatorCommand:
    verb: str
    args: tuple[str, ...] = ()


def parse_command_line(line: str) -> Optional[OperatorCommand]:
    """Split one console line into a command; ``None`` for blank lines."""
    tokens = line.split()
    if not tokens:
        return None
    return OperatorCommand(verb=tokens[0].lower(), args=tuple(tokens[1:]))


def parse_poll_args(args: Sequence[str]) -> tuple[str, list[str]]:
    """Parse ``<question> -- <option 1> / <option 2> / ...``."""
    question, _, options_str = " ".join(args).partition("--")
    options = [opt.strip() for opt in options_str.split("/")]
    return question.strip(), [opt for opt in options if opt]


def split_multisend_args(args: Sequence[str]) -> tuple[list[str], str]:
    """Parse ``<jids...> -- <text>`` into recipients and text."""
    args = list(args)
    if "--" not in args:
        raise CommandUsageError("multisend <jids...> -- <text> (the -- is required)")
    sep = args.index("--")
    return args[:sep], " ".join(args[sep + 1:])


def parse_reaction_target(message_id: str) -> tuple[str, bool]:
    """``me:<id>`` refers to one of our own messages."""
    if message_id.startswith("me:"):
        return message_id[len("me:"):], True
    return message_id, False


def detect_mime_type(data: bytes, file_name: str = "") -> str:
    """Sniff an image MIME type from content, falling back to the file name."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
    except (UnidentifiedImageError, OSError):
        fmt = None
    if fmt and fmt in Image.MIME:
        return Image.MIME[fmt]
    guessed = mimetypes.guess_type(file_name)[0] if file_name else None
    return guessed or "application/octet-stream"


def _require(args: Sequence[str], count: int, usage: str) -> None:
    if len(args) < count:
        raise CommandUsageError(usage)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class CommandDispatcher:
    """Maps operator verbs to transport operations.

    Parameters
    ----------
    transport : Transport
        Network collaborator the commands act on.
    supervisor : LifecycleSupervisor
        Used by ``reconnect``.
    update_checker : UpdateChecker | None
        Used by ``checkupdate``; the command reports an error without one.
    """

    def __init__(self, transport, supervisor, update_checker=None) -> None:
        self._transport = transport
        self._supervisor = supervisor
        self._update_checker = update_checker
        self._background_tasks: set[asyncio.Task] = set()
        # verb -> (handler, prefix logged when the transport fails)
        self._commands: dict[str, tuple[CommandFn, str]] = {
            "reconnect":             (self._cmd_reconnect, "Failed to reconnect"),
            "logout":                (self._cmd_logout, "Error logging out"),
            "appstate":              (self._cmd_appstate, "Failed to sync app state"),
            "request-appstate-key":  (self._cmd_request_appstate_key, "Failed to request app state keys"),
            "checkuser":             (self._cmd_checkuser, "Failed to check if users are on the network"),
            "checkupdate":           (self._cmd_checkupdate, "Failed to check for updates"),
            "subscribepresence":     (self._cmd_subscribepresence, "Failed to subscribe to presence"),
            "presence":              (self._cmd_presence, "Failed to send presence"),
            "chatpresence":          (self._cmd_chatpresence, "Failed to send chat presence"),
            "privacysettings":       (self._cmd_privacysettings, "Failed to fetch privacy settings"),
            "getuser":               (self._cmd_getuser, "Failed to get user info"),
            "getavatar":             (self._cmd_getavatar, "Failed to get avatar"),
            "getgroup":              (self._cmd_getgroup, "Failed to get group info"),
            "subgroups":             (self._cmd_subgroups, "Failed to get subgroups"),
            "communityparticipants": (self._cmd_communityparticipants, "Failed to get community participants"),
            "listgroups":            (self._cmd_listgroups, "Failed to get group list"),
            "getinvitelink":         (self._cmd_getinvitelink, "Failed to get group invite link"),
            "queryinvitelink":       (self._cmd_queryinvitelink, "Failed to resolve group invite link"),
            "querybusinesslink":     (self._cmd_querybusinesslink, "Failed to resolve business message link"),
            "joininvitelink":        (self._cmd_joininvitelink, "Failed to join group via invite link"),
            "getstatusprivacy":      (self._cmd_getstatusprivacy, "Failed to get status privacy"),
            "setdisappeartimer":     (self._cmd_setdisappeartimer, "Failed to set disappearing timer"),
            "send":                  (self._cmd_send, "Error sending message"),
            "sendpoll":              (self._cmd_sendpoll, "Error sending poll"),
            "multisend":             (self._cmd_multisend, "Error sending message"),
            "react":                 (self._cmd_react, "Error sending reaction"),
            "revoke":                (self._cmd_revoke, "Error sending revocation"),
            "sendimg":               (self._cmd_sendimg, "Error sending image message"),
            "setstatus":             (self._cmd_setstatus, "Error setting status message"),
        }

    @property
    def verbs(self) -> list[str]:
        return sorted(self._commands)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, command: OperatorCommand) -> asyncio.Task:
        """Run *command* on its own task."""
        task = asyncio.create_task(
            self.dispatch(command.verb, command.args), name=f"cmd-{command.verb}",
        )
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def drain(self) -> None:
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    def cancel_pending(self) -> None:
        for task in list(self._background_tasks):
            task.cancel()

    async def dispatch(self, verb: str, args: Sequence[str] = ()) -> bool:
        """Run one command.  Returns ``True`` if it completed without error."""
        entry = self._commands.get(verb.lower())
        if entry is None:
            logger.warning("Unknown command: %s", verb)
            return False
        handler, failure = entry
        try:
            await handler(list(args))
        except CommandUsageError as exc:
            logger.error("Usage: %s", exc)
            return False
        except InvalidIdentityError as exc:
            logger.error("%s", exc)
            return False
        except TransportError as exc:
            logger.error("%s: %s", failure, exc)
            return False
        except Exception:  # noqa: BLE001
            logger.exception("Command %s failed", verb)
            return False
        return True

    # ------------------------------------------------------------------
    # Identity helpers
    # ------------------------------------------------------------------

    def _jid(self, arg: str) -> str:
        return self._transport.parse_identity(arg)

    def _group(self, arg: str) -> str:
        group = self._jid(arg)
        if not self._transport.is_group(group):
            raise InvalidIdentityError(f"Input must be a group JID, got {group}")
        return group

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def _cmd_reconnect(self, _args: list[str]) -> None:
        await self._supervisor.reconnect()

    async def _cmd_logout(self, _args: list[str]) -> None:
        await self._transport.logout()
        logger.info("Successfully logged out")

    async def _cmd_appstate(self, args: list[str]) -> None:
        _require(args, 1, "appstate <types...> [resync]")
        if args[0] == "all":
            names = list(self._transport.app_state_categories)
        else:
            names = [args[0]]
        resync = len(args) > 1 and args[1] == "resync"
        for name in names:
            try:
                await self._transport.fetch_app_state(name, full_sync=resync)
            except TransportError as exc:
                logger.error("Failed to sync app state %s: %s", name, exc)
                continue
            logger.info("Synced app state %s%s", name, " (full resync)" if resync else "")

    async def _cmd_request_appstate_key(self, args: list[str]) -> None:
        _require(args, 1, "request-appstate-key <ids...>")
        key_ids: list[bytes] = []
        for key_id in args:
            try:
                key_ids.append(bytes.fromhex(key_id))
            except ValueError as exc:
                logger.error("Failed to decode %s as hex: %s", key_id, exc)
                return
        await self._transport.request_app_state_keys(key_ids)
        logger.info("Requested %d app state key(s)", len(key_ids))

    async def _cmd_checkupdate(self, _args: list[str]) -> None:
        if self._update_checker is None:
            logger.error("Update checking is not configured")
            return
        report = await self._update_checker.check()
        if report is None:
            logger.error("Failed to check for updates")
            return
        logger.debug("Version data: %r", report)
        if report.status is UpdateStatus.UP_TO_DATE:
            logger.info("Client is up to date")
        elif report.status is UpdateStatus.OUTDATED:
            logger.warning("Client is outdated (%d commit(s) behind)", report.behind)
        else:
            logger.info("Client is newer than latest")

    # ------------------------------------------------------------------
    # Presence / privacy
    # ------------------------------------------------------------------

    async def _cmd_subscribepresence(self, args: list[str]) -> None:
        _require(args, 1, "subscribepresence <jid>")
        jid = self._jid(args[0])
        result = await self._transport.subscribe_presence(jid)
        logger.info("Subscribed to presence of %s: %s", jid, result)

    async def _cmd_presence(self, args: list[str]) -> None:
        if not args or args[0] not in PRESENCE_STATES:
            raise CommandUsageError("presence <available/unavailable>")
        await self._transport.send_presence(args[0])
        logger.info("Presence set to %s", args[0])

    async def _cmd_chatpresence(self, args: list[str]) -> None:
        usage = "chatpresence <jid> <composing/paused> [audio]"
        if len(args) == 2:
            args = args + [""]
        _require(args, 3, usage)
        if args[1] not in CHAT_PRESENCE_STATES or args[2] not in CHAT_PRESENCE_MEDIA:
            raise CommandUsageError(usage)
        jid = self._jid(args[0])
        await self._transport.send_chat_presence(jid, args[1], args[2])
        logger.info("Chat presence %s sent to %s", args[1], jid)

    async def _cmd_privacysettings(self, _args: list[str]) -> None:
        settings = await self._transport.get_privacy_settings()
        logger.info("Privacy settings: %s", settings)

    async def _cmd_getstatusprivacy(self, _args: list[str]) -> None:
        privacy = await self._transport.get_status_privacy()
        logger.info("Status privacy: %s", privacy)

    async def _cmd_setstatus(self, args: list[str]) -> None:
        _require(args, 1, "setstatus <message>")
        await self._transport.set_status_message(" ".join(args))
        logger.info("Status updated")

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def _cmd_checkuser(self, args: list[str]) -> None:
        _require(args, 1, "checkuser <phone numbers...>")
        for item in await self._transport.is_on_network(args):
            if item.display_name:
                logger.info("%s: on network: %s, JID: %s, name: %s",
                            item.query, item.is_on_network, item.identity, item.display_name)
            else:
                logger.info("%s: on network: %s, JID: %s",
                            item.query, item.is_on_network, item.identity)

    async def _cmd_getuser(self, args: list[str]) -> None:
        _require(args, 1, "getuser <jids...>")
        jids = [self._jid(arg) for arg in args]
        for jid, info in (await self._transport.get_user_info(jids)).items():
            logger.info("%s: %s", jid, info)

    async def _cmd_getavatar(self, args: list[str]) -> None:
        _require(args, 1, "getavatar <jid> [existing ID] [--preview] [--community]")
        jid = self._jid(args[0])
        positional = [arg for arg in args[1:] if not arg.startswith("--")]
        existing_id = positional[0] if positional else ""
        pic = await self._transport.get_avatar(
            jid,
            preview="--preview" in args,
            is_community="--community" in args,
            existing_id=existing_id,
        )
        if pic is None:
            logger.info("No avatar found")
        else:
            logger.info("Got avatar ID %s: %s", pic.id, pic.url)

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def _cmd_getgroup(self, args: list[str]) -> None:
        _require(args, 1, "getgroup <jid>")
        info = await self._transport.get_group_info(self._group(args[0]))
        logger.info("Group info: %s", info)

    async def _cmd_subgroups(self, args: list[str]) -> None:
        _require(args, 1, "subgroups <jid>")
        for sub in await self._transport.get_sub_groups(self._group(args[0])):
            logger.info("Subgroup: %s", sub)

    async def _cmd_communityparticipants(self, args: list[str]) -> None:
        _require(args, 1, "communityparticipants <jid>")
        participants = await self._transport.get_community_participants(self._group(args[0]))
        logger.info("Community participants: %s", participants)

    async def _cmd_listgroups(self, _args: list[str]) -> None:
        for group in await self._transport.get_joined_groups():
            logger.info("%s", group)

    async def _cmd_getinvitelink(self, args: list[str]) -> None:
        _require(args, 1, "getinvitelink <jid> [--reset]")
        group = self._group(args[0])
        link = await self._transport.get_invite_link(group, reset=len(args) > 1 and args[1] == "--reset")
        logger.info("Group invite link: %s", link)

    async def _cmd_queryinvitelink(self, args: list[str]) -> None:
        _require(args, 1, "queryinvitelink <link>")
        info = await self._transport.resolve_invite_link(args[0])
        logger.info("Group info: %s", info)

    async def _cmd_querybusinesslink(self, args: list[str]) -> None:
        _require(args, 1, "querybusinesslink <link>")
        info = await self._transport.resolve_business_link(args[0])
        logger.info("Business info: %s", info)

    async def _cmd_joininvitelink(self, args: list[str]) -> None:
        _require(args, 1, "joininvitelink <link>")
        group = await self._transport.join_invite_link(args[0])
        logger.info("Joined %s", group)

    async def _cmd_setdisappeartimer(self, args: list[str]) -> None:
        _require(args, 2, "setdisappeartimer <jid> <days>")
        try:
            days = int(args[1])
        except ValueError as exc:
            raise CommandUsageError(f"setdisappeartimer <jid> <days> (invalid duration: {exc})") from exc
        if days < 0:
            raise CommandUsageError("setdisappeartimer <jid> <days> (days must not be negative)")
        jid = self._jid(args[0])
        await self._transport.set_disappearing_timer(jid, timedelta(days=days))
        logger.info("Disappearing timer for %s set to %d day(s)", jid, days)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def _cmd_send(self, args: list[str]) -> None:
        _require(args, 2, "send <jid> <text>")
        jid = self._jid(args[0])
        resp = await self._transport.send_message(text_message(jid, " ".join(args[1:])))
        logger.info("Message sent (server timestamp: %s)", resp.timestamp)

    async def _cmd_sendpoll(self, args: list[str]) -> None:
        usage = "sendpoll <jid> <max answers> <question> -- <option 1> / <option 2> / ..."
        _require(args, 7, usage)
        jid = self._jid(args[0])
        try:
            max_answers = int(args[1])
        except ValueError as exc:
            raise CommandUsageError(f"{usage} (max answers must be an integer)") from exc
        question, options = parse_poll_args(args[2:])
        try:
            poll = PollSpec(question=question, options=tuple(options), max_selectable=max_answers)
        except ValueError as exc:
            raise CommandUsageError(f"{usage} ({exc})") from exc
        resp = await self._transport.send_message(poll_message(jid, poll))
        logger.info("Message sent (server timestamp: %s)", resp.timestamp)

    async def _cmd_multisend(self, args: list[str]) -> None:
        _require(args, 3, "multisend <jids...> -- <text>")
        recipient_args, text = split_multisend_args(args)
        recipients = [self._jid(arg) for arg in recipient_args]
        if not recipients:
            raise CommandUsageError("multisend <jids...> -- <text>")
        await asyncio.gather(*(self._send_one(jid, text) for jid in recipients))

    async def _send_one(self, jid: str, text: str) -> bool:
        try:
            resp = await self._transport.send_message(text_message(jid, text))
        except Exception as exc:  # noqa: BLE001
            logger.error("Error sending message to %s: %s", jid, exc)
            return False
        logger.info("Message sent to %s (server timestamp: %s)", jid, resp.timestamp)
        return True

    async def _cmd_react(self, args: list[str]) -> None:
        _require(args, 3, "react <jid> <message ID> <reaction>")
        jid = self._jid(args[0])
        message_id, from_me = parse_reaction_target(args[1])
        reaction = "" if args[2] == "remove" else args[2]
        resp = await self._transport.send_reaction(jid, message_id, reaction, from_me=from_me)
        logger.info("Reaction sent (server timestamp: %s)", resp.timestamp)

    async def _cmd_revoke(self, args: list[str]) -> None:
        _require(args, 2, "revoke <jid> <message ID>")
        jid = self._jid(args[0])
        resp = await self._transport.revoke_message(jid, args[1])
        logger.info("Revocation sent (server timestamp: %s)", resp.timestamp)

    async def _cmd_sendimg(self, args: list[str]) -> None:
        _require(args, 2, "sendimg <jid> <image path> [caption]")
        jid = self._jid(args[0])
        path = Path(args[1])
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            logger.error("Failed to read %s: %s", path, exc)
            return
        mime_type = detect_mime_type(data, path.name)
        try:
            uploaded = await self._transport.upload_image(data, mime_type, path.name)
        except TransportError as exc:
            logger.error("Failed to upload file: %s", exc)
            return
        resp = await self._transport.send_image(jid, uploaded, caption=" ".join(args[2:]))
        logger.info("Image message sent (server timestamp: %s)", resp.timestamp)
