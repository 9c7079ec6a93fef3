"""
Event Classifier & Router

Consumes the transport's inbound event stream.  Every event is handled on
its own task, so a slow completion or diagnostic never holds up the next
event; ordering between replies is therefore not guaranteed.

For a ``TextMessage`` the decision is a pure function (:func:`decide`) of
the message alone.  Branches, first match wins:

  1. sent by us, no media, non-empty body  -> self-command (!status,
     !speedtest), anything else is ignored
  2. direct chat, no media, no quote, body -> keyword intent on the body;
     canned reply, "meow" poll, or single-turn completion
  3. direct chat, no media, quote with text -> keyword intent on the
     quoted text; canned reply or two-turn completion
  4. direct chat, media                     -> "media not supported"
  5. anything else (all group chats)        -> nothing

Every text reply quotes its trigger; polls never do.  Collaborator
failures (completion, send, diagnostic) are logged and the event is
dropped.  Nothing is retried.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from meowrelay.core.diagnostics import DiagnosticsRunner
from meowrelay.core.events import (
    AppStateSyncComplete,
    ConnectionEstablished,
    HistorySyncBlob,
    InboundEvent,
    KeepAliveRestored,
    KeepAliveTimeout,
    PushNameChanged,
    StreamReplaced,
    TextMessage,
)
from meowrelay.core.keywords import Intent, classify, classify_self_command
from meowrelay.core.prompts import build_prompt
from meowrelay.core.replies import (
    GREETING_REPLY,
    MEDIA_UNSUPPORTED_REPLY,
    MEOW_POLL,
    NAME_REPLY,
    UNFRIENDLY_REPLY,
    OutboundReply,
    format_reply,
)
from meowrelay.core.types import DEFAULT_SAMPLING, CompletionError, DiagnosticError, SamplingParams

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NoAction:
    reason: str = ""


@dataclass(frozen=True)
class SelfCommand:
    intent: Intent


@dataclass(frozen=True)
class CannedReply:
    reply: OutboundReply


@dataclass(frozen=True)
class CompletionReply:
    prompt: str


Action = Union[NoAction, SelfCommand, CannedReply, CompletionReply]

_CANNED_TEXT = {
    Intent.PROFANITY: UNFRIENDLY_REPLY,
    Intent.NAME_MENTION: NAME_REPLY,
    Intent.GREETING: GREETING_REPLY,
}


def _keyword_action(msg: TextMessage, text: str) -> Action:
    intent = classify(text.lower())
    if intent in _CANNED_TEXT:
        return CannedReply(format_reply(msg, _CANNED_TEXT[intent]))
    if intent is Intent.POLL_TRIGGER:
        return CannedReply(format_reply(msg, MEOW_POLL))
    return CompletionReply(build_prompt(msg))


def decide(msg: TextMessage) -> Action:
    """Pick the single action a text message results in."""
    if msg.from_self:
        if not msg.media_type and msg.body:
            intent = classify_self_command(msg.body.lower())
            if intent is not Intent.NONE:
                return SelfCommand(intent)
        return NoAction("own message")
    if msg.is_group:
        return NoAction("group chat")
    if msg.media_type:
        return CannedReply(format_reply(msg, MEDIA_UNSUPPORTED_REPLY))
    if msg.is_plain and msg.body:
        return _keyword_action(msg, msg.body)
    if not msg.is_plain and msg.quoted_text:
        return _keyword_action(msg, msg.quoted_text)
    return NoAction("nothing to answer")


def clean_completion(choices: list[str]) -> Optional[str]:
    """Return the first choice without surrounding whitespace, or ``None``.

    Completions tend to start with a stray newline or space after the
    "Friend: " cue; only whitespace is removed.
    """
    if not choices:
        return None
    text = (choices[0] or "").strip()
    return text or None


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class EventRouter:
    """Routes inbound events to replies and lifecycle actions.

    Parameters
    ----------
    transport : Transport
        Network collaborator used for sends and presence.
    completion : object
        Anything with ``async complete(prompt, params) -> list[str]``.
    supervisor : LifecycleSupervisor
        Receives keepalive accounting and session-takeover termination.
    history_writer : HistorySyncWriter
        Persists history-sync blobs.
    diagnostics : DiagnosticsRunner
        Runs the self-command subprocesses.
    """

    def __init__(
        self,
        transport,
        completion,
        supervisor,
        history_writer,
        diagnostics: DiagnosticsRunner,
        sampling: SamplingParams = DEFAULT_SAMPLING,
    ) -> None:
        self._transport = transport
        self._completion = completion
        self._supervisor = supervisor
        self._history = history_writer
        self._diagnostics = diagnostics
        self._sampling = sampling
        self._background_tasks: set[asyncio.Task] = set()
        self._handlers: dict[type, Callable[..., Awaitable[None]]] = {
            TextMessage: self._on_text_message,
            HistorySyncBlob: self._on_history_sync,
            AppStateSyncComplete: self._on_app_state_sync_complete,
            ConnectionEstablished: self._on_connected,
            PushNameChanged: self._on_push_name_changed,
            StreamReplaced: self._on_stream_replaced,
            KeepAliveTimeout: self._on_keepalive_timeout,
            KeepAliveRestored: self._on_keepalive_restored,
        }

    @property
    def handled_types(self) -> frozenset:
        return frozenset(self._handlers)

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Consume the transport event stream until it ends or is cancelled."""
        async for evt in self._transport.events():
            self.submit(evt)
        logger.info("Transport event stream ended")

    def submit(self, evt: InboundEvent) -> asyncio.Task:
        task = asyncio.create_task(self._handle_safely(evt), name=f"event-{type(evt).__name__}")
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait until every submitted event has been processed."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    def cancel_pending(self) -> None:
        for task in list(self._background_tasks):
            task.cancel()

    async def _handle_safely(self, evt: InboundEvent) -> None:
        try:
            await self.handle(evt)
        except Exception:  # noqa: BLE001
            logger.exception("Unhandled error while processing %s", type(evt).__name__)

    async def handle(self, evt: InboundEvent) -> None:
        handler = self._handlers.get(type(evt))
        if handler is None:
            logger.debug("Ignoring unhandled event %r", evt)
            return
        await handler(evt)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def _on_text_message(self, msg: TextMessage) -> None:
        action = decide(msg)
        if isinstance(action, NoAction):
            logger.debug("No action for %s in %s: %s", msg.message_id, msg.chat, action.reason)
            return

        logger.info("Received message from %s in %s: %s", msg.sender, msg.chat,
                    (msg.body or f"[{msg.media_type}]")[:100])

        if isinstance(action, SelfCommand):
            await self._run_self_command(msg, action.intent)
        elif isinstance(action, CannedReply):
            await self._send(action.reply)
        elif isinstance(action, CompletionReply):
            await self._reply_with_completion(msg, action.prompt)

    async def _run_self_command(self, msg: TextMessage, intent: Intent) -> None:
        try:
            output = await self._diagnostics.run(intent)
        except DiagnosticError as exc:
            logger.error("Could not run %s: %s", intent.value, exc)
            return
        await self._send(format_reply(msg, output))

    async def _reply_with_completion(self, msg: TextMessage, prompt: str) -> None:
        try:
            choices = await self._completion.complete(prompt, self._sampling)
        except CompletionError as exc:
            logger.error("Completion failed for %s in %s: %s", msg.message_id, msg.chat, exc)
            return
        text = clean_completion(choices)
        if text is None:
            logger.warning("Completion for %s in %s returned no text, dropping",
                           msg.message_id, msg.chat)
            return
        await self._send(format_reply(msg, text))

    async def _send(self, reply: OutboundReply) -> None:
        try:
            result = await self._transport.send_message(reply)
        except Exception as exc:  # noqa: BLE001
            logger.error("Error sending message to %s: %s", reply.chat, exc)
            return
        logger.debug("Reply sent to %s (id %s, server timestamp %s)",
                     reply.chat, result.message_id, result.timestamp)

    # ------------------------------------------------------------------
    # Sync / presence
    # ------------------------------------------------------------------

    async def _on_history_sync(self, evt: HistorySyncBlob) -> None:
        await self._history.write(evt.data)

    async def _on_app_state_sync_complete(self, evt: AppStateSyncComplete) -> None:
        if evt.name != self._transport.critical_app_state:
            logger.debug("App state %s synced", evt.name)
            return
        await self._mark_available()

    async def _on_connected(self, _evt: ConnectionEstablished) -> None:
        await self._mark_available()

    async def _on_push_name_changed(self, _evt: PushNameChanged) -> None:
        await self._mark_available()

    async def _mark_available(self) -> None:
        # Outgoing messages carry the display name; re-assert presence so it is current.
        if not self._transport.display_name:
            return
        try:
            await self._transport.send_presence("available")
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to send available presence: %s", exc)
            return
        logger.info("Marked self as available")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _on_stream_replaced(self, _evt: StreamReplaced) -> None:
        self._supervisor.terminate("Session replaced by another client", immediate=True)

    async def _on_keepalive_timeout(self, evt: KeepAliveTimeout) -> None:
        logger.debug("Keepalive timeout event: %s", evt)
        self._supervisor.record_keepalive_timeout()

    async def _on_keepalive_restored(self, _evt: KeepAliveRestored) -> None:
        self._supervisor.record_keepalive_restored()
