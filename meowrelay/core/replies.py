"""
Response Formatter

Builds outbound payloads.  Text replies always quote the message that
triggered them (message id + sender) so the client renders them as a
reply; polls are posted top-level and never quote.

The canned texts are the bot's fixed Indonesian-language answers.
"""

from dataclasses import dataclass, field
from typing import Optional, Union

from meowrelay.core.events import TextMessage


UNFRIENDLY_REPLY = "Tidak ramah, ⭐ 1 ."
NAME_REPLY = "Halo bang 🙂."
GREETING_REPLY = (
    "Halo disana, aku adalah bot pintar yang siap menjawab pertanyaan kamu apa saja. "
    "Harap gunakan bahasa Indonesia yang baik dan benar. Saya juga bisa bahasa nasional "
    "negara lain lho seperti: Inggris, Jepang, China Mandarin, Jerman dan lainnya.\n\n"
    " *Pro TIP:* Gunakan quoted message saat membalas pesan agar bot dapat nyambung "
    "dalam obrolanmu."
)
MEDIA_UNSUPPORTED_REPLY = (
    "Saat ini bot hanya mendukung pesan teks, segala jenis pesan media tidak "
    "didukung 🙏.\n\nBOT: *@ozip.cf*"
)


@dataclass(frozen=True)
class QuoteRef:
    stanza_id: str
    participant: str


@dataclass(frozen=True)
class PollSpec:
    question: str
    options: tuple[str, ...]
    max_selectable: int = 1

    def __post_init__(self) -> None:
        if len(self.options) < 2:
            raise ValueError("a poll needs at least two options")
        if not 1 <= self.max_selectable <= len(self.options):
            raise ValueError(
                f"max_selectable must be between 1 and {len(self.options)}, "
                f"got {self.max_selectable}"
            )


@dataclass(frozen=True)
class OutboundReply:
    """A message ready to be handed to ``Transport.send_message``."""
    chat: str
    text: Optional[str] = None
    poll: Optional[PollSpec] = None
    quote: Optional[QuoteRef] = field(default=None)

    def __post_init__(self) -> None:
        if (self.text is None) == (self.poll is None):
            raise ValueError("an OutboundReply carries exactly one of text or poll")


MEOW_POLL = PollSpec(
    question="Apakah kalian suka meow?",
    options=("Suka", "Tidak Suka"),
    max_selectable=1,
)


def format_reply(trigger: TextMessage, body_or_poll: Union[str, PollSpec]) -> OutboundReply:
    """Address a reply to the chat *trigger* came from."""
    if isinstance(body_or_poll, PollSpec):
        return OutboundReply(chat=trigger.chat, poll=body_or_poll)
    return OutboundReply(
        chat=trigger.chat,
        text=body_or_poll,
        quote=QuoteRef(stanza_id=trigger.message_id, participant=trigger.sender),
    )


def text_message(chat: str, text: str) -> OutboundReply:
    """An unquoted text message, used by operator commands."""
    return OutboundReply(chat=chat, text=text)


def poll_message(chat: str, poll: PollSpec) -> OutboundReply:
    return OutboundReply(chat=chat, poll=poll)
