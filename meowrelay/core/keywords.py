"""
Keyword Classifier

Maps the text of an incoming message to a canned-reply intent.  Matching
is whole-message equality against fixed word lists: a name or greeting
embedded in a longer sentence does NOT match, only short exact utterances
do.  Callers lowercase the text first; surrounding whitespace is ignored.

Priority when a word appears in more than one list:
  profanity > self-name alias > greeting > "meow" poll trigger
"""

from enum import Enum


class Intent(str, Enum):
    PROFANITY = "profanity"
    NAME_MENTION = "name_mention"
    GREETING = "greeting"
    POLL_TRIGGER = "poll_trigger"
    STATUS_COMMAND = "status_command"
    SPEEDTEST_COMMAND = "speedtest_command"
    NONE = "none"


PROFANITY_TERMS = frozenset({
    "kontol", "kontoll", "bangsat", "ngentod", "tod", "ngentot", "asu", "asw",
    "celeng", "celeh", "tai", "fuck", "itil", "jembut", "memek", "memekk",
    "memekkk", "jembutt", "jembuttt", "pekok", "pekokk", "pekokkk", "itill",
    "ngentott", "ngentottt", "kontt", "konttt", "gaberrr", "kuntul", "asuu",
    "su", "suu", "ngic", "ngiclik", "meki", "kontl", "kont", "kntl", "dick",
    "titit", "peju", "gigolo", "bacod", "tolol", "goblok", "gaber", "gaberr",
    "peli", "pelii", "peliii",
})

NAME_ALIASES = frozenset({
    "ji", "zi", "jii", "zii", "oji", "ozi", "ozip", "ozi saputra",
    "ozipoetra", "bang", "cok", "cuk", "lur",
})

GREETING_TERMS = frozenset({"halo", "hai", "oy", "p", "ping", "hy", "tes", "woy"})

POLL_TRIGGER = "meow"

STATUS_COMMAND = "!status"
SPEEDTEST_COMMAND = "!speedtest"

_ORDERED_LISTS: tuple[tuple[frozenset, Intent], ...] = (
    (PROFANITY_TERMS, Intent.PROFANITY),
    (NAME_ALIASES, Intent.NAME_MENTION),
    (GREETING_TERMS, Intent.GREETING),
    (frozenset({POLL_TRIGGER}), Intent.POLL_TRIGGER),
)


def classify(body: str) -> Intent:
    """Return the canned-reply intent for *body*, or ``Intent.NONE``."""
    text = (body or "").strip()
    if not text:
        return Intent.NONE
    for terms, intent in _ORDERED_LISTS:
        if text in terms:
            return intent
    return Intent.NONE


def classify_self_command(body: str) -> Intent:
    """Recognise the operator-only diagnostic commands sent from the bot's own account."""
    text = (body or "").strip()
    if text == STATUS_COMMAND:
        return Intent.STATUS_COMMAND
    if text == SPEEDTEST_COMMAND:
        return Intent.SPEEDTEST_COMMAND
    return Intent.NONE
