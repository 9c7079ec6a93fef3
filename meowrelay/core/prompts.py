"""Completion prompt templates.

The completion service is steered as a two-party dialogue between "You"
(the person writing to the bot) and "Friend" (the bot).  A quoted message
supplies one earlier turn; no other per-chat history is kept.
"""

from meowrelay.core.events import TextMessage

USER_LABEL = "You: "
BOT_LABEL = "Friend: "


def build_prompt(current: TextMessage) -> str:
    if current.quoted is None:
        return f"{USER_LABEL}{current.body}\n{BOT_LABEL}"
    return (
        f"{BOT_LABEL}{current.quoted.body or ''}\n"
        f"{USER_LABEL}{current.body}\n"
        f"{BOT_LABEL}"
    )
