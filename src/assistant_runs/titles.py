from __future__ import annotations

import re

from assistant_runs.storage.sessions import DEFAULT_SESSION_TITLE

_PLACEHOLDER_TITLES = {DEFAULT_SESSION_TITLE.lower(), "untitled", "new session", "new conversation"}

_BOILERPLATE = re.compile(
    r"^(hi|hello|hey|yo|thanks|thank you|ok|okay|test|testing|ping|help)[\s!.?]*$",
    re.IGNORECASE,
)

_LEADING_FILLER = re.compile(
    r"^(please|can you|could you|would you|i want you to|i need you to|help me)\s+",
    re.IGNORECASE,
)

MAX_TITLE_WORDS = 8
MAX_TITLE_CHARS = 60


def is_placeholder_title(title: str | None) -> bool:
    return not title or title.strip().lower() in _PLACEHOLDER_TITLES


def is_boilerplate(text: str) -> bool:
    stripped = text.strip()
    return len(stripped) < 4 or _BOILERPLATE.match(stripped) is not None


def should_generate_title(current_title: str | None, user_message_count: int, user_text: str) -> bool:
    if is_boilerplate(user_text):
        return False
    return user_message_count <= 1 or is_placeholder_title(current_title)


def generate_title(user_text: str) -> str | None:
    """A short title from the first line of the user's message."""
    first_line = next((line.strip() for line in user_text.splitlines() if line.strip()), "")
    first_line = re.sub(r"[`*_#>\[\]]", "", first_line)
    first_line = _LEADING_FILLER.sub("", first_line).strip()
    if not first_line:
        return None

    words = first_line.split()
    title = " ".join(words[:MAX_TITLE_WORDS])
    if len(title) > MAX_TITLE_CHARS:
        title = title[:MAX_TITLE_CHARS].rsplit(" ", 1)[0] or title[:MAX_TITLE_CHARS]
    title = title.rstrip(" .,:;!?-")
    if not title:
        return None
    return title[0].upper() + title[1:]
