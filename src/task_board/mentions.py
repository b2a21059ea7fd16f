"""
@-mention markup in comment text.

A mention is stored as ``@[Full Name](profile-id)`` and displayed as
``@Full Name``.
"""

import re
from typing import List, Sequence, Tuple

from .models import Profile

MENTION_PATTERN = re.compile(r"@\[([^\]]+)\]\(([^)]+)\)")


def format_mention(profile: Profile) -> str:
    return f"@[{profile.full_name}]({profile.id})"


def extract_mentioned_user_ids(text: str) -> List[str]:
    """Profile ids mentioned in ``text``, in order of first appearance."""
    ids: List[str] = []
    for match in MENTION_PATTERN.finditer(text):
        if match.group(2) not in ids:
            ids.append(match.group(2))
    return ids


def render_mentions(text: str) -> str:
    return MENTION_PATTERN.sub(r"@\1", text)


def mention_suggestions(text_before_cursor: str, profiles: Sequence[Profile]) -> List[Profile]:
    """
    Profiles to offer while the user types a mention.

    Suggestions are active after the last ``@`` before the cursor until a
    space is typed; the partial name filters case-insensitively.
    """
    at = text_before_cursor.rfind("@")
    if at == -1:
        return []
    term = text_before_cursor[at + 1:]
    if " " in term:
        return []
    term = term.lower()
    return [p for p in profiles if term in p.full_name.lower()]


def insert_mention(value: str, cursor: int, profile: Profile) -> Tuple[str, int]:
    """
    Replace the partial mention before ``cursor`` with the full markup.

    Returns:
        The new text and the cursor position after the inserted mention
    """
    before, after = value[:cursor], value[cursor:]
    at = before.rfind("@")
    if at == -1:
        at = len(before)
    mention = format_mention(profile)
    return before[:at] + mention + " " + after, at + len(mention) + 1
