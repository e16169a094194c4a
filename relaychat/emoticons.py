from typing import Tuple

# Applied in this order, every time. None of the tokens overlap, and none of
# the replacements contain a token, so running substitute() twice is a no-op.
EMOJI_MAP: Tuple[Tuple[str, str], ...] = (
    (":)", "\U0001F60A"),
    (":(", "\U0001F61E"),
    (":D", "\U0001F603"),
    (":P", "\U0001F61B"),
    ("<3", "\u2764\ufe0f"),
    (":O", "\U0001F62E"),
)


def substitute(text: str) -> str:
    """Swap ASCII emoticons for their emoji. Case-sensitive."""
    for token, emoji in EMOJI_MAP:
        text = text.replace(token, emoji)
    return text
