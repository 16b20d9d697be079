from typing import Optional, Sequence
from langchain_core.messages import BaseMessage, HumanMessage

from zetra_ai.domain.models.copilot_state import ReplyLang, clean

SHORT_MESSAGE_CHARS = 26
SHORT_MESSAGE_TOKENS = 3
MIN_CLASSIFIABLE_CHARS = 6

# Lightweight Swahili signals; two hits classify a turn as Swahili
SWAHILI_HINTS = (
    "na", "kwa", "sana", "habari", "ndiyo", "hapana", "biashara",
    "tafadhali", "nisaidie", "mawazo", "sasa", "mkuu", "mambo", "asante",
)


def looks_swahili(text: str) -> bool:
    padded = f" {clean(text).lower()} "
    score = sum(1 for hint in SWAHILI_HINTS if f" {hint} " in padded)
    return score >= 2


def is_short_ambiguous(message: str) -> bool:
    text = clean(message)
    if not text:
        return True
    return len(text) <= SHORT_MESSAGE_CHARS or len(text.split()) <= SHORT_MESSAGE_TOKENS


def infer_last_user_lang(history: Sequence[BaseMessage]) -> Optional[ReplyLang]:
    """Classify the most recent user turn long enough to judge"""

    for turn in reversed(history):
        if not isinstance(turn, HumanMessage):
            continue
        text = clean(turn.content)
        if len(text) < MIN_CLASSIFIABLE_CHARS:
            continue
        return ReplyLang.SW if looks_swahili(text) else ReplyLang.EN
    return None
