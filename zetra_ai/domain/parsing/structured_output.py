"""
Two-phase parser for the model's marker-delimited reply.

    <<<ZETRA_REPLY>>>
    free-form reply text
    <<<ZETRA_ACTIONS>>>
    {"lang": ..., "nextMove": ..., "actions": [...], "memory": {...}}

Phase one splits on the markers, phase two parses and validates the JSON
tail. Any failure in either phase degrades to "the whole raw text is the
reply"; nothing here raises.
"""

from typing import Any, Dict, List, Optional
import json
import re
import structlog

from zetra_ai.domain.models.copilot_state import (
    ActionItem, ActionPriority, AiMeta, ConversationState,
    ReplyLang, StrategyLevel, clean
)

logger = structlog.get_logger(__name__)

REPLY_MARKER = "<<<ZETRA_REPLY>>>"
ACTIONS_MARKER = "<<<ZETRA_ACTIONS>>>"

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.S | re.I)


def _enum_or_none(enum_cls, value: Any):
    try:
        return enum_cls(value)
    except (ValueError, TypeError):
        return None


def _strip_fence(text: str) -> str:
    m = _FENCE.match(text)
    return m.group(1) if m else text


def _partial_marker_suffix(text: str, marker: str) -> int:
    """Length of the longest proper prefix of `marker` that ends `text`"""
    for size in range(len(marker) - 1, 0, -1):
        if text.endswith(marker[:size]):
            return size
    return 0


def extract_reply_prefix(raw: str) -> str:
    """
    Live-displayable reply from a possibly incomplete raw buffer.

    Text after the reply marker and before the actions marker. While a
    marker is still arriving its partial characters are held back so that
    successive calls on a growing buffer do not flicker.
    """

    s = raw or ""
    i_reply = s.find(REPLY_MARKER)
    if i_reply != -1:
        s = s[i_reply + len(REPLY_MARKER):]
    elif REPLY_MARKER.startswith(s.lstrip()):
        return ""

    i_act = s.find(ACTIONS_MARKER)
    if i_act != -1:
        s = s[:i_act]
    else:
        held = _partial_marker_suffix(s, ACTIONS_MARKER)
        if held:
            s = s[:-held]

    return s.strip()


def parse_actions(raw_actions: Any) -> List[ActionItem]:
    """Validate the actions array, dropping anything without a title"""

    if not isinstance(raw_actions, list):
        return []

    actions = []
    for entry in raw_actions:
        if not isinstance(entry, dict):
            continue
        title = clean(entry.get("title"))
        if not title:
            continue

        steps = entry.get("steps")
        if isinstance(steps, list):
            steps = [clean(step) for step in steps if clean(step)]
        else:
            steps = None

        actions.append(ActionItem(
            title=title,
            steps=steps,
            priority=_enum_or_none(ActionPriority, entry.get("priority")),
            eta=clean(entry.get("eta")) or None,
        ))
    return actions


def parse_memory(raw_memory: Any, lang: ReplyLang) -> Optional[ConversationState]:
    if not isinstance(raw_memory, dict):
        return None
    return ConversationState(
        topic=clean(raw_memory.get("topic")) or None,
        objective=clean(raw_memory.get("objective")) or None,
        last_plan=clean(raw_memory.get("lastPlan")) or None,
        strategy_level=_enum_or_none(StrategyLevel, raw_memory.get("strategyLevel")),
        lang=lang,
    )


def plain_reply(raw: str) -> AiMeta:
    """Degraded result: everything is reply text"""
    return AiMeta(text=clean(raw), actions=[], lang=ReplyLang.AUTO)


def parse_structured_output(raw: str) -> AiMeta:
    """Split a complete raw reply into user text and validated actions"""

    s = clean(raw)
    i_reply = s.find(REPLY_MARKER)
    i_act = s.find(ACTIONS_MARKER)

    if i_reply == -1 or i_act == -1 or i_act <= i_reply:
        return plain_reply(s)

    reply = clean(s[i_reply + len(REPLY_MARKER):i_act])
    json_part = _strip_fence(clean(s[i_act + len(ACTIONS_MARKER):]))

    try:
        parsed: Dict[str, Any] = json.loads(json_part)
    except ValueError:
        logger.debug("Actions block is not valid JSON", length=len(json_part))
        return plain_reply(s)

    if not isinstance(parsed, dict):
        return plain_reply(s)

    lang = _enum_or_none(ReplyLang, parsed.get("lang")) or ReplyLang.AUTO

    return AiMeta(
        text=reply or s,
        actions=parse_actions(parsed.get("actions")),
        next_move=clean(parsed.get("nextMove")) or None,
        lang=lang,
        memory=parse_memory(parsed.get("memory"), lang),
    )
