from typing import List, Optional

from zetra_ai.domain.models.copilot_state import ActionItem, AiMeta, TaskBridgeReport, clean

ACTIONS_HEADING = "### ✅ ACTIONS"
NEXT_MOVE_HEADING = "🎯 NEXT MOVE"


def has_next_move_heading(text: str) -> bool:
    return "NEXT MOVE" in clean(text).upper()


def format_actions(actions: List[ActionItem]) -> str:
    """Markdown block listing actions with their priority, eta and steps"""

    lines = [ACTIONS_HEADING]
    for action in actions or []:
        title = clean(action.title)
        if not title:
            continue

        bits = []
        if action.priority:
            bits.append(f"priority: {action.priority.value}")
        if clean(action.eta):
            bits.append(f"eta: {clean(action.eta)}")
        suffix = f" ({' • '.join(bits)})" if bits else ""

        lines.append(f"- **{title}**{suffix}")
        for step in action.steps or []:
            if clean(step):
                lines.append(f"  - {clean(step)}")

    if len(lines) == 1:
        return ""
    return "\n".join(lines)


def task_footer(report: Optional[TaskBridgeReport]) -> str:
    """One-line summary of saved tasks, empty when nothing was attempted"""

    if report is None:
        return ""
    if report.created > 0:
        footer = f"✅ Saved to Tasks: {report.created}"
        if report.failed > 0:
            footer += f" • Failed: {report.failed}"
        return footer
    if report.failed > 0:
        return "⚠️ Actions could not be saved to Tasks."
    return ""


def pack_assistant_text(meta: AiMeta, footer_note: str = "") -> str:
    """Final display text; always begins with the reply itself"""

    main = clean(meta.text)
    actions_block = format_actions(meta.actions)
    next_move = clean(meta.next_move)
    footer_note = clean(footer_note)

    parts = []
    if main:
        parts.append(main)

    if actions_block:
        parts.extend(["", actions_block])

    if next_move and not has_next_move_heading(main):
        parts.extend(["", NEXT_MOVE_HEADING, next_move])

    if footer_note:
        parts.extend(["", footer_note])

    return "\n".join(parts).strip()
