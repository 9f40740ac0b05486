# =============================================================================
# Prompts — System Prompt Assembly & Help Text
# =============================================================================
#
# The system prompt is a fixed role definition followed by the grounding
# snapshots rendered as JSON. Prompt wording is deliberately minimal; the
# pipeline only depends on build_system_prompt() returning a string.
# =============================================================================

from __future__ import annotations

import json
from typing import Any

from fundbot.config import settings

ROLE_PROMPT = (
    "You are {bot_name}, an assistant for an investment fund's team. "
    "Answer questions about the fund's portfolio and markets.\n\n"
    "Rules:\n"
    "- Use ONLY the data provided below for figures; never invent numbers\n"
    "- If the data does not contain the answer, say so plainly\n"
    "- Be concise and format for Slack (short paragraphs, bullet points)"
)

# Reply to a bare mention with no question attached.
GREETING = "How can I help you today?"


def build_system_prompt(grounding: dict[str, Any]) -> str:
    prompt = ROLE_PROMPT.format(bot_name=settings.bot_name)
    if not grounding:
        return prompt + "\n\nNo live data is available for this question."
    sections = [
        f"## {name}\n{json.dumps(snapshot, indent=2, default=str)}"
        for name, snapshot in grounding.items()
    ]
    return prompt + "\n\nData:\n\n" + "\n\n".join(sections)


def help_message() -> str:
    return (
        f"Hi! I'm {settings.bot_name}, here to help you with portfolio and "
        "market data. Here's what you can ask me:\n\n"
        "*Portfolio Questions:*\n"
        "• \"What's our current AUM?\"\n"
        "• \"Show me our month-to-date performance\"\n"
        "• \"What are our top positions?\"\n\n"
        "*Position Analysis:*\n"
        "• \"Tell me about our [ticker] position\"\n"
        "• \"What's our portfolio concentration?\"\n\n"
        "*Tips:*\n"
        "• I remember context within a thread\n"
        "• Ask follow-up questions for deeper analysis"
    )
