"""Bot personas — per-bot system prompts loaded from markdown files.

A persona lives at ``<personas_dir>/<bot_id>.md``. Bots without a file (or
with an empty one) get the built-in default.
"""

from __future__ import annotations

import os
import re
from datetime import datetime

DEFAULT_PERSONA = """\
# Who You Are

**Role:** Customer-facing assistant answering on chat channels

## Style
- Answer the question that was asked; be concise
- Plain text only: most channels do not render markdown
- If you don't know, say so and suggest contacting a human

## Boundaries
- Never ask for passwords or payment details
- Private things stay private
"""


def persona_path(personas_dir: str, bot_id: str) -> str:
    safe = re.sub(r"[^a-zA-Z0-9_\-]", "_", str(bot_id))
    return os.path.join(personas_dir, f"{safe}.md")


def load_persona(personas_dir: str | None, bot_id: str | None) -> str:
    """Load the persona for a bot, falling back to `DEFAULT_PERSONA`."""
    if personas_dir and bot_id:
        path = persona_path(personas_dir, bot_id)
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                content = f.read().strip()
            if content:
                return content
    return DEFAULT_PERSONA


def build_system_prompt(persona: str, channel: str | None = None) -> str:
    """Combine a persona with the dynamic context of the current turn."""
    context_lines = [
        "## Context",
        f"- Current date: {datetime.now().strftime('%Y-%m-%d %H:%M')}",
    ]
    if channel:
        context_lines.append(f"- Channel: {channel}")
    return "\n\n".join([persona, "\n".join(context_lines)])
