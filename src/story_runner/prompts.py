"""Build the prompt passed to the agent for a single story."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from .models import Story


def _criteria_block(story: Story) -> str:
    if not story.acceptance_criteria:
        return "  (none listed; set \"passes\": true in the story file when done)\n"
    lines = []
    for item in story.acceptance_criteria:
        mark = "x" if item.checked else " "
        lines.append(f"  - [{mark}] {item.text}")
    return "\n".join(lines) + "\n"


def build_story_prompt(
    story: Story,
    story_path: Path,
    update_path: Path,
    user_prompt: Optional[str] = None,
    attempt: int = 0,
) -> str:
    user_block = f"\nSpecial instructions:\n{user_prompt}\n" if user_prompt else ""
    retry_block = ""
    if attempt:
        retry_block = f"\nThis is retry {attempt}; the previous attempt failed before finishing.\n"
    description = story.description.strip() or "(no description)"
    return f"""Work on exactly one story: {story.id} {story.title}
{retry_block}
Description:
{description}

Acceptance criteria:
{_criteria_block(story)}
Story file: {story_path}

Rules:
- Implement the story in this repository.
- After verifying a criterion, set its "checked" to true in the story file.
  Never set a checked criterion back to false.
- If you cannot proceed, set "blockedBy" in the story file to the blocking
  story id or a short reason, and print <blocked>reason</blocked>.
- To propose new or changed stories, write them to {update_path} as
  {{"newStories": [...], "updateStories": [...]}}; do not edit the index.
- When every criterion is checked, print <promise>COMPLETE</promise>.
{user_block}"""
