"""Prompt templating for identity-preserving photo edits."""

from __future__ import annotations

import re

_TEMPLATE_ANCHORS = re.compile(
    r"STRICT REQUIREMENTS|Please edit the provided original image|SPECIFIC EDITING REQUEST",
    re.IGNORECASE,
)

INTRO = "Please edit the provided original image based on the following guidelines:"

FACE_PRESERVATION = (
    "STRICT REQUIREMENTS:\n"
    "1. ABSOLUTELY preserve all facial features, facial contours, eye shape, nose shape, "
    "mouth shape, and all key characteristics from the original image\n"
    "2. Maintain the person's basic facial structure and proportions COMPLETELY unchanged\n"
    "3. Ensure the person in the edited image is 100% recognizable as the same individual\n"
    "4. NO changes to any facial details including skin texture, moles, scars, or other "
    "distinctive features\n"
    "5. If style conversion is involved, MUST maintain facial realism and accuracy\n"
    "6. Focus ONLY on non-facial modifications as requested"
)

CLOSING = (
    "Please focus your modifications ONLY on the user's specific requirements while "
    "strictly following the face preservation guidelines above. Generate a high-quality "
    "edited image that maintains facial identity."
)


def has_template(prompt: str) -> bool:
    return bool(_TEMPLATE_ANCHORS.search(prompt or ""))


def compose_prompt(user_prompt: str) -> str:
    """Wrap a user prompt in the face-preservation template.

    Prompts that already carry one of the template anchors are returned
    trimmed but otherwise untouched. The prompt is never truncated.
    """

    prompt = (user_prompt or "").strip()
    if has_template(prompt):
        return prompt
    return (
        f"{INTRO}\n\n{FACE_PRESERVATION}\n\n"
        f"SPECIFIC EDITING REQUEST: {prompt}\n\n{CLOSING}"
    )


__all__ = ["CLOSING", "FACE_PRESERVATION", "INTRO", "compose_prompt", "has_template"]
