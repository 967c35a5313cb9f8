"""
Two-way intent classification for inference nodes: does the prompt ask for
an image, or for text?
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Protocol

logger = logging.getLogger(__name__)

CLASSIFIER_SYSTEM_PROMPT = (
    "You are an intent classifier. Decide whether the user's request asks for "
    "an image to be generated or for a text response.\n"
    "Reply with exactly one word: IMAGE if the user wants an image created, "
    "drawn, rendered or generated; TEXT for everything else."
)


class Intent(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"


class TextCompleter(Protocol):
    async def complete(
        self,
        system_prompt: str | None,
        user_text: str,
        temperature: float,
        max_tokens: int,
    ) -> str: ...


async def classify_intent(completer: TextCompleter, prompt: str) -> Intent:
    """
    Deterministic (temperature 0) classification. Any failure or unexpected
    answer falls back to TEXT.
    """
    try:
        answer = await completer.complete(
            CLASSIFIER_SYSTEM_PROMPT, prompt, temperature=0, max_tokens=5
        )
    except Exception as e:
        logger.warning("Intent classification failed, falling back to TEXT: %s", e)
        return Intent.TEXT

    if answer.strip().upper().startswith("IMAGE"):
        return Intent.IMAGE
    return Intent.TEXT
