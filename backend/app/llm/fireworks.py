"""
Text completion via Fireworks chat completions.
"""

from __future__ import annotations

import asyncio
import logging

from fireworks.client import AsyncFireworks

from app.config import CredentialSource, EngineSettings
from app.services.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class FireworksTextCompleter:
    """
    complete(system_prompt, user_text, temperature, max_tokens) -> str.

    The API key is read from the credential source on every call, so a
    missing key fails the node that needs it rather than start-up.
    """

    def __init__(self, settings: EngineSettings, credentials: CredentialSource):
        self.settings = settings
        self.credentials = credentials

    async def complete(
        self,
        system_prompt: str | None,
        user_text: str,
        temperature: float,
        max_tokens: int,
    ) -> str:
        api_key = self.credentials.require(
            self.settings.text_api_key_env, purpose="text completion"
        )

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_text})

        try:
            async with AsyncFireworks(api_key=api_key) as client:
                response = await asyncio.wait_for(
                    client.chat.completions.create(
                        model=self.settings.text_model,
                        messages=messages,
                        temperature=temperature,
                        max_tokens=max_tokens,
                    ),
                    timeout=self.settings.model_timeout,
                )
        except asyncio.TimeoutError:
            raise ExternalServiceError(
                f"Text completion timed out after {self.settings.model_timeout:g}s"
            )
        except Exception as e:
            logger.exception("Fireworks completion failed: %s", e)
            raise ExternalServiceError(f"Text completion failed: {e}") from e

        if not response.choices:
            raise ExternalServiceError("Text completion returned no choices")
        content = response.choices[0].message.content
        return (content or "").strip()
