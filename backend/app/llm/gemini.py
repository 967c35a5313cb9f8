"""
Image generation using Gemini's native image output.
"""

from __future__ import annotations

import asyncio
import logging

from google import genai
from google.genai import types

from app.config import CredentialSource, EngineSettings
from app.services.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class GeminiImageGenerator:
    """generate(prompt) -> (image bytes, mime type)."""

    def __init__(self, settings: EngineSettings, credentials: CredentialSource):
        self.settings = settings
        self.credentials = credentials

    def is_configured(self) -> bool:
        return self.credentials.get(self.settings.image_api_key_env) is not None

    def _generate_sync(self, api_key: str, prompt: str) -> tuple[bytes, str]:
        client = genai.Client(api_key=api_key)
        response = client.models.generate_content(
            model=self.settings.image_model,
            contents=prompt,
            config=types.GenerateContentConfig(
                response_modalities=["Image"],
            ),
        )

        for part in response.parts or []:
            if part.inline_data is not None and part.inline_data.data:
                mime_type = part.inline_data.mime_type or "image/png"
                return part.inline_data.data, mime_type

        raise ExternalServiceError("No image was generated")

    async def generate(self, prompt: str) -> tuple[bytes, str]:
        api_key = self.credentials.require(
            self.settings.image_api_key_env, purpose="image generation"
        )
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._generate_sync, api_key, prompt),
                timeout=self.settings.model_timeout,
            )
        except ExternalServiceError:
            raise
        except asyncio.TimeoutError:
            raise ExternalServiceError(
                f"Image generation timed out after {self.settings.model_timeout:g}s"
            )
        except Exception as e:
            logger.exception("Gemini image generation failed: %s", e)
            raise ExternalServiceError(f"Image generation failed: {e}") from e
