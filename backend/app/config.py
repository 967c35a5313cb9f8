"""
Runtime configuration, read from the environment (and .env) once at start-up.
"""

from __future__ import annotations

import logging
import os
from typing import Mapping

from dotenv import load_dotenv
from pydantic import BaseModel

from app.services.errors import ConfigurationError

load_dotenv()

logger = logging.getLogger(__name__)

MB = 1024 * 1024


def _int_env(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        parsed = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %d", key, raw, default)
        return default
    if parsed <= 0:
        return default
    return parsed


def _float_env(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        parsed = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", key, raw, default)
        return default
    if parsed <= 0:
        return default
    return parsed


class CredentialSource:
    """Environment-style key/value lookup for API keys."""

    def __init__(self, env: Mapping[str, str] | None = None):
        self._env = env if env is not None else os.environ

    def get(self, key: str) -> str | None:
        value = self._env.get(key)
        if value is None or not value.strip():
            return None
        return value.strip()

    def require(self, key: str, purpose: str | None = None) -> str:
        value = self.get(key)
        if value is None:
            hint = f" (needed for {purpose})" if purpose else ""
            raise ConfigurationError(
                f"{key} is not configured{hint}. Set it in your environment or .env file."
            )
        return value


class EngineSettings(BaseModel):
    # Byte caps
    max_video_bytes: int = 100 * MB
    max_image_bytes: int = 50 * MB

    # Per-call timeouts (seconds)
    download_timeout: float = 60.0
    probe_timeout: float = 10.0
    extract_timeout: float = 30.0
    model_timeout: float = 120.0

    # External binaries; None means "look it up on PATH"
    ffmpeg_path: str | None = None
    probe_path: str | None = None

    # Model collaborators
    text_model: str = "accounts/fireworks/models/llama-v3p1-8b-instruct"
    image_model: str = "gemini-2.5-flash-image"
    text_api_key_env: str = "FIREWORKS_API_KEY"
    image_api_key_env: str = "GEMINI_API_KEY"

    # Asset store (Cloudflare R2)
    r2_bucket: str = "workflow-assets"
    r2_public_base_url: str | None = None

    # Run log backend: "memory" or "supabase"
    run_log_backend: str = "memory"


def load_settings(env: Mapping[str, str] | None = None) -> EngineSettings:
    env = env if env is not None else os.environ
    defaults = EngineSettings()
    return EngineSettings(
        max_video_bytes=_int_env(env, "MAX_VIDEO_BYTES", defaults.max_video_bytes),
        max_image_bytes=_int_env(env, "MAX_IMAGE_BYTES", defaults.max_image_bytes),
        download_timeout=_float_env(env, "DOWNLOAD_TIMEOUT_SECONDS", defaults.download_timeout),
        probe_timeout=_float_env(env, "PROBE_TIMEOUT_SECONDS", defaults.probe_timeout),
        extract_timeout=_float_env(env, "EXTRACT_TIMEOUT_SECONDS", defaults.extract_timeout),
        model_timeout=_float_env(env, "MODEL_TIMEOUT_SECONDS", defaults.model_timeout),
        ffmpeg_path=env.get("FFMPEG_PATH") or None,
        probe_path=env.get("FFPROBE_PATH") or None,
        text_model=env.get("FIREWORKS_TEXT_MODEL") or defaults.text_model,
        image_model=env.get("GEMINI_IMAGE_MODEL") or defaults.image_model,
        r2_bucket=env.get("R2_BUCKET") or defaults.r2_bucket,
        r2_public_base_url=env.get("R2_PUBLIC_BASE_URL") or None,
        run_log_backend=(env.get("RUN_LOG_BACKEND") or defaults.run_log_backend).strip().lower(),
    )
