"""
Start-up wiring: settings, registry, collaborators, run log and engine are
built once here and handed to the application.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from app.config import CredentialSource, EngineSettings, load_settings
from app.db.supabase import get_supabase_client, supabase_configured
from app.llm.fireworks import FireworksTextCompleter
from app.llm.gemini import GeminiImageGenerator
from app.llm.intent import TextCompleter
from app.models.node_registry import NodeRegistry, build_node_registry
from app.services.errors import ConfigurationError
from app.services.node_executors import (
    AssetStore,
    ExecutorServices,
    ImageGenerator,
    verify_executor_registry,
)
from app.services.run_log import InMemoryRunLog, RunLog, SupabaseRunLog
from app.services.workflow_executor import WorkflowEngine
from app.storage.r2 import R2AssetStore, r2_configured

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: EngineSettings
    registry: NodeRegistry
    run_log: RunLog
    engine: WorkflowEngine
    http_client: httpx.AsyncClient | None = None

    async def aclose(self) -> None:
        await self.engine.shutdown()
        if self.http_client is not None:
            await self.http_client.aclose()


def build_run_log(settings: EngineSettings) -> RunLog:
    if settings.run_log_backend == "supabase":
        if not supabase_configured():
            raise ConfigurationError(
                "RUN_LOG_BACKEND=supabase needs SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY"
            )
        logger.info("Run log: Supabase")
        return SupabaseRunLog(get_supabase_client)
    if settings.run_log_backend != "memory":
        raise ConfigurationError(
            f"Unknown RUN_LOG_BACKEND '{settings.run_log_backend}' (use memory or supabase)"
        )
    logger.info("Run log: in-memory")
    return InMemoryRunLog()


def build_asset_store(settings: EngineSettings) -> AssetStore | None:
    """R2 when fully configured; otherwise outputs stay inline as data URIs."""
    if not (r2_configured() and settings.r2_public_base_url):
        logger.info("Asset store: not configured, returning data URIs")
        return None
    logger.info("Asset store: R2 bucket %s", settings.r2_bucket)
    return R2AssetStore(settings)


def build_runtime(
    settings: EngineSettings | None = None,
    credentials: CredentialSource | None = None,
    *,
    run_log: RunLog | None = None,
    text_completer: TextCompleter | None = None,
    image_generator: ImageGenerator | None = None,
    asset_store: AssetStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    use_asset_store: bool = True,
) -> Runtime:
    verify_executor_registry()

    settings = settings or load_settings()
    credentials = credentials or CredentialSource()
    registry = build_node_registry()

    if text_completer is None:
        text_completer = FireworksTextCompleter(settings, credentials)
    if image_generator is None:
        image_generator = GeminiImageGenerator(settings, credentials)
    if asset_store is None and use_asset_store:
        asset_store = build_asset_store(settings)
    if run_log is None:
        run_log = build_run_log(settings)
    if http_client is None:
        http_client = httpx.AsyncClient()

    services = ExecutorServices(
        settings=settings,
        credentials=credentials,
        registry=registry,
        text_completer=text_completer,
        image_generator=image_generator,
        asset_store=asset_store,
        http_client=http_client,
    )
    engine = WorkflowEngine(services, run_log)
    return Runtime(
        settings=settings,
        registry=registry,
        run_log=run_log,
        engine=engine,
        http_client=http_client,
    )
