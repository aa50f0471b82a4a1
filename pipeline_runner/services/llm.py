"""Shared OpenAI-compatible client and the gateway built on top of it."""

from __future__ import annotations

import logging

from openai import AsyncOpenAI as _HTTPClient

from pipeline_runner.config import settings
from pipeline_runner.pipeline.config import PipelineSettings, pipeline_settings
from pipeline_runner.pipeline.gateway import GatewayClient, OpenAIGateway, PromptSource

logger = logging.getLogger(__name__)

_client: _HTTPClient | None = None


def _get_client() -> _HTTPClient:
    global _client
    if _client is None:
        logger.info("Creating LLM client for %s (model %s).", settings.openai_base_url, settings.llm_model)
        _client = _HTTPClient(
            base_url=settings.openai_base_url,
            api_key=settings.openai_api_key,
        )
    return _client


def build_gateway_client(
    prompts: PromptSource,
    cfg: PipelineSettings | None = None,
) -> GatewayClient:
    """Gateway client wired to the shared HTTP client and the configured model."""
    cfg = cfg or pipeline_settings
    gateway = OpenAIGateway(_get_client(), prompts, model=settings.llm_model)
    return GatewayClient(
        gateway,
        timeout_s=cfg.openai_timeout_ms / 1000.0,
        retries=cfg.openai_retries,
    )
