"""LLM factory.

Builds the single pre-configured chat model the pipeline uses for every
batch. It is constructed once at startup and passed into the evaluation
client explicitly.

The OpenAI SDK's own retries are disabled: retry policy belongs to
``forumeval.pipeline.retry`` so that every attempt is classified and paced in
one place.
"""

from __future__ import annotations

import structlog
from langchain_openai import ChatOpenAI

from forumeval.config import PipelineSettings, Settings, get_pipeline_settings, get_settings

logger = structlog.get_logger(__name__)


def create_llm(
    settings: Settings | None = None,
    pipeline_settings: PipelineSettings | None = None,
    max_tokens: int | None = None,
) -> ChatOpenAI:
    """Create the evaluation chat model (OpenRouter, OpenAI-compatible API).

    Args:
        settings: Optional Settings instance; loads from env if not provided.
        pipeline_settings: Optional pipeline config; loads pipeline.toml if not provided.
        max_tokens: Maximum tokens in response.
    """
    if settings is None:
        settings = get_settings()
    if pipeline_settings is None:
        pipeline_settings = get_pipeline_settings()

    defaults = pipeline_settings.defaults
    kwargs = dict(
        model=defaults.model,
        temperature=defaults.temperature,
        openai_api_key=settings.openrouter_api_key,
        openai_api_base=settings.openrouter_base_url,
        timeout=defaults.timeout,
        max_retries=0,
    )
    if max_tokens is not None:
        kwargs["max_tokens"] = max_tokens

    logger.debug("llm_configured", model=defaults.model, timeout=defaults.timeout)
    return ChatOpenAI(**kwargs)
