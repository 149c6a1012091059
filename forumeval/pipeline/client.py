"""Structured Evaluation Client.

Two layers:

- ``LangChainEvaluator`` is the LLM collaborator. It sends one batch as a
  single chat request with a JSON-schema response format, parses the reply
  and maps SDK failures onto the pipeline error taxonomy.
- ``EvaluationClient`` enforces the batch contract on top of it: one bounded
  call per batch, and exactly one result per submitted item, in order.

Neither layer retries; see ``forumeval.pipeline.retry``.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from typing import Any

import openai
import structlog
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_core.utils.json import parse_json_markdown
from pydantic import BaseModel

from forumeval.errors import (
    AuthError,
    BatchMismatchError,
    EvaluationTimeoutError,
    InvalidRequestError,
    InvalidResponseError,
    NetworkError,
    PipelineError,
    RateLimitedError,
)
from forumeval.prompts.templates import BATCH_INSTRUCTION
from forumeval.schemas.evaluation import BatchEvaluation

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def classify_error(exc: BaseException) -> PipelineError | None:
    """Map an SDK/transport exception to a pipeline error, or None if unknown."""
    if isinstance(exc, openai.RateLimitError):
        return RateLimitedError(str(exc))
    # APITimeoutError subclasses APIConnectionError, so it is checked first
    if isinstance(exc, (openai.APITimeoutError, TimeoutError)):
        return EvaluationTimeoutError(str(exc) or "model call timed out")
    if isinstance(exc, openai.APIConnectionError):
        return NetworkError(str(exc))
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AuthError(str(exc))
    if isinstance(exc, openai.APIStatusError):
        status = exc.status_code
        if status == 429:
            return RateLimitedError(str(exc))
        if status >= 500:
            return NetworkError(f"HTTP {status}: {exc}")
        if status in (401, 403):
            return AuthError(str(exc))
        if status == 408:
            return EvaluationTimeoutError(f"HTTP {status}: {exc}")
        return InvalidRequestError(f"HTTP {status}: {exc}")
    return None


# ---------------------------------------------------------------------------
# LLM collaborator
# ---------------------------------------------------------------------------


def _response_format(schema: type[BaseModel]) -> dict:
    return {
        "type": "json_schema",
        "json_schema": {
            "name": "batch_evaluation",
            "schema": schema.model_json_schema(),
            "strict": False,
        },
    }


def build_messages(
    system_prompt: str, contents: Sequence[str], label: str
) -> list[BaseMessage]:
    """System prompt, one labelled user message per item, then the count instruction."""
    messages: list[BaseMessage] = [SystemMessage(content=system_prompt)]
    messages.extend(
        HumanMessage(content=f"{label} {i}: {text}")
        for i, text in enumerate(contents, 1)
    )
    messages.append(
        HumanMessage(
            content=BATCH_INSTRUCTION.format(
                count=len(contents), label_lower=label.lower()
            )
        )
    )
    return messages


def _extract_items(data: Any) -> list[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and "evaluations" in data:
        items = data["evaluations"]
        if isinstance(items, list):
            return items
        raise InvalidResponseError(
            f"'evaluations' must be an array, got {type(items).__name__}"
        )
    raise InvalidResponseError("response has no 'evaluations' array")


class LangChainEvaluator:
    """LLM collaborator wrapping a pre-built LangChain chat model."""

    def __init__(self, llm: Any) -> None:
        self._llm = llm

    async def complete(
        self,
        system_prompt: str,
        contents: Sequence[str],
        schema: type[BaseModel] = BatchEvaluation,
        label: str = "Post",
    ) -> list[Any]:
        """Send one batch and return the parsed ``evaluations`` array.

        Raises:
            RateLimitedError, NetworkError, EvaluationTimeoutError: transient.
            AuthError, InvalidRequestError, InvalidResponseError: permanent.
        """
        messages = build_messages(system_prompt, contents, label)
        try:
            response = await self._llm.ainvoke(
                messages, response_format=_response_format(schema)
            )
        except (openai.OpenAIError, TimeoutError) as exc:
            mapped = classify_error(exc)
            if mapped is None:
                raise
            raise mapped from exc

        content = response.content if response.content else ""
        if not isinstance(content, str):
            content = json.dumps(content)
        try:
            data = parse_json_markdown(content)
        except (ValueError, TypeError) as exc:
            raise InvalidResponseError(f"unparseable model output: {exc}") from exc
        return _extract_items(data)


# ---------------------------------------------------------------------------
# Evaluation client
# ---------------------------------------------------------------------------


class EvaluationClient:
    """Invokes the model once per batch and enforces the 1:1 result contract."""

    def __init__(self, evaluator: LangChainEvaluator, llm_model: str, timeout: float) -> None:
        self.evaluator = evaluator
        self.llm_model = llm_model
        self.timeout = timeout

    async def invoke(
        self,
        system_prompt: str,
        texts: Sequence[str],
        schema: type[BaseModel] = BatchEvaluation,
        label: str = "Post",
    ) -> list[Any]:
        """Evaluate one sanitized batch.

        Returns the raw per-item payloads, exactly ``len(texts)`` of them and
        in submission order; never truncated or padded.

        Raises:
            EvaluationTimeoutError: the call exceeded ``timeout`` seconds.
            BatchMismatchError: the model returned a different number of items.
        """
        try:
            raw_items = await asyncio.wait_for(
                self.evaluator.complete(system_prompt, texts, schema, label),
                timeout=self.timeout,
            )
        except TimeoutError as exc:
            raise EvaluationTimeoutError(
                f"model call exceeded {self.timeout}s"
            ) from exc

        if len(raw_items) != len(texts):
            logger.warning(
                "batch_mismatch", expected=len(texts), received=len(raw_items)
            )
            raise BatchMismatchError(expected=len(texts), received=len(raw_items))

        logger.info("batch_evaluated", size=len(texts), model=self.llm_model)
        return raw_items
