"""
LLM Client Infrastructure
==========================

Wrapper for LLM providers (Z.AI, OpenAI) providing a clean interface for
article generation and embeddings.

The application layer depends on ILLMClient, not on a provider SDK. Provider
failures (network errors, timeouts, 5xx) surface as TransientProviderError
so that callers can apply their retry policy; anything else is LLMException.
"""

import asyncio
import hashlib
import json
import re
import time
from abc import ABC, abstractmethod
from typing import List, Optional

import numpy as np
import openai
from openai import AsyncOpenAI
from zai import ZaiClient

from kb_learning.config import Settings, settings
from kb_learning.core import ConfigurationException, LLMException, TransientProviderError
from kb_learning.shared.infrastructure.grafana import get_grafana_exporter
from kb_learning.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class EmbeddingResult:
    """Result of an embedding generation."""

    def __init__(self, embedding: List[float], model: str):
        self.embedding = embedding
        self.model = model
        self.dimension = len(embedding)


class ChatCompletionResult:
    """Result of a chat completion."""

    def __init__(
        self,
        content: str,
        model: str,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        latency_ms: int = 0
    ):
        self.content = content
        self.model = model
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.total_tokens = prompt_tokens + completion_tokens
        self.latency_ms = latency_ms


class ILLMClient(ABC):
    """
    Interface for LLM client operations.

    Only the two calls the pipeline needs: embeddings for clustering and
    retrieval, chat completion for article generation.
    """

    @abstractmethod
    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """Generate embedding for text."""

    @abstractmethod
    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.3,
        max_tokens: int = 1000,
        operation: str = "chat_completion"
    ) -> ChatCompletionResult:
        """Generate chat completion."""


async def _export_metrics(result: ChatCompletionResult, operation: str) -> None:
    exporter = get_grafana_exporter()
    if exporter.is_enabled():
        await exporter.export_llm_metrics(
            model=result.model,
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
            latency_ms=result.latency_ms,
            operation=operation
        )


class ZAIILLMClient(ILLMClient):
    """
    Z.AI SDK client implementation for GLM 4.7.

    The SDK is synchronous, so calls run in a worker thread to keep the
    event loop free for request handling.
    """

    def __init__(self, api_key: Optional[str] = None):
        self._api_key = api_key or settings.zai_api_key
        if not self._api_key:
            raise ConfigurationException("Z.AI API key not configured")

        self._client = ZaiClient(api_key=self._api_key)
        self._model = settings.llm_model
        self._embedding_model = settings.embedding_model

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """
        Generate embedding for text using the Z.AI embedding model.

        Raises:
            TransientProviderError: If the provider call fails
        """
        try:
            response = await asyncio.to_thread(
                self._client.embeddings.create,
                model=self._embedding_model,
                input=text
            )
        except Exception as e:
            raise TransientProviderError(f"Embedding generation failed: {str(e)}")

        return EmbeddingResult(
            embedding=response.data[0].embedding,
            model=self._embedding_model
        )

    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.3,
        max_tokens: int = 1000,
        operation: str = "chat_completion"
    ) -> ChatCompletionResult:
        """
        Generate chat completion using GLM 4.7.

        Args:
            messages: List of message dicts with 'role' and 'content'
            temperature: Sampling temperature (0-1)
            max_tokens: Maximum tokens to generate
            operation: Operation type for metrics (article_synthesis, ...)

        Raises:
            TransientProviderError: If the provider call fails
        """
        start_time = time.perf_counter()

        try:
            response = await asyncio.to_thread(
                self._client.chat.completions.create,
                model=self._model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens
            )
        except Exception as e:
            raise TransientProviderError(f"Chat completion failed: {str(e)}")

        content = response.choices[0].message.content or ""

        # Z.AI doesn't always return token usage, so we estimate
        result = ChatCompletionResult(
            content=content,
            model=self._model,
            prompt_tokens=len(str(messages)) // 4,
            completion_tokens=len(content) // 4,
            latency_ms=int((time.perf_counter() - start_time) * 1000)
        )
        await _export_metrics(result, operation)
        return result


class OpenAILLMClient(ILLMClient):
    """OpenAI client implementation for GPT models."""

    _TRANSIENT_ERRORS = (
        openai.APITimeoutError,
        openai.APIConnectionError,
        openai.RateLimitError,
        openai.InternalServerError,
    )

    def __init__(self, api_key: Optional[str] = None):
        self._api_key = api_key or settings.openai_api_key
        if not self._api_key:
            raise ConfigurationException("OpenAI API key not configured")

        self._client = AsyncOpenAI(api_key=self._api_key)
        self._model = settings.llm_model
        self._embedding_model = settings.embedding_model

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        try:
            response = await self._client.embeddings.create(
                model=self._embedding_model,
                input=text
            )
        except self._TRANSIENT_ERRORS as e:
            raise TransientProviderError(f"Embedding generation failed: {str(e)}")
        except openai.OpenAIError as e:
            raise LLMException(f"Embedding generation failed: {str(e)}")

        return EmbeddingResult(
            embedding=response.data[0].embedding,
            model=self._embedding_model
        )

    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.3,
        max_tokens: int = 1000,
        operation: str = "chat_completion"
    ) -> ChatCompletionResult:
        start_time = time.perf_counter()

        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens
            )
        except self._TRANSIENT_ERRORS as e:
            raise TransientProviderError(f"Chat completion failed: {str(e)}")
        except openai.OpenAIError as e:
            raise LLMException(f"Chat completion failed: {str(e)}")

        result = ChatCompletionResult(
            content=response.choices[0].message.content or "",
            model=self._model,
            prompt_tokens=response.usage.prompt_tokens,
            completion_tokens=response.usage.completion_tokens,
            latency_ms=int((time.perf_counter() - start_time) * 1000)
        )
        await _export_metrics(result, operation)
        return result


_WORD_RE = re.compile(r"[a-z0-9]+")


class MockLLMClient(ILLMClient):
    """
    Mock LLM client for local runs and tests.

    Embeddings are hashed bag-of-words vectors, L2-normalized, so texts that
    share vocabulary land close together. Article generation echoes the
    category and tags found in the prompt back as well-formed article JSON.
    """

    def __init__(self, dimension: Optional[int] = None, effectiveness_score: float = 0.9):
        self._dimension = dimension or settings.embedding_dimension
        self._effectiveness_score = effectiveness_score

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        vector = np.zeros(self._dimension, dtype=np.float64)
        for word in _WORD_RE.findall(text.lower()):
            digest = hashlib.md5(word.encode()).digest()
            vector[int.from_bytes(digest[:4], "big") % self._dimension] += 1.0

        norm = np.linalg.norm(vector)
        if norm > 0:
            vector = vector / norm
        return EmbeddingResult(embedding=vector.tolist(), model="mock-embedding")

    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.3,
        max_tokens: int = 1000,
        operation: str = "chat_completion"
    ) -> ChatCompletionResult:
        user_content = str(messages[-1].get("content", "")) if messages else ""

        if operation == "article_synthesis":
            category = re.search(r"^Category:\s*(.+)$", user_content, re.MULTILINE)
            tags = re.search(r"^Tags:\s*(.*)$", user_content, re.MULTILINE)
            title = re.search(r"^Title:\s*(.+)$", user_content, re.MULTILINE)
            category_name = category.group(1).strip() if category else "general"
            article = {
                "title": f"How to resolve: {title.group(1).strip() if title else category_name}",
                "summary": f"Recurring {category_name} issue and its verified resolution.",
                "content": "1. Confirm the symptoms described in the ticket.\n"
                           "2. Apply the resolution steps used by support.\n"
                           "3. Verify the issue no longer reproduces.",
                "category": category_name,
                "tags": [t.strip() for t in tags.group(1).split(",") if t.strip()] if tags else [],
                "effectiveness_score": self._effectiveness_score,
            }
            content = f"```json\n{json.dumps(article, indent=2)}\n```"
        else:
            content = "This is a mock LLM response for testing purposes."

        return ChatCompletionResult(
            content=content,
            model="mock-model",
            prompt_tokens=len(user_content.split()),
            completion_tokens=len(content.split()),
            latency_ms=0
        )


def create_llm_client(config: Settings = settings) -> ILLMClient:
    """
    Build the configured LLM client.

    Raises:
        ConfigurationException: If the selected provider has no API key
    """
    if config.mock_llm or config.llm_provider == "mock":
        logger.info("Using mock LLM client")
        return MockLLMClient()
    if config.llm_provider == "openai":
        return OpenAILLMClient(config.openai_api_key)
    return ZAIILLMClient(config.zai_api_key)
