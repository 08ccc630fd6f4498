"""
Learning Value Objects
=======================

Immutable value objects for the learning domain:

- LearningPolicy: typed, validated thresholds (env defaults + YAML overrides)
- RetryPolicy: exponential backoff with jitter for provider calls
- GeneratedArticle: the only accepted shape of generation output
- ArticlePromptBuilder: prompt text for article synthesis
"""

import asyncio
import hashlib
import json
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from kb_learning.config import Settings
from kb_learning.core import MalformedOutputError, TransientProviderError
from kb_learning.learning.domain.entities import Pattern

T = TypeVar("T")


def compute_provenance_key(ticket_ids: Iterable[str]) -> str:
    """
    Deterministic idempotency key for a set of source tickets.

    Order-insensitive: the same tickets always yield the same key.
    """
    canonical = "\n".join(sorted(set(ticket_ids)))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ========== Policy (configuration) ==========

class ClusteringPolicy(BaseModel):
    """How resolved tickets are grouped into patterns."""
    min_cluster_size: int = Field(default=2, ge=1)
    similarity_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    lookback_days: int = Field(default=30, ge=0)


class PublishingPolicy(BaseModel):
    """When a generated article goes live without review."""
    publish_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    auto_publish_enabled: bool = True


class GatePolicy(BaseModel):
    """Auto-response confidence thresholds."""
    high_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    medium_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    auto_response_enabled: bool = False

    @model_validator(mode="after")
    def validate_order(self) -> "GatePolicy":
        if self.medium_threshold > self.high_threshold:
            raise ValueError("medium_threshold cannot exceed high_threshold")
        return self


class RetrySettings(BaseModel):
    """Provider retry and queue retry limits."""
    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=30.0, ge=0)
    jitter: float = Field(default=0.5, ge=0, le=1)
    queue_retry_limit: int = Field(default=3, ge=1)


class ScoringPolicy(BaseModel):
    """Effectiveness score weights and usage-trend parameters."""
    vote_weight: float = Field(default=0.5, ge=0)
    trend_weight: float = Field(default=0.2, ge=0)
    resolution_weight: float = Field(default=0.3, ge=0)
    trend_window_days: int = Field(default=30, ge=1)
    trend_half_saturation: float = Field(default=5.0, gt=0)

    @model_validator(mode="after")
    def validate_weights(self) -> "ScoringPolicy":
        if self.vote_weight + self.trend_weight + self.resolution_weight <= 0:
            raise ValueError("at least one scoring weight must be positive")
        return self


class LearningPolicy(BaseModel):
    """
    Complete learning policy.

    Defaults come from environment settings; the YAML policy file overrides
    any subset of keys.
    """
    clustering: ClusteringPolicy = Field(default_factory=ClusteringPolicy)
    publishing: PublishingPolicy = Field(default_factory=PublishingPolicy)
    gate: GatePolicy = Field(default_factory=GatePolicy)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    scoring: ScoringPolicy = Field(default_factory=ScoringPolicy)

    @classmethod
    def from_settings(cls, config: Settings) -> "LearningPolicy":
        return cls(
            clustering=ClusteringPolicy(
                min_cluster_size=config.min_cluster_size,
                similarity_threshold=config.similarity_threshold,
                lookback_days=config.learning_lookback_days,
            ),
            publishing=PublishingPolicy(
                publish_threshold=config.publish_threshold,
                auto_publish_enabled=config.auto_publish_enabled,
            ),
            gate=GatePolicy(
                high_threshold=config.auto_response_high_threshold,
                medium_threshold=config.auto_response_medium_threshold,
                auto_response_enabled=config.auto_response_enabled,
            ),
            retry=RetrySettings(
                max_attempts=config.retry_max_attempts,
                base_delay_seconds=config.retry_base_delay_seconds,
                max_delay_seconds=config.retry_max_delay_seconds,
                jitter=config.retry_jitter,
                queue_retry_limit=config.queue_retry_limit,
            ),
        )

    def merged_with(self, overrides: dict) -> "LearningPolicy":
        """Return a new policy with the given (partial, nested) overrides applied."""
        data = self.model_dump()
        for section, values in (overrides or {}).items():
            if section not in data:
                raise ValueError(f"Unknown learning policy section: {section}")
            if not isinstance(values, dict):
                raise ValueError(f"Learning policy section '{section}' must be a mapping")
            data[section].update(values)
        return LearningPolicy(**data)

    @property
    def retry_policy(self) -> "RetryPolicy":
        return RetryPolicy(
            max_attempts=self.retry.max_attempts,
            base_delay=self.retry.base_delay_seconds,
            max_delay=self.retry.max_delay_seconds,
            jitter=self.retry.jitter,
        )


# ========== Retry ==========

@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff with proportional jitter.

    delay(n) = min(max_delay, base_delay * 2**(n-1)), then scaled by a random
    factor in [1 - jitter, 1 + jitter] and capped at max_delay again.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.5

    def delay_for(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Delay in seconds before retrying after the given (1-based) attempt."""
        raw = min(self.max_delay, self.base_delay * (2 ** max(0, attempt - 1)))
        factor = 1.0 + self.jitter * (2.0 * rand() - 1.0)
        return max(0.0, min(self.max_delay, raw * factor))

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        retry_on: Tuple[Type[BaseException], ...] = (TransientProviderError,),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    ) -> T:
        """
        Run operation, retrying on the given exception types.

        The last exception propagates once max_attempts is reached.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except retry_on as e:
                if attempt >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                if on_retry is not None:
                    on_retry(attempt, e, delay)
                await sleep(delay)
                attempt += 1


# ========== Generation output ==========

class GeneratedArticle(BaseModel):
    """
    Validated article produced by the generation service.

    Every field is required. effectiveness_score accepts numbers and numeric
    strings in [0, 1]; tags must be a list of strings.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    title: str = Field(..., min_length=1, max_length=500)
    summary: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1, max_length=100)
    tags: List[str]
    effectiveness_score: float = Field(..., ge=0.0, le=1.0)

    @field_validator("effectiveness_score", mode="before")
    @classmethod
    def reject_booleans(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("effectiveness_score must be a number")
        return v

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, v: List[str]) -> List[str]:
        seen = []
        for tag in v:
            tag = tag.strip().lower()
            if tag and tag not in seen:
                seen.append(tag)
        return seen

    @classmethod
    def from_llm_output(cls, content: str) -> "GeneratedArticle":
        """
        Parse raw completion text into a GeneratedArticle.

        Raises:
            MalformedOutputError: If the text is not a JSON object with the
                required fields and types
        """
        text = (content or "").strip()
        if "```json" in text:
            text = text.split("```json")[1].split("```")[0].strip()
        elif "```" in text:
            text = text.split("```")[1].split("```")[0].strip()

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedOutputError(f"Generation output is not valid JSON: {e}")

        if not isinstance(data, dict):
            raise MalformedOutputError("Generation output must be a JSON object")

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            missing = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
            raise MalformedOutputError(
                f"Generation output failed schema validation: {', '.join(missing)}",
                details={"errors": [err["msg"] for err in e.errors()], "fields": missing}
            )


# ========== Prompts ==========

class ArticlePromptBuilder:
    """Builds prompts for knowledge article synthesis."""

    MAX_TICKETS = 10
    MAX_TEXT_CHARS = 1500

    SYSTEM_PROMPT = """You are a knowledge base author for a customer support team.

You receive a group of resolved support tickets that describe the same
recurring problem. Write ONE reusable knowledge base article that lets an
agent or customer solve the problem without opening a new ticket.

Guidelines:
1. Generalize: no customer names, ticket numbers or one-off details
2. Put the verified resolution steps in order, as a numbered list
3. Mention the symptoms so the article can be found by search
4. effectiveness_score is your confidence (0.0 to 1.0) that the steps
   resolve the problem for most future tickets

Respond ONLY in JSON format:
{
    "title": "short, searchable title",
    "summary": "one or two sentence summary",
    "content": "full article body (markdown)",
    "category": "category name",
    "tags": ["tag1", "tag2"],
    "effectiveness_score": 0.85
}"""

    @classmethod
    def build_prompt(cls, pattern: Pattern) -> str:
        """Build the user prompt from a pattern's member tickets."""
        lines = [
            f"Category: {pattern.category}",
            f"Tags: {', '.join(pattern.tags)}",
            f"Tickets in this pattern: {pattern.size}",
            "",
            f"Representative problem:\n{pattern.representative_text[:cls.MAX_TEXT_CHARS]}",
            "",
        ]
        for index, ticket in enumerate(pattern.tickets[:cls.MAX_TICKETS], 1):
            lines.extend([
                f"--- Ticket {index} ---",
                f"Title: {ticket.title}",
                f"Problem: {ticket.description[:cls.MAX_TEXT_CHARS]}",
                f"Resolution: {ticket.resolution[:cls.MAX_TEXT_CHARS]}",
                "",
            ])
        lines.append("Write the knowledge base article (respond with JSON only):")
        return "\n".join(lines)

    @classmethod
    def build_messages(cls, pattern: Pattern) -> List[dict]:
        return [
            {"role": "system", "content": cls.SYSTEM_PROMPT},
            {"role": "user", "content": cls.build_prompt(pattern)},
        ]
