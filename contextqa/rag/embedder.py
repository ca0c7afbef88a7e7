"""Embedding generation with an ordered cascade of fallback tiers.

Tiers, in default order:
- OllamaEmbeddingTier: dedicated embedding model (optionally a second model)
- GenerativeEmbeddingTier: asks the generation model for numbers (opt-in)
- HashEmbeddingTier: deterministic local vectors, never fails

The whole cascade is retried with exponential backoff when it failed for
transient (network/timeout) reasons only.
"""
import asyncio
import re
from dataclasses import dataclass
from typing import List, Sequence

import httpx
import numpy as np
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from contextqa import config
from contextqa.errors import EmbeddingUnavailable, GenerationUnavailable
from contextqa.llm_client import OllamaClient, is_transient

logger = structlog.get_logger()

NUMBER_PATTERN = re.compile(r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")

LCG_MULTIPLIER = 9301
LCG_INCREMENT = 49297
LCG_MODULUS = 233280


class TierUnavailable(Exception):
    """Raised by a tier that could not produce a vector."""

    def __init__(self, tier: str, reason: str, transient: bool = False):
        self.tier = tier
        self.reason = reason
        self.transient = transient
        super().__init__(f"{tier}: {reason}")


class TransientEmbeddingError(Exception):
    """Every tier failed and at least one failure is worth retrying."""

    def __init__(self, failures: List[TierUnavailable]):
        self.failures = failures
        super().__init__("; ".join(str(f) for f in failures))


@dataclass
class Embedding:
    """An embedding vector and the tier that produced it."""

    vector: List[float]
    tier: str
    attempts: int = 1


def fit_dimension(values: Sequence[float], dimension: int) -> np.ndarray:
    """Truncate or zero-pad a vector to exactly ``dimension`` floats."""
    vector = np.zeros(dimension, dtype=np.float64)
    values = np.asarray(values, dtype=np.float64)[:dimension]
    vector[: len(values)] = values
    return vector


def is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(vector)
    if norm == 0:
        return vector
    return vector / norm


def text_hash(text: str) -> int:
    """32-bit polynomial rolling hash over UTF-16 code units, made positive."""
    encoded = text.encode("utf-16-le", errors="surrogatepass")
    value = 0
    for i in range(0, len(encoded), 2):
        unit = encoded[i] | (encoded[i + 1] << 8)
        value = (value * 31 + unit) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return abs(value)


class EmbeddingTier:
    """Base class for one strategy in the cascade."""

    name = "tier"

    def __init__(self, dimension: int = None):
        self.dimension = dimension or config.VECTOR_DIMENSION

    async def embed(self, text: str) -> List[float]:
        raise NotImplementedError


class OllamaEmbeddingTier(EmbeddingTier):
    """Dedicated embedding endpoint."""

    def __init__(
        self,
        client: OllamaClient,
        model: str = None,
        dimension: int = None,
        normalize: bool = None,
    ):
        super().__init__(dimension)
        self.client = client
        self.model = model or config.EMBEDDING_MODEL
        self.normalize = config.EMBEDDING_NORMALIZE if normalize is None else normalize
        self.name = f"ollama:{self.model}"

    async def embed(self, text: str) -> List[float]:
        try:
            response = await self.client.embeddings(prompt=text, model=self.model)
        except httpx.HTTPError as e:
            raise TierUnavailable(self.name, str(e), transient=is_transient(e)) from e
        except ValueError as e:
            raise TierUnavailable(self.name, f"invalid response: {e}") from e

        if not isinstance(response, dict):
            raise TierUnavailable(
                self.name, f"expected a JSON object, got {type(response).__name__}"
            )

        embedding = response.get("embedding")
        if not isinstance(embedding, list) or not embedding:
            raise TierUnavailable(self.name, "empty or missing embedding returned")
        if not all(is_number(v) for v in embedding):
            raise TierUnavailable(self.name, "embedding is not a flat list of numbers")

        if len(embedding) != self.dimension:
            logger.debug(
                "embedding_dimension_coerced",
                model=self.model,
                returned=len(embedding),
                dimension=self.dimension,
            )

        try:
            vector = fit_dimension(embedding, self.dimension)
        except (TypeError, ValueError) as e:
            raise TierUnavailable(self.name, f"unusable embedding: {e}") from e
        if not np.all(np.isfinite(vector)):
            raise TierUnavailable(self.name, "embedding contains non-finite values")

        if self.normalize:
            vector = l2_normalize(vector)
        return vector.tolist()


class GenerativeEmbeddingTier(EmbeddingTier):
    """Uses the text-generation model as a crude embedder."""

    PROMPT = (
        "Represent the meaning of the following text as exactly {width} "
        "floating-point numbers between -1 and 1. Reply with the numbers only, "
        "separated by commas.\n\nText: {text}\n\nNumbers:"
    )

    def __init__(
        self,
        client: OllamaClient,
        model: str = None,
        dimension: int = None,
        width: int = None,
        drift: float = 0.01,
    ):
        super().__init__(dimension)
        self.client = client
        self.model = model or config.CHAT_MODEL
        self.width = width or config.GENERATIVE_EMBEDDING_WIDTH
        self.drift = drift
        self.name = f"generative:{self.model}"

    def parse(self, response: str) -> List[float]:
        """Pull numbers out of a free-text reply and clamp them to [-1, 1]."""
        numbers = []
        for token in NUMBER_PATTERN.findall(response):
            try:
                numbers.append(float(token))
            except ValueError:
                continue
        numbers = numbers[: self.width]

        if len(numbers) < self.width // 2:
            raise TierUnavailable(
                self.name,
                f"parsed {len(numbers)} numbers, need at least {self.width // 2}",
            )

        return [max(-1.0, min(1.0, n)) for n in numbers]

    def expand(self, values: List[float]) -> np.ndarray:
        """Repeat a short vector cyclically to full width with positional drift."""
        short = np.asarray(values, dtype=np.float64)
        positions = np.arange(self.dimension)
        vector = short[positions % len(short)] + self.drift * np.sin(positions + 1)
        return l2_normalize(vector)

    async def embed(self, text: str) -> List[float]:
        prompt = self.PROMPT.format(width=self.width, text=text)
        try:
            response = await self.client.generate(
                prompt, model=self.model, temperature=0.0
            )
        except GenerationUnavailable as e:
            raise TierUnavailable(
                self.name, str(e), transient=is_transient(e.__cause__)
            ) from e

        return self.expand(self.parse(response)).tolist()


class HashEmbeddingTier(EmbeddingTier):
    """Deterministic pseudo-random vectors seeded from the text hash."""

    name = "local-hash"

    async def embed(self, text: str) -> List[float]:
        return self.vector_for(text)

    def vector_for(self, text: str) -> List[float]:
        seed = text_hash(text)
        values = np.empty(self.dimension, dtype=np.float64)
        for i in range(self.dimension):
            seed = (seed * LCG_MULTIPLIER + LCG_INCREMENT) % LCG_MODULUS
            values[i] = (seed / LCG_MODULUS) * 2 - 1
        return l2_normalize(values).tolist()


def build_default_tiers(
    client: OllamaClient, dimension: int = None
) -> List[EmbeddingTier]:
    """Build the tier cascade described by the configuration."""
    dimension = dimension or config.VECTOR_DIMENSION
    tiers: List[EmbeddingTier] = [
        OllamaEmbeddingTier(client, model=config.EMBEDDING_MODEL, dimension=dimension)
    ]
    if config.EMBEDDING_FALLBACK_MODEL:
        tiers.append(
            OllamaEmbeddingTier(
                client, model=config.EMBEDDING_FALLBACK_MODEL, dimension=dimension
            )
        )
    if config.EMBEDDING_GENERATIVE_FALLBACK:
        tiers.append(GenerativeEmbeddingTier(client, dimension=dimension))
    tiers.append(HashEmbeddingTier(dimension=dimension))
    return tiers


class Embedder:
    """Runs the tier cascade with retries and paced batching."""

    def __init__(
        self,
        tiers: List[EmbeddingTier],
        dimension: int = None,
        max_attempts: int = None,
        retry_backoff: float = None,
        batch_size: int = None,
        batch_delay: float = None,
    ):
        """Initialize the embedder.

        Args:
            tiers: Ordered strategies, tried first to last
            dimension: Output vector length
            max_attempts: Attempts of the whole cascade on transient failure
            retry_backoff: Exponential backoff multiplier in seconds
            batch_size: Items embedded concurrently per batch group
            batch_delay: Pause between batch groups in seconds
        """
        if not tiers:
            raise ValueError("At least one embedding tier is required")

        self.tiers = tiers
        self.dimension = dimension or config.VECTOR_DIMENSION
        self.max_attempts = max_attempts or config.EMBEDDING_MAX_ATTEMPTS
        self.retry_backoff = (
            config.EMBEDDING_RETRY_BACKOFF if retry_backoff is None else retry_backoff
        )
        self.batch_size = batch_size or config.EMBEDDING_BATCH_SIZE
        self.batch_delay = config.EMBEDDING_BATCH_DELAY if batch_delay is None else batch_delay

        logger.info(
            "embedder_initialized",
            tiers=[t.name for t in self.tiers],
            dimension=self.dimension,
            max_attempts=self.max_attempts,
        )

    async def _run_cascade(self, text: str) -> Embedding:
        failures: List[TierUnavailable] = []

        for tier in self.tiers:
            try:
                vector = fit_dimension(await tier.embed(text), self.dimension)
            except TierUnavailable as e:
                failure = e
            except (TypeError, ValueError) as e:
                # A tier returned something that is not a vector
                failure = TierUnavailable(tier.name, f"unusable output: {e}")
            else:
                if failures:
                    logger.info(
                        "embedding_served_by_fallback",
                        tier=tier.name,
                        failed_tiers=[f.tier for f in failures],
                    )
                return Embedding(vector=vector.tolist(), tier=tier.name)

            logger.warning(
                "embedding_tier_failed",
                tier=tier.name,
                reason=failure.reason,
                transient=failure.transient,
            )
            failures.append(failure)

        if any(f.transient for f in failures):
            raise TransientEmbeddingError(failures)

        raise EmbeddingUnavailable(
            "All embedding tiers failed",
            {"failures": [str(f) for f in failures]},
        )

    async def _sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def _log_retry(self, retry_state) -> None:
        logger.warning(
            "embedding_retry_scheduled",
            attempt=retry_state.attempt_number,
            sleep_seconds=retry_state.next_action.sleep if retry_state.next_action else 0,
        )

    async def embed_with_tier(self, text: str) -> Embedding:
        """Embed one text and report which tier served it.

        Raises:
            EmbeddingUnavailable: If every tier failed after all retries
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, min=0),
            retry=retry_if_exception_type(TransientEmbeddingError),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )

        attempts = 0

        async def attempt() -> Embedding:
            nonlocal attempts
            attempts += 1
            return await self._run_cascade(text)

        try:
            embedding = await retrying(attempt)
        except TransientEmbeddingError as e:
            logger.error(
                "embedding_retries_exhausted",
                attempts=self.max_attempts,
                error=str(e),
            )
            raise EmbeddingUnavailable(
                f"Embedding failed after {self.max_attempts} attempts",
                {"failures": [str(f) for f in e.failures]},
            ) from e

        embedding.attempts = attempts
        return embedding

    async def embed(self, text: str) -> List[float]:
        """Embed one text into a vector of exactly ``dimension`` floats."""
        embedding = await self.embed_with_tier(text)
        return embedding.vector

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed texts in paced groups, preserving input order.

        Any failure fails the whole call and cancels the rest of its group.
        """
        if not texts:
            return []

        embeddings: List[List[float]] = []

        for i in range(0, len(texts), self.batch_size):
            if i > 0 and self.batch_delay > 0:
                await self._sleep(self.batch_delay)

            group = texts[i : i + self.batch_size]
            tasks = [asyncio.ensure_future(self.embed_with_tier(t)) for t in group]
            try:
                results = await asyncio.gather(*tasks)
            except Exception:
                # Stop the rest of the group before reporting the failure
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
            embeddings.extend(r.vector for r in results)

            logger.debug(
                "embeddings_batch_generated",
                batch_size=len(group),
                total_so_far=len(embeddings),
                tiers=sorted({r.tier for r in results}),
            )

        return embeddings
