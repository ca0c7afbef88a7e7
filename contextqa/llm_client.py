"""Ollama client wrapper for the embedding and generation capabilities."""
from typing import Any, Dict, List, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from contextqa import config
from contextqa.errors import GenerationUnavailable

logger = structlog.get_logger()

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
HEALTH_TIMEOUT = 5.0


def is_transient(error: BaseException) -> bool:
    """Return True for network, timeout and retryable HTTP status failures."""
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    return False


class OllamaClient:
    """Async client for interacting with Ollama API."""

    def __init__(
        self,
        base_url: str = None,
        embedding_timeout: float = None,
        generation_timeout: float = None,
        max_attempts: int = None,
        retry_backoff: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Ollama client.

        Args:
            base_url: Ollama API base URL (defaults to config.OLLAMA_BASE_URL)
            embedding_timeout: Timeout for embedding requests in seconds
            generation_timeout: Timeout for generation requests in seconds
            max_attempts: Attempts per generation call on transient failures
            retry_backoff: Exponential backoff multiplier in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url or config.OLLAMA_BASE_URL
        self.embedding_timeout = embedding_timeout or config.EMBEDDING_TIMEOUT
        self.generation_timeout = generation_timeout or config.GENERATION_TIMEOUT
        self.max_attempts = max_attempts or config.GENERATION_MAX_ATTEMPTS
        self.retry_backoff = (
            config.EMBEDDING_RETRY_BACKOFF if retry_backoff is None else retry_backoff
        )
        self.transport = transport

    async def _request_json(
        self, method: str, path: str, timeout: float, payload: Optional[Dict] = None
    ) -> Any:
        """Send one request and return the decoded JSON body.

        Raises:
            httpx.HTTPError: On transport errors and non-2xx responses
            ValueError: If the body is not valid JSON
        """
        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            response = await client.request(method, f"{self.base_url}{path}", json=payload)
            response.raise_for_status()
            return response.json()

    async def embeddings(self, prompt: str, model: str = None) -> Any:
        """Request an embedding vector for ``prompt``.

        The decoded body is returned as-is; callers validate its shape.

        Raises:
            httpx.HTTPError: On API errors
            ValueError: If the body is not valid JSON
        """
        model = model or config.EMBEDDING_MODEL
        logger.debug("ollama_embedding_request", model=model, prompt_length=len(prompt))

        try:
            data = await self._request_json(
                "POST",
                "/api/embeddings",
                self.embedding_timeout,
                {"model": model, "prompt": prompt},
            )
        except httpx.HTTPError as e:
            logger.error("ollama_embedding_error", error=str(e), model=model)
            raise

        embedding = data.get("embedding") if isinstance(data, dict) else None
        logger.debug(
            "ollama_embedding_response",
            model=model,
            body_type=type(data).__name__,
            dimension=len(embedding) if isinstance(embedding, list) else None,
        )
        return data

    async def _generate_once(self, payload: Dict) -> str:
        data = await self._request_json(
            "POST", "/api/generate", self.generation_timeout, payload
        )
        if not isinstance(data, dict):
            raise ValueError(f"unexpected generate response: {type(data).__name__}")
        return data.get("response") or ""

    async def generate(
        self,
        prompt: str,
        model: str = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        top_p: Optional[float] = None,
        top_k: Optional[int] = None,
        stop: Optional[List[str]] = None,
    ) -> str:
        """Send a single-prompt completion request to Ollama.

        Transient failures (connection errors, timeouts, 429/5xx) are retried
        with exponential backoff.

        Args:
            prompt: Full prompt text
            model: Model to use (defaults to config.CHAT_MODEL)
            temperature: Sampling temperature
            max_tokens: Maximum number of tokens to generate
            top_p: Nucleus sampling parameter
            top_k: Top-k sampling parameter
            stop: Optional stop sequences

        Returns:
            Generated text

        Raises:
            GenerationUnavailable: If the request fails after all attempts
        """
        model = model or config.CHAT_MODEL

        options = {
            "temperature": config.GENERATION_TEMPERATURE if temperature is None else temperature,
            "num_predict": max_tokens or config.GENERATION_MAX_TOKENS,
            "top_p": config.GENERATION_TOP_P if top_p is None else top_p,
            "top_k": top_k or config.GENERATION_TOP_K,
        }
        if stop:
            options["stop"] = stop

        payload = {
            "model": model,
            "prompt": prompt,
            "stream": False,
            "options": options,
        }

        logger.info(
            "ollama_generate_request",
            model=model,
            prompt_length=len(prompt),
        )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, min=0),
            retry=retry_if_exception(is_transient),
            reraise=True,
        )

        try:
            text = await retrying(self._generate_once, payload)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "ollama_generate_error",
                error=str(e),
                error_type=type(e).__name__,
                model=model,
            )
            raise GenerationUnavailable(
                f"Generation failed: {e}", {"model": model}
            ) from e

        logger.info(
            "ollama_generate_response",
            model=model,
            response_length=len(text),
        )

        return text

    async def list_models(self) -> List[str]:
        """Names of the models pulled on the Ollama server.

        Raises:
            httpx.HTTPError: On API errors
            ValueError: If the body is not valid JSON
        """
        try:
            data = await self._request_json("GET", "/api/tags", HEALTH_TIMEOUT)
        except httpx.HTTPError as e:
            logger.error("ollama_list_models_error", error=str(e))
            raise

        models = data.get("models") if isinstance(data, dict) else None
        return [m["name"] for m in models or [] if isinstance(m, dict) and "name" in m]

    async def is_healthy(self, model: str = None) -> bool:
        """Check that Ollama is reachable and the generation model is pulled."""
        model = model or config.CHAT_MODEL
        try:
            models = await self.list_models()
        except (httpx.HTTPError, ValueError):
            return False
        return model in models
