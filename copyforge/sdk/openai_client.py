"""
OpenAI chat completion client for block generation.

Sends one prompt, returns the text and token usage, and converts every SDK
failure into the pipeline's error taxonomy.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import openai
from openai import OpenAI

from ..config.loader import OpenAIConfig
from ..core.errors import (
    AuthError,
    ConfigError,
    InvalidResponseError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    UpstreamError,
)
from ..core.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_TOP_P = 1
DEFAULT_FREQUENCY_PENALTY = 0.3
DEFAULT_PRESENCE_PENALTY = 0.3


@dataclass(frozen=True)
class GenerationReply:
    """Text and token usage of one completed call."""
    content: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    model: str


class GenerationClient:
    """Chat completion client with explicit retry policy.

    SDK-level retries are disabled; server errors are retried by `retry`
    only. Either a full reply with usage is returned or an error is raised.
    """

    def __init__(self, config: Optional[OpenAIConfig] = None, retry: Optional[RetryPolicy] = None):
        self.config = config or OpenAIConfig()
        self.retry = retry or RetryPolicy()
        self._client = None

    def _get_client(self) -> OpenAI:
        if not self.config.api_key:
            raise ConfigError(
                "OpenAI API key is not configured. Set openai.api_key or OPENAI_API_KEY."
            )
        if self._client is None:
            self._client = OpenAI(
                api_key=self.config.api_key,
                timeout=self.config.timeout_seconds,
                max_retries=0,
            )
        return self._client

    def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        system_message: Optional[str] = None,
        top_p: float = DEFAULT_TOP_P,
        frequency_penalty: float = DEFAULT_FREQUENCY_PENALTY,
        presence_penalty: float = DEFAULT_PRESENCE_PENALTY,
    ) -> GenerationReply:
        """Generate a completion for one prompt.

        Args:
            prompt: User message
            model: Model override (defaults to configured model)
            temperature: Sampling temperature override
            max_tokens: Completion token limit override
            system_message: System message override

        Returns:
            GenerationReply with content and usage

        Raises:
            ConfigError: If no API key is configured
            AuthError: On HTTP 401
            RateLimitError: On HTTP 429
            UpstreamError: On other HTTP errors (5xx after one retry)
            NetworkError: On connection failure
            RequestTimeoutError: When the request times out
            InvalidResponseError: When content or usage is missing
        """
        client = self._get_client()
        model = model or self.config.model
        request = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_message or self.config.system_message},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.config.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.config.max_tokens,
            "top_p": top_p,
            "frequency_penalty": frequency_penalty,
            "presence_penalty": presence_penalty,
        }

        response = self.retry.call(lambda: self._send(client, request))
        return self._to_reply(response, model)

    def _send(self, client: OpenAI, request: dict):
        try:
            return client.chat.completions.create(**request)
        except openai.APITimeoutError as e:
            logger.error("event=openai.timeout | model=%s", request["model"])
            raise RequestTimeoutError("Request to OpenAI timed out.") from e
        except openai.APIConnectionError as e:
            logger.error("event=openai.connection_failed | error=%s", e)
            raise NetworkError("Could not connect to OpenAI.") from e
        except openai.AuthenticationError as e:
            logger.error("event=openai.auth_failed | body=%.500s", e.body)
            raise AuthError("OpenAI rejected the API key.") from e
        except openai.RateLimitError as e:
            retry_after = _retry_after(e)
            logger.warning("event=openai.rate_limited | retry_after=%s | body=%.500s", retry_after, e.body)
            raise RateLimitError(
                "OpenAI rate limit exceeded. Try again later.",
                retry_after_seconds=retry_after,
            ) from e
        except openai.APIStatusError as e:
            logger.error(
                "event=openai.http_error | status=%s | body=%.500s",
                e.status_code, e.body,
            )
            if e.status_code >= 500:
                message = f"OpenAI server error (HTTP {e.status_code})."
            else:
                message = f"OpenAI request failed (HTTP {e.status_code})."
            raise UpstreamError(message, status_code=e.status_code) from e
        except openai.APIError as e:
            logger.error("event=openai.undecodable_response | error=%s", e)
            raise InvalidResponseError("OpenAI response could not be decoded.") from e
        except ValueError as e:
            # json.JSONDecodeError from the SDK on a 200 with a broken body
            logger.error("event=openai.undecodable_response | error=%s", e)
            raise InvalidResponseError("OpenAI response is not valid JSON.") from e

    @staticmethod
    def _to_reply(response, model: str) -> GenerationReply:
        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError):
            content = None
        usage = getattr(response, "usage", None)
        if not content or usage is None:
            logger.error("event=openai.invalid_response | model=%s", model)
            raise InvalidResponseError("OpenAI response is missing content or usage.")

        return GenerationReply(
            content=content,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            model=model,
        )


def _retry_after(error) -> Optional[int]:
    """Read a retry hint from the response body or the retry-after header."""
    body = error.body
    if isinstance(body, dict):
        hint = body.get("retry_after")
        if hint is None and isinstance(body.get("error"), dict):
            hint = body["error"].get("retry_after")
        if hint is not None:
            try:
                return int(float(hint))
            except (TypeError, ValueError):
                pass
    header = error.response.headers.get("retry-after") if error.response is not None else None
    if header:
        try:
            return int(float(header))
        except ValueError:
            return None
    return None
