"""
Unit tests for the OpenAI generation client.

Tests request building, reply extraction, retry behavior and error mapping.
"""

import json
from unittest.mock import Mock, patch

import httpx
import openai
import pytest

from copyforge.config.loader import OpenAIConfig
from copyforge.core.errors import (
    AuthError,
    ConfigError,
    InvalidResponseError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    UpstreamError,
)
from copyforge.core.retry import RetryPolicy
from copyforge.sdk.openai_client import GenerationClient

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _status_error(cls, status, headers=None, body=None):
    response = httpx.Response(status, headers=headers or {}, request=REQUEST)
    return cls("upstream said no", response=response, body=body)


def _completion(content="Hello", prompt_tokens=10, completion_tokens=5):
    response = Mock()
    response.choices = [Mock(message=Mock(content=content))]
    response.usage = Mock(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
    )
    return response


class TestGenerationClient:
    """Test GenerationClient against a mocked SDK."""

    def setup_method(self):
        """Set up a client that never sleeps."""
        self.sleeps = []
        self.config = OpenAIConfig(api_key="sk-test", model="gpt-4")
        self.retry = RetryPolicy(sleep=self.sleeps.append)

    def _client(self):
        return GenerationClient(self.config, self.retry)

    @patch('copyforge.sdk.openai_client.OpenAI')
    def test_generate_success(self, mock_openai_class):
        """A complete reply returns content and usage."""
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = _completion("Copy", 12, 8)
        mock_openai_class.return_value = mock_client

        reply = self._client().generate("Write a hero", system_message="Be brief")

        assert reply.content == "Copy"
        assert reply.prompt_tokens == 12
        assert reply.completion_tokens == 8
        assert reply.total_tokens == 20
        assert reply.model == "gpt-4"

        kwargs = mock_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4"
        assert kwargs["messages"] == [
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "Write a hero"},
        ]
        assert kwargs["top_p"] == 1
        assert kwargs["frequency_penalty"] == 0.3
        assert kwargs["presence_penalty"] == 0.3

    @patch('copyforge.sdk.openai_client.OpenAI')
    def test_sdk_retries_disabled(self, mock_openai_class):
        """The SDK is built with its own retries turned off."""
        mock_openai_class.return_value.chat.completions.create.return_value = _completion()
        self._client().generate("x")
        mock_openai_class.assert_called_once_with(api_key="sk-test", timeout=60.0, max_retries=0)

    @patch('copyforge.sdk.openai_client.OpenAI')
    def test_missing_api_key(self, mock_openai_class):
        """No key is a configuration error and nothing is sent."""
        client = GenerationClient(OpenAIConfig(api_key=None), self.retry)
        with pytest.raises(ConfigError):
            client.generate("x")
        mock_openai_class.assert_not_called()

    @patch('copyforge.sdk.openai_client.OpenAI')
    def test_auth_error(self, mock_openai_class):
        """HTTP 401 maps to AuthError."""
        mock_openai_class.return_value.chat.completions.create.side_effect = _status_error(
            openai.AuthenticationError, 401
        )
        with pytest.raises(AuthError):
            self._client().generate("x")

    @patch('copyforge.sdk.openai_client.OpenAI')
    def test_rate_limit_header_hint(self, mock_openai_class):
        """HTTP 429 carries the retry-after header value."""
        mock_openai_class.return_value.chat.completions.create.side_effect = _status_error(
            openai.RateLimitError, 429, headers={"retry-after": "20"}
        )
        with pytest.raises(RateLimitError) as excinfo:
            self._client().generate("x")
        assert excinfo.value.retry_after_seconds == 20
        assert self.sleeps == []

    @patch('copyforge.sdk.openai_client.OpenAI')
    def test_rate_limit_body_hint(self, mock_openai_class):
        """A retry hint in the body wins over the header."""
        mock_openai_class.return_value.chat.completions.create.side_effect = _status_error(
            openai.RateLimitError, 429,
            headers={"retry-after": "20"},
            body={"error": {"message": "slow down", "retry_after": 7}},
        )
        with pytest.raises(RateLimitError) as excinfo:
            self._client().generate("x")
        assert excinfo.value.retry_after_seconds == 7

    @patch('copyforge.sdk.openai_client.OpenAI')
    def test_server_error_retried_once(self, mock_openai_class):
        """A 5xx is retried once after a short delay."""
        create = mock_openai_class.return_value.chat.completions.create
        create.side_effect = [
            _status_error(openai.InternalServerError, 500),
            _completion("Recovered"),
        ]
        reply = self._client().generate("x")
        assert reply.content == "Recovered"
        assert create.call_count == 2
        assert self.sleeps == [2.0]

    @patch('copyforge.sdk.openai_client.OpenAI')
    def test_server_error_twice_raises(self, mock_openai_class):
        """A second 5xx surfaces as UpstreamError."""
        create = mock_openai_class.return_value.chat.completions.create
        create.side_effect = _status_error(openai.InternalServerError, 503)
        with pytest.raises(UpstreamError) as excinfo:
            self._client().generate("x")
        assert excinfo.value.status_code == 503
        assert create.call_count == 2

    @patch('copyforge.sdk.openai_client.OpenAI')
    def test_client_error_carries_status(self, mock_openai_class):
        """Other 4xx responses carry their status code."""
        mock_openai_class.return_value.chat.completions.create.side_effect = _status_error(
            openai.BadRequestError, 400, body={"message": "secret upstream detail"}
        )
        with pytest.raises(UpstreamError) as excinfo:
            self._client().generate("x")
        assert excinfo.value.status_code == 400
        assert "secret upstream detail" not in excinfo.value.message

    @patch('copyforge.sdk.openai_client.OpenAI')
    def test_client_errors_not_retried(self, mock_openai_class):
        """A 4xx is sent once; only server errors are retried."""
        create = mock_openai_class.return_value.chat.completions.create
        for status, cls in (
            (400, openai.BadRequestError),
            (404, openai.NotFoundError),
            (422, openai.UnprocessableEntityError),
        ):
            create.reset_mock()
            create.side_effect = _status_error(cls, status)
            with pytest.raises(UpstreamError):
                self._client().generate("x")
            assert create.call_count == 1
        assert self.sleeps == []

    @patch('copyforge.sdk.openai_client.OpenAI')
    def test_undecodable_body(self, mock_openai_class):
        """A 200 with a body that is not JSON is an invalid response."""
        create = mock_openai_class.return_value.chat.completions.create
        create.side_effect = json.JSONDecodeError("Expecting property name", "{not json", 1)
        with pytest.raises(InvalidResponseError):
            self._client().generate("x")
        assert create.call_count == 1

    @patch('copyforge.sdk.openai_client.OpenAI')
    def test_timeout_not_retried(self, mock_openai_class):
        """Timeouts are terminal."""
        create = mock_openai_class.return_value.chat.completions.create
        create.side_effect = openai.APITimeoutError(request=REQUEST)
        with pytest.raises(RequestTimeoutError):
            self._client().generate("x")
        assert create.call_count == 1

    @patch('copyforge.sdk.openai_client.OpenAI')
    def test_connection_error(self, mock_openai_class):
        """Connection failures map to NetworkError."""
        mock_openai_class.return_value.chat.completions.create.side_effect = (
            openai.APIConnectionError(request=REQUEST)
        )
        with pytest.raises(NetworkError):
            self._client().generate("x")

    @patch('copyforge.sdk.openai_client.OpenAI')
    def test_missing_content(self, mock_openai_class):
        """A reply without content is invalid."""
        mock_openai_class.return_value.chat.completions.create.return_value = _completion(content=None)
        with pytest.raises(InvalidResponseError):
            self._client().generate("x")

    @patch('copyforge.sdk.openai_client.OpenAI')
    def test_missing_usage(self, mock_openai_class):
        """A reply without usage is invalid."""
        response = _completion()
        response.usage = None
        mock_openai_class.return_value.chat.completions.create.return_value = response
        with pytest.raises(InvalidResponseError):
            self._client().generate("x")


class TestRetryPolicy:
    """Test the retry policy on its own."""

    def test_non_retryable_propagates_immediately(self):
        """Errors outside retry_on are raised on first failure."""
        calls = []

        def fail():
            calls.append(1)
            raise AuthError("no")

        with pytest.raises(AuthError):
            RetryPolicy(sleep=lambda s: None).call(fail)
        assert len(calls) == 1

    def test_predicate_limits_retries(self):
        """A retryable type is still raised at once when retry_if rejects it."""
        calls = []

        def fail():
            calls.append(1)
            raise UpstreamError("bad request", status_code=400)

        with pytest.raises(UpstreamError):
            RetryPolicy(sleep=lambda s: None).call(fail)
        assert len(calls) == 1

    def test_invalid_attempts(self):
        """At least one attempt is required."""
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
