"""
Unit tests for SDK layer.

Tests the OpenAI invoker request shape and error classification.
"""

from unittest.mock import Mock, patch

import httpx
import openai
import pytest

from rlm_lite.core.errors import FatalError, TransientError
from rlm_lite.sdk.openai_client import OpenAIInvoker, classify_error

MESSAGES = [{"role": "user", "content": "Question: What was decided?"}]
_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _response(text="The launch moved to May.", prompt_tokens=100, completion_tokens=20,
              model="gpt-5-mini-2025-08-07"):
    response = Mock()
    response.choices = [Mock(message=Mock(content=text))]
    response.usage.prompt_tokens = prompt_tokens
    response.usage.completion_tokens = completion_tokens
    response.model = model
    return response


def _status_error(status):
    return openai.APIStatusError(
        f"status {status}",
        response=httpx.Response(status, request=_REQUEST),
        body=None
    )


class TestOpenAIInvoker:
    """Test OpenAIInvoker request handling."""

    @patch('rlm_lite.sdk.openai_client.OpenAI')
    def test_default_client_disables_sdk_retries(self, mock_openai_class):
        """Test the default client leaves retries to the router."""
        mock_openai_class.return_value = Mock()

        invoker = OpenAIInvoker(timeout_s=12.0)

        mock_openai_class.assert_called_once_with(timeout=12.0, max_retries=0)
        assert invoker.client is mock_openai_class.return_value

    def test_invalid_timeout(self):
        """Test a non-positive timeout is rejected."""
        with pytest.raises(ValueError, match="timeout_s must be > 0"):
            OpenAIInvoker(timeout_s=0, client=Mock())

    def test_invoke_success(self):
        """Test a successful call returns text, usage and serving model."""
        client = Mock()
        client.chat.completions.create.return_value = _response()
        invoker = OpenAIInvoker(client=client)

        result = invoker.invoke("gpt-5-mini", MESSAGES, {})

        client.chat.completions.create.assert_called_once_with(
            timeout=30.0,
            model="gpt-5-mini",
            messages=MESSAGES
        )
        assert result.text == "The launch moved to May."
        assert result.input_tokens == 100
        assert result.output_tokens == 20
        assert result.model == "gpt-5-mini-2025-08-07"

    def test_params_forwarded(self):
        """Test reasoning effort and temperature reach the request."""
        client = Mock()
        client.chat.completions.create.return_value = _response()
        invoker = OpenAIInvoker(client=client)

        invoker.invoke("gpt-5.2", MESSAGES, {"reasoning_effort": "high"})
        invoker.invoke("gpt-5.2", MESSAGES, {"temperature": 0.2})

        first, second = client.chat.completions.create.call_args_list
        assert first.kwargs["reasoning_effort"] == "high"
        assert "temperature" not in first.kwargs
        assert second.kwargs["temperature"] == 0.2
        assert "reasoning_effort" not in second.kwargs

    def test_empty_payload_rejected(self):
        """Test an empty payload is an error."""
        with pytest.raises(ValueError, match="payload is required"):
            OpenAIInvoker(client=Mock()).invoke("gpt-5.2", [], {})

    def test_empty_text_is_transient(self):
        """Test an empty completion is retryable."""
        client = Mock()
        client.chat.completions.create.return_value = _response(text="  ")

        with pytest.raises(TransientError, match="empty response"):
            OpenAIInvoker(client=client).invoke("gpt-5.2", MESSAGES, {})

    def test_no_choices_is_transient(self):
        """Test a response without choices is retryable."""
        response = _response()
        response.choices = []
        client = Mock()
        client.chat.completions.create.return_value = response

        with pytest.raises(TransientError, match="no choices"):
            OpenAIInvoker(client=client).invoke("gpt-5.2", MESSAGES, {})

    def test_missing_usage_is_fatal(self):
        """Test a response without usage information is fatal."""
        response = _response()
        response.usage = None
        client = Mock()
        client.chat.completions.create.return_value = response

        with pytest.raises(FatalError, match="usage information"):
            OpenAIInvoker(client=client).invoke("gpt-5.2", MESSAGES, {})

    def test_sdk_error_reraised_classified(self):
        """Test SDK errors are never swallowed."""
        client = Mock()
        client.chat.completions.create.side_effect = _status_error(503)

        with pytest.raises(TransientError) as exc_info:
            OpenAIInvoker(client=client).invoke("gpt-5.2", MESSAGES, {})
        assert isinstance(exc_info.value.__cause__, openai.APIStatusError)
        assert exc_info.value.family == "gpt-5.2"


class TestClassifyError:
    """Test mapping SDK exceptions onto routing errors."""

    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    def test_retryable_statuses(self, status):
        """Test rate limits and server errors are transient."""
        assert isinstance(classify_error(_status_error(status), "gpt-5.2"), TransientError)

    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    def test_client_statuses_fatal(self, status):
        """Test authentication and request errors are fatal."""
        error = classify_error(_status_error(status), "gpt-5.2")
        assert isinstance(error, FatalError)
        assert f"HTTP {status}" in str(error)

    def test_timeout_and_connection_transient(self):
        """Test timeouts and connection failures are transient."""
        assert isinstance(classify_error(openai.APITimeoutError(request=_REQUEST), "m"),
                          TransientError)
        assert isinstance(classify_error(openai.APIConnectionError(request=_REQUEST), "m"),
                          TransientError)

    def test_other_errors_fatal(self):
        """Test unexpected errors are fatal."""
        assert isinstance(classify_error(RuntimeError("boom"), "m"), FatalError)
