"""
OpenAI reasoning collaborator.

Sends chat completions and classifies failures into transient and fatal
errors for the model router.
"""

import logging
from typing import Any, Dict, Optional

import openai
from openai import OpenAI

from ..core.errors import FatalError, TransientError
from ..core.router import InvokeResult, Messages

logger = logging.getLogger(__name__)


def classify_error(error: Exception, model: str) -> Exception:
    """Map an OpenAI SDK exception onto a routing error.

    Timeouts, connection failures, rate limits and 5xx responses are
    transient; every other API error is fatal.
    """
    if isinstance(error, (openai.APITimeoutError, openai.APIConnectionError)):
        return TransientError(f"{model}: {error}", family=model)
    if isinstance(error, openai.APIStatusError):
        status = error.status_code
        if status == 429 or status >= 500:
            return TransientError(f"{model}: HTTP {status}: {error}", family=model)
        return FatalError(f"{model}: HTTP {status}: {error}", family=model)
    return FatalError(f"{model}: {error}", family=model)


class OpenAIInvoker:
    """Reasoning collaborator backed by OpenAI chat completions.

    Failures are never swallowed: every SDK error is re-raised as a
    TransientError or a FatalError.
    """

    def __init__(self, timeout_s: float = 30.0, client: Optional[OpenAI] = None):
        """Initialize the invoker.

        Args:
            timeout_s: Per-call timeout in seconds
            client: Preconfigured client, a default one is created otherwise

        Raises:
            ValueError: If timeout is not positive
        """
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        self.timeout_s = timeout_s
        # SDK retries are disabled, the router owns retry and fallback
        self.client = client or OpenAI(timeout=timeout_s, max_retries=0)

    def invoke(self, family: str, payload: Messages, params: Dict[str, Any]) -> InvokeResult:
        """Create a chat completion.

        Args:
            family: Model identifier to call
            payload: Chat messages (required)
            params: reasoning_effort and/or temperature

        Returns:
            InvokeResult with text, token usage and the serving model

        Raises:
            ValueError: If payload is empty
            TransientError: On timeout, rate limit, 5xx or an empty response
            FatalError: On authentication or malformed requests
        """
        if not payload:
            raise ValueError("payload is required and cannot be empty")

        request: Dict[str, Any] = {"model": family, "messages": payload}
        if params.get("reasoning_effort") is not None:
            request["reasoning_effort"] = params["reasoning_effort"]
        if params.get("temperature") is not None:
            request["temperature"] = params["temperature"]

        try:
            response = self.client.chat.completions.create(timeout=self.timeout_s, **request)
        except openai.OpenAIError as e:
            raise classify_error(e, family) from e

        if not response.choices:
            raise TransientError(f"{family}: response has no choices", family=family)
        text = response.choices[0].message.content or ""
        if not text.strip():
            raise TransientError(f"{family}: empty response", family=family)

        usage = response.usage
        if not usage:
            raise FatalError(f"{family}: response missing usage information", family=family)

        logger.debug("Completion from %s: %d in / %d out tokens",
                     response.model, usage.prompt_tokens, usage.completion_tokens)
        return InvokeResult(
            text=text,
            input_tokens=usage.prompt_tokens,
            output_tokens=usage.completion_tokens,
            model=response.model or family
        )
