from __future__ import annotations

import openai
from openai import OpenAI

from prsentry_core.errors import (
    AuthError,
    ModelError,
    ModelTimeoutError,
    NetworkError,
    RateLimitError,
    ServerError,
)
from prsentry_core.providers.base import BaseModelClient


def _retry_after(error: openai.APIStatusError) -> float | None:
    headers = getattr(error.response, "headers", None) or {}
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


class OpenAICompatibleClient(BaseModelClient):
    """Chat-completions client for any OpenAI-compatible endpoint (OpenAI, DashScope, vLLM...)."""

    # Low temperature leans toward deterministic, structured JSON output.
    TEMPERATURE = 0.1
    MAX_TOKENS = 2048

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        timeout: float = 60.0,
        temperature: float | None = None,
        max_tokens: int | None = None,
        **retry_options,
    ):
        super().__init__(**retry_options)
        self.model = model
        self.temperature = self.TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or self.MAX_TOKENS
        self.timeout = timeout
        # The SDK's own retries are disabled; BaseModelClient owns the policy.
        self.client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)

    @classmethod
    def from_config(cls, config, **retry_options) -> OpenAICompatibleClient:
        return cls(
            api_key=config.api_key,
            model=config.model_id,
            base_url=config.api_base,
            timeout=config.request_timeout,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            max_attempts=config.max_attempts,
            base_delay=config.backoff_base,
            max_delay=config.backoff_max,
            **retry_options,
        )

    def _call_api(self, system_prompt: str, user_prompt: str, timeout: float | None = None) -> str:
        options = {} if timeout is None else {"timeout": min(timeout, self.timeout)}
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                **options,
            )
        # Order matters: APITimeoutError subclasses APIConnectionError, and the
        # status errors all subclass APIStatusError.
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise AuthError(f"Completion endpoint rejected the credentials: {e}", e.status_code) from e
        except openai.RateLimitError as e:
            raise RateLimitError(f"Rate limited: {e}", e.status_code, retry_after=_retry_after(e)) from e
        except openai.APITimeoutError as e:
            raise ModelTimeoutError(f"Completion call timed out: {e}") from e
        except openai.APIConnectionError as e:
            raise NetworkError(f"Could not reach completion endpoint: {e}") from e
        except openai.APIStatusError as e:
            if e.status_code >= 500:
                raise ServerError(f"Completion endpoint error {e.status_code}: {e}", e.status_code) from e
            raise ModelError(f"Completion request rejected ({e.status_code}): {e}", e.status_code) from e
        except openai.APIError as e:
            # Anything else the SDK raises, e.g. a response that fails its own validation.
            raise ModelError(f"Completion call failed: {type(e).__name__}: {e}") from e

        if not response.choices:
            raise ModelError("Completion response contained no choices.")
        return response.choices[0].message.content or ""
