"""
LLM provider routing for structured JSON completions
"""
import os
import json
import time
import logging
from typing import Any, Dict, Optional, Tuple

import ollama
from openai import OpenAI

from .errors import ClassificationError
from .retry import default_is_retryable
from .schema import LLMUsage

logger = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "ollama": "llama3.1",
}


class LLMRouter:
    """Sends one system+user prompt to the configured provider and returns JSON text"""

    def __init__(self, provider: str = "openai", model: Optional[str] = None,
                 api_key: Optional[str] = None, base_url: Optional[str] = None,
                 temperature: float = 0.1, timeout: float = 60.0, debug_mode: bool = False):
        self.provider = provider.lower()
        self.model = model or DEFAULT_MODELS.get(self.provider, "")
        self.api_key = api_key
        self.base_url = base_url
        self.temperature = temperature
        self.timeout = timeout
        self.debug_mode = debug_mode

        self.client = None
        self._initialize_client()

        self.total_calls = 0
        self.successful_calls = 0
        self.failed_calls = 0

    def _initialize_client(self):
        if self.provider == "openai":
            api_key = self.api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                logger.warning("OPENAI_API_KEY is not set, OpenAI calls are disabled")
                return
            self.client = OpenAI(api_key=api_key, base_url=self.base_url, timeout=self.timeout)
        elif self.provider == "ollama":
            self.client = ollama.Client(host=self.base_url, timeout=self.timeout)
        else:
            logger.warning(f"LLM provider {self.provider} is not available or not configured")

    @property
    def available(self) -> bool:
        return self.client is not None

    def _call_openai(self, system: str, user: str, schema: Dict[str, Any],
                     schema_name: str) -> Tuple[str, int, int]:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            temperature=self.temperature,
            response_format={
                "type": "json_schema",
                "json_schema": {"name": schema_name, "strict": True, "schema": schema},
            },
        )
        content = response.choices[0].message.content or ""
        usage = response.usage
        prompt_tokens = usage.prompt_tokens if usage else 0
        completion_tokens = usage.completion_tokens if usage else 0
        return content, prompt_tokens, completion_tokens

    def _call_ollama(self, system: str, user: str, schema: Dict[str, Any],
                     schema_name: str) -> Tuple[str, int, int]:
        response = self.client.chat(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            format=schema,
            options={"temperature": self.temperature},
        )
        content = response["message"]["content"] or ""
        return content, response.get("prompt_eval_count") or 0, response.get("eval_count") or 0

    def complete_json(self, system: str, user: str, schema: Dict[str, Any],
                      schema_name: str = "response") -> Tuple[Dict[str, Any], LLMUsage]:
        """Parsed JSON object plus usage; one call, no retries. Failures raise ClassificationError with the usage"""
        if not self.available:
            raise ClassificationError(
                f"LLM provider {self.provider} is not configured",
                LLMUsage(model=self.model, provider=self.provider, success=False,
                         error="provider_not_configured"))

        self.total_calls += 1
        logger.info(f"🔄 LLM call #{self.total_calls}: {self.provider}/{self.model}, "
                    f"{len(user)} chars of prompt")
        if self.debug_mode:
            logger.info(f"🔍 Full prompt:\n{system}\n{'-' * 50}\n{user}")

        call = self._call_openai if self.provider == "openai" else self._call_ollama
        started = time.monotonic()
        try:
            content, prompt_tokens, completion_tokens = call(system, user, schema, schema_name)
        except Exception as e:
            self.failed_calls += 1
            status = getattr(e, "status_code", None)
            message = f"{type(e).__name__}: {e}" + (f" (status {status})" if status else "")
            logger.error(f"❌ LLM call failed: {message}")
            raise ClassificationError(message, LLMUsage(
                model=self.model, provider=self.provider,
                duration_ms=int((time.monotonic() - started) * 1000),
                success=False, error=message,
            ), retryable=default_is_retryable(e)) from e

        duration_ms = int((time.monotonic() - started) * 1000)
        usage = LLMUsage(
            model=self.model,
            provider=self.provider,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            duration_ms=duration_ms,
        )
        if self.debug_mode:
            logger.info(f"🔍 Full response:\n{content}")

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            self.failed_calls += 1
            usage.success = False
            usage.error = f"invalid_json: {e}"
            logger.error(f"❌ LLM returned invalid JSON: {e}")
            raise ClassificationError("LLM returned invalid JSON", usage) from e
        if not isinstance(data, dict):
            self.failed_calls += 1
            usage.success = False
            usage.error = "invalid_json: not an object"
            raise ClassificationError("LLM response is not a JSON object", usage)

        self.successful_calls += 1
        logger.info(f"✅ LLM call succeeded: {usage.total_tokens} tokens in {duration_ms}ms")
        return data, usage

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "total_calls": self.total_calls,
            "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls,
            "success_rate": self.successful_calls / self.total_calls if self.total_calls > 0 else 0,
        }


def router_from_config(config) -> Optional[LLMRouter]:
    """LLMRouter for a ProcessingConfig, or None when the provider is 'none'"""
    if config.llm_provider == "none":
        return None
    return LLMRouter(
        provider=config.llm_provider,
        model=config.llm_model,
        api_key=config.openai_api_key,
        base_url=config.ollama_base_url if config.llm_provider == "ollama" else None,
        temperature=config.llm_temperature,
        timeout=config.llm_timeout,
    )
