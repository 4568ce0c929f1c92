"""Tests for configuration loading and provider routing."""

import json
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from freight_tender.cli import _load_config
from freight_tender.config import compile_pattern, compile_patterns, load_config, load_patterns
from freight_tender.errors import ClassificationError
from freight_tender.llm_router import LLMRouter, router_from_config
from freight_tender.schema import ProcessingConfig


ENV_VARS = ("LLM_PROVIDER", "LLM_MODEL", "OPENAI_API_KEY", "MAX_PDF_PAGES", "MAX_FILE_SIZE_MB",
            "DEDUPE_WINDOW_DAYS", "BATCH_MAX_FILES", "MAX_REPROCESS_PER_HOUR", "TENDER_LOCK_TIMEOUT")


@pytest.fixture
def clean_env(monkeypatch):
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


class TestLoadConfig:

    def test_defaults(self, clean_env):
        config = load_config()

        assert config.llm_provider == "openai"
        assert config.max_file_size_mb == 10
        assert config.dedupe_window_days == 7
        assert config.reprocess_rate_window == 3600

    def test_yaml_then_env(self, clean_env, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(
            "llm:\n  provider: ollama\n  model: llama3.1\n"
            "limits:\n  batch_max_files: 5\n  max_pdf_pages: 30\n  reprocess_per_hour: 2\n"
            "storage:\n  signed_url_ttl: 600\n",
            encoding="utf-8",
        )
        clean_env.setenv("MAX_PDF_PAGES", "12")
        clean_env.setenv("MAX_REPROCESS_PER_HOUR", "9")
        clean_env.setenv("OPENAI_API_KEY", "")

        config = load_config(str(path))

        assert type(config) is ProcessingConfig
        assert config.llm_provider == "ollama"
        assert config.llm_model == "llama3.1"
        assert config.batch_max_files == 5
        assert config.signed_url_ttl == 600
        assert config.max_pdf_pages == 12
        assert config.reprocess_rate_limit == 9
        assert config.openai_api_key is None

    def test_invalid_env_value_rejected(self, clean_env):
        clean_env.setenv("MAX_PDF_PAGES", "lots")

        with pytest.raises(ValidationError):
            load_config()

    def test_explicit_values_beat_env(self, clean_env):
        clean_env.setenv("LLM_PROVIDER", "ollama")

        assert ProcessingConfig(llm_provider="none").llm_provider == "none"
        assert ProcessingConfig().llm_provider == "ollama"

    def test_cli_overrides_validated(self, clean_env):
        assert _load_config(None, "ollama", "llama3.1").llm_model == "llama3.1"
        with pytest.raises(ValidationError):
            _load_config(None, "gemini", None)

    def test_missing_file(self, clean_env, tmp_path):
        with pytest.raises(OSError):
            load_config(str(tmp_path / "missing.yaml"))


class TestPatterns:

    def test_tables_present(self):
        patterns = load_patterns()

        for section in ("segmenter", "extractor", "normalizer", "learning"):
            assert section in patterns

    def test_flags(self):
        pattern = compile_pattern({"pattern": r"^pickup$", "multiline": True})

        assert pattern.search("Notes\nPICKUP\n")
        assert not compile_pattern({"pattern": "PO", "ignore_case": False}).search("po")

    def test_invalid_pattern_dropped(self):
        assert compile_patterns([{"pattern": "("}, {"pattern": "ok"}])[0].pattern == "ok"


def openai_completion(content, prompt_tokens=10, completion_tokens=5):
    completion = MagicMock()
    message = MagicMock()
    message.message.content = content
    completion.choices = [message]
    completion.usage.prompt_tokens = prompt_tokens
    completion.usage.completion_tokens = completion_tokens
    return completion


class TestLLMRouter:

    @pytest.fixture
    def router(self):
        router = LLMRouter("openai", api_key="sk-test")
        router.client = MagicMock()
        return router

    def test_json_completion(self, router):
        router.client.chat.completions.create.return_value = openai_completion(json.dumps({"stops": []}))

        data, usage = router.complete_json("system", "user", {"type": "object"}, "shipment")

        assert data == {"stops": []}
        assert usage.total_tokens == 15
        assert usage.success
        kwargs = router.client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"]["json_schema"]["strict"] is True
        assert router.get_statistics()["successful_calls"] == 1

    def test_invalid_json(self, router):
        router.client.chat.completions.create.return_value = openai_completion("not json")

        with pytest.raises(ClassificationError) as exc:
            router.complete_json("system", "user", {})

        assert exc.value.usage.error.startswith("invalid_json")
        assert not exc.value.retryable

    @pytest.mark.parametrize("error,retryable", [
        (TimeoutError("request timed out"), True),
        (ValueError("invalid schema"), False),
    ])
    def test_provider_errors(self, router, error, retryable):
        router.client.chat.completions.create.side_effect = error

        with pytest.raises(ClassificationError) as exc:
            router.complete_json("system", "user", {})

        assert exc.value.retryable is retryable
        assert exc.value.usage.success is False
        assert router.failed_calls == 1

    def test_unconfigured(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        router = LLMRouter("openai")

        assert not router.available
        with pytest.raises(ClassificationError) as exc:
            router.complete_json("system", "user", {})
        assert exc.value.usage.error == "provider_not_configured"

    def test_ollama(self):
        router = LLMRouter("ollama", base_url="http://localhost:11434")
        router.client = MagicMock()
        router.client.chat.return_value = {"message": {"content": '{"stops": []}'},
                                           "prompt_eval_count": 40, "eval_count": 8}

        data, usage = router.complete_json("system", "user", {"type": "object"})

        assert data == {"stops": []}
        assert (usage.provider, usage.model, usage.total_tokens) == ("ollama", "llama3.1", 48)
        assert router.client.chat.call_args.kwargs["format"] == {"type": "object"}

    def test_ollama_client_gets_timeout(self, monkeypatch):
        client_cls = MagicMock()
        monkeypatch.setattr("freight_tender.llm_router.ollama.Client", client_cls)

        LLMRouter("ollama", base_url="http://ollama:11434", timeout=12.5)

        client_cls.assert_called_once_with(host="http://ollama:11434", timeout=12.5)

    def test_router_from_config(self):
        assert router_from_config(ProcessingConfig(llm_provider="none")) is None
        router = router_from_config(ProcessingConfig(llm_provider="openai", openai_api_key="sk-test",
                                                     llm_model="gpt-4o"))
        assert router.model == "gpt-4o"
        assert router.available
