"""
Dialectic Core — Model Adapter and LLM Factory

`create_llm` is the single point of chat-model construction; it returns a
LangChain BaseChatModel so everything downstream is provider-blind.
`LangChainModelAdapter` wraps that model behind the adapter contract the
executor depends on:

    call_model(prompt_text, config) -> ModelResponse

Provider selection (in priority order):
  1. Explicit `provider` argument / ai_models.provider column
  2. DIALECTIC_LLM_PROVIDER environment variable
  3. llm.provider in dialectic.yaml
  4. Auto-detect from API key env vars

Supported providers:
  openai     — OpenAI (langchain-openai)
  azure      — Azure OpenAI Service (langchain-openai)
  google     — Google Gemini (langchain-google-genai)
  anthropic  — Anthropic (langchain-anthropic)
  fake       — scripted responses (langchain-core FakeListChatModel)

Provider packages are imported lazily; only the one in use must be installed.
"""

from __future__ import annotations

import concurrent.futures
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage

from dialectic.config import get_config_value
from dialectic.errors import ModelCallError, ModelTimeoutError

logger = logging.getLogger("dialectic.llm")


# ═══════════════════════════════════════════════════════════════════════
# Provider detection and aliases
# ═══════════════════════════════════════════════════════════════════════

_BUILTIN_ALIASES: dict[str, dict[str, str]] = {
    "default": {
        "openai": "gpt-4o-mini",
        "azure": "gpt-4o-mini",
        "google": "gemini-2.0-flash",
        "anthropic": "claude-3-5-haiku-latest",
    },
    "strong": {
        "openai": "gpt-4o",
        "azure": "gpt-4o",
        "google": "gemini-2.5-pro",
        "anthropic": "claude-3-5-sonnet-latest",
    },
}

_MODEL_PREFIX_TO_PROVIDER = {
    "gpt-": "openai",
    "o1": "openai",
    "o3": "openai",
    "gemini-": "google",
    "claude-": "anthropic",
}


def detect_provider(config: dict[str, Any] | None = None) -> str:
    explicit = os.environ.get("DIALECTIC_LLM_PROVIDER", "").lower().strip()
    if explicit:
        return explicit

    cfg_default = get_config_value("llm.provider", config, "")
    if cfg_default:
        return str(cfg_default).lower().strip()

    if os.environ.get("AZURE_OPENAI_ENDPOINT") and os.environ.get("AZURE_OPENAI_API_KEY"):
        return "azure"
    if os.environ.get("OPENAI_API_KEY"):
        return "openai"
    if os.environ.get("ANTHROPIC_API_KEY"):
        return "anthropic"
    if os.environ.get("GOOGLE_API_KEY"):
        return "google"

    raise EnvironmentError(
        "No LLM provider detected. Set one of:\n"
        "  DIALECTIC_LLM_PROVIDER=openai|azure|google|anthropic|fake\n"
        "  Or llm.provider in dialectic.yaml\n"
        "  Or a provider API key (OPENAI_API_KEY, ANTHROPIC_API_KEY, GOOGLE_API_KEY, ...)"
    )


def provider_for_model(model: str) -> str | None:
    for prefix, provider in _MODEL_PREFIX_TO_PROVIDER.items():
        if model.startswith(prefix):
            return provider
    return None


def resolve_model(model: str, provider: str, config: dict[str, Any] | None = None) -> str:
    """Logical alias → provider model id. Unknown names pass through."""
    aliases = {**_BUILTIN_ALIASES, **(get_config_value("llm.aliases", config, {}) or {})}
    if model in aliases and provider in aliases[model]:
        return aliases[model][provider]
    return model


# ═══════════════════════════════════════════════════════════════════════
# Provider factories (lazy imports)
# ═══════════════════════════════════════════════════════════════════════

def _create_openai(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_openai import ChatOpenAI
    return ChatOpenAI(model=model, temperature=temperature, **kwargs)


def _create_azure(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_openai import AzureChatOpenAI
    return AzureChatOpenAI(
        azure_deployment=model,
        azure_endpoint=os.environ["AZURE_OPENAI_ENDPOINT"],
        api_key=os.environ.get("AZURE_OPENAI_API_KEY"),
        api_version=os.environ.get("AZURE_OPENAI_VERSION", "2024-12-01-preview"),
        temperature=temperature,
        **kwargs,
    )


def _create_google(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_google_genai import ChatGoogleGenerativeAI
    return ChatGoogleGenerativeAI(model=model, temperature=temperature, **kwargs)


def _create_anthropic(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_anthropic import ChatAnthropic
    return ChatAnthropic(model=model, temperature=temperature, **kwargs)


def _create_fake(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_core.language_models.fake_chat_models import FakeListChatModel
    responses = kwargs.get("responses") or [
        f"# Draft from {model}\n\nA placeholder contribution produced without a live provider."
    ]
    return FakeListChatModel(responses=list(responses))


_FACTORIES = {
    "openai": _create_openai,
    "azure": _create_azure,
    "google": _create_google,
    "anthropic": _create_anthropic,
    "fake": _create_fake,
}


def create_llm(
    model: str = "default",
    temperature: float = 0.7,
    provider: str | None = None,
    config: dict[str, Any] | None = None,
    **kwargs,
) -> BaseChatModel:
    """
    Build a chat model.

    Args:
        model:       Logical alias ("default", "strong") or provider model id.
        temperature: Sampling temperature.
        provider:    Force a provider. If None, inferred from the model
                     name, then auto-detected.
    """
    if not provider:
        provider = provider_for_model(model) or detect_provider(config)
    provider = provider.lower().strip()
    if provider not in _FACTORIES:
        raise ValueError(
            f"Unknown provider '{provider}'. Supported: {', '.join(_FACTORIES)}"
        )
    return _FACTORIES[provider](resolve_model(model, provider, config), temperature, **kwargs)


# ═══════════════════════════════════════════════════════════════════════
# Adapter contract
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class ModelCallConfig:
    model_id: str
    api_identifier: str
    provider: str = ""
    max_output_tokens: int | None = None
    temperature: float = 0.7
    timeout_seconds: float = 120.0


@dataclass
class ModelResponse:
    content: str
    content_type: str = "text/markdown"
    input_tokens: int | None = None
    output_tokens: int | None = None
    error_code: str | None = None
    finish_reason: str | None = None
    processing_time_ms: int | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class ModelAdapter:
    """One model call. Raises ModelCallError / ModelTimeoutError on failure."""

    def call_model(self, prompt_text: str, config: ModelCallConfig) -> ModelResponse:
        raise NotImplementedError


def call_with_timeout(fn, timeout_seconds: float, label: str = "model call"):
    """
    Run `fn()` on a helper thread and give up after timeout_seconds.
    The abandoned call finishes in the background; its result is dropped.
    """
    pool = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="model-call")
    future = pool.submit(fn)
    try:
        return future.result(timeout=timeout_seconds)
    except concurrent.futures.TimeoutError:
        raise ModelTimeoutError(
            f"{label} exceeded {timeout_seconds}s",
            details={"timeout_seconds": timeout_seconds},
        ) from None
    finally:
        pool.shutdown(wait=False)


class LangChainModelAdapter(ModelAdapter):
    """Adapter over any LangChain chat model built by create_llm."""

    def __init__(self, llm_overrides: dict[str, BaseChatModel] | None = None,
                 config: dict[str, Any] | None = None):
        # model_id → prebuilt chat model (tests, scripted runs)
        self._overrides = llm_overrides or {}
        self._config = config
        self._cache: dict[str, BaseChatModel] = {}

    def _llm_for(self, cfg: ModelCallConfig) -> BaseChatModel:
        if cfg.model_id in self._overrides:
            return self._overrides[cfg.model_id]
        if cfg.model_id not in self._cache:
            kwargs: dict[str, Any] = {}
            if cfg.max_output_tokens and cfg.provider not in ("fake",):
                kwargs["max_tokens"] = cfg.max_output_tokens
            self._cache[cfg.model_id] = create_llm(
                cfg.api_identifier, temperature=cfg.temperature,
                provider=cfg.provider or None, config=self._config, **kwargs,
            )
        return self._cache[cfg.model_id]

    def call_model(self, prompt_text: str, config: ModelCallConfig) -> ModelResponse:
        try:
            llm = self._llm_for(config)
        except (ImportError, EnvironmentError, ValueError) as e:
            raise ModelCallError(f"Cannot build model '{config.api_identifier}': {e}") from e

        t0 = time.time()
        try:
            message = call_with_timeout(
                lambda: llm.invoke([HumanMessage(content=prompt_text)]),
                config.timeout_seconds,
                label=f"{config.api_identifier} call",
            )
        except ModelTimeoutError:
            raise
        except Exception as e:
            logger.warning("Model %s call failed: %s", config.api_identifier, e)
            raise ModelCallError(
                f"Model '{config.api_identifier}' call failed: {type(e).__name__}: {e}"
            ) from e
        elapsed_ms = int((time.time() - t0) * 1000)

        content = message.content
        if isinstance(content, list):
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part) for part in content
            )
        usage = getattr(message, "usage_metadata", None) or {}
        meta = getattr(message, "response_metadata", None) or {}
        return ModelResponse(
            content=content,
            input_tokens=usage.get("input_tokens"),
            output_tokens=usage.get("output_tokens"),
            finish_reason=meta.get("finish_reason") or meta.get("stop_reason"),
            processing_time_ms=elapsed_ms,
            raw={
                "content": content,
                "response_metadata": meta,
                "usage_metadata": dict(usage),
                "model": config.api_identifier,
            },
        )
