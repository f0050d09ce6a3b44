"""
Advisory Engagement Platform
LLM Gateway.

Provider-agnostic LLM router with:
    - Multi-provider support (Anthropic Claude, OpenAI, Gemini, local stub)
    - Auto-retry with exponential backoff
    - Provider fallback chain on failure
    - Token and latency logging

Every analysis assistant depends only on ``complete(instruction, context)``;
tests inject any object exposing that method.

Usage:
    from advisory.ai.gateway import LLMGateway
    gw = LLMGateway()
    text = gw.complete("You are a requirements analyst...", "Client request: ...")
"""

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod

from advisory.core.exceptions import GenerativeBackendError

logger = logging.getLogger(__name__)


# ── Provider Abstract Base ────────────────────────────────────────────────────

class LLMProvider(ABC):
    """Abstract interface for LLM providers."""

    @abstractmethod
    def chat(self, messages: list, model: str, **kwargs) -> dict:
        """
        Send a chat completion request.

        Args:
            messages: List of {"role": "...", "content": "..."} dicts.
            model: Model identifier string.
            **kwargs: temperature, max_tokens, etc.

        Returns:
            dict with keys: content, prompt_tokens, completion_tokens, model
        """
        ...


# ── Anthropic Provider ────────────────────────────────────────────────────────

class AnthropicProvider(LLMProvider):
    """Claude API (Anthropic) provider."""

    def __init__(self):
        self.api_key = os.getenv("ANTHROPIC_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                import anthropic
            except ImportError as exc:
                raise GenerativeBackendError(
                    "anthropic package not installed. Run: pip install anthropic"
                ) from exc
            self._client = anthropic.Anthropic(api_key=self.api_key)
        return self._client

    def chat(self, messages: list, model: str = "claude-3-5-haiku-20241022", **kwargs) -> dict:
        client = self._get_client()

        system_msg = ""
        chat_messages = []
        for m in messages:
            if m["role"] == "system":
                system_msg = m["content"]
            else:
                chat_messages.append(m)

        params = {
            "model": model,
            "messages": chat_messages,
            "max_tokens": kwargs.get("max_tokens", 4096),
            "temperature": kwargs.get("temperature", 0.3),
        }
        if system_msg:
            params["system"] = system_msg

        response = client.messages.create(**params)

        return {
            "content": response.content[0].text,
            "prompt_tokens": response.usage.input_tokens,
            "completion_tokens": response.usage.output_tokens,
            "model": model,
        }


# ── OpenAI Provider ───────────────────────────────────────────────────────────

class OpenAIProvider(LLMProvider):
    """OpenAI GPT provider."""

    def __init__(self):
        self.api_key = os.getenv("OPENAI_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                import openai
            except ImportError as exc:
                raise GenerativeBackendError(
                    "openai package not installed. Run: pip install openai"
                ) from exc
            self._client = openai.OpenAI(api_key=self.api_key)
        return self._client

    def chat(self, messages: list, model: str = "gpt-4o-mini", **kwargs) -> dict:
        client = self._get_client()
        response = client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=kwargs.get("max_tokens", 4096),
            temperature=kwargs.get("temperature", 0.3),
        )
        choice = response.choices[0]
        return {
            "content": choice.message.content or "",
            "prompt_tokens": response.usage.prompt_tokens,
            "completion_tokens": response.usage.completion_tokens,
            "model": model,
        }


# ── Google Gemini Provider ───────────────────────────────────────────────────

class GeminiProvider(LLMProvider):
    """
    Google Gemini API provider.

    Environment:
        GEMINI_API_KEY — obtain at https://aistudio.google.com/apikey
    """

    def __init__(self):
        self.api_key = os.getenv("GEMINI_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                from google import genai
            except ImportError as exc:
                raise GenerativeBackendError(
                    "google-genai package not installed. Run: pip install google-genai"
                ) from exc
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def chat(self, messages: list, model: str = "gemini-2.5-flash", **kwargs) -> dict:
        client = self._get_client()
        from google.genai import types

        system_parts = []
        contents = []
        for m in messages:
            if m["role"] == "system":
                system_parts.append(m["content"])
            else:
                # Gemini uses "user" and "model" roles
                role = "model" if m["role"] == "assistant" else "user"
                contents.append(
                    types.Content(role=role, parts=[types.Part(text=m["content"])])
                )

        config = types.GenerateContentConfig(
            temperature=kwargs.get("temperature", 0.3),
            max_output_tokens=kwargs.get("max_tokens", 4096),
        )
        if system_parts:
            config.system_instruction = "\n\n".join(system_parts)

        response = client.models.generate_content(model=model, contents=contents, config=config)

        prompt_tokens = getattr(response.usage_metadata, "prompt_token_count", 0) or 0
        completion_tokens = getattr(response.usage_metadata, "candidates_token_count", 0) or 0

        return {
            "content": response.text or "",
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "model": model,
        }


# ── Local Stub Provider (for demos without API keys) ─────────────────────────

class LocalStubProvider(LLMProvider):
    """
    Deterministic canned answers for local demos.

    Only used when the configured model is ``local-stub``; an unconfigured
    gateway raises instead so the assistants take their heuristic paths.
    """

    def chat(self, messages: list, model: str = "local-stub", **kwargs) -> dict:
        system_msg = " ".join(m["content"] for m in messages if m["role"] == "system")
        user_msg = " ".join(m["content"] for m in messages if m["role"] == "user")
        content = self._generate_stub_response(system_msg.lower())
        return {
            "content": content,
            "prompt_tokens": len((system_msg + user_msg).split()) * 2,  # rough estimate
            "completion_tokens": len(content.split()) * 2,
            "model": "local-stub",
        }

    @staticmethod
    def _generate_stub_response(instruction: str) -> str:
        if "requirements analyst" in instruction:
            return json.dumps({
                "consultingType": "general_consulting",
                "complexity": "medium",
                "objectives": ["Assess the current position", "Recommend next steps"],
                "successCriteria": ["Recommendations accepted by leadership"],
            })
        if "quality gate" in instruction:
            return json.dumps({
                "approved": True,
                "qualityAssessment": "good",
                "clientReadiness": "ready",
                "feedback": "Report is structured and actionable.",
                "qualityIssues": [],
                "completenessIssues": [],
                "requiredImprovements": [],
            })
        if "compile" in instruction:
            return json.dumps({
                "executiveSummary": "The engagement reviewed the client's position and "
                                    "identified a phased path to the stated objectives.",
                "keyFindings": ["Current processes are fragmented across teams"],
                "recommendations": [
                    {"title": "Consolidate ownership", "priority": "high",
                     "description": "Assign a single accountable owner per workstream."},
                ],
                "implementationRoadmap": {"phase1": "Stabilise", "phase2": "Scale"},
                "riskMitigation": ["Stage investment behind measurable milestones"],
                "successMetrics": ["Cycle time reduced by 20%"],
            })
        if "work module deliverable" in instruction:
            return json.dumps({
                "findings": ["Demand is concentrated in two segments",
                             "Cost base is above peer median", "Tooling is dated"],
                "insights": ["Focus beats breadth at this scale", "Quick wins fund phase two"],
                "recommendations": ["Prioritise the core segment", "Renegotiate top contracts"],
                "analysis": "Stub analysis generated locally. " * 5,
            })
        if "work breakdown" in instruction:
            return json.dumps({"workModules": []})
        if "feasibility" in instruction:
            return json.dumps({
                "feasible": True,
                "complexity": "medium",
                "estimatedDuration": "2-3 weeks",
                "riskLevel": "medium",
                "keyRisks": ["Data availability"],
                "recommendations": ["Confirm data access early"],
                "confidence": 0.7,
            })
        if "clarif" in instruction:
            return json.dumps({
                "clarificationQuestions": [
                    {"question": "Which business units are in scope?",
                     "category": "scope", "priority": "high"},
                ],
                "scopeCreepRisk": "medium",
            })
        return json.dumps({"consultingType": "general_consulting", "complexity": "medium"})


# ── LLM Gateway (Main Interface) ─────────────────────────────────────────────

class LLMGateway:
    """
    Central gateway for all LLM calls.

    Features:
        - Provider routing based on model name
        - Auto-retry with exponential backoff
        - Fallback model chain
        - Usage logging (provider, model, tokens, latency)

    Usage:
        gw = LLMGateway(default_model="claude-3-5-haiku-20241022")
        text = gw.complete(instruction, context, purpose="requirements_analyst")
    """

    # Model → provider mapping
    PROVIDER_MAP = {
        # Anthropic
        "claude-3-5-haiku-20241022": "anthropic",
        "claude-3-5-sonnet-20241022": "anthropic",
        "claude-3-opus-20240229": "anthropic",
        # OpenAI
        "gpt-4o-mini": "openai",
        "gpt-4o": "openai",
        "gpt-4-turbo": "openai",
        # Google Gemini
        "gemini-2.5-flash": "gemini",
        "gemini-2.5-pro": "gemini",
        "gemini-2.0-flash": "gemini",
        # Local stub (demos)
        "local-stub": "local",
    }

    DEFAULT_CHAT_MODEL = os.getenv("LLM_DEFAULT_CHAT_MODEL", "gemini-2.5-flash")

    def __init__(
        self,
        *,
        default_model: str | None = None,
        fallback_models: list[str] | None = None,
        max_retries: int = 2,
        backoff_cap: float = 4.0,
        providers: dict | None = None,
    ):
        self.default_model = default_model or self.DEFAULT_CHAT_MODEL
        self.fallback_models = list(fallback_models or [])
        self.max_retries = max(1, int(max_retries))
        self.backoff_cap = backoff_cap
        if providers is not None:
            self._providers = dict(providers)
        else:
            self._providers = {}
            self._init_providers()

    def _init_providers(self):
        """Initialize available providers based on environment."""
        self._providers["local"] = LocalStubProvider()
        if os.getenv("GEMINI_API_KEY"):
            self._providers["gemini"] = GeminiProvider()
        if os.getenv("ANTHROPIC_API_KEY"):
            self._providers["anthropic"] = AnthropicProvider()
        if os.getenv("OPENAI_API_KEY"):
            self._providers["openai"] = OpenAIProvider()

    def _provider_for(self, model: str):
        name = self.PROVIDER_MAP.get(model)
        if name is None:
            # unknown model ids route by prefix
            if model.startswith("claude"):
                name = "anthropic"
            elif model.startswith(("gpt", "o1", "o3")):
                name = "openai"
            elif model.startswith("gemini"):
                name = "gemini"
        provider = self._providers.get(name) if name else None
        return provider, name

    @property
    def is_configured(self) -> bool:
        """True when the default model or a fallback has a usable provider."""
        return any(
            self._provider_for(m)[0] is not None
            for m in [self.default_model, *self.fallback_models]
        )

    def chat(self, messages: list, model: str | None = None, *, purpose: str = "", **kwargs) -> dict:
        """
        Send a chat completion request with retry and fallback.

        Returns:
            dict: {content, prompt_tokens, completion_tokens, model, provider, latency_ms}

        Raises:
            GenerativeBackendError: no provider configured, or every attempt failed.
        """
        model = model or self.default_model
        chain = []
        for candidate in [model, *self.fallback_models]:
            provider, name = self._provider_for(candidate)
            if provider is not None and (candidate, name) not in [(c, n) for c, n, _ in chain]:
                chain.append((candidate, name, provider))

        if not chain:
            raise GenerativeBackendError(
                f"No LLM provider configured for model '{model}' (set an API key or LLM_DEFAULT_CHAT_MODEL)"
            )

        last_error = None
        for position, (candidate, name, provider) in enumerate(chain):
            attempts = self.max_retries if position == 0 else 1
            if position:
                logger.info("Trying fallback: model=%s provider=%s", candidate, name)
            for attempt in range(1, attempts + 1):
                start_time = time.time()
                try:
                    result = provider.chat(messages, candidate, **kwargs)
                except GenerativeBackendError as e:
                    last_error = e
                    logger.warning("Provider %s unusable: %s", name, e)
                    break
                except Exception as e:
                    last_error = e
                    logger.warning("LLM call attempt %d/%d failed (%s/%s): %s",
                                   attempt, attempts, name, candidate, e)
                    if attempt < attempts:
                        backoff = min(2 ** (attempt - 1), self.backoff_cap)
                        threading.Event().wait(backoff)
                    continue

                latency_ms = int((time.time() - start_time) * 1000)
                result["latency_ms"] = latency_ms
                result["provider"] = name
                logger.info(
                    "LLM call ok purpose=%s tokens=%d+%d",
                    purpose or "-", result.get("prompt_tokens", 0),
                    result.get("completion_tokens", 0),
                    extra={"provider": name, "model": candidate, "duration_ms": latency_ms},
                )
                return result

        raise GenerativeBackendError(f"LLM call failed after retries and fallbacks: {last_error}")

    def complete(self, instruction: str, context: str, *, purpose: str = "", **kwargs) -> str:
        """Single-turn call: instruction as system prompt, context as user message."""
        messages = [
            {"role": "system", "content": instruction},
            {"role": "user", "content": context},
        ]
        return self.chat(messages, purpose=purpose, **kwargs)["content"]
