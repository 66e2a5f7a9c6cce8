"""
AI capability gateway.

Every engine talks to the hosted language/vision model through an
AICapability selected once at startup:

- LiveCapability wraps the OpenAI or Anthropic SDK (imported lazily).
- NullCapability is used when LLM_PROVIDER=mock or no valid key is set;
  it reports unavailable and refuses generation calls.

Engines check is_available() first and treat any AIProviderError as a
signal to take their rule-based path.
"""
import base64
import math
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from procura.core.config import settings, Settings
from procura.core.errors import (
    AIProviderError,
    InvalidCredential,
    ProviderError,
    ProviderUnavailable,
    RateLimited,
)
from procura.core.logging import get_logger
from procura.db.models import AIFeature, AIUsageLog

logger = get_logger(__name__)


DEFAULT_MODELS = {
    "openai": {"text": "gpt-4o-mini", "vision": "gpt-4o"},
    "anthropic": {"text": "claude-3-5-haiku-latest", "vision": "claude-3-5-sonnet-latest"},
}

PROVIDER_NAMES = {
    "openai": "OpenAI",
    "anthropic": "Anthropic",
    "none": "Rule-based (no AI provider configured)",
}

# USD per million tokens
MODEL_PRICING: Dict[str, Dict[str, float]] = {
    "gpt-4o": {"input": 2.50, "output": 10.0},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "claude-3-5-sonnet-latest": {"input": 3.0, "output": 15.0},
    "claude-3-5-haiku-latest": {"input": 0.80, "output": 4.0},
}
DEFAULT_PRICING: Dict[str, float] = {"input": 3.0, "output": 15.0}

# Local paths that never reach a provider
LOCAL_MODELS = frozenset({"rule-based", "tesseract", "pdf-text", "statistical"})


def estimate_tokens(text: Optional[str]) -> int:
    """Rough token count (about four characters per token)."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Estimated USD cost for one call."""
    if model in LOCAL_MODELS:
        return 0.0
    pricing = MODEL_PRICING.get(model, DEFAULT_PRICING)
    return (input_tokens / 1_000_000) * pricing["input"] + (output_tokens / 1_000_000) * pricing["output"]


def is_valid_credential(provider: str, api_key: Optional[str]) -> bool:
    """Syntactic check only; the provider is not contacted."""
    if not api_key or api_key != api_key.strip() or len(api_key) < 20:
        return False
    if provider == "anthropic":
        return api_key.startswith("sk-ant-")
    if provider == "openai":
        return api_key.startswith("sk-")
    return False


def classify_provider_error(exc: Exception) -> AIProviderError:
    """Map an SDK or network exception onto the gateway's error taxonomy."""
    if isinstance(exc, AIProviderError):
        return exc

    status_code = getattr(exc, "status_code", None)
    message = str(exc) or type(exc).__name__
    lowered = message.lower()

    if status_code == 429 or "429" in message or "quota" in lowered or "rate limit" in lowered:
        return RateLimited("AI service rate limit exceeded. Wait a moment and retry, or raise the API quota.")
    if status_code in (401, 403) or "401" in message or "api key" in lowered or "authentication" in lowered:
        return InvalidCredential("Invalid API key. Check the configured provider credential.")
    return ProviderError(f"AI service error: {message}")


# ============= CAPABILITIES =============

class AICapability(ABC):
    """Interface every engine depends on."""

    provider: str = "none"
    text_model: Optional[str] = None
    vision_model: Optional[str] = None

    @abstractmethod
    def is_available(self) -> bool:
        pass

    @abstractmethod
    def generate_text(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        """Single-shot text completion."""
        pass

    @abstractmethod
    def analyze_image(self, image_bytes: bytes, prompt: str, mime_type: str = "image/png") -> str:
        """Single-shot completion over an image (or PDF) plus a prompt."""
        pass

    @property
    def provider_name(self) -> str:
        return PROVIDER_NAMES.get(self.provider, self.provider)


class NullCapability(AICapability):
    """Used when no provider is configured. Engines run rule-based."""

    def __init__(self, reason: str = "No AI provider configured"):
        self.reason = reason

    def is_available(self) -> bool:
        return False

    def generate_text(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        raise ProviderUnavailable(self.reason)

    def analyze_image(self, image_bytes: bytes, prompt: str, mime_type: str = "image/png") -> str:
        raise ProviderUnavailable(self.reason)


class LiveCapability(AICapability):
    """OpenAI or Anthropic backed capability."""

    def __init__(
        self,
        provider: str,
        api_key: str,
        text_model: Optional[str] = None,
        vision_model: Optional[str] = None,
        timeout: float = 30.0,
        max_output_tokens: int = 2048,
        client: Any = None,
    ):
        if provider not in DEFAULT_MODELS:
            raise ValueError(f"Unsupported provider: {provider}")
        self.provider = provider
        self._api_key = api_key
        self.text_model = text_model or DEFAULT_MODELS[provider]["text"]
        self.vision_model = vision_model or DEFAULT_MODELS[provider]["vision"]
        self.timeout = timeout
        self.max_output_tokens = max_output_tokens
        self._client = client

    def is_available(self) -> bool:
        return is_valid_credential(self.provider, self._api_key)

    def _get_client(self):
        if self._client is None:
            # SDKs are optional at import time; only live deployments need them
            if self.provider == "openai":
                import openai
                self._client = openai.OpenAI(
                    api_key=self._api_key, timeout=self.timeout, max_retries=0
                )
            else:
                import anthropic
                self._client = anthropic.Anthropic(
                    api_key=self._api_key, timeout=self.timeout, max_retries=0
                )
        return self._client

    def generate_text(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        if not self.is_available():
            raise ProviderUnavailable(f"{self.provider_name} credential is not configured")
        try:
            if self.provider == "openai":
                messages = []
                if system_prompt:
                    messages.append({"role": "system", "content": system_prompt})
                messages.append({"role": "user", "content": prompt})
                response = self._get_client().chat.completions.create(
                    model=self.text_model,
                    messages=messages,
                    max_tokens=self.max_output_tokens,
                )
                return response.choices[0].message.content or ""

            kwargs = {
                "model": self.text_model,
                "max_tokens": self.max_output_tokens,
                "messages": [{"role": "user", "content": prompt}],
            }
            if system_prompt:
                kwargs["system"] = system_prompt
            response = self._get_client().messages.create(**kwargs)
            return _anthropic_text(response)
        except Exception as e:
            mapped = classify_provider_error(e)
            logger.error(f"{self.provider_name} text generation failed: {mapped}")
            raise mapped from e

    def analyze_image(self, image_bytes: bytes, prompt: str, mime_type: str = "image/png") -> str:
        if not self.is_available():
            raise ProviderUnavailable(f"{self.provider_name} credential is not configured")
        encoded = base64.b64encode(image_bytes).decode("ascii")
        try:
            if self.provider == "openai":
                if mime_type == "application/pdf":
                    attachment = {
                        "type": "file",
                        "file": {
                            "filename": "document.pdf",
                            "file_data": f"data:{mime_type};base64,{encoded}",
                        },
                    }
                else:
                    attachment = {
                        "type": "image_url",
                        "image_url": {"url": f"data:{mime_type};base64,{encoded}"},
                    }
                response = self._get_client().chat.completions.create(
                    model=self.vision_model,
                    messages=[{
                        "role": "user",
                        "content": [{"type": "text", "text": prompt}, attachment],
                    }],
                    max_tokens=self.max_output_tokens,
                )
                return response.choices[0].message.content or ""

            block_type = "document" if mime_type == "application/pdf" else "image"
            response = self._get_client().messages.create(
                model=self.vision_model,
                max_tokens=self.max_output_tokens,
                messages=[{
                    "role": "user",
                    "content": [
                        {
                            "type": block_type,
                            "source": {"type": "base64", "media_type": mime_type, "data": encoded},
                        },
                        {"type": "text", "text": prompt},
                    ],
                }],
            )
            return _anthropic_text(response)
        except Exception as e:
            mapped = classify_provider_error(e)
            logger.error(f"{self.provider_name} vision analysis failed: {mapped}")
            raise mapped from e


def _anthropic_text(response) -> str:
    parts = [block.text for block in response.content if getattr(block, "type", "text") == "text"]
    return "\n".join(parts)


def build_ai_capability(config: Settings = settings) -> AICapability:
    """Select the capability once at startup from configuration."""
    provider = config.LLM_PROVIDER
    if provider == "mock":
        logger.info("LLM_PROVIDER=mock: AI features run in rule-based fallback mode")
        return NullCapability("LLM_PROVIDER is set to mock")

    api_key = config.OPENAI_API_KEY if provider == "openai" else config.ANTHROPIC_API_KEY
    if not is_valid_credential(provider, api_key):
        logger.warning(f"{PROVIDER_NAMES[provider]} API key missing or malformed: AI features run in fallback mode")
        return NullCapability(f"{PROVIDER_NAMES[provider]} API key is not configured")

    capability = LiveCapability(
        provider=provider,
        api_key=api_key,
        text_model=config.LLM_TEXT_MODEL,
        vision_model=config.LLM_VISION_MODEL,
        timeout=config.AI_TIMEOUT_SECONDS,
        max_output_tokens=config.AI_MAX_OUTPUT_TOKENS,
    )
    logger.info(
        f"{capability.provider_name} initialized (text={capability.text_model}, vision={capability.vision_model})"
    )
    return capability


# ============= USAGE BOOKKEEPING =============

def log_usage(
    db: Session,
    company_id: int,
    user_id: Optional[int],
    feature: AIFeature,
    model: str,
    input_tokens: int,
    output_tokens: int,
    latency_ms: int,
    success: bool,
    error: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """Persist one usage row. Never raises."""
    try:
        db.add(AIUsageLog(
            company_id=company_id,
            user_id=user_id,
            feature=feature,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            estimated_cost=estimate_cost(model, input_tokens, output_tokens),
            latency_ms=latency_ms,
            success=success,
            error=error,
            extra_data=metadata,
        ))
        db.commit()
    except Exception as usage_err:
        logger.error(f"Failed to log AI usage for {feature.value}: {usage_err}")
        try:
            db.rollback()
        except Exception as rollback_err:
            logger.error(f"Rollback after usage-log failure also failed: {rollback_err}")


def get_usage_stats(
    db: Session,
    company_id: int,
    ai: AICapability,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Aggregate usage for a company. Database errors propagate."""
    query = db.query(AIUsageLog).filter(AIUsageLog.company_id == company_id)
    if start_date:
        query = query.filter(AIUsageLog.created_at >= start_date)
    if end_date:
        query = query.filter(AIUsageLog.created_at <= end_date)
    logs = query.order_by(AIUsageLog.created_at.desc()).all()

    by_feature: Dict[str, Dict[str, Any]] = {}
    for log in logs:
        key = log.feature.value
        bucket = by_feature.setdefault(key, {"count": 0, "cost": 0.0, "tokens": 0})
        bucket["count"] += 1
        bucket["cost"] += log.estimated_cost or 0.0
        bucket["tokens"] += log.total_tokens or 0

    successes = sum(1 for log in logs if log.success)
    return {
        "total_requests": len(logs),
        "total_cost": round(sum(log.estimated_cost or 0.0 for log in logs), 6),
        "total_tokens": sum(log.total_tokens or 0 for log in logs),
        "by_feature": by_feature,
        "success_rate": (successes / len(logs) * 100) if logs else 0,
        "provider": ai.provider_name,
    }


def get_status(ai: AICapability) -> Dict[str, Any]:
    available = ai.is_available()
    return {
        "available": available,
        "provider": ai.provider_name,
        "text_model": ai.text_model,
        "vision_model": ai.vision_model,
        "mode": "live" if available else "fallback",
        "message": (
            f"AI features powered by {ai.provider_name}"
            if available
            else "AI provider not configured: engines use rule-based fallbacks"
        ),
    }
