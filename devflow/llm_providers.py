"""
LLM Providers

Provider interface consumed by the decision agent plus the vendor adapters.

Providers:
- anthropic: AsyncAnthropic messages API
- openai: AsyncOpenAI chat completions in JSON mode
- stub: deterministic rules, no credentials, no network

CONSTRAINTS:
- The core depends only on BaseLLMProvider; vendor strings are branched on
  in `create_provider` and nowhere else
- Malformed responses raise DecisionParseError, never a guessed decision
- Confidence is clamped to [0, 1]
"""

import json
import logging
import math
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from anthropic import AsyncAnthropic, APIError as AnthropicAPIError
from openai import AsyncOpenAI, OpenAIError

from .config import LLMProviderName, LLMSettings
from .decision_model import LLMDecision, RiskAssessment

logger = logging.getLogger("llm_providers")


# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
DEFAULT_ANTHROPIC_MODEL = "claude-3-5-sonnet-latest"
DEFAULT_OPENAI_MODEL = "gpt-4-turbo-preview"
DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_TOKENS = 1024
DEFAULT_TIMEOUT = 60.0

_JSON_PATTERNS = (
    re.compile(r"```json\n([\s\S]*?)\n```"),
    re.compile(r"```\n([\s\S]*?)\n```"),
    re.compile(r"\{[\s\S]*\}"),
)


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------
class LLMProviderError(Exception):
    """Provider call failed or provider misconfigured."""


class ProviderUnavailableError(LLMProviderError):
    """Provider cannot be used (missing credentials)."""


class DecisionParseError(LLMProviderError):
    """Provider answered, but not with a valid decision."""


# -----------------------------------------------------------------------------
# Wire Types
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class LLMMessage:
    role: str  # system | user | assistant
    content: str


@dataclass(frozen=True)
class LLMResponse:
    content: str
    usage: Dict[str, int] = field(default_factory=dict)
    model: Optional[str] = None


@dataclass
class LLMProviderConfig:
    model: str
    api_key: Optional[str] = None
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    timeout: float = DEFAULT_TIMEOUT


def parse_json(text: str) -> Optional[Any]:
    """
    Extract a JSON value from model output.

    Tries, in order: a ```json fence, a plain fence, the outermost {...}
    span, then the whole text.
    """
    for pattern in _JSON_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        candidate = match.group(1) if match.groups() else match.group(0)
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return default


# -----------------------------------------------------------------------------
# Provider Interface
# -----------------------------------------------------------------------------
class BaseLLMProvider(ABC):
    """Every decision provider implements this."""

    api_key_env: str = ""

    def __init__(self, config: LLMProviderConfig):
        self.config = config

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def complete(self, messages: List[LLMMessage]) -> LLMResponse:
        ...

    async def is_available(self) -> bool:
        return bool(self.get_api_key())

    def get_api_key(self) -> Optional[str]:
        if self.config.api_key:
            return self.config.api_key
        return os.getenv(self.api_key_env) if self.api_key_env else None

    def require_api_key(self) -> str:
        key = self.get_api_key()
        if not key:
            raise ProviderUnavailableError(f"API key not found. Set {self.api_key_env} environment variable.")
        return key

    def parse_decision(self, text: str) -> LLMDecision:
        """
        Validate a raw completion into an LLMDecision.

        Raises:
            DecisionParseError: no JSON, or action/confidence/reasoning missing
        """
        parsed = parse_json(text)
        if not isinstance(parsed, dict):
            raise DecisionParseError("Failed to parse LLM response as JSON")

        action = parsed.get("action")
        confidence = parsed.get("confidence")
        reasoning = parsed.get("reasoning")
        if (
            not action
            or not isinstance(confidence, (int, float))
            or isinstance(confidence, bool)
            or not math.isfinite(confidence)
            or not reasoning
        ):
            raise DecisionParseError("Invalid decision format from LLM")

        risk = _pick(parsed, "risk_assessment", "riskAssessment")
        try:
            return LLMDecision(
                action=str(action),
                confidence=max(0.0, min(1.0, float(confidence))),
                reasoning=str(reasoning),
                requires_approval=bool(_pick(parsed, "requires_approval", "requiresApproval", default=False)),
                alternative_actions=tuple(_pick(parsed, "alternative_actions", "alternativeActions", default=()) or ()),
                risk_assessment=self._parse_risk(risk) if isinstance(risk, dict) else None,
            )
        except (TypeError, ValueError) as e:
            raise DecisionParseError(f"Invalid decision format from LLM: {e}") from e

    @staticmethod
    def _parse_risk(risk: Dict[str, Any]) -> RiskAssessment:
        score = float(risk.get("score", 0.5))
        if not math.isfinite(score):
            raise ValueError(f"non-finite risk score {score}")
        return RiskAssessment(
            score=score,
            factors=tuple(risk.get("factors") or ()),
            level=str(risk.get("level", "medium")),
            requires_approval=bool(_pick(risk, "requires_approval", "requiresApproval", default=False)),
        )


# -----------------------------------------------------------------------------
# Anthropic
# -----------------------------------------------------------------------------
class AnthropicProvider(BaseLLMProvider):
    api_key_env = "ANTHROPIC_API_KEY"

    def __init__(self, config: LLMProviderConfig):
        super().__init__(config)
        self._client: Optional[AsyncAnthropic] = None

    @property
    def name(self) -> str:
        return "Anthropic"

    def _get_client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic(api_key=self.require_api_key(), timeout=self.config.timeout)
        return self._client

    async def complete(self, messages: List[LLMMessage]) -> LLMResponse:
        client = self._get_client()
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        try:
            response = await client.messages.create(
                model=self.config.model or DEFAULT_ANTHROPIC_MODEL,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                system=system,
                messages=[{"role": m.role, "content": m.content} for m in messages if m.role != "system"],
            )
        except AnthropicAPIError as e:
            raise LLMProviderError(f"Anthropic API error: {e}") from e

        text = "".join(block.text for block in response.content if getattr(block, "type", "") == "text")
        return LLMResponse(
            content=text,
            usage={
                "prompt_tokens": response.usage.input_tokens,
                "completion_tokens": response.usage.output_tokens,
                "total_tokens": response.usage.input_tokens + response.usage.output_tokens,
            },
            model=response.model,
        )


# -----------------------------------------------------------------------------
# OpenAI
# -----------------------------------------------------------------------------
class OpenAIProvider(BaseLLMProvider):
    api_key_env = "OPENAI_API_KEY"

    def __init__(self, config: LLMProviderConfig):
        super().__init__(config)
        self._client: Optional[AsyncOpenAI] = None

    @property
    def name(self) -> str:
        return "OpenAI"

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.require_api_key(), timeout=self.config.timeout)
        return self._client

    async def complete(self, messages: List[LLMMessage]) -> LLMResponse:
        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=self.config.model or DEFAULT_OPENAI_MODEL,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
                messages=[{"role": m.role, "content": m.content} for m in messages],
                response_format={"type": "json_object"},
            )
        except OpenAIError as e:
            raise LLMProviderError(f"OpenAI API error: {e}") from e

        usage = response.usage
        return LLMResponse(
            content=response.choices[0].message.content or "",
            usage={
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
                "total_tokens": usage.total_tokens,
            } if usage else {},
            model=response.model,
        )


# -----------------------------------------------------------------------------
# Stub (deterministic, offline)
# -----------------------------------------------------------------------------
_EVENT_TYPE_LINE = re.compile(r"^- Type: (\S+)", re.MULTILINE)
_CHANGES_LINE = re.compile(r"^- Uncommitted Changes: (\d+)", re.MULTILINE)
_PROTECTED_LINE = re.compile(r"^- Protected: (True|False)", re.MULTILINE)

_COMMIT_WORTHY = {"feature_complete", "tests_passing", "refactor_complete", "docs_updated", "bug_fixed"}


class StubProvider(BaseLLMProvider):
    """
    Rule-based provider for offline use and tests.

    Reads the structured lines of the prompt (event type, uncommitted
    change count, protection flag) and answers in the same JSON shape a
    real model would.
    """

    @property
    def name(self) -> str:
        return "Stub"

    async def is_available(self) -> bool:
        return True

    async def complete(self, messages: List[LLMMessage]) -> LLMResponse:
        system = " ".join(m.content for m in messages if m.role == "system")
        prompt = "\n".join(m.content for m in messages if m.role == "user")

        if "commit message generator" in system:
            content = "chore: checkpoint work in progress"
        elif "Pull Request description generator" in system:
            content = json.dumps({"title": "Automated PR", "body": "Changes collected by the workflow assistant."})
        elif "risk assessment system" in system:
            content = json.dumps(self._assess(prompt))
        else:
            content = json.dumps(self._decide(prompt))
        return LLMResponse(content=content, model="stub")

    @staticmethod
    def _read(prompt: str):
        event_type = _EVENT_TYPE_LINE.search(prompt)
        changes = _CHANGES_LINE.search(prompt)
        protected = _PROTECTED_LINE.search(prompt)
        return (
            event_type.group(1) if event_type else "",
            int(changes.group(1)) if changes else 0,
            bool(protected and protected.group(1) == "True"),
        )

    def _decide(self, prompt: str) -> Dict[str, Any]:
        event_type, changes, protected = self._read(prompt)

        if event_type == "tests_failing":
            return {"action": "wait", "confidence": 0.9, "reasoning": "Tests are failing; fix them before committing"}
        if changes and protected:
            return {
                "action": "branch",
                "confidence": 0.75,
                "reasoning": "Uncommitted work on a protected branch belongs on a feature branch",
                "alternative_actions": ["stash"],
            }
        if changes and event_type in _COMMIT_WORTHY:
            return {
                "action": "commit",
                "confidence": 0.8,
                "reasoning": f"Work reached a checkpoint ({event_type}) with {changes} uncommitted files",
                "alternative_actions": ["wait"],
            }
        if changes >= 10:
            return {"action": "commit", "confidence": 0.6, "reasoning": f"{changes} uncommitted files accumulated"}
        return {"action": "wait", "confidence": 0.5, "reasoning": "No action needed yet"}

    def _assess(self, prompt: str) -> Dict[str, Any]:
        _, changes, protected = self._read(prompt)
        factors = []
        score = 0.2
        if protected:
            factors.append("Protected branch")
            score += 0.5
        if changes > 20:
            factors.append("Large changeset")
            score += 0.2
        level = "high" if score >= 0.7 else "medium" if score >= 0.4 else "low"
        return {"score": round(min(score, 1.0), 2), "factors": factors, "level": level, "requires_approval": score >= 0.7}


# -----------------------------------------------------------------------------
# Factory
# -----------------------------------------------------------------------------
def create_provider(settings: LLMSettings) -> BaseLLMProvider:
    """
    Build the provider named in the automation config.

    Raises:
        LLMProviderError: unknown provider name
    """
    api_key = os.getenv(settings.api_key_env) if settings.api_key_env else None
    config = LLMProviderConfig(
        model=settings.model,
        api_key=api_key,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
    )

    if settings.provider == LLMProviderName.ANTHROPIC.value:
        return AnthropicProvider(config)
    if settings.provider == LLMProviderName.OPENAI.value:
        if not settings.model or settings.model.startswith("claude"):
            config.model = DEFAULT_OPENAI_MODEL
        return OpenAIProvider(config)
    if settings.provider == LLMProviderName.STUB.value:
        return StubProvider(config)
    raise LLMProviderError(f"Unknown LLM provider: {settings.provider}")


async def validate_provider(provider: BaseLLMProvider) -> bool:
    available = await provider.is_available()
    if not available:
        logger.error(f"{provider.name} provider is not available. Check API key configuration.")
    return available
