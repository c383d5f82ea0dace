"""
Advisory reasoning service for quote analysis.

The deterministic score is authoritative. A reasoning provider may add an
advisory overlay (confidence, recommendation, rationale) that is stored
beside it. Every call is bounded by REASONING_TIMEOUT_SECONDS and guarded by
a circuit breaker; any failure or malformed response means "no enrichment".
"""
import json
import threading
import time
from abc import ABC, abstractmethod
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from procura.core.config import settings
from procura.core.errors import ExternalServiceUnavailable
from procura.core.logging import get_logger
from procura.db.models import Recommendation

logger = get_logger(__name__)


class AdvisoryResponse(BaseModel):
    """Validated response contract of the reasoning service."""
    confidence: float = Field(ge=0.0, le=1.0)
    recommendation: Recommendation
    rationale: str

    @field_validator("rationale")
    @classmethod
    def rationale_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("rationale must be a non-empty string")
        return v


# ============= CIRCUIT BREAKER =============

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops calling the reasoning service after repeated failures.

    After `failure_threshold` consecutive failures the circuit opens; once
    `recovery_timeout` seconds pass one trial call is let through
    (half-open). A success closes the circuit, a failure re-opens it.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at = 0.0
        self._lock = threading.Lock()

    def allow_request(self) -> bool:
        with self._lock:
            if self.state == CircuitState.CLOSED:
                return True
            if self.state == CircuitState.OPEN:
                if self._clock() - self.opened_at >= self.recovery_timeout:
                    self.state = CircuitState.HALF_OPEN
                    logger.info("Reasoning circuit half-open: allowing a trial call")
                    return True
                return False
            # HALF_OPEN: one trial call is already in flight
            return False

    def record_success(self) -> None:
        with self._lock:
            if self.state != CircuitState.CLOSED:
                logger.info("Reasoning circuit closed: service recovered")
            self.state = CircuitState.CLOSED
            self.failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self.failure_count += 1
            if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
                if self.state != CircuitState.OPEN:
                    logger.warning(f"Reasoning circuit open after {self.failure_count} failures")
                self.state = CircuitState.OPEN
                self.opened_at = self._clock()


# ============= PROVIDERS =============

class ReasoningProvider(ABC):
    """A source of advisory opinions on a scored quote."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def advise(self, context: Dict[str, Any]) -> Dict[str, Any]:
        """
        Return the raw advisory payload for a quote context.

        Raises ExternalServiceUnavailable (or httpx errors) when the service
        cannot answer.
        """
        pass


class MockReasoningProvider(ReasoningProvider):
    """Deterministic local advisor, used in development and tests."""

    name = "mock"

    def advise(self, context: Dict[str, Any]) -> Dict[str, Any]:
        score = float(context.get("score") or 0.0)
        breakdown = context.get("breakdown") or {}
        supplier = context.get("supplier") or {}

        tiers = list(Recommendation)
        try:
            tier = tiers.index(Recommendation(context.get("recommendation")))
        except ValueError:
            tier = len(tiers) - 1
        # A very weak criterion costs one tier
        weak = sorted(k for k, v in breakdown.items() if v < 40)
        if weak:
            tier = min(tier + 1, len(tiers) - 1)
        recommendation = tiers[tier]

        # More history means more confidence in the opinion
        history = min(int(supplier.get("total_orders") or 0), 10)
        confidence = round(min(0.95, 0.55 + history * 0.03 + score / 1000), 2)

        if breakdown:
            strongest = max(breakdown, key=lambda k: breakdown[k])
            weakest = min(breakdown, key=lambda k: breakdown[k])
            rationale = (
                f"{supplier.get('company_name') or 'The supplier'} is strongest on {strongest} "
                f"({breakdown[strongest]:.0f}) and weakest on {weakest} ({breakdown[weakest]:.0f})."
            )
        else:
            rationale = f"Overall score {score:.2f} places this quote in the {recommendation.value} tier."
        if weak:
            rationale += f" Weak criteria: {', '.join(weak)}."

        return {
            "confidence": confidence,
            "recommendation": recommendation.value,
            "rationale": rationale,
        }


SYSTEM_PROMPT = (
    "You are a procurement analyst reviewing one supplier quote. "
    "Reply with a JSON object with keys: confidence (number 0-1), "
    "recommendation (one of HIGHLY_RECOMMENDED, RECOMMENDED, ACCEPTABLE, NOT_RECOMMENDED) "
    "and rationale (short string)."
)


class OpenAIReasoningProvider(ReasoningProvider):
    """OpenAI-compatible chat completions endpoint over httpx."""

    name = "openai"

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str],
        model: str,
        timeout: float,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.transport = transport

    def advise(self, context: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise ExternalServiceUnavailable("Reasoning API key not configured")

        body = {
            "model": self.model,
            "response_format": {"type": "json_object"},
            "temperature": 0,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": json.dumps(context, default=str)},
            ],
        }
        with httpx.Client(
            timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
            transport=self.transport,
        ) as client:
            response = client.post(
                self.api_url,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            data = response.json()

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise ExternalServiceUnavailable("Reasoning response missing message content")
        return json.loads(content)


# ============= ADVISOR =============

class ReasoningAdvisor:
    """Provider behind a circuit breaker; returns None instead of raising."""

    def __init__(self, provider: Optional[ReasoningProvider], breaker: Optional[CircuitBreaker] = None):
        self.provider = provider
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=settings.REASONING_FAILURE_THRESHOLD,
            recovery_timeout=settings.REASONING_RECOVERY_SECONDS,
        )

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    def advise(self, context: Dict[str, Any]) -> Optional[AdvisoryResponse]:
        if self.provider is None:
            return None
        if not self.breaker.allow_request():
            logger.info("Reasoning circuit open: skipping advisory enrichment")
            return None

        try:
            raw = self.provider.advise(context)
            if not isinstance(raw, dict):
                raise ValueError("advisory payload is not an object")
            advisory = AdvisoryResponse.model_validate(raw)
        except (httpx.HTTPError, ExternalServiceUnavailable) as e:
            self.breaker.record_failure()
            logger.warning(f"Reasoning provider {self.provider.name} unavailable: {e}")
            return None
        except (PydanticValidationError, ValueError) as e:
            # json.JSONDecodeError is a ValueError
            self.breaker.record_failure()
            logger.warning(f"Reasoning provider {self.provider.name} returned malformed advice: {e}")
            return None

        self.breaker.record_success()
        return advisory


def build_advisor(provider: Optional[str] = None) -> ReasoningAdvisor:
    provider = provider or settings.REASONING_PROVIDER
    if provider == "openai":
        return ReasoningAdvisor(OpenAIReasoningProvider(
            api_url=settings.REASONING_API_URL,
            api_key=settings.REASONING_API_KEY,
            model=settings.REASONING_MODEL,
            timeout=settings.REASONING_TIMEOUT_SECONDS,
        ))
    if provider == "mock":
        return ReasoningAdvisor(MockReasoningProvider())
    return ReasoningAdvisor(None)


@lru_cache
def get_advisor() -> ReasoningAdvisor:
    """Process-wide advisor, so the circuit breaker state is shared."""
    return build_advisor()
