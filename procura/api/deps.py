"""
Shared FastAPI dependencies.
"""
from fastapi import Request

from procura.services.reasoning import ReasoningAdvisor


def get_reasoning_advisor(request: Request) -> ReasoningAdvisor:
    """Process-wide advisor built in the app lifespan (shared circuit breaker)."""
    return request.app.state.advisor
