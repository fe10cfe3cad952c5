"""Client for the remote answer-generation service."""

from server.services.answer_llm.prompts import build_answer_prompt
from server.services.answer_llm.provider import (
    AnswerProvider,
    AnswerServiceError,
    FakeProvider,
    build_provider,
)

__all__ = [
    "AnswerProvider",
    "AnswerServiceError",
    "FakeProvider",
    "build_answer_prompt",
    "build_provider",
]
