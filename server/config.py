"""Configuration for the Quizbench API server."""

import os
from dataclasses import dataclass
from typing import Optional, Tuple

DEFAULT_DOMAINS: Tuple[str, ...] = ("Computer_Security", "History", "Social_Science")


def _split_list(raw: str) -> Tuple[str, ...]:
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass
class Settings:
    """
    Everything the server needs to reach storage and the answer service.

    Every field is overridable at construction for testing.
    Environment variables override the defaults.
    """
    database_url: Optional[str] = None
    domains: Optional[Tuple[str, ...]] = None
    choice_labels: Optional[str] = None
    cors_origins: Optional[Tuple[str, ...]] = None
    log_level: Optional[str] = None

    # Answer service (remote chat model)
    answer_llm_provider: str = "openai"
    answer_llm_model: str = "gpt-4o"
    answer_llm_base_url: Optional[str] = None
    answer_llm_api_key: Optional[str] = None
    answer_llm_timeout_s: float = 60.0
    answer_llm_max_retries: int = 2
    answer_llm_temperature: float = 0.0

    # Run controller
    quick_sample_size: int = 50
    pause_poll_interval_s: float = 0.25
    observer_backlog: int = 1000

    def __post_init__(self):
        if self.database_url is None:
            self.database_url = os.environ.get("DATABASE_URL", "sqlite:///./quizbench.db")

        if self.domains is None:
            env_domains = _split_list(os.environ.get("EVAL_DOMAINS", ""))
            self.domains = env_domains or DEFAULT_DOMAINS
        self.domains = tuple(self.domains)
        if not self.domains:
            raise ValueError("At least one evaluation domain is required")

        if self.choice_labels is None:
            self.choice_labels = os.environ.get("CHOICE_LABELS", "ABCD")
        self.choice_labels = self.choice_labels.strip().upper()

        if self.cors_origins is None:
            self.cors_origins = _split_list(os.environ.get("CORS_ORIGINS", "*")) or ("*",)
        if self.log_level is None:
            self.log_level = os.environ.get("LOG_LEVEL", "INFO").upper()

        if os.environ.get("ANSWER_LLM_PROVIDER"):
            self.answer_llm_provider = os.environ["ANSWER_LLM_PROVIDER"].lower()
        if os.environ.get("ANSWER_LLM_MODEL"):
            self.answer_llm_model = os.environ["ANSWER_LLM_MODEL"]
        if self.answer_llm_base_url is None and os.environ.get("ANSWER_LLM_BASE_URL"):
            self.answer_llm_base_url = os.environ["ANSWER_LLM_BASE_URL"]
        if self.answer_llm_api_key is None:
            self.answer_llm_api_key = (
                os.environ.get("ANSWER_LLM_API_KEY")
                or os.environ.get("OPENAI_API_KEY")
                or ""
            )

        try:
            if v := os.environ.get("ANSWER_LLM_TIMEOUT_S"):
                self.answer_llm_timeout_s = float(v)
        except ValueError:
            pass
        try:
            if v := os.environ.get("ANSWER_LLM_MAX_RETRIES"):
                self.answer_llm_max_retries = int(v)
        except ValueError:
            pass
        try:
            if v := os.environ.get("ANSWER_LLM_TEMPERATURE"):
                self.answer_llm_temperature = float(v)
        except ValueError:
            pass
        try:
            if v := os.environ.get("QUICK_SAMPLE_SIZE"):
                self.quick_sample_size = int(v)
        except ValueError:
            pass
        try:
            if v := os.environ.get("PAUSE_POLL_INTERVAL_S"):
                self.pause_poll_interval_s = float(v)
        except ValueError:
            pass
        try:
            if v := os.environ.get("OBSERVER_BACKLOG"):
                self.observer_backlog = int(v)
        except ValueError:
            pass
