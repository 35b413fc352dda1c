from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _get_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class AppConfig:
    llm_provider: str
    llm_model: str
    llm_temperature: float
    llm_api_key: Optional[str]
    llm_base_url: Optional[str]
    max_iterations: int
    max_chain_length: int
    max_instruction_chars: int
    chaining_enabled: bool
    messaging_backend: str
    messaging_api_base_url: str
    messaging_api_timeout: float
    messaging_seed_path: Optional[str]
    analyst_mode: str
    trace_recorder: str
    trace_output_path: str
    langsmith_project: str
    log_level: str

    @classmethod
    def from_env(cls) -> "AppConfig":
        llm_provider = os.getenv("LLM_PROVIDER", "openai").lower()
        llm_model = os.getenv("LLM_MODEL", os.getenv("OPENAI_MODEL", "gpt-4o-mini"))
        llm_temperature = float(os.getenv("LLM_TEMPERATURE", "0.1"))
        llm_api_key = os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY")
        llm_base_url = os.getenv("LLM_BASE_URL")

        max_iterations = int(os.getenv("PLANNER_MAX_ITERATIONS", "3"))
        max_chain_length = int(os.getenv("CHAIN_MAX_LENGTH", "5"))
        max_instruction_chars = int(os.getenv("MAX_INSTRUCTION_CHARS", "4000"))
        chaining_enabled = _get_bool("CHAINING_ENABLED", "true")

        messaging_backend = os.getenv("MESSAGING_BACKEND", "memory").lower()
        messaging_api_base_url = os.getenv("MESSAGING_API_BASE_URL", "http://localhost:3000/api")
        messaging_api_timeout = float(os.getenv("MESSAGING_API_TIMEOUT", "10"))
        messaging_seed_path = os.getenv("MESSAGING_SEED_PATH", "./data/demo_seed.json")

        analyst_mode = os.getenv("ANALYST_MODE", "llm").lower()

        trace_recorder = os.getenv("TRACE_RECORDER", "noop").lower()
        trace_output_path = os.getenv("TRACE_OUTPUT_PATH", "./traces/msgchain.jsonl")
        langsmith_project = os.getenv("LANGSMITH_PROJECT", "msgchain")

        log_level = os.getenv("LOG_LEVEL", "INFO").upper()

        return cls(
            llm_provider=llm_provider,
            llm_model=llm_model,
            llm_temperature=llm_temperature,
            llm_api_key=llm_api_key,
            llm_base_url=llm_base_url,
            max_iterations=max_iterations,
            max_chain_length=max_chain_length,
            max_instruction_chars=max_instruction_chars,
            chaining_enabled=chaining_enabled,
            messaging_backend=messaging_backend,
            messaging_api_base_url=messaging_api_base_url,
            messaging_api_timeout=messaging_api_timeout,
            messaging_seed_path=messaging_seed_path,
            analyst_mode=analyst_mode,
            trace_recorder=trace_recorder,
            trace_output_path=trace_output_path,
            langsmith_project=langsmith_project,
            log_level=log_level,
        )
