from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    return int(raw)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    db_path: str = os.getenv("DB_PATH", "forge.db")
    dev_mode: bool = os.getenv("DEV_MODE", "0") == "1"
    discord_token: str | None = os.getenv("DISCORD_TOKEN")
    forge_channel: str = os.getenv("FORGE_CHANNEL", "forge")
    rng_seed: int = int(os.getenv("RNG_SEED", "1337"))

    tracking_enabled: bool = _env_flag("FORGE_ENABLED", True)
    auto_parse_forge: bool = _env_flag("FORGE_AUTO_PARSE", True)
    cp_per_response: int = _env_int("FORGE_CP_PER_RESPONSE", 10)
    threshold_base: int = _env_int("FORGE_THRESHOLD", 100)
    bank_max: int = _env_int("FORGE_BANK_MAX", 10)

    llm_backend: str = os.getenv("LLM_BACKEND", "stub").strip().lower()
    llm_json_backend: str = os.getenv("LLM_JSON_BACKEND", "").strip().lower()
    openrouter_api_key: str | None = os.getenv("OPENROUTER_API_KEY")
    openrouter_model: str = os.getenv("OPENROUTER_MODEL", "openrouter/free")
    openrouter_base_url: str = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1").rstrip("/")
    ollama_model: str = os.getenv("OLLAMA_MODEL", "llama3.1")
    ollama_base_url: str = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434").rstrip("/")
    llm_max_calls_per_day: int = _env_int("LLM_MAX_CALLS_PER_DAY", 50)
    llm_max_calls_per_user_per_day: int = _env_int("LLM_MAX_CALLS_PER_USER_PER_DAY", 10)
    llm_max_input_chars: int = _env_int("LLM_MAX_INPUT_CHARS", 2000)

    gist_id: str | None = os.getenv("FORGE_GIST_ID")
    github_token: str | None = os.getenv("GITHUB_TOKEN")
    gist_api_url: str = os.getenv("GIST_API_URL", "https://api.github.com").rstrip("/")
    remote_timeout: int = _env_int("FORGE_REMOTE_TIMEOUT", 15)

    @property
    def effective_llm_max_calls_per_day(self) -> int:
        return self.llm_max_calls_per_day * 5 if self.dev_mode else self.llm_max_calls_per_day

    @property
    def effective_llm_max_calls_per_user_per_day(self) -> int:
        return self.llm_max_calls_per_user_per_day * 5 if self.dev_mode else self.llm_max_calls_per_user_per_day

    @property
    def remote_enabled(self) -> bool:
        return bool(self.gist_id and self.github_token)

    def redacted(self) -> dict[str, object]:
        return {
            "db_path": self.db_path,
            "dev_mode": self.dev_mode,
            "discord_token_set": bool(self.discord_token),
            "forge_channel": self.forge_channel,
            "rng_seed": self.rng_seed,
            "tracking_enabled": self.tracking_enabled,
            "auto_parse_forge": self.auto_parse_forge,
            "cp_per_response": self.cp_per_response,
            "threshold_base": self.threshold_base,
            "bank_max": self.bank_max,
            "llm_backend": self.llm_backend,
            "openrouter_api_key_set": bool(self.openrouter_api_key),
            "openrouter_model": self.openrouter_model,
            "openrouter_base_url": self.openrouter_base_url,
            "llm_max_calls_per_day": self.effective_llm_max_calls_per_day,
            "llm_max_calls_per_user_per_day": self.effective_llm_max_calls_per_user_per_day,
            "llm_max_input_chars": self.llm_max_input_chars,
            "gist_id_set": bool(self.gist_id),
            "github_token_set": bool(self.github_token),
            "remote_timeout": self.remote_timeout,
        }


def configure_logging(dev_mode: bool) -> None:
    level = logging.DEBUG if dev_mode else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
