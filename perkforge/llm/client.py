from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import TypeVar

import requests
from pydantic import BaseModel, ValidationError

from perkforge.config import Settings
from perkforge.db.store import Store

log = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class ProviderUnavailableError(RuntimeError):
    pass


class OpenRouter404Error(RuntimeError):
    pass


def chat_messages(system_prompt: str | None, user_prompt: str, limit: int) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt[:limit]})
    messages.append({"role": "user", "content": user_prompt[:limit]})
    return messages


class BaseProvider(ABC):
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.max_input_chars = settings.llm_max_input_chars

    @abstractmethod
    def chat_json(self, system_prompt: str | None, user_prompt: str, *, temperature: float) -> str:
        raise NotImplementedError


class StubProvider(BaseProvider):
    """Offline provider: produces nothing usable, so callers take their fallback path."""

    def chat_json(self, system_prompt: str | None, user_prompt: str, *, temperature: float) -> str:
        del system_prompt, user_prompt, temperature
        return "{}"


class OpenRouterProvider(BaseProvider):
    def _headers(self) -> dict[str, str]:
        api_key = self.settings.openrouter_api_key
        if not api_key:
            raise ProviderUnavailableError("openrouter_missing_api_key")
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": "http://localhost",
            "X-Title": "perkforge",
        }

    def chat_json(self, system_prompt: str | None, user_prompt: str, *, temperature: float) -> str:
        payload: dict[str, object] = {
            "model": self.settings.openrouter_model,
            "messages": chat_messages(system_prompt, user_prompt, self.max_input_chars),
            "temperature": temperature,
            "response_format": {"type": "json_object"},
        }
        response = requests.post(
            f"{self.settings.openrouter_base_url}/chat/completions",
            headers=self._headers(),
            data=json.dumps(payload),
            timeout=20,
        )
        if response.status_code == 404:
            raise OpenRouter404Error("OpenRouter request returned 404. Check OPENROUTER_MODEL and OPENROUTER_BASE_URL.")
        if response.status_code in {401, 429} or response.status_code >= 500:
            raise ProviderUnavailableError(f"openrouter_http_{response.status_code}")
        response.raise_for_status()
        content = response.json()["choices"][0]["message"]["content"]
        if not isinstance(content, str):
            raise ProviderUnavailableError("unexpected_chat_content_type")
        return content.strip()


class OllamaProvider(BaseProvider):
    def chat_json(self, system_prompt: str | None, user_prompt: str, *, temperature: float) -> str:
        payload: dict[str, object] = {
            "model": self.settings.ollama_model,
            "messages": chat_messages(system_prompt, user_prompt, self.max_input_chars),
            "stream": False,
            "options": {"temperature": temperature},
            "format": "json",
        }
        response = requests.post(
            f"{self.settings.ollama_base_url}/api/chat",
            headers={"Content-Type": "application/json"},
            data=json.dumps(payload),
            timeout=20,
        )
        response.raise_for_status()
        message = response.json().get("message", {})
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise ProviderUnavailableError("ollama_unexpected_response")
        return content.strip()


class LLMClient:
    def __init__(self, settings: Settings, store: Store | None = None) -> None:
        self.settings = settings
        self.store = store
        self._memory_usage: dict[tuple[str, str], int] = {}
        self._stub = StubProvider(settings)
        self._providers: dict[str, BaseProvider] = {
            "stub": self._stub,
            "openrouter": OpenRouterProvider(settings),
            "ollama": OllamaProvider(settings),
        }

    def complete_json(
        self,
        prompt: str,
        schema: type[SchemaT],
        user_id: str = "system",
        *,
        system_prompt: str | None = None,
        temperature: float = 0.2,
    ) -> SchemaT | None:
        safe_prompt = prompt[: self.settings.llm_max_input_chars]
        backend = self._select_backend(self.settings.llm_json_backend, legacy_fallback=self.settings.llm_backend)
        if backend == "stub":
            return None
        if backend == "openrouter":
            ok, reason = self._consume_budget(user_id)
            if not ok:
                log.warning("llm_budget_exhausted reason=%s", reason)
                return None
        try:
            raw = self._providers[backend].chat_json(system_prompt, safe_prompt, temperature=temperature)
            return schema.model_validate(self._parse_json_content(raw))
        except OpenRouter404Error as exc:
            log.warning("openrouter_http_404 detail=%s", str(exc))
            return None
        except (ValidationError, KeyError, TypeError, ValueError):
            log.warning("llm_json_validation_failed schema=%s", schema.__name__, exc_info=True)
            return None
        except Exception:
            log.warning("json_provider_failed backend=%s", backend, exc_info=True)
            return None

    def _select_backend(self, backend: str, *, legacy_fallback: str) -> str:
        normalized = (backend or "").strip().lower()
        if normalized in self._providers:
            return normalized
        legacy = (legacy_fallback or "").strip().lower()
        if legacy in self._providers:
            return legacy
        return "stub"

    def _parse_json_content(self, content: str) -> dict:
        body = content.strip()
        try:
            parsed = json.loads(body)
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

        match = re.search(r"```(?:json)?\s*(\{.*\})\s*```", body, flags=re.DOTALL)
        if match:
            return json.loads(match.group(1))
        start = body.find("{")
        end = body.rfind("}")
        if start != -1 and end > start:
            return json.loads(body[start : end + 1])
        raise json.JSONDecodeError("no_json_object", body, 0)

    def _consume_budget(self, user_id: str) -> tuple[bool, str | None]:
        day = datetime.now(UTC).date().isoformat()
        max_day = self.settings.effective_llm_max_calls_per_day
        max_user = self.settings.effective_llm_max_calls_per_user_per_day
        if self.store is not None:
            return self.store.try_consume_llm_call(
                day=day,
                user_id=user_id,
                max_calls_per_day=max_day,
                max_calls_per_user_per_day=max_user,
            )

        global_calls = sum(count for (d, _), count in self._memory_usage.items() if d == day)
        user_calls = self._memory_usage.get((day, user_id), 0)
        if global_calls >= max_day:
            return False, "global_limit"
        if user_calls >= max_user:
            return False, "user_limit"
        self._memory_usage[(day, user_id)] = user_calls + 1
        return True, None
