from __future__ import annotations

import json

from perkforge.config import Settings
from perkforge.db.store import Store
from perkforge.llm.client import LLMClient
from perkforge.llm.guide import ConstellationGuide, generate_constellation_guide


class FakeResponse:
    def __init__(self, status_code: int, payload: dict):
        self.status_code = status_code
        self._payload = payload

    def raise_for_status(self) -> None:
        return None

    def json(self) -> dict:
        return self._payload


class FakeRequests:
    def __init__(self, content: str = '{"domain_guide": "Maps and charts.", "sources": "Atlases"}') -> None:
        self.content = content
        self.calls = 0
        self.payloads: list[dict] = []

    def post(self, url, headers=None, data=None, timeout=None) -> FakeResponse:
        self.calls += 1
        self.payloads.append(json.loads(data))
        return FakeResponse(200, {"choices": [{"message": {"content": self.content}}]})


class FakeRequests404:
    def post(self, *args, **kwargs) -> FakeResponse:
        return FakeResponse(404, {"error": {"message": "No route or model found"}})


class FakeOllamaRequests:
    def __init__(self) -> None:
        self.payloads: list[dict] = []

    def post(self, url, headers=None, data=None, timeout=None) -> FakeResponse:
        self.payloads.append(json.loads(data))
        return FakeResponse(200, {"message": {"content": '{"domain_guide": "Local guide."}'}})


def _openrouter(**overrides) -> Settings:
    values = {
        "llm_backend": "stub",
        "llm_json_backend": "openrouter",
        "openrouter_api_key": "test-key",
    }
    values.update(overrides)
    return Settings(**values)


def test_stub_backend_never_calls_network(monkeypatch):
    fake_requests = FakeRequests()
    monkeypatch.setattr("perkforge.llm.client.requests", fake_requests)
    client = LLMClient(Settings(llm_backend="stub", llm_json_backend="stub"), store=None)

    assert client.complete_json("hello world", ConstellationGuide) is None
    assert fake_requests.calls == 0


def test_openrouter_json_is_validated_against_schema(monkeypatch):
    fake_requests = FakeRequests()
    monkeypatch.setattr("perkforge.llm.client.requests", fake_requests)
    client = LLMClient(_openrouter(), store=None)

    guide = client.complete_json("guide please", ConstellationGuide, system_prompt="be brief")

    assert guide == ConstellationGuide(domain_guide="Maps and charts.", sources="Atlases")
    assert fake_requests.payloads[0]["response_format"] == {"type": "json_object"}
    assert fake_requests.payloads[0]["messages"][0] == {"role": "system", "content": "be brief"}


def test_fenced_json_is_parsed(monkeypatch):
    content = '```json\n{"domain_guide": "Fenced guide.", "sources": ["A", "B"]}\n```'
    monkeypatch.setattr("perkforge.llm.client.requests", FakeRequests(content))
    client = LLMClient(_openrouter(), store=None)

    guide = client.complete_json("guide please", ConstellationGuide)

    assert guide.domain_guide == "Fenced guide."
    assert guide.sources == "A, B"


def test_schema_mismatch_returns_none(monkeypatch, caplog):
    monkeypatch.setattr("perkforge.llm.client.requests", FakeRequests('{"domain_guide": "   "}'))
    client = LLMClient(_openrouter(), store=None)

    assert client.complete_json("guide please", ConstellationGuide) is None
    assert "llm_json_validation_failed" in caplog.text


def test_openrouter_missing_key_returns_none_without_network(monkeypatch):
    fake_requests = FakeRequests()
    monkeypatch.setattr("perkforge.llm.client.requests", fake_requests)
    client = LLMClient(_openrouter(openrouter_api_key=None), store=None)

    assert client.complete_json("hello world", ConstellationGuide) is None
    assert fake_requests.calls == 0


def test_openrouter_daily_limits_block_after_quota(monkeypatch, tmp_path):
    fake_requests = FakeRequests()
    monkeypatch.setattr("perkforge.llm.client.requests", fake_requests)
    settings = _openrouter(llm_max_calls_per_day=1, llm_max_calls_per_user_per_day=1, dev_mode=False)
    client = LLMClient(settings, store=Store(str(tmp_path / "limits.db")))

    first = client.complete_json("first", ConstellationGuide, user_id="u1")
    second = client.complete_json("second", ConstellationGuide, user_id="u1")

    assert first is not None
    assert second is None
    assert fake_requests.calls == 1


def test_openrouter_404_returns_none(monkeypatch, caplog):
    monkeypatch.setattr("perkforge.llm.client.requests", FakeRequests404())
    client = LLMClient(_openrouter(), store=None)

    assert client.complete_json("hi", ConstellationGuide) is None
    assert "openrouter_http_404" in caplog.text


def test_daily_limit_is_counted_per_user(monkeypatch, tmp_path):
    fake_requests = FakeRequests()
    monkeypatch.setattr("perkforge.llm.client.requests", fake_requests)
    settings = _openrouter(llm_max_calls_per_day=5, llm_max_calls_per_user_per_day=1, dev_mode=False)
    client = LLMClient(settings, store=Store(str(tmp_path / "limits.db")))

    assert client.complete_json("one", ConstellationGuide, user_id="author-1") is not None
    assert client.complete_json("two", ConstellationGuide, user_id="author-1") is None
    assert client.complete_json("three", ConstellationGuide, user_id="author-2") is not None
    assert fake_requests.calls == 2


def test_ollama_requests_json_format(monkeypatch):
    fake_requests = FakeOllamaRequests()
    monkeypatch.setattr("perkforge.llm.client.requests", fake_requests)
    client = LLMClient(Settings(llm_backend="ollama", llm_json_backend=""), store=None)

    guide = generate_constellation_guide(client, "Cartography", "knowledge")

    assert guide.domain_guide == "Local guide."
    assert fake_requests.payloads[0]["format"] == "json"
    assert "Cartography" in fake_requests.payloads[0]["messages"][-1]["content"]
