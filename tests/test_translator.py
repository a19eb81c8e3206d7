import time
from types import SimpleNamespace

import deepl
import httpx
import openai
import pytest

from doctrans.config import load_config
from doctrans.errors import InvalidResponse, MissingApiKeyError, ProviderError
from doctrans.model import ContentRole
from doctrans.translator import (
    DeepLTranslator,
    DummyTranslator,
    OpenAITranslator,
    RateLimiter,
    StyleGuide,
    build_translator,
    deepl_language,
)


STYLE = {
    "default": {"register": "neutral", "conventions": ["Keep brand names"]},
    "roles": {"title": {"conventions": ["No terminal period"], "max_length_ratio": 1.5}},
    "languages": {
        "de": {
            "default": {"formality": "formal", "forbidden_terms": ["du"]},
            "roles": {"title": {"register": "punchy"}},
        }
    },
}


def test_style_guide_layers_profiles():
    guide = StyleGuide(STYLE)
    title_de = guide.profile("de", ContentRole.TITLE)
    assert title_de.register == "punchy"
    assert title_de.formality == "formal"
    assert title_de.conventions == ["Keep brand names", "No terminal period"]
    assert title_de.forbidden_terms == ["du"]
    assert title_de.max_length_ratio == 1.5

    body_fr = guide.profile("fr", ContentRole.BODY)
    assert body_fr.register == "neutral"
    assert body_fr.formality == "default"
    assert body_fr.forbidden_terms == []


def test_regional_language_falls_back_to_base():
    assert StyleGuide(STYLE).profile("de-AT", "body").formality == "formal"


def test_directive_names_role_and_register():
    directive = StyleGuide(STYLE).directive("de", ContentRole.TITLE)
    assert directive.startswith("role=title; register=punchy; formality=formal")
    assert "avoid=du" in directive


def test_rate_limiter_spaces_call_starts():
    limiter = RateLimiter(max_in_flight=1, min_interval=0.05)
    start = time.monotonic()
    for _ in range(3):
        with limiter.slot():
            pass
    assert time.monotonic() - start >= 0.09


def test_requests_per_minute_sets_interval():
    assert RateLimiter(requests_per_minute=120).interval == pytest.approx(0.5)
    assert RateLimiter(min_interval=1.0, requests_per_minute=120).interval == pytest.approx(1.0)


def test_dummy_translator_uses_dictionary():
    tr = DummyTranslator({"Hola": "Hello"})
    assert tr.translate("Hola", "es", "en", "") == "Hello"
    assert tr.translate("⟦0⟧Otro⟦1⟧", "es", "en", "") == "⟦0⟧Otro⟦1⟧"
    assert tr.calls == ["Hola", "⟦0⟧Otro⟦1⟧"]


def test_build_translator_from_config(monkeypatch):
    cfg = load_config(overrides={"translation": {"provider": "dummy", "dummy": {"dictionary": {"a": "b"}}}})
    tr = build_translator(cfg)
    assert isinstance(tr, DummyTranslator)
    assert tr.dictionary == {"a": "b"}

    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(MissingApiKeyError):
        build_translator(cfg, provider="openai")
    with pytest.raises(ValueError):
        build_translator(cfg, provider="babelfish")


def test_deepl_language_codes():
    assert deepl_language("en", target=True) == "EN-US"
    assert deepl_language("pt_br", target=True) == "PT-BR"
    assert deepl_language("de-AT", target=True) == "DE"
    assert deepl_language("en-GB", target=False) == "EN"


class _FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.requests = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _openai(content):
    tr = OpenAITranslator(api_key="test-key")
    completions = _FakeCompletions(content)
    tr._client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return tr, completions


def test_openai_translator_builds_prompt_and_strips_fences():
    tr, completions = _openai("```\nHallo ⟦0⟧Welt⟦1⟧\n```")
    out = tr.translate("Hola ⟦0⟧mundo⟦1⟧", "es", "de", "role=body; formality=formal", consistency_hint="Hallo Welt")
    assert out == "Hallo ⟦0⟧Welt⟦1⟧"
    messages = completions.requests[0]["messages"]
    assert "from es into de" in messages[0]["content"]
    assert "formality=formal" in messages[1]["content"]
    assert "Hallo Welt" in messages[1]["content"]


def test_openai_translator_rejects_empty_output():
    tr, _ = _openai("   ")
    with pytest.raises(InvalidResponse):
        tr.translate("Hola", "es", "de", "")


def test_deepl_translator_maps_formality_and_hint():
    tr = DeepLTranslator(auth_key="test-key:fx")
    calls = []

    def translate_text(text, **kwargs):
        calls.append(kwargs)
        return "Hallo"

    tr._deepl = SimpleNamespace(translate_text=translate_text)
    assert tr.translate("Hola", "es", "de", "role=title; formality=formal", consistency_hint="Hallo!") == "Hallo"
    assert calls[0]["formality"] == "prefer_more"
    assert calls[0]["context"] == "Hallo!"
    assert (calls[0]["source_lang"], calls[0]["target_lang"]) == ("ES", "DE")


def test_openai_prompt_carries_unit_notes():
    tr, completions = _openai("Hallo")
    tr.translate("Hola", "es", "de", "role=title", notes=("Keep the brand name", "Max 60 chars"))
    assert "Translator notes: Keep the brand name | Max 60 chars" in completions.requests[0]["messages"][1]["content"]


class _RaisingCompletions:
    def __init__(self, exc):
        self.exc = exc

    def create(self, **kwargs):
        raise self.exc


def _status_error(cls, status, message):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    return cls(message, response=httpx.Response(status, request=request), body=None)


@pytest.mark.parametrize(
    "exc, expected",
    [
        (_status_error(openai.BadRequestError, 400, "content filter"), InvalidResponse),
        (_status_error(openai.AuthenticationError, 401, "bad key"), InvalidResponse),
        (_status_error(openai.NotFoundError, 404, "no such model"), InvalidResponse),
        (openai.OpenAIError("client misconfigured"), ProviderError),
    ],
)
def test_openai_errors_map_to_provider_errors(exc, expected):
    tr = OpenAITranslator(api_key="test-key")
    tr._client = SimpleNamespace(chat=SimpleNamespace(completions=_RaisingCompletions(exc)))
    with pytest.raises(expected) as err:
        tr.complete("system", "user")
    assert err.value.__cause__ is exc


def test_deepl_context_joins_notes_and_hint(monkeypatch):
    monkeypatch.setattr(deepl.http_client, "min_connection_timeout", deepl.http_client.min_connection_timeout)
    tr = DeepLTranslator(auth_key="test-key:fx", timeout=7.0)
    assert deepl.http_client.min_connection_timeout == 7.0
    calls = []

    def translate_text(text, **kwargs):
        calls.append(kwargs)
        return "Hallo"

    tr._deepl = SimpleNamespace(translate_text=translate_text)
    tr.translate("Hola", "es", "de", "role=title", consistency_hint="Hallo!", notes=("Brand: Acme",))
    assert calls[0]["context"] == "Brand: Acme\nHallo!"
