from __future__ import annotations

import os
import re
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence

from .errors import InvalidResponse, MissingApiKeyError, ProviderError, RateLimited, Timeout
from .model import ContentRole


SYSTEM_PROMPT_TRANSLATION = """\
You are a professional translation engine for website content. You translate from {source_lang} into {target_lang}.
The text contains placeholders like ⟦0⟧, ⟦1⟧ standing for markup and shortcodes. Keep every placeholder exactly once, unchanged, in a natural position; never translate, renumber, drop or duplicate them.
Return only the translation (no quotes, no explanations)."""

USER_PROMPT_TEMPLATE = """\
Style: {style_directive}
Translator notes: {notes}
{hint_block}
Text:
{text}
"""

HINT_TEMPLATE = """\
An approved translation of a very similar text exists; stay consistent with its terminology and tone:
{hint}
"""


class BaseTranslator(Protocol):
    name: str

    def translate(
        self,
        text: str,
        source_lang: str,
        target_lang: str,
        style_directive: str,
        consistency_hint: Optional[str] = None,
        notes: Sequence[str] = (),
    ) -> str:
        ...


def _merge_list(*lists: Optional[List[str]]) -> List[str]:
    seen: set[str] = set()
    out: List[str] = []
    for values in lists:
        for val in values or []:
            if not isinstance(val, str):
                continue
            val_clean = val.strip()
            if val_clean and val_clean not in seen:
                seen.add(val_clean)
                out.append(val_clean)
    return out


@dataclass
class StyleProfile:
    register: str = "neutral, professional"
    formality: str = "default"
    conventions: List[str] = field(default_factory=list)
    forbidden_terms: List[str] = field(default_factory=list)
    min_length_ratio: float = 0.4
    max_length_ratio: float = 2.5

    def as_directive(self, role: ContentRole | str) -> str:
        role_v = role.value if isinstance(role, ContentRole) else role
        conv = "; ".join(self.conventions)
        avoid = ", ".join(self.forbidden_terms)
        parts = [f"role={role_v}", f"register={self.register}", f"formality={self.formality}"]
        if conv:
            parts.append(f"conventions={conv}")
        if avoid:
            parts.append(f"avoid={avoid}")
        return "; ".join(parts)


class StyleGuide:
    """Resolves a :class:`StyleProfile` per (target language, role).

    Layers, later wins: default, roles[role], languages[lang].default,
    languages[lang].roles[role]. List fields accumulate.
    """

    def __init__(self, style_cfg: Optional[Dict[str, Any]] = None):
        self.cfg = style_cfg or {}
        self._cache: Dict[tuple, StyleProfile] = {}
        self._lock = threading.Lock()

    def _layers(self, target_language: str, role: str) -> List[Dict[str, Any]]:
        lang_cfg = self.cfg.get("languages", {}).get(target_language) or self.cfg.get("languages", {}).get(
            target_language.split("-")[0], {}
        )
        return [
            self.cfg.get("default", {}),
            self.cfg.get("roles", {}).get(role, {}),
            lang_cfg.get("default", {}),
            lang_cfg.get("roles", {}).get(role, {}),
        ]

    def profile(self, target_language: str, role: ContentRole | str) -> StyleProfile:
        role_v = role.value if isinstance(role, ContentRole) else role
        key = (target_language, role_v)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        layers = self._layers(target_language, role_v)
        profile = StyleProfile(
            conventions=_merge_list(*(layer.get("conventions") for layer in layers)),
            forbidden_terms=_merge_list(*(layer.get("forbidden_terms") for layer in layers)),
        )
        for layer in layers:
            for attr in ("register", "formality"):
                if layer.get(attr):
                    setattr(profile, attr, str(layer[attr]))
            for attr in ("min_length_ratio", "max_length_ratio"):
                if layer.get(attr) is not None:
                    setattr(profile, attr, float(layer[attr]))
        with self._lock:
            self._cache[key] = profile
        return profile

    def directive(self, target_language: str, role: ContentRole | str) -> str:
        return self.profile(target_language, role).as_directive(role)


class RateLimiter:
    """Bounds concurrent in-flight calls and enforces a minimum spacing between call starts."""

    def __init__(self, max_in_flight: int = 0, min_interval: float = 0.0, requests_per_minute: Optional[int] = None):
        rpm_interval = 60.0 / requests_per_minute if requests_per_minute else 0.0
        self.interval = max(min_interval or 0.0, rpm_interval)
        self.max_in_flight = max_in_flight
        self._sem = threading.BoundedSemaphore(max_in_flight) if max_in_flight > 0 else None
        self._lock = threading.Lock()
        self._last_ts = 0.0

    def wait(self) -> None:
        if self.interval <= 0:
            return
        with self._lock:
            now = time.monotonic()
            delta = now - self._last_ts
            if delta < self.interval:
                time.sleep(self.interval - delta)
            self._last_ts = time.monotonic()

    def acquire(self) -> None:
        """Take an in-flight slot and wait out the spacing. Pair with :meth:`release`."""
        if self._sem is not None:
            self._sem.acquire()
        try:
            self.wait()
        except BaseException:
            self.release()
            raise

    def release(self) -> None:
        if self._sem is not None:
            self._sem.release()

    @contextmanager
    def slot(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()


def _strip_code_fences(s: str) -> str:
    fence = re.compile(r"^\s*```(?:\w+)?\s*([\s\S]*?)\s*```\s*$")
    m = fence.match(s.strip())
    return m.group(1) if m else s


@dataclass
class OpenAIConfig:
    model: str = "gpt-4.1-mini"
    temperature: float = 0.1
    max_output_tokens: int = 2000
    timeout: float = 60.0


class OpenAITranslator:
    """
    Chat-completion translator.

    Requires:
      - `openai` python package
      - OPENAI_API_KEY in env or provided.
    """

    name = "openai"

    def __init__(self, api_key: Optional[str] = None, cfg: Optional[OpenAIConfig] = None):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY", "")
        if not self.api_key:
            raise MissingApiKeyError("OPENAI_API_KEY is missing: set the environment variable or add it to your .env.")
        self.cfg = cfg or OpenAIConfig()

        from openai import OpenAI  # type: ignore

        self._client = OpenAI(api_key=self.api_key, timeout=self.cfg.timeout, max_retries=0)

    def complete(self, system: str, user: str) -> str:
        import openai  # type: ignore

        try:
            resp = self._client.chat.completions.create(
                model=self.cfg.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=self.cfg.temperature,
                max_tokens=self.cfg.max_output_tokens,
            )
        except openai.RateLimitError as exc:
            raise RateLimited(str(exc)) from exc
        except openai.APITimeoutError as exc:
            raise Timeout(str(exc)) from exc
        except (openai.APIConnectionError, openai.InternalServerError) as exc:
            raise ProviderError(str(exc)) from exc
        except openai.APIStatusError as exc:
            # remaining 4xx: content filter, context length, auth, unknown model
            raise InvalidResponse(f"OpenAI refused the request ({exc.status_code}): {exc}") from exc
        except openai.OpenAIError as exc:
            raise ProviderError(str(exc)) from exc

        if not resp.choices:
            raise InvalidResponse("OpenAI returned no choices")
        content = _strip_code_fences(resp.choices[0].message.content or "").strip()
        if not content:
            raise InvalidResponse("OpenAI returned an empty completion")
        return content

    def translate(
        self,
        text: str,
        source_lang: str,
        target_lang: str,
        style_directive: str,
        consistency_hint: Optional[str] = None,
        notes: Sequence[str] = (),
    ) -> str:
        system = SYSTEM_PROMPT_TRANSLATION.format(source_lang=source_lang, target_lang=target_lang)
        user = USER_PROMPT_TEMPLATE.format(
            style_directive=style_directive,
            notes=" | ".join(notes) or "none",
            hint_block=HINT_TEMPLATE.format(hint=consistency_hint) if consistency_hint else "",
            text=text,
        )
        return self.complete(system, user)


_DEEPL_FORMALITY = {"formal": "prefer_more", "informal": "prefer_less", "more": "more", "less": "less"}
_DEEPL_TARGET_DEFAULTS = {"EN": "EN-US", "PT": "PT-PT"}


def deepl_language(code: str, target: bool) -> str:
    base = code.replace("_", "-").upper()
    if not target:
        return base.split("-")[0]
    if base in _DEEPL_TARGET_DEFAULTS:
        return _DEEPL_TARGET_DEFAULTS[base]
    return base if base in ("EN-GB", "EN-US", "PT-BR", "PT-PT", "ZH-HANS", "ZH-HANT") else base.split("-")[0]


class DeepLTranslator:
    """
    DeepL translator; placeholders go through untouched as plain text.

    Requires:
      - `deepl` python package
      - DEEPL_AUTH_KEY in env or provided.
    """

    name = "deepl"

    def __init__(self, auth_key: Optional[str] = None, preserve_formatting: bool = True, timeout: Optional[float] = None):
        self.auth_key = auth_key or os.getenv("DEEPL_AUTH_KEY", "")
        if not self.auth_key:
            raise MissingApiKeyError("DEEPL_AUTH_KEY is missing: set the environment variable or add it to your .env.")
        self.preserve_formatting = preserve_formatting

        import deepl  # type: ignore

        if timeout:
            # the client library reads its HTTP timeout from module state
            deepl.http_client.min_connection_timeout = timeout
        self._deepl = deepl.Translator(self.auth_key)

    def translate(
        self,
        text: str,
        source_lang: str,
        target_lang: str,
        style_directive: str,
        consistency_hint: Optional[str] = None,
        notes: Sequence[str] = (),
    ) -> str:
        import deepl  # type: ignore

        formality = "default"
        m = re.search(r"formality=(\w+)", style_directive)
        if m:
            formality = _DEEPL_FORMALITY.get(m.group(1), "default")

        kwargs: Dict[str, Any] = {
            "source_lang": deepl_language(source_lang, target=False),
            "target_lang": deepl_language(target_lang, target=True),
            "preserve_formatting": self.preserve_formatting,
            "formality": formality,
        }
        context = "\n".join([*notes, consistency_hint] if consistency_hint else notes)
        if context:
            kwargs["context"] = context
        try:
            result = self._deepl.translate_text(text, **kwargs)
        except (deepl.TooManyRequestsException, deepl.QuotaExceededException) as exc:
            raise RateLimited(str(exc)) from exc
        except deepl.ConnectionException as exc:
            raise Timeout(str(exc)) from exc
        except deepl.DeepLException as exc:
            raise ProviderError(str(exc)) from exc
        out = str(result).strip()
        if not out:
            raise InvalidResponse("DeepL returned an empty translation")
        return out


class DummyTranslator:
    """Offline translator for testing/dev. Looks text up in a dictionary, else echoes it."""

    name = "dummy"

    def __init__(self, dictionary: Optional[Dict[str, str]] = None):
        self.dictionary = dict(dictionary or {})
        self.calls: List[str] = []

    def translate(
        self,
        text: str,
        source_lang: str,
        target_lang: str,
        style_directive: str,
        consistency_hint: Optional[str] = None,
        notes: Sequence[str] = (),
    ) -> str:
        self.calls.append(text)
        return self.dictionary.get(text, text)


def build_translator(cfg: Dict[str, Any], provider: Optional[str] = None) -> BaseTranslator:
    provider = (provider or cfg["translation"].get("provider", "openai")).lower()
    timeout = float(cfg["translation"].get("scheduling", {}).get("call_timeout_seconds", 60.0))
    if provider == "openai":
        ocfg = cfg["translation"].get("openai", {})
        return OpenAITranslator(
            cfg=OpenAIConfig(
                model=ocfg.get("model", "gpt-4.1-mini"),
                temperature=float(ocfg.get("temperature", 0.1)),
                max_output_tokens=int(ocfg.get("max_output_tokens", 2000)),
                timeout=timeout,
            )
        )
    if provider == "deepl":
        dcfg = cfg["translation"].get("deepl", {})
        return DeepLTranslator(preserve_formatting=bool(dcfg.get("preserve_formatting", True)), timeout=timeout)
    if provider == "dummy":
        return DummyTranslator(cfg["translation"].get("dummy", {}).get("dictionary", {}))
    raise ValueError(f"Unknown translation provider: {provider}")
