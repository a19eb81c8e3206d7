from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Any, Dict, List, Optional, Protocol, Tuple

from .errors import InvalidResponse, ProviderError, StructuralIntegrityFailure
from .markers import leftover_placeholders
from .model import ContentRole, QualityIssue, QualityReport, Segment, TranslationUnit, UnitStatus
from .translator import OpenAIConfig, OpenAITranslator, StyleGuide, StyleProfile


STRUCTURAL = StructuralIntegrityFailure.code

_NUMBER_RE = re.compile(r"\d+(?:[.,]\d+)?")
_CITATION_RE = re.compile(r"\[[0-9]+\]|\([a-zA-Z]\)")
_LATIN_WORD_RE = re.compile(r"[A-Za-z]{2,}")
_NON_LATIN_LANGS = {"ar", "be", "bg", "el", "fa", "he", "hi", "ja", "ka", "ko", "mk", "ru", "sr", "th", "uk", "zh"}


def check_structure(source: Segment, target: Segment) -> List[QualityIssue]:
    """
    Marker sequence of ``target`` must equal the source's: same raw markers,
    same multiplicity, same order. Returns hard-fail issues (empty when ok).
    """
    issues: List[QualityIssue] = []
    src = source.marker_raws
    tgt = target.marker_raws

    src_count, tgt_count = Counter(src), Counter(tgt)
    for raw, n in (src_count - tgt_count).items():
        issues.append(QualityIssue(STRUCTURAL, f"Missing marker {raw!r} (x{n})"))
    for raw, n in (tgt_count - src_count).items():
        issues.append(QualityIssue(STRUCTURAL, f"Unexpected marker {raw!r} (x{n})"))
    if not issues and src != tgt:
        for i, (a, b) in enumerate(zip(src, tgt)):
            if a != b:
                issues.append(QualityIssue(STRUCTURAL, f"Markers reordered at position {i}: expected {a!r}, got {b!r}"))
                break

    for ph in leftover_placeholders(target):
        issues.append(QualityIssue(STRUCTURAL, f"Unresolved placeholder {ph} in translation"))
    return issues


def numbers_and_citations_check(source_text: str, translated_text: str) -> List[str]:
    """
    Simple consistency check:
      - numbers should be preserved as raw digit tokens
      - citations like [1], (a) should be preserved
    Returns list of warnings.
    """
    warnings: List[str] = []
    src_nums = Counter(_NUMBER_RE.findall(source_text))
    tr_nums = Counter(_NUMBER_RE.findall(translated_text))
    if src_nums != tr_nums:
        warnings.append(f"Numbers changed: src={dict(src_nums)} vs trans={dict(tr_nums)}")

    src_cit = Counter(_CITATION_RE.findall(source_text))
    tr_cit = Counter(_CITATION_RE.findall(translated_text))
    if src_cit != tr_cit:
        warnings.append(f"Citations changed: src={dict(src_cit)} vs trans={dict(tr_cit)}")

    return warnings


class RegisterScorer(Protocol):
    def score(
        self,
        source: str,
        target: str,
        profile: StyleProfile,
        role: ContentRole,
        target_language: str,
    ) -> Tuple[float, List[QualityIssue]]:
        ...


class HeuristicRegisterScorer:
    """Local register check: starts at 1.0 and subtracts a penalty per finding."""

    def __init__(
        self,
        residue_penalty: float = 0.5,
        length_penalty: float = 0.3,
        forbidden_penalty: float = 0.25,
        punctuation_penalty: float = 0.1,
        script_penalty: float = 0.4,
        min_chars_for_ratio: int = 20,
    ):
        self.residue_penalty = residue_penalty
        self.length_penalty = length_penalty
        self.forbidden_penalty = forbidden_penalty
        self.punctuation_penalty = punctuation_penalty
        self.script_penalty = script_penalty
        self.min_chars_for_ratio = min_chars_for_ratio

    def score(
        self,
        source: str,
        target: str,
        profile: StyleProfile,
        role: ContentRole,
        target_language: str,
    ) -> Tuple[float, List[QualityIssue]]:
        issues: List[QualityIssue] = []
        if source and not target:
            return 0.0, [QualityIssue("register", "Empty translation")]

        score = 1.0
        if len(source.split()) >= 3 and source.casefold() == target.casefold():
            score -= self.residue_penalty
            issues.append(QualityIssue("register", "Translation identical to source"))

        if len(source) >= self.min_chars_for_ratio:
            ratio = len(target) / len(source)
            if not profile.min_length_ratio <= ratio <= profile.max_length_ratio:
                score -= self.length_penalty
                issues.append(
                    QualityIssue(
                        "register",
                        f"Length ratio {ratio:.2f} outside [{profile.min_length_ratio}, {profile.max_length_ratio}]",
                    )
                )

        low = target.casefold()
        for term in profile.forbidden_terms:
            if re.search(rf"(?<!\w){re.escape(term.casefold())}(?!\w)", low):
                score -= self.forbidden_penalty
                issues.append(QualityIssue("register", f"Forbidden term for this register: {term!r}"))

        if role in (ContentRole.TITLE, ContentRole.SHORT_FORM):
            if target.endswith(".") and not source.endswith("."):
                score -= self.punctuation_penalty
                issues.append(QualityIssue("register", f"Terminal period added to a {role.value}"))

        base_lang = target_language.split("-")[0].lower()
        if base_lang in _NON_LATIN_LANGS and len(_LATIN_WORD_RE.findall(target)) >= 3:
            if not re.search(r"[^\x00-\x7f]", target):
                score -= self.script_penalty
                issues.append(QualityIssue("register", f"Latin-only output for {target_language}"))

        return max(0.0, min(1.0, score)), issues


_SYSTEM_PROMPT_REGISTER = """\
You review website translations for tone and register. Reply with a single number between 0 and 1:
1 means the translation fully matches the requested register, 0 means it does not match at all."""

_USER_PROMPT_REGISTER = """\
Target language: {target_language}
Content role: {role}
Requested style: {directive}

Source:
{source}

Translation:
{target}
"""

_SCORE_RE = re.compile(r"(?<![\d.])(0(?:\.\d+)?|1(?:\.0+)?)(?![\d.])")


class OpenAIRegisterScorer:
    """Delegates the register judgement to a chat model."""

    def __init__(self, client: OpenAITranslator):
        self.client = client

    def score(
        self,
        source: str,
        target: str,
        profile: StyleProfile,
        role: ContentRole,
        target_language: str,
    ) -> Tuple[float, List[QualityIssue]]:
        reply = self.client.complete(
            _SYSTEM_PROMPT_REGISTER,
            _USER_PROMPT_REGISTER.format(
                target_language=target_language,
                role=role.value,
                directive=profile.as_directive(role),
                source=source,
                target=target,
            ),
        )
        m = _SCORE_RE.search(reply)
        if not m:
            raise InvalidResponse(f"Register scorer returned no score: {reply[:80]!r}")
        value = float(m.group(1))
        issues = [QualityIssue("register", f"Model register score {value:.2f}")] if value < 1.0 else []
        return value, issues


def screen_structure(unit: TranslationUnit, threshold: float = 0.8) -> Optional[QualityReport]:
    """Structural-only screen. Flags the unit and returns a report on failure, else None."""
    if unit.target is None:
        return None
    issues = check_structure(unit.source, unit.target)
    if not issues:
        return None
    report = QualityReport(
        unit_id=unit.id,
        attempt=len(unit.reports) + 1,
        structural_ok=False,
        register_score=0.0,
        threshold=threshold,
        issues=tuple(issues),
    )
    unit.add_report(report)
    unit.status = UnitStatus.FLAGGED
    return report


class QualityValidator:
    """Structural integrity plus register compliance; sets ``validated`` or ``flagged``."""

    def __init__(
        self,
        style_guide: StyleGuide,
        scorer: Optional[RegisterScorer] = None,
        threshold: float = 0.8,
        logger: Optional[logging.Logger] = None,
    ):
        self.style_guide = style_guide
        self.scorer = scorer or HeuristicRegisterScorer()
        self.threshold = threshold
        self.logger = logger

    def validate(self, unit: TranslationUnit, target_language: str) -> QualityReport:
        if unit.target is None:
            raise ValueError(f"Unit {unit.id} has no target to validate")

        role = unit.role or ContentRole.BODY
        issues = check_structure(unit.source, unit.target)
        structural_ok = not issues

        source_text, target_text = unit.source.plain_text, unit.target.plain_text
        profile = self.style_guide.profile(target_language, role)
        try:
            register_score, register_issues = self.scorer.score(source_text, target_text, profile, role, target_language)
        except ProviderError as exc:
            register_score, register_issues = 0.0, [QualityIssue("register_unscored", str(exc))]
        issues.extend(register_issues)
        issues.extend(QualityIssue("numbers_citations", w) for w in numbers_and_citations_check(source_text, target_text))

        report = QualityReport(
            unit_id=unit.id,
            attempt=len(unit.reports) + 1,
            structural_ok=structural_ok,
            register_score=register_score,
            threshold=self.threshold,
            issues=tuple(issues),
        )
        unit.add_report(report)
        unit.status = UnitStatus.VALIDATED if report.passed else UnitStatus.FLAGGED
        if not report.passed and self.logger:
            self.logger.warning(
                "Unit %s flagged (structure=%s, register=%.2f, threshold=%.2f): %s",
                unit.id,
                "ok" if structural_ok else "FAIL",
                register_score,
                self.threshold,
                "; ".join(i.message for i in issues[:3]),
            )
        return report


def build_validator(
    cfg: Dict[str, Any],
    style_guide: StyleGuide,
    logger: Optional[logging.Logger] = None,
) -> QualityValidator:
    qcfg = cfg.get("quality", {})
    scorer_name = str(qcfg.get("scorer", "heuristic")).lower()
    scorer: RegisterScorer
    if scorer_name == "openai":
        model = qcfg.get("openai", {}).get("model", "gpt-4.1-mini")
        scorer = OpenAIRegisterScorer(OpenAITranslator(cfg=OpenAIConfig(model=model, temperature=0.0, max_output_tokens=10)))
    elif scorer_name == "heuristic":
        scorer = HeuristicRegisterScorer()
    else:
        raise ValueError(f"Unknown register scorer: {scorer_name}")
    return QualityValidator(style_guide, scorer=scorer, threshold=float(qcfg.get("register_threshold", 0.8)), logger=logger)
