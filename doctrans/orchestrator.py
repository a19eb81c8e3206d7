from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from .errors import InvalidResponse, ProviderError, Timeout, TranslationUnavailable
from .markers import protect, restore, template_marker_count
from .memory import LookupKind, MemoryKey, RecordOutcome, TranslationMemory
from .model import ContentDocument, ContentRole, QualityReport, TranslationUnit, UnitStatus
from .qa import QualityValidator, screen_structure
from .translator import BaseTranslator, RateLimiter, StyleGuide
from .utils import AuditTrail, sha1_text


T = TypeVar("T")


class CallState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in-flight"
    SUCCEEDED = "succeeded"
    RETRYING = "retrying"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    call_timeout: Optional[float] = 60.0

    def delay(self, attempt: int) -> float:
        """Backoff before attempt ``attempt + 1``; capped exponential."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


class CancelToken:
    """Operator abort for a batch. Units not yet started stay untranslated."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def gather(
    futures: Sequence["Future[T]"],
    cancel: CancelToken,
    logger: Optional[logging.Logger] = None,
    poll: float = 0.1,
) -> List[T]:
    """Results in submission order.

    Waits in short polls so Ctrl-C is seen while work is running. Ctrl-C
    cancels ``cancel`` and then drains: units not yet started finish as
    cancelled, in-flight calls run to their own deadline.
    """
    try:
        while wait(futures, timeout=poll).not_done:
            pass
    except KeyboardInterrupt:
        cancel.cancel()
        if logger:
            logger.warning("Interrupted: cancelling pending work, waiting for in-flight calls")
    return [f.result() for f in futures]


@dataclass
class _CallResult:
    text: Optional[str]
    attempts: int
    transitions: List[CallState]
    error: Optional[BaseException] = None
    cancelled: bool = False


@dataclass
class UnitOutcome:
    unit_id: str
    status: UnitStatus
    origin: str
    calls: int = 0
    transitions: Tuple[CallState, ...] = ()
    memory: Optional[RecordOutcome] = None
    report: Optional[QualityReport] = None
    error: Optional[TranslationUnavailable] = None


@dataclass
class DocumentOutcome:
    document: str
    outcomes: List[UnitOutcome] = field(default_factory=list)
    cancelled: bool = False

    @property
    def calls(self) -> int:
        return sum(o.calls for o in self.outcomes)

    @property
    def unavailable(self) -> List[UnitOutcome]:
        return [o for o in self.outcomes if o.error is not None]

    @property
    def flagged(self) -> List[UnitOutcome]:
        return [o for o in self.outcomes if o.status == UnitStatus.FLAGGED]

    @property
    def memory_hits(self) -> int:
        return sum(1 for o in self.outcomes if o.status == UnitStatus.MEMORY_HIT)

    @property
    def memory_conflicts(self) -> List[UnitOutcome]:
        return [o for o in self.outcomes if o.memory == RecordOutcome.CONFLICT]


class Orchestrator:
    """
    Memory first, provider second, one unit at a time.

    Per unit: exact memory hit, else fuzzy auto-adopt, else a provider call
    with markers protected (the best fuzzy candidate goes along as a hint).
    Provider failures follow an explicit call state machine with capped
    exponential backoff. Accepted results are written to memory as soon as
    they exist. With ``gate`` set, only units the gate passes are accepted;
    without it, every structurally sound result is.
    """

    def __init__(
        self,
        translator: BaseTranslator,
        memory: TranslationMemory,
        style_guide: Optional[StyleGuide] = None,
        gate: Optional[QualityValidator] = None,
        rate_limiter: Optional[RateLimiter] = None,
        retry: Optional[RetryPolicy] = None,
        auto_adopt_threshold: float = 0.95,
        parallel_workers: int = 4,
        audit: Optional[AuditTrail] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.translator = translator
        self.memory = memory
        self.style_guide = style_guide or StyleGuide()
        self.gate = gate
        self.rate_limiter = rate_limiter or RateLimiter()
        self.retry = retry or RetryPolicy()
        self.auto_adopt_threshold = auto_adopt_threshold
        self.parallel_workers = max(1, parallel_workers)
        self.audit = audit
        self.logger = logger
        self._sleep = sleep
        self._abandoned: set[threading.Thread] = set()
        self._abandoned_guard = threading.Lock()
        self._inflight: Dict[MemoryKey, threading.Event] = {}
        self._inflight_guard = threading.Lock()

    def close(self, grace: float = 0.0) -> None:
        """Give provider calls abandoned after a timeout up to ``grace`` seconds to return."""
        with self._abandoned_guard:
            abandoned = list(self._abandoned)
        deadline = time.monotonic() + grace
        for thread in abandoned:
            thread.join(max(0.0, deadline - time.monotonic()))
        still = sum(1 for t in abandoned if t.is_alive())
        if still and self.logger:
            self.logger.warning("%s timed-out provider call(s) still running at shutdown", still)

    def __enter__(self) -> "Orchestrator":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ---- provider call state machine ----

    def _invoke(self, text: str, source_lang: str, target_lang: str, directive: str, hint: Optional[str], notes: Sequence[str]) -> str:
        if not self.retry.call_timeout:
            with self.rate_limiter.slot():
                out = self.translator.translate(text, source_lang, target_lang, directive, hint, notes=notes)
        else:
            out = self._invoke_with_deadline(text, source_lang, target_lang, directive, hint, notes)
        if not isinstance(out, str) or not out.strip():
            raise InvalidResponse("Provider returned an empty translation")
        return out.strip()

    def _invoke_with_deadline(
        self, text: str, source_lang: str, target_lang: str, directive: str, hint: Optional[str], notes: Sequence[str]
    ) -> str:
        # The deadline runs from the moment the call is sent. A call that
        # outlives it keeps its rate-limit slot until it actually returns.
        self.rate_limiter.acquire()
        future: Future[str] = Future()

        def run() -> None:
            try:
                future.set_result(self.translator.translate(text, source_lang, target_lang, directive, hint, notes=notes))
            except Exception as exc:
                future.set_exception(exc)
            finally:
                self.rate_limiter.release()
                with self._abandoned_guard:
                    self._abandoned.discard(thread)

        thread = threading.Thread(target=run, name="provider-call", daemon=True)
        thread.start()
        try:
            return future.result(timeout=self.retry.call_timeout)
        except FutureTimeout as exc:
            with self._abandoned_guard:
                if thread.is_alive():
                    self._abandoned.add(thread)
            raise Timeout(f"Provider call exceeded {self.retry.call_timeout}s") from exc

    def _call(
        self,
        unit_id: str,
        text: str,
        source_lang: str,
        target_lang: str,
        directive: str,
        hint: Optional[str],
        notes: Sequence[str],
        cancel: Optional[CancelToken],
    ) -> _CallResult:
        state = CallState.PENDING
        transitions = [state]
        attempt = 0
        last_error: Optional[BaseException] = None

        while True:
            if cancel is not None and cancel.cancelled:
                transitions.append(CallState.FAILED)
                return _CallResult(None, attempt, transitions, last_error, cancelled=True)

            attempt += 1
            state = CallState.IN_FLIGHT
            transitions.append(state)
            try:
                out = self._invoke(text, source_lang, target_lang, directive, hint, notes)
            except ProviderError as exc:
                last_error = exc
                if attempt >= self.retry.max_attempts:
                    transitions.append(CallState.FAILED)
                    return _CallResult(None, attempt, transitions, last_error)
                delay = self.retry.delay(attempt)
                transitions.append(CallState.RETRYING)
                if self.logger:
                    self.logger.warning(
                        "Unit %s attempt %s/%s failed (%s): %s; retrying in %.1fs",
                        unit_id,
                        attempt,
                        self.retry.max_attempts,
                        getattr(exc, "code", type(exc).__name__),
                        exc,
                        delay,
                    )
                self._sleep(delay)
                continue
            except Exception as exc:
                # not a provider failure we know how to retry
                if self.logger:
                    self.logger.exception("Unit %s: provider raised %s", unit_id, type(exc).__name__)
                transitions.append(CallState.FAILED)
                return _CallResult(None, attempt, transitions, exc)

            transitions.append(CallState.SUCCEEDED)
            return _CallResult(out, attempt, transitions)

    # ---- identical fragments in flight ----

    def _claim(self, key: MemoryKey) -> Tuple[bool, threading.Event]:
        with self._inflight_guard:
            ev = self._inflight.get(key)
            if ev is not None:
                return False, ev
            ev = threading.Event()
            self._inflight[key] = ev
            return True, ev

    def _release(self, key: MemoryKey, ev: threading.Event) -> None:
        with self._inflight_guard:
            self._inflight.pop(key, None)
        ev.set()

    # ---- acceptance ----

    def _accept(
        self,
        unit: TranslationUnit,
        target_lang: str,
        role: ContentRole,
        template: str,
        confirm_overwrite: bool = False,
    ) -> Tuple[Optional[QualityReport], Optional[RecordOutcome]]:
        if self.gate is not None:
            report: Optional[QualityReport] = self.gate.validate(unit, target_lang)
        else:
            report = screen_structure(unit)
        if report is not None and not report.passed:
            return report, None

        score = report.register_score if report is not None else 1.0
        if confirm_overwrite:
            outcome = self.memory.overwrite(unit.source, target_lang, role, template, score, confirmed=True)
        else:
            outcome = self.memory.record(unit.source, target_lang, role, template, score)
        return report, outcome

    def _adopt_from_memory(self, unit: TranslationUnit, template: str, target_lang: str, origin: str) -> Optional[QualityReport]:
        unit.apply_translation(restore(template, unit.source.markers, unit.source.cdata), UnitStatus.MEMORY_HIT, origin)
        if self.gate is None:
            return None
        report = self.gate.validate(unit, target_lang)
        if report.passed:
            # a passing memory hit stays a memory hit
            unit.status = UnitStatus.MEMORY_HIT
        return report

    # ---- per unit ----

    def translate_unit(
        self,
        unit: TranslationUnit,
        source_lang: str,
        target_lang: str,
        cancel: Optional[CancelToken] = None,
    ) -> UnitOutcome:
        if not unit.needs_translation:
            return UnitOutcome(unit.id, unit.status, origin="skipped")
        if cancel is not None and cancel.cancelled:
            return UnitOutcome(unit.id, unit.status, origin="cancelled")

        role = unit.role or ContentRole.BODY
        key = self.memory.key_for(unit.source, target_lang, role)
        owner, ev = self._claim(key)
        if not owner:
            ev.wait()
        try:
            return self._translate_unit(unit, source_lang, target_lang, role, cancel)
        finally:
            if owner:
                self._release(key, ev)

    def _translate_unit(
        self,
        unit: TranslationUnit,
        source_lang: str,
        target_lang: str,
        role: ContentRole,
        cancel: Optional[CancelToken],
    ) -> UnitOutcome:
        hit = self.memory.lookup(unit.source, target_lang, role)
        if hit.kind == LookupKind.EXACT and hit.exact is not None:
            report = self._adopt_from_memory(unit, hit.exact.target_template, target_lang, "memory")
            recorded = None
            if report is None or report.passed:
                recorded = self.memory.record(unit.source, target_lang, role, hit.exact.target_template, hit.exact.acceptance_score)
            return UnitOutcome(unit.id, unit.status, "memory", memory=recorded, report=report)

        hint: Optional[str] = None
        best = hit.best
        if best is not None:
            same_markers = template_marker_count(best.entry.target_template) == len(unit.source.markers)
            if best.similarity >= self.auto_adopt_threshold and same_markers:
                report = self._adopt_from_memory(unit, best.entry.target_template, target_lang, "memory-fuzzy")
                if self.logger:
                    self.logger.info("Unit %s: fuzzy memory match adopted (%.3f)", unit.id, best.similarity)
                return UnitOutcome(unit.id, unit.status, "memory-fuzzy", report=report)
            hint = best.entry.target_template

        return self._translate_with_provider(unit, source_lang, target_lang, role, hint, cancel)

    def _translate_with_provider(
        self,
        unit: TranslationUnit,
        source_lang: str,
        target_lang: str,
        role: ContentRole,
        hint: Optional[str],
        cancel: Optional[CancelToken],
        confirm_overwrite: bool = False,
    ) -> UnitOutcome:
        protected, markers = protect(unit.source)
        directive = self.style_guide.directive(target_lang, role)
        if self.audit:
            self.audit.record(
                "translation_prompt",
                {
                    "unit_id": unit.id,
                    "role": role.value,
                    "target_language": target_lang,
                    "prompt_hash": sha1_text(protected + "\n" + directive),
                    "markers": len(markers),
                    "hint": bool(hint),
                    "notes": len(unit.notes),
                },
            )

        result = self._call(unit.id, protected, source_lang, target_lang, directive, hint, unit.notes, cancel)
        unit.attempts += result.attempts
        if result.cancelled:
            return UnitOutcome(unit.id, unit.status, "cancelled", calls=result.attempts, transitions=tuple(result.transitions))
        if result.text is None:
            err = TranslationUnavailable(unit.id, result.attempts, result.error)
            unit.last_error = str(err)
            if self.logger:
                self.logger.error("%s", err)
            return UnitOutcome(
                unit.id,
                unit.status,
                self.translator.name,
                calls=result.attempts,
                transitions=tuple(result.transitions),
                error=err,
            )

        unit.apply_translation(restore(result.text, markers, unit.source.cdata), UnitStatus.MACHINE_TRANSLATED, self.translator.name)
        report, recorded = self._accept(unit, target_lang, role, result.text, confirm_overwrite=confirm_overwrite)
        if self.audit:
            self.audit.record(
                "translation_result",
                {
                    "unit_id": unit.id,
                    "status": unit.status.value,
                    "attempts": result.attempts,
                    "memory": recorded.value if recorded else None,
                    "report": report.as_dict() if report else None,
                },
            )
        return UnitOutcome(
            unit.id,
            unit.status,
            self.translator.name,
            calls=result.attempts,
            transitions=tuple(result.transitions),
            memory=recorded,
            report=report,
        )

    def retranslate(
        self,
        unit: TranslationUnit,
        source_lang: str,
        target_lang: str,
        confirm_overwrite: bool = False,
    ) -> UnitOutcome:
        """
        Re-translation path for flagged units. Skips the exact memory hit; an
        accepted result only replaces an existing memory entry when
        ``confirm_overwrite`` is set, otherwise the entry stays and the outcome
        reports CONFLICT.
        """
        role = unit.role or ContentRole.BODY
        return self._translate_with_provider(unit, source_lang, target_lang, role, None, None, confirm_overwrite=confirm_overwrite)

    # ---- per document ----

    def translate_document(
        self,
        doc: ContentDocument,
        cancel: Optional[CancelToken] = None,
        target_language: Optional[str] = None,
    ) -> DocumentOutcome:
        """Translate every pending unit of ``doc``; returns once all have a terminal state."""
        target_lang = target_language or doc.target_language
        cancel = cancel or CancelToken()
        pending = doc.pending_units()
        outcome = DocumentOutcome(document=doc.name or doc.source_sha1[:8])
        if self.logger:
            self.logger.info("   Translating %s: %s pending unit(s) -> %s", outcome.document, len(pending), target_lang)

        if self.parallel_workers <= 1:
            for unit in pending:
                outcome.outcomes.append(self.translate_unit(unit, doc.source_language, target_lang, cancel))
        else:
            with ThreadPoolExecutor(max_workers=self.parallel_workers, thread_name_prefix="unit") as executor:
                futures = [executor.submit(self.translate_unit, unit, doc.source_language, target_lang, cancel) for unit in pending]
                outcome.outcomes.extend(gather(futures, cancel, self.logger))

        order = {u.id: i for i, u in enumerate(doc.units)}
        outcome.outcomes.sort(key=lambda o: order.get(o.unit_id, 0))
        outcome.cancelled = cancel.cancelled
        if self.logger:
            self.logger.info(
                "   %s: %s call(s), %s memory hit(s), %s memory conflict(s), %s flagged, %s unavailable",
                outcome.document,
                outcome.calls,
                outcome.memory_hits,
                len(outcome.memory_conflicts),
                len(outcome.flagged),
                len(outcome.unavailable),
            )
        return outcome


def build_orchestrator(
    cfg: Dict[str, Any],
    translator: BaseTranslator,
    memory: TranslationMemory,
    style_guide: StyleGuide,
    gate: Optional[QualityValidator] = None,
    audit: Optional[AuditTrail] = None,
    logger: Optional[logging.Logger] = None,
) -> Orchestrator:
    tcfg = cfg.get("translation", {})
    sched = tcfg.get("scheduling", {})
    return Orchestrator(
        translator,
        memory,
        style_guide=style_guide,
        gate=gate,
        rate_limiter=RateLimiter(
            max_in_flight=int(sched.get("max_in_flight", 4)),
            min_interval=float(sched.get("min_interval_seconds", 0.0)),
            requests_per_minute=sched.get("requests_per_minute"),
        ),
        retry=RetryPolicy(
            max_attempts=int(sched.get("max_attempts", 4)),
            base_delay=float(sched.get("retry_backoff_seconds", 1.0)),
            max_delay=float(sched.get("max_backoff_seconds", 30.0)),
            call_timeout=float(sched.get("call_timeout_seconds", 60.0)) or None,
        ),
        auto_adopt_threshold=float(cfg.get("memory", {}).get("auto_adopt_threshold", 0.95)),
        parallel_workers=int(tcfg.get("parallel_workers", 4)),
        audit=audit,
        logger=logger,
    )
