import threading
import time

from doctrans.classifier import build_classifier
from doctrans.errors import RateLimited, Timeout, TranslationUnavailable
from doctrans.markers import protect
from doctrans.memory import RecordOutcome, TranslationMemory
from doctrans.model import ContentRole, UnitStatus
from doctrans.orchestrator import CallState, CancelToken, Orchestrator, RetryPolicy
from doctrans.qa import QualityValidator, STRUCTURAL
from doctrans.translator import DummyTranslator, RateLimiter, StyleGuide
from doctrans.utils import AuditTrail
from doctrans.xliff_parser import parse_document


SCENARIO = {
    "Hola": "Hello",
    "Este es un contenido largo.": "This is a long piece of content.",
    "desc": "description",
}


class ScriptedTranslator:
    """Fails with the queued errors first, then answers from a dictionary."""

    name = "scripted"

    def __init__(self, errors=(), answers=None):
        self.errors = list(errors)
        self.answers = answers or {}
        self.calls = []
        self.hints = []
        self.notes = []
        self._lock = threading.Lock()

    def translate(self, text, source_lang, target_lang, style_directive, consistency_hint=None, notes=()):
        with self._lock:
            self.calls.append(text)
            self.hints.append(consistency_hint)
            self.notes.append(tuple(notes))
            if self.errors:
                raise self.errors.pop(0)
        return self.answers.get(text, f"[{target_lang}] {text}")


def _doc(text):
    doc = parse_document(text, name="post-42")
    build_classifier().classify_document(doc)
    return doc


def _no_sleep(_delay):
    return None


def test_first_run_translates_every_unit_and_fills_memory(wpml_xliff):
    doc = _doc(wpml_xliff)
    translator = DummyTranslator(SCENARIO)
    memory = TranslationMemory()
    with Orchestrator(translator, memory, parallel_workers=3) as orch:
        outcome = orch.translate_document(doc)

    assert len(translator.calls) == 3
    assert outcome.calls == 3
    assert [u.status for u in doc.units] == [UnitStatus.MACHINE_TRANSLATED] * 3
    assert [u.target.raw for u in doc.units] == ["Hello", "This is a long piece of content.", "description"]
    assert len(memory) == 3
    assert [o.memory for o in outcome.outcomes] == [RecordOutcome.CREATED] * 3


def test_second_run_is_served_from_memory(wpml_xliff):
    memory = TranslationMemory()
    with Orchestrator(DummyTranslator(SCENARIO), memory) as orch:
        orch.translate_document(_doc(wpml_xliff))

    doc = _doc(wpml_xliff)
    translator = DummyTranslator(SCENARIO)
    with Orchestrator(translator, memory) as orch:
        outcome = orch.translate_document(doc)

    assert translator.calls == []
    assert outcome.memory_hits == 3
    assert [u.status for u in doc.units] == [UnitStatus.MEMORY_HIT] * 3
    assert doc.unit("title").target.raw == "Hello"
    assert len(memory) == 3


def test_dropped_marker_is_flagged_and_kept_out_of_memory(markup_xliff):
    doc = _doc(markup_xliff)
    unit = doc.unit("content")
    protected, _ = protect(unit.source)
    # the closing </strong> goes missing
    translator = ScriptedTranslator(answers={protected: protected.replace("⟦2⟧", "")})
    memory = TranslationMemory()
    with Orchestrator(translator, memory) as orch:
        outcome = orch.translate_unit(unit, "es", "fr")

    assert unit.status == UnitStatus.FLAGGED
    assert outcome.memory is None
    assert len(memory) == 0
    assert unit.latest_report is not None and not unit.latest_report.structural_ok
    assert any(i.code == STRUCTURAL for i in unit.latest_report.issues)


def test_markers_survive_a_successful_translation(markup_xliff):
    doc = _doc(markup_xliff)
    unit = doc.unit("content")
    memory = TranslationMemory()
    with Orchestrator(ScriptedTranslator(), memory) as orch:
        orch.translate_unit(unit, "es", "fr")
    assert unit.status == UnitStatus.MACHINE_TRANSLATED
    assert unit.target.marker_raws == unit.source.marker_raws
    assert unit.target.raw.startswith("[fr] <p>Compra <strong>ahora</strong>")


def test_exhausted_retries_report_unavailable_and_leave_unit_untranslated(wpml_xliff):
    doc = _doc(wpml_xliff)
    unit = doc.unit("title")
    sleeps = []
    translator = ScriptedTranslator(errors=[RateLimited("429"), Timeout("slow"), RateLimited("429")])
    memory = TranslationMemory()
    retry = RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=0.75, call_timeout=None)
    with Orchestrator(translator, memory, retry=retry, sleep=sleeps.append) as orch:
        outcome = orch.translate_unit(unit, "es", "en")

    assert isinstance(outcome.error, TranslationUnavailable)
    assert outcome.error.attempts == 3
    assert outcome.calls == 3
    assert sleeps == [0.5, 0.75]
    assert list(outcome.transitions) == [
        CallState.PENDING,
        CallState.IN_FLIGHT,
        CallState.RETRYING,
        CallState.IN_FLIGHT,
        CallState.RETRYING,
        CallState.IN_FLIGHT,
        CallState.FAILED,
    ]
    assert unit.status == UnitStatus.UNTRANSLATED
    assert unit.target is None
    assert unit.last_error and "429" in unit.last_error
    assert len(memory) == 0


def test_transient_failure_then_success(wpml_xliff):
    doc = _doc(wpml_xliff)
    unit = doc.unit("title")
    translator = ScriptedTranslator(errors=[Timeout("slow")], answers=SCENARIO)
    with Orchestrator(translator, TranslationMemory(), sleep=_no_sleep) as orch:
        outcome = orch.translate_unit(unit, "es", "en")
    assert outcome.calls == 2
    assert outcome.transitions[-1] == CallState.SUCCEEDED
    assert unit.status == UnitStatus.MACHINE_TRANSLATED
    assert unit.attempts == 2


def test_slow_call_times_out(wpml_xliff):
    class SlowTranslator:
        name = "slow"

        def translate(self, text, source_lang, target_lang, style_directive, consistency_hint=None, notes=()):
            time.sleep(0.5)
            return "late"

    unit = _doc(wpml_xliff).unit("title")
    retry = RetryPolicy(max_attempts=1, call_timeout=0.05)
    with Orchestrator(SlowTranslator(), TranslationMemory(), retry=retry) as orch:
        outcome = orch.translate_unit(unit, "es", "en")
    assert isinstance(outcome.error.last_error, Timeout)
    assert unit.status == UnitStatus.UNTRANSLATED


def test_empty_response_is_retried_as_invalid(wpml_xliff):
    unit = _doc(wpml_xliff).unit("title")
    translator = ScriptedTranslator(answers={"Hola": "   "})
    retry = RetryPolicy(max_attempts=2, call_timeout=None)
    with Orchestrator(translator, TranslationMemory(), retry=retry, sleep=_no_sleep) as orch:
        outcome = orch.translate_unit(unit, "es", "en")
    assert outcome.error is not None
    assert type(outcome.error.last_error).__name__ == "InvalidResponse"
    assert len(translator.calls) == 2


def test_cancelled_batch_leaves_units_untranslated(wpml_xliff):
    doc = _doc(wpml_xliff)
    cancel = CancelToken()
    cancel.cancel()
    translator = DummyTranslator(SCENARIO)
    memory = TranslationMemory()
    with Orchestrator(translator, memory) as orch:
        outcome = orch.translate_document(doc, cancel=cancel)
    assert outcome.cancelled
    assert translator.calls == []
    assert all(u.status == UnitStatus.UNTRANSLATED for u in doc.units)
    assert len(memory) == 0


def test_fuzzy_candidate_goes_along_as_hint():
    doc = parse_document(
        """<xliff version="1.2"><file original="p" source-language="es" target-language="en"><body>
<trans-unit id="a" resname="post_content"><source>Bienvenidos a nuestra tienda online hoy</source></trans-unit>
</body></file></xliff>"""
    )
    build_classifier().classify_document(doc)
    memory = TranslationMemory()
    memory.record("Bienvenidos a nuestra tienda online", "en", ContentRole.BODY, "Welcome to our online shop")
    translator = ScriptedTranslator()
    with Orchestrator(translator, memory) as orch:
        orch.translate_unit(doc.unit("a"), "es", "en")
    assert translator.hints == ["Welcome to our online shop"]


def test_near_identical_match_is_adopted_without_a_call():
    doc = parse_document(
        """<xliff version="1.2"><file original="p" source-language="es" target-language="en"><body>
<trans-unit id="a" resname="post_title"><source>Bienvenidos a nuestra tienda online.</source></trans-unit>
</body></file></xliff>"""
    )
    build_classifier().classify_document(doc)
    memory = TranslationMemory(fuzzy_threshold=0.8)
    memory.record("Bienvenidos a nuestra tienda online", "en", ContentRole.TITLE, "Welcome to our online shop")
    translator = ScriptedTranslator()
    with Orchestrator(translator, memory, auto_adopt_threshold=0.8) as orch:
        outcome = orch.translate_unit(doc.unit("a"), "es", "en")
    assert translator.calls == []
    assert outcome.origin == "memory-fuzzy"
    assert doc.unit("a").status == UnitStatus.MEMORY_HIT


def test_gate_validates_and_records_only_passing_units(wpml_xliff):
    doc = _doc(wpml_xliff)
    gate = QualityValidator(StyleGuide(), threshold=0.8)
    memory = TranslationMemory()
    audit = AuditTrail()
    with Orchestrator(DummyTranslator(SCENARIO), memory, gate=gate, audit=audit) as orch:
        orch.translate_document(doc)
    assert [u.status for u in doc.units] == [UnitStatus.VALIDATED] * 3
    assert len(memory) == 3
    kinds = [r["kind"] for r in audit.as_list()]
    assert kinds.count("translation_prompt") == 3
    assert kinds.count("translation_result") == 3


def test_retranslate_without_confirmation_keeps_memory_entry(wpml_xliff):
    doc = _doc(wpml_xliff)
    unit = doc.unit("title")
    memory = TranslationMemory()
    memory.record("Hola", "en", ContentRole.TITLE, "Hello")
    with Orchestrator(ScriptedTranslator(answers={"Hola": "Hi"}), memory) as orch:
        outcome = orch.retranslate(unit, "es", "en")
        assert outcome.memory == RecordOutcome.CONFLICT
        assert memory.lookup("Hola", "en", ContentRole.TITLE).exact.target_template == "Hello"

        outcome = orch.retranslate(unit, "es", "en", confirm_overwrite=True)
    assert outcome.memory == RecordOutcome.OVERWRITTEN
    assert memory.lookup("Hola", "en", ContentRole.TITLE).exact.target_template == "Hi"
    assert unit.target.raw == "Hi"


def test_identical_fragments_in_parallel_share_one_call():
    units = "".join(
        f'<trans-unit id="t{i}" resname="menu_item"><source>Inicio</source></trans-unit>' for i in range(6)
    )
    doc = parse_document(
        f'<xliff version="1.2"><file original="nav" source-language="es" target-language="en"><body>{units}</body></file></xliff>'
    )
    build_classifier().classify_document(doc)
    translator = ScriptedTranslator(answers={"Inicio": "Home"})
    memory = TranslationMemory()
    with Orchestrator(translator, memory, parallel_workers=6) as orch:
        outcome = orch.translate_document(doc)
    assert len(translator.calls) == 1
    assert outcome.memory_hits == 5
    assert len(memory) == 1
    assert {u.target.raw for u in doc.units} == {"Home"}


def test_unexpected_provider_error_fails_only_that_unit(wpml_xliff):
    doc = _doc(wpml_xliff)
    translator = ScriptedTranslator(errors=[ValueError("content filter")], answers=SCENARIO)
    retry = RetryPolicy(max_attempts=3, call_timeout=None)
    with Orchestrator(translator, TranslationMemory(), retry=retry, parallel_workers=1, sleep=_no_sleep) as orch:
        outcome = orch.translate_document(doc)

    title = outcome.outcomes[0]
    assert isinstance(title.error, TranslationUnavailable)
    assert isinstance(title.error.last_error, ValueError)
    assert list(title.transitions) == [CallState.PENDING, CallState.IN_FLIGHT, CallState.FAILED]
    assert doc.unit("title").status == UnitStatus.UNTRANSLATED
    assert [u.status for u in doc.units[1:]] == [UnitStatus.MACHINE_TRANSLATED] * 2


class HangingTranslator:
    """Blocks on ``hang_on`` until released; answers everything else at once."""

    name = "hanging"

    def __init__(self, hang_on):
        self.hang_on = hang_on
        self.release = threading.Event()
        self.sent = []
        self._lock = threading.Lock()

    def translate(self, text, source_lang, target_lang, style_directive, consistency_hint=None, notes=()):
        with self._lock:
            self.sent.append(text)
        if text == self.hang_on:
            self.release.wait(5)
        return f"[{target_lang}] {text}"


def test_hung_call_does_not_time_out_its_siblings(wpml_xliff):
    doc = _doc(wpml_xliff)
    translator = HangingTranslator("Hola")
    retry = RetryPolicy(max_attempts=1, call_timeout=0.2)
    try:
        with Orchestrator(translator, TranslationMemory(), retry=retry, parallel_workers=1) as orch:
            outcome = orch.translate_document(doc)
    finally:
        translator.release.set()

    assert translator.sent == ["Hola", "Este es un contenido largo.", "desc"]
    assert isinstance(outcome.outcomes[0].error.last_error, Timeout)
    assert [u.status for u in doc.units] == [
        UnitStatus.UNTRANSLATED,
        UnitStatus.MACHINE_TRANSLATED,
        UnitStatus.MACHINE_TRANSLATED,
    ]


def test_timed_out_call_holds_its_rate_limit_slot_until_it_returns(wpml_xliff):
    doc = _doc(wpml_xliff)
    translator = HangingTranslator("Hola")
    retry = RetryPolicy(max_attempts=1, call_timeout=0.1)
    orch = Orchestrator(translator, TranslationMemory(), rate_limiter=RateLimiter(max_in_flight=1), retry=retry)
    try:
        orch.translate_unit(doc.unit("title"), "es", "en")
        assert doc.unit("title").status == UnitStatus.UNTRANSLATED

        worker = threading.Thread(target=orch.translate_unit, args=(doc.unit("body"), "es", "en"))
        worker.start()
        time.sleep(0.3)
        assert translator.sent == ["Hola"]

        translator.release.set()
        worker.join(5)
    finally:
        translator.release.set()
        orch.close(grace=1.0)
    assert translator.sent == ["Hola", "Este es un contenido largo."]
    assert doc.unit("body").status == UnitStatus.MACHINE_TRANSLATED


def test_unit_notes_reach_the_provider(markup_xliff):
    doc = _doc(markup_xliff)
    translator = ScriptedTranslator()
    with Orchestrator(translator, TranslationMemory()) as orch:
        orch.translate_unit(doc.unit("content"), "es", "fr")
    assert translator.notes == [("Shortcodes stay as they are",)]
