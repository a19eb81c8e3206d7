from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .classifier import ContentClassifier
from .errors import DocumentError, IncompleteTranslation
from .linkage import LinkageManager, LinkResult
from .model import ContentDocument, UnitStatus
from .orchestrator import CancelToken, DocumentOutcome, Orchestrator, gather
from .rebuilder import write_document
from .xliff_parser import parse_file


@dataclass
class DocumentResult:
    source: str
    name: str = ""
    target_language: str = ""
    state: str = "pending"  # written | partial | incomplete | cancelled | failed
    output: Optional[str] = None
    roles: Dict[str, int] = field(default_factory=dict)
    status_counts: Dict[str, int] = field(default_factory=dict)
    translation: Optional[DocumentOutcome] = None
    link: Optional[LinkResult] = None
    error: Optional[DocumentError] = None
    problems: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state in ("written", "partial")


@dataclass
class BatchReport:
    documents: List[DocumentResult] = field(default_factory=list)
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    finished_at: str = ""
    memory_stats: Dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def failed(self) -> List[DocumentResult]:
        return [d for d in self.documents if not d.ok]

    def status_totals(self) -> Dict[str, int]:
        totals = {s.value: 0 for s in UnitStatus}
        for d in self.documents:
            for k, v in d.status_counts.items():
                totals[k] = totals.get(k, 0) + v
        return totals

    def problem_rows(self) -> List[Dict[str, Any]]:
        return [row for d in self.documents for row in d.problems]

    def conflicts(self) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        for d in self.documents:
            if d.link is None:
                continue
            for c in d.link.conflicts:
                rows.append(
                    {
                        "document": d.name,
                        "group_id": c.group_id,
                        "language": c.language,
                        "existing": c.existing,
                        "incoming": c.incoming,
                    }
                )
        return rows


def _problem_rows(doc: ContentDocument) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for unit in doc.pending_units():
        if unit.status == UnitStatus.FLAGGED and unit.latest_report is not None:
            reason = "; ".join(i.message for i in unit.latest_report.issues) or "below register threshold"
        else:
            reason = unit.last_error or "not translated"
        rows.append(
            {
                "document": doc.name,
                "unit_id": unit.id,
                "content_ref": str(unit.content_ref),
                "role": unit.role.value if unit.role else "",
                "status": unit.status.value,
                "attempts": unit.attempts,
                "notes": " | ".join(unit.notes),
                "register_score": round(unit.latest_report.register_score, 3) if unit.latest_report else None,
                "reason": reason,
            }
        )
    return rows


class TranslationBatch:
    """
    Parse, classify, translate, rebuild and link a set of documents.

    A failing document is recorded in the report and never stops the others.
    Rebuilding waits until every unit of that document is terminal.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        classifier: ContentClassifier,
        linkage: LinkageManager,
        output_dir: str | Path,
        partial: bool = False,
        documents_in_parallel: int = 1,
        ref_template: str = "{item}@{lang}",
        logger: Optional[logging.Logger] = None,
    ):
        self.orchestrator = orchestrator
        self.classifier = classifier
        self.linkage = linkage
        self.output_dir = Path(output_dir)
        self.partial = partial
        self.documents_in_parallel = max(1, documents_in_parallel)
        self.ref_template = ref_template
        self.logger = logger

    def output_path(self, source: Path, target_language: str) -> Path:
        return self.output_dir / f"{source.stem}.{target_language}{source.suffix or '.xliff'}"

    def process_document(
        self,
        doc: ContentDocument,
        source: str | Path,
        cancel: Optional[CancelToken] = None,
    ) -> DocumentResult:
        src = Path(source)
        result = DocumentResult(source=str(src), name=doc.name, target_language=doc.target_language)
        result.roles = self.classifier.classify_document(doc, logger=self.logger)
        result.translation = self.orchestrator.translate_document(doc, cancel=cancel)
        result.status_counts = doc.status_counts()
        result.problems = _problem_rows(doc)

        if result.translation.cancelled:
            result.state = "cancelled"
            if self.logger:
                self.logger.warning("   %s: cancelled before rebuild", doc.name)
            return result

        out_path = self.output_path(src, doc.target_language)
        try:
            write_document(out_path, doc, partial=self.partial, logger=self.logger)
        except IncompleteTranslation as exc:
            result.state = "incomplete"
            result.error = exc
            if self.logger:
                self.logger.error("   %s: %s", doc.name, exc)
            return result

        result.output = str(out_path)
        result.state = "partial" if result.problems else "written"
        result.link = self.linkage.link_document(doc, ref_template=self.ref_template)
        return result

    def process(self, path: str | Path, cancel: Optional[CancelToken] = None) -> DocumentResult:
        p = Path(path)
        if cancel is not None and cancel.cancelled:
            return DocumentResult(source=str(p), name=p.stem, state="cancelled")
        if self.logger:
            self.logger.info("== Document %s", p)
        try:
            try:
                doc = parse_file(p)
            except OSError as exc:
                raise DocumentError(f"Cannot read {p}: {exc}", {"path": str(p)}) from exc
        except DocumentError as exc:
            if self.logger:
                self.logger.error("   %s rejected (%s): %s", p.name, exc.code, exc)
            return DocumentResult(source=str(p), name=p.stem, state="failed", error=exc)
        try:
            return self.process_document(doc, p, cancel=cancel)
        except Exception as exc:
            if self.logger:
                self.logger.exception("   %s failed unexpectedly", p.name)
            err = DocumentError(f"{type(exc).__name__}: {exc}", {"path": str(p), "type": type(exc).__name__})
            return DocumentResult(source=str(p), name=doc.name, target_language=doc.target_language, state="failed", error=err)

    def run(self, paths: Sequence[str | Path], cancel: Optional[CancelToken] = None) -> BatchReport:
        report = BatchReport()
        cancel = cancel or CancelToken()
        if self.documents_in_parallel <= 1 or len(paths) <= 1:
            report.documents = [self.process(p, cancel) for p in paths]
        else:
            with ThreadPoolExecutor(max_workers=self.documents_in_parallel, thread_name_prefix="document") as executor:
                futures = [executor.submit(self.process, p, cancel) for p in paths]
                report.documents = gather(futures, cancel, self.logger)
        report.cancelled = cancel.cancelled
        report.finished_at = datetime.now(timezone.utc).isoformat()
        report.memory_stats = self.orchestrator.memory.stats()
        if self.logger:
            self.logger.info(
                "Batch done: %s document(s), %s failed, unit statuses %s",
                len(report.documents),
                len(report.failed),
                report.status_totals(),
            )
        return report
