from __future__ import annotations

import argparse
import logging
import signal
from contextlib import contextmanager
from pathlib import Path
from types import FrameType
from typing import Any, Dict, Iterator, List, Optional

from dotenv import load_dotenv

from doctrans import storage
from doctrans.classifier import build_classifier
from doctrans.config import load_config
from doctrans.errors import MissingApiKeyError
from doctrans.linkage import LinkageManager
from doctrans.memory import TranslationMemory
from doctrans.orchestrator import CancelToken, build_orchestrator
from doctrans.pipeline import TranslationBatch
from doctrans.qa import build_validator
from doctrans.report import write_quality_report
from doctrans.translator import StyleGuide, build_translator
from doctrans.utils import AuditTrail, setup_logger


def collect_inputs(inputs: List[str]) -> List[Path]:
    paths: List[Path] = []
    for raw in inputs:
        p = Path(raw)
        if p.is_dir():
            paths.extend(sorted(x for x in p.iterdir() if x.suffix.lower() in (".xliff", ".xlf", ".xml")))
        else:
            paths.append(p)
    return paths


@contextmanager
def cancel_on_interrupt(cancel: CancelToken, logger: logging.Logger) -> Iterator[None]:
    """Ctrl-C cancels the batch instead of raising; a second Ctrl-C raises."""

    def handler(signum: int, frame: Optional[FrameType]) -> None:
        if cancel.cancelled:
            raise KeyboardInterrupt
        cancel.cancel()
        logger.warning("Ctrl-C: finishing in-flight calls, no new units will start (press again to force).")

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def main() -> None:
    parser = argparse.ArgumentParser(description="Translate XLIFF exports and emit group-linkage records.")
    parser.add_argument("inputs", nargs="+", help="XLIFF files or folders of XLIFF files")
    parser.add_argument("--config", type=str, default=None, help="Path to a JSON config merged over the defaults")
    parser.add_argument("--provider", type=str, default=None, help="openai | deepl | dummy (overrides config)")
    parser.add_argument("--partial", action="store_true", help="Emit documents even if some units are not ready")
    args = parser.parse_args()

    load_dotenv()

    overrides: Dict[str, Any] = {"rebuild": {"partial": True}} if args.partial else {}
    cfg = load_config(args.config, overrides=overrides)
    paths = cfg["paths"]

    logger = setup_logger(paths.get("logs_dir", "logs"))
    audit = AuditTrail()

    inputs = collect_inputs(args.inputs)
    if not inputs:
        logger.error("No input documents found in %s", args.inputs)
        raise SystemExit(1)

    try:
        logger.info("1) Translation memory + linkage table…")
        mcfg = cfg["memory"]
        memory = TranslationMemory.open(
            paths["translation_memory"],
            fuzzy_threshold=float(mcfg.get("fuzzy_threshold", 0.85)),
            max_candidates=int(mcfg.get("max_candidates", 5)),
            logger=logger,
        )
        linkage = LinkageManager.load(paths["linkage_table"], logger=logger)
    except Exception:
        logger.exception("Loading persistent state failed.")
        raise SystemExit(1)

    try:
        logger.info("2) Provider + quality gate…")
        style_guide = StyleGuide(cfg.get("style", {}))
        translator = build_translator(cfg, provider=args.provider)
        gate = build_validator(cfg, style_guide, logger=logger)
    except MissingApiKeyError as exc:
        logger.error(str(exc))
        raise SystemExit(1)

    orchestrator = build_orchestrator(cfg, translator, memory, style_guide, gate=gate, audit=audit, logger=logger)
    batch = TranslationBatch(
        orchestrator,
        build_classifier(cfg),
        linkage,
        output_dir=paths.get("exports_dir", "data/exports"),
        partial=bool(cfg["rebuild"].get("partial", False)),
        documents_in_parallel=int(cfg["translation"].get("documents_in_parallel", 1)),
        ref_template=cfg["linkage"].get("target_ref_template", "{item}@{lang}"),
        logger=logger,
    )

    cancel = CancelToken()
    logger.info("3) Translating %s document(s)…", len(inputs))
    try:
        with cancel_on_interrupt(cancel, logger):
            report = batch.run(inputs, cancel=cancel)
    except Exception:
        logger.exception("Translation batch failed.")
        raise SystemExit(1)
    finally:
        orchestrator.close(grace=5.0)
        memory.compact()
        memory.close()

    try:
        logger.info("4) Linkage table + reports…")
        linkage.save(paths["linkage_table"])
        md = write_quality_report(report, paths["quality_report"], paths.get("quality_report_csv"))
        logger.info("   Linkage table: %s (%s groups)", paths["linkage_table"], len(linkage))
        logger.info("   Quality report: %s", md)
    except Exception:
        logger.exception("Export failed.")
        raise SystemExit(1)

    audit_path = paths.get("audit_report", "logs/audit.json")
    storage.write_json(audit_path, audit.as_list())
    logger.info(f"   Audit trail saved to: {audit_path}")

    if report.cancelled:
        logger.warning("Interrupted: memory, linkage and written documents are consistent; re-run to resume.")
        raise SystemExit(130)
    if report.failed:
        raise SystemExit(2)


if __name__ == "__main__":
    main()
