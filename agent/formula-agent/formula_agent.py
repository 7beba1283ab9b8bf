#!/usr/bin/env python3
"""Formula generation and Chapter 99 synthesis agent.

Fills in missing general/column 2 rate formulas (pattern rules first, the LLM
for the rest) and then layers Chapter 99 additional duties onto each entry's
base formula. Works against the ``hts_entries`` table or a JSON snapshot.

Examples::

    python agent/formula-agent/formula_agent.py --dsn "$DATABASE_DSN" --command all
    python agent/formula-agent/formula_agent.py --snapshot hts.json --output hts.out.json --no-ai
    python agent/formula-agent/formula_agent.py --snapshot hts.json --preview 1202.41.80
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from tariff_formula.chapter99 import build_chapter99_index, preview_entry
from tariff_formula.fallback import FormulaGenerator, GenerativeFallbackCompiler
from tariff_formula.llm import OpenAIFormulaProvider
from tariff_formula.models import AdjustmentResult
from tariff_formula.store import InMemoryScheduleStore, PostgresScheduleStore
from tariff_formula.synthesis import (
    GENERATION_BATCH_SIZE,
    SYNTHESIS_BATCH_SIZE,
    BatchSynthesisOrchestrator,
    MissingFormulaGenerator,
)

LOGGER = logging.getLogger("formula_agent")

COMMANDS = ("generate", "synthesize", "all")


def result_payload(result: AdjustmentResult) -> Dict[str, Any]:
    selected = result.selected_reference
    return {
        "status": result.status,
        "htsNumber": result.hts_number,
        "chapter99Links": result.chapter99_links,
        "selectedChapter99": selected.to_payload() if selected is not None else None,
        "chapter99ApplicableCountries": result.applicable_countries,
        "nonNtrApplicableCountries": result.non_ntr_countries,
        "baseFormula": result.base_formula,
        "adjustedFormula": result.adjusted_formula,
        "adjustedFormulaVariables": result.adjusted_formula_variables,
        "reason": result.reason,
    }


class FormulaAgent:
    def __init__(
        self,
        store: Union[InMemoryScheduleStore, PostgresScheduleStore],
        generator: Optional[FormulaGenerator] = None,
        *,
        synthesis_batch_size: int = SYNTHESIS_BATCH_SIZE,
        generation_batch_size: int = GENERATION_BATCH_SIZE,
        workers: int = 1,
    ) -> None:
        self.store = store
        self.generator = generator or FormulaGenerator()
        self.synthesis_batch_size = synthesis_batch_size
        self.generation_batch_size = generation_batch_size
        self.workers = workers

    def run(self, command: str = "all") -> Dict[str, Dict[str, int]]:
        if command not in COMMANDS:
            raise ValueError(f"unknown command: {command}")
        summary: Dict[str, Dict[str, int]] = {}
        if command in ("generate", "all"):
            generation = MissingFormulaGenerator(
                self.generator, self.store, batch_size=self.generation_batch_size
            )
            summary["generate"] = asdict(generation.generate_missing_formulas())
            LOGGER.info("Formula generation: %s", summary["generate"])
        if command in ("synthesize", "all"):
            orchestrator = BatchSynthesisOrchestrator(
                self.store, batch_size=self.synthesis_batch_size, workers=self.workers
            )
            summary["synthesize"] = asdict(orchestrator.synthesize())
        return summary

    def preview(self, hts_number: str) -> Dict[str, Any]:
        entries = self.store.load_entries()
        target = next((entry for entry in entries if entry.hts_number == hts_number), None)
        if target is None:
            raise LookupError(f"HTS number {hts_number} not found")
        return result_payload(preview_entry(target, build_chapter99_index(entries)))


def _build_generator(args: argparse.Namespace) -> FormulaGenerator:
    if args.no_ai or args.command == "synthesize" or args.preview:
        return FormulaGenerator()
    provider = OpenAIFormulaProvider(
        model=args.model,
        base_url=args.base_url,
        api_key=args.api_key,
        timeout=args.timeout,
    )
    return FormulaGenerator(GenerativeFallbackCompiler(provider, timeout=args.timeout))


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate HTS rate formulas and Chapter 99 adjusted formulas.")
    parser.add_argument("--dsn", default=os.getenv("DATABASE_DSN"), help="PostgreSQL DSN")
    parser.add_argument("--snapshot", type=Path, help="JSON snapshot to process instead of the database")
    parser.add_argument("--output", type=Path, help="Where to write the processed snapshot")
    parser.add_argument("--table", default="hts_entries", help="Schedule table name")
    parser.add_argument("--command", choices=COMMANDS, default="all")
    parser.add_argument("--preview", metavar="HTS_NUMBER", help="Print the synthesis result for one entry")
    parser.add_argument("--source-version", default=None)
    parser.add_argument("--active-only", action="store_true")
    parser.add_argument("--batch-size", type=int, default=SYNTHESIS_BATCH_SIZE)
    parser.add_argument("--generation-batch-size", type=int, default=GENERATION_BATCH_SIZE)
    parser.add_argument("--workers", type=int, default=1)
    parser.add_argument("--no-ai", action="store_true", help="Only use deterministic pattern rules")
    parser.add_argument("--model", default=os.getenv("OPENAI_MODEL"))
    parser.add_argument("--base-url", default=os.getenv("OPENAI_API_BASE"))
    parser.add_argument("--api-key", default=os.getenv("OPENAI_API_KEY"))
    parser.add_argument("--timeout", type=float, default=None, help="LLM request timeout in seconds")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-file", default=None)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = _build_arg_parser().parse_args(argv)
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        handlers.append(logging.FileHandler(args.log_file, encoding="utf-8"))
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO), handlers=handlers)

    if args.snapshot:
        store: Union[InMemoryScheduleStore, PostgresScheduleStore] = InMemoryScheduleStore.from_json_file(
            args.snapshot
        )
    elif args.dsn:
        store = PostgresScheduleStore(
            args.dsn,
            table=args.table,
            source_version=args.source_version,
            active_only=args.active_only,
        )
    else:
        raise SystemExit("A snapshot (--snapshot) or database DSN (--dsn / DATABASE_DSN) is required.")

    agent = FormulaAgent(
        store,
        _build_generator(args),
        synthesis_batch_size=args.batch_size,
        generation_batch_size=args.generation_batch_size,
        workers=args.workers,
    )
    try:
        if args.preview:
            print(json.dumps(agent.preview(args.preview), ensure_ascii=False, indent=2))
            return
        summary = agent.run(args.command)
        print(json.dumps(summary, indent=2))
        if isinstance(store, InMemoryScheduleStore) and args.output:
            store.dump_json_file(args.output)
    finally:
        if isinstance(store, PostgresScheduleStore):
            store.close()


if __name__ == "__main__":  # pragma: no cover
    main()
