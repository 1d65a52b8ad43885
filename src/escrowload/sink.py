"""Persists the final report as a deterministic JSON document."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from escrowload.metrics.aggregator import AggregateReport

logger = logging.getLogger(__name__)

FILE_PREFIX = "load-test-results-"


def encode_report(report: AggregateReport) -> str:
    return json.dumps(report.to_dict(), indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def load_report(path: Path) -> AggregateReport:
    with path.open() as f:
        return AggregateReport.from_dict(json.load(f))


class ResultSink:
    """Writes one results file per run into ``output_dir``."""

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)

    def path_for(self, started_at: datetime) -> Path:
        stamp = started_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        return self.output_dir / f"{FILE_PREFIX}{stamp}.json"

    def write(self, report: AggregateReport, started_at: datetime | None = None) -> Path:
        if started_at is None:
            started_at = datetime.now(timezone.utc)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(started_at)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(encode_report(report))
        tmp.replace(path)
        logger.info(f"Results written to {path}")
        return path
