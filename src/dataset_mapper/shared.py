"""dataset_mapper.shared

Shared utilities used by every stage of the mapper pipeline.
Includes the base exception, RunCounters, the text run report and
JSON report-writing support.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MapperError(Exception):
    """Base class for every error raised by the mapper pipeline."""


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

MAX_WARNINGS = 50


@dataclass
class RunCounters:
    batches_received: int = 0
    batches_committed: int = 0
    batches_dropped: int = 0
    batches_rolled_back: int = 0
    rows_committed: int = 0
    stable_ids_resolved: int = 0
    broker_errors: int = 0
    warnings_total: int = 0
    warnings: list[str] = field(default_factory=list)

    def warn(self, message: str) -> None:
        """Count a warning; only the first MAX_WARNINGS messages are kept."""
        self.warnings_total += 1
        if len(self.warnings) < MAX_WARNINGS:
            self.warnings.append(message)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:MAX_WARNINGS]
        return d


def build_run_report(counters: RunCounters, mode: str) -> str:
    lines = [
        "=" * 60,
        "Dataset Mapping Run Report",
        f"  mode: {mode}",
        "=" * 60,
        f"  batches received:     {counters.batches_received}",
        f"  batches committed:    {counters.batches_committed}",
        f"  batches dropped:      {counters.batches_dropped}",
        f"  batches rolled back:  {counters.batches_rolled_back}",
        f"  rows committed:       {counters.rows_committed}",
        f"  stable ids resolved:  {counters.stable_ids_resolved}",
        f"Broker errors:          {counters.broker_errors}",
    ]
    total = max(counters.warnings_total, len(counters.warnings))
    if total:
        lines.append(f"\nWarnings ({total}):")
        for w in counters.warnings[:20]:
            lines.append(f"  {w}")
        if total > 20:
            lines.append(f"  ... and {total - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    source: dict[str, str],
    counters: RunCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        **source,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
