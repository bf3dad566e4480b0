from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .migration.orchestrator import PhaseResult
from .migration.schema import InventoryRecord, Phase
from .util.time import utc_now, utc_now_iso

PHASE_ORDER = [p.value for p in Phase]


def _truncate(s: str, max_len: int = 240) -> str:
    s = (s or "").strip()
    if len(s) <= max_len:
        return s
    return s[: max_len - 3] + "..."


def _counts_by_key(records: Iterable[InventoryRecord], key: str) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for r in records:
        v = getattr(r, key)
        v = str(getattr(v, "value", v) or "")
        out[v] = out.get(v, 0) + 1
    return dict(sorted(out.items(), key=lambda kv: (-kv[1], kv[0])))


def _md_cell(value: str) -> str:
    # Escape pipes and flatten newlines so rows stay intact.
    v = (value or "").replace("\n", "<br>").strip()
    v = v.replace("|", "\\|")
    return v


def _md_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> List[str]:
    hdr = [_md_cell(str(h)) for h in headers]
    out: List[str] = []
    out.append("| " + " | ".join(hdr) + " |")
    out.append("| " + " | ".join(["---"] * len(headers)) + " |")
    for r in rows:
        rr = [_md_cell(str(c)) for c in r]
        out.append("| " + " | ".join(rr) + " |")
    return out


def _phase_matrix(records: Sequence[InventoryRecord]) -> List[List[str]]:
    by_sub: Dict[str, Dict[str, int]] = {}
    labels: Dict[str, str] = {}
    for r in records:
        counts = by_sub.setdefault(r.subscription_id, {p: 0 for p in PHASE_ORDER})
        counts[r.phase.value] += 1
        labels[r.subscription_id] = r.subscription_name or r.subscription_id
    rows: List[List[str]] = []
    for sub_id in sorted(by_sub, key=lambda s: (labels[s].casefold(), s)):
        counts = by_sub[sub_id]
        rows.append([labels[sub_id]] + [str(counts[p]) for p in PHASE_ORDER] + [str(sum(counts.values()))])
    return rows


def render_inventory_summary_md(
    records: Sequence[InventoryRecord],
    *,
    generated_at: Optional[str] = None,
) -> str:
    """
    Human-readable companion to an inventory snapshot: totals per subscription and
    phase, consumer kinds, locations, and every record that needs manual work.
    """
    lines: List[str] = []
    lines.append("# Public IP Migration Inventory")
    lines.append("")
    lines.append(f"Generated: {generated_at or utc_now_iso()}")
    lines.append("")

    lines.append("## Overview")
    lines.append("")
    phase_counts = _counts_by_key(records, "phase")
    failed = phase_counts.get(Phase.FAILED.value, 0)
    manual = [r for r in records if not r.automatable]
    lines.extend(
        _md_table(
            ["Metric", "Value"],
            [
                ["Legacy addresses", str(len(records))],
                ["Subscriptions", str(len({r.subscription_id for r in records}))],
                ["Automatable", str(len(records) - len(manual))],
                ["Manual handling", str(len(manual))],
                ["Failed", f"**{failed}**" if failed else "0"],
            ],
        )
    )
    lines.append("")

    if records:
        lines.append("## Phase by Subscription")
        lines.append("")
        lines.extend(_md_table(["Subscription"] + PHASE_ORDER + ["Total"], _phase_matrix(records)))
        lines.append("")

        lines.append("## Consumers")
        lines.append("")
        lines.extend(_md_table(["Kind", "Count"], [[k, str(v)] for k, v in _counts_by_key(records, "consumer_kind").items()]))
        lines.append("")

        lines.append("## Locations")
        lines.append("")
        lines.extend(_md_table(["Location", "Count"], [[k or "(unknown)", str(v)] for k, v in _counts_by_key(records, "location").items()]))
        lines.append("")

    if manual:
        lines.append("## Manual Handling Required")
        lines.append("")
        rows = [
            [r.subscription_name or r.subscription_id, r.resource_group, r.name, r.consumer_kind.value, r.consumer_ref]
            for r in manual
        ]
        lines.extend(_md_table(["Subscription", "Resource Group", "Address", "Consumer", "Owner"], rows))
        lines.append("")

    failed_records = [r for r in records if r.phase == Phase.FAILED]
    if failed_records:
        lines.append("## Failed Records")
        lines.append("")
        rows = [[r.key, _truncate(r.notes[-1] if r.notes else "")] for r in failed_records]
        lines.extend(_md_table(["Record", "Last note"], rows))
        lines.append("")

    return "\n".join(lines)


def write_inventory_summary_md(records: Sequence[InventoryRecord], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_inventory_summary_md(records), encoding="utf-8")
    return path


def write_phase_result(result: PhaseResult, outdir: Path, *, extra: Optional[Dict[str, Any]] = None) -> Path:
    """Persist one phase run as <outdir>/runs/<phase>_<timestamp>.json."""
    runs = Path(outdir) / "runs"
    runs.mkdir(parents=True, exist_ok=True)
    stamp = utc_now().strftime("%Y%m%dT%H%M%S_%fZ")
    path = runs / f"{result.phase}_{stamp}.json"
    payload = result.to_dict()
    if extra:
        payload.update(extra)
    path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    return path
