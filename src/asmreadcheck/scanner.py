"""Pipeline driver: per-contig analysis and the whole-assembly scan.

Contigs are independent units of work. Each is analysed by
:func:`analyze_contig` (extract -> accumulate -> window -> call), either in
this process or on a process pool, and the results are gathered, ordered and
handed to the writer only after collection.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_COMPLETED, ProcessPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from tqdm import tqdm

from .accumulator import accumulate_signals, estimate_contig_bytes
from .caller import call_regions
from .config import ScanConfig
from .errors import GlobalInputError, InputError, ResourceLimitError, ScanCancelled
from .models import (
    CHANNEL_ORDER,
    MISMATCH_FRACTION,
    AlignmentRecord,
    Contig,
    ContigFailure,
    ContigResult,
    FlaggedRegion,
)
from .windows import compute_windows

logger = logging.getLogger(__name__)

Outcome = Union[ContigResult, ContigFailure]


def analyze_contig(
    contig: Contig,
    records: Iterable[AlignmentRecord],
    config: ScanConfig,
    reference: Optional[str] = None,
    *,
    cancel=None,
) -> ContigResult:
    """Run the full per-contig pipeline and return its regions and diagnostics."""
    if reference is not None and len(reference) != contig.length:
        raise InputError(
            f"Reference length {len(reference)} for {contig.name} does not match "
            f"alignment header length {contig.length}",
            contig=contig.name,
        )

    signals = accumulate_signals(contig.name, contig.length, records, config, reference)
    result = ContigResult(contig=contig.name, length=contig.length, counts=dict(signals.counts))
    result.clip_sites = signals.clip_sites(
        clipping_ratio=config.clipping_ratio, min_dist_to_end=config.min_dist_to_end
    )
    result.zero_coverage = signals.zero_coverage_ranges()

    if signals.counts["reads_used"] == 0:
        logger.info("%s: no usable reads, nothing to call", contig.name)
        return result

    tables = compute_windows(signals, config, cancel=cancel)
    # Per-base vectors are no longer needed once windows exist.
    del signals
    result.regions = call_regions(tables, config, contig.length)
    logger.info("%s: %d flagged regions", contig.name, len(result.regions))
    return result


@dataclass(frozen=True)
class ContigTask:
    contig: Contig
    alignments: Any
    reference: Any
    config: ScanConfig


def run_contig_task(task: ContigTask, cancel=None) -> Outcome:
    """Analyse one contig, turning per-contig input problems into a failure record."""
    name = task.contig.name
    try:
        sequence = task.contig.sequence
        wants_bases = MISMATCH_FRACTION in task.config.channels
        if sequence is None and task.reference is not None and wants_bases:
            sequence = task.reference.sequence_of(name)
        records = task.alignments.records_overlapping(name)
        return analyze_contig(task.contig, records, task.config, sequence, cancel=cancel)
    except InputError as e:
        logger.warning("Skipping %s: %s", name, e)
        return ContigFailure(contig=name, kind="input", reason=str(e))
    except OSError as e:
        logger.warning("Skipping %s: read error: %s", name, e)
        return ContigFailure(contig=name, kind="input", reason=f"read error: {e}")
    except MemoryError:
        logger.warning("Skipping %s: out of memory", name)
        return ContigFailure(contig=name, kind="resource", reason="out of memory")


def check_memory_budget(contig: Contig, config: ScanConfig) -> None:
    """Raise ResourceLimitError when one contig alone exceeds ``max_memory_bytes``."""
    if config.max_memory_bytes is None:
        return
    need = estimate_contig_bytes(contig.length)
    if need > config.max_memory_bytes:
        raise ResourceLimitError(
            f"needs ~{need} bytes for {contig.length} bp, "
            f"over the {config.max_memory_bytes} byte budget",
            contig=contig.name,
            required_bytes=need,
            limit_bytes=config.max_memory_bytes,
        )


def plan_workers(config: ScanConfig, lengths: Sequence[int]) -> int:
    """Worker count capped by the memory budget, not only by the request."""
    if not lengths:
        return 1
    workers = min(config.workers, len(lengths))
    if config.max_memory_bytes is not None:
        per_worker = max(estimate_contig_bytes(max(lengths)), 1)
        workers = min(workers, max(1, config.max_memory_bytes // per_worker))
    return max(1, workers)


@dataclass
class ScanResult:
    """Outcome of a whole run. ``contigs`` follow the alignment header order."""

    contigs: List[ContigResult] = field(default_factory=list)
    failures: List[ContigFailure] = field(default_factory=list)
    cancelled: bool = False
    workers: int = 1
    runtime_seconds: float = 0.0

    @property
    def regions(self) -> List[FlaggedRegion]:
        return [r for c in self.contigs for r in c.regions]

    def summary(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for c in self.contigs:
            for k, v in c.counts.items():
                counts[k] = counts.get(k, 0) + int(v)
        channel_counts = {name: 0 for name in CHANNEL_ORDER}
        for r in self.regions:
            for name in r.channels:
                channel_counts[name] += 1
        return {
            "contigs_processed": len(self.contigs),
            "contigs_failed": len(self.failures),
            "regions": len(self.regions),
            "clip_sites": sum(len(c.clip_sites) for c in self.contigs),
            "zero_coverage_ranges": sum(len(c.zero_coverage) for c in self.contigs),
            "cancelled": bool(self.cancelled),
            "workers": int(self.workers),
            "runtime_seconds": float(self.runtime_seconds),
            "counts": counts,
            "channel_region_counts": channel_counts,
            "failures": [
                {"contig": f.contig, "kind": f.kind, "reason": f.reason} for f in self.failures
            ],
            "per_contig": [
                {
                    "contig": c.contig,
                    "length": c.length,
                    "regions": len(c.regions),
                    "clip_sites": len(c.clip_sites),
                    "zero_coverage_ranges": len(c.zero_coverage),
                    "reads_used": int(c.counts.get("reads_used", 0)),
                }
                for c in self.contigs
            ],
        }


def _select_contigs(available: List[Contig], names: Optional[Sequence[str]]) -> List[Contig]:
    if not names:
        return available
    by_name = {c.name: c for c in available}
    missing = [n for n in names if n not in by_name]
    if missing:
        raise GlobalInputError(f"Requested contigs not in alignment header: {', '.join(missing)}")
    wanted = set(names)
    return [c for c in available if c.name in wanted]


def scan_assembly(
    alignments,
    config: ScanConfig,
    *,
    reference=None,
    contigs: Optional[Sequence[str]] = None,
    writer=None,
    cancel=None,
    progress: bool = False,
) -> ScanResult:
    """Scan every contig of an assembly and emit regions in contig order.

    Parameters
    ----------
    alignments:
        Source with ``contigs()`` and ``records_overlapping(name)``.
    reference:
        Optional source with ``sequence_of(name)``; needed for the mismatch
        channel.
    contigs:
        Restrict the scan to these contig names.
    writer:
        Optional sink with ``emit(contig, regions)``; called once per
        successfully processed contig, in header order, after collection.
    cancel:
        Optional ``threading.Event``. Checked between contigs (and between
        window chunks when running in-process). Contigs not finished when it
        fires are dropped and the result is marked cancelled.
    """
    t0 = time.time()
    available = alignments.contigs()
    if not available:
        raise GlobalInputError("Alignment header lists no contigs")
    selected = _select_contigs(available, contigs)
    order = {c.name: i for i, c in enumerate(available)}

    result = ScanResult()
    todo: List[Contig] = []
    for contig in selected:
        try:
            check_memory_budget(contig, config)
        except ResourceLimitError as e:
            logger.warning("Skipping %s: %s", contig.name, e)
            result.failures.append(ContigFailure(contig=contig.name, kind="resource", reason=str(e)))
            continue
        todo.append(contig)

    workers = plan_workers(config, [c.length for c in todo])
    result.workers = workers
    logger.info("Scanning %d contigs with %d worker(s)", len(todo), workers)

    tasks = [ContigTask(c, alignments, reference, config) for c in todo]
    outcomes: List[Outcome] = []
    bar = tqdm(total=len(tasks), unit="contig", desc="Scanning contigs", disable=not progress)
    try:
        if workers == 1:
            result.cancelled = _run_serial(tasks, outcomes, cancel, bar)
        else:
            result.cancelled = _run_parallel(tasks, outcomes, workers, cancel, bar)
    finally:
        bar.close()

    for outcome in outcomes:
        if isinstance(outcome, ContigFailure):
            result.failures.append(outcome)
        else:
            result.contigs.append(outcome)
    result.contigs.sort(key=lambda c: order[c.contig])
    for c in result.contigs:
        c.regions.sort(key=lambda r: (r.start, r.end))
    result.failures.sort(key=lambda f: order.get(f.contig, len(order)))

    if result.cancelled:
        logger.warning(
            "Scan cancelled: %d of %d contigs completed", len(result.contigs), len(selected)
        )
    if writer is not None:
        for c in result.contigs:
            writer.emit(c.contig, c.regions)

    result.runtime_seconds = time.time() - t0
    return result


def _run_serial(tasks: List[ContigTask], outcomes: List[Outcome], cancel, bar) -> bool:
    for task in tasks:
        if cancel is not None and cancel.is_set():
            return True
        try:
            outcomes.append(run_contig_task(task, cancel))
        except ScanCancelled:
            logger.info("Discarding partially processed contig %s", task.contig.name)
            return True
        except Exception as e:
            logger.error("Contig %s failed: %s", task.contig.name, e)
            outcomes.append(ContigFailure(contig=task.contig.name, kind="error", reason=str(e)))
        bar.update(1)
    return False


def _run_parallel(
    tasks: List[ContigTask], outcomes: List[Outcome], workers: int, cancel, bar
) -> bool:
    pending = iter(tasks)
    max_in_flight = workers * 2
    with ProcessPoolExecutor(max_workers=workers) as executor:
        in_flight = {}

        def submit_next() -> bool:
            task = next(pending, None)
            if task is None:
                return False
            in_flight[executor.submit(run_contig_task, task)] = task.contig.name
            return True

        while len(in_flight) < max_in_flight and submit_next():
            pass

        while in_flight:
            done, _ = wait(in_flight, timeout=0.5, return_when=FIRST_COMPLETED)
            for fut in done:
                name = in_flight.pop(fut)
                try:
                    outcomes.append(fut.result())
                except Exception as e:
                    logger.error("Contig %s failed in worker: %s", name, e)
                    outcomes.append(ContigFailure(contig=name, kind="error", reason=str(e)))
                bar.update(1)
            if cancel is not None and cancel.is_set():
                # Finished contigs are kept; anything still running is dropped.
                for fut in in_flight:
                    fut.cancel()
                return True
            while len(in_flight) < max_in_flight and submit_next():
                pass
    return False
