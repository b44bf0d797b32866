"""Tiered coverage: bring every leaf of a platform up to 1, then 4, then 8 listings."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Optional, Sequence

from pipeline.context import RunContext, format_summary
from pipeline.jobs.topoff import TopoffJob, TopoffOptions
from pipeline.taxonomy import Taxonomy, iter_leaves

logger = logging.getLogger(__name__)

DEFAULT_STAGES = (1, 4, 8)
DEFAULT_MAX_CYCLES = 6


@dataclass(frozen=True)
class CoverageStats:
    total_leaves: int
    zeros: int
    reached: dict[int, float]
    min: int
    max: int

    @classmethod
    def from_counts(cls, counts: dict[str, int], stages: Sequence[int]) -> "CoverageStats":
        values = list(counts.values())
        total = len(values)

        def pct(threshold: int) -> float:
            if not total:
                return 0.0
            return round(100.0 * sum(1 for v in values if v >= threshold) / total, 1)

        return cls(
            total_leaves=total,
            zeros=sum(1 for v in values if v == 0),
            reached={stage: pct(stage) for stage in stages},
            min=min(values) if values else 0,
            max=max(values) if values else 0,
        )

    def rows(self) -> dict[str, object]:
        rows: dict[str, object] = {"leaves": self.total_leaves, "zeros": self.zeros}
        for stage, value in self.reached.items():
            rows[f"reached>={stage} (%)"] = value
        rows["min"] = self.min
        rows["max"] = self.max
        return rows


@dataclass
class CoverageOptions:
    stages: tuple[int, ...] = DEFAULT_STAGES
    max_cycles: int = DEFAULT_MAX_CYCLES
    base: TopoffOptions = field(default_factory=TopoffOptions)


@dataclass
class StageResult:
    target: int
    cycles: int = 0
    added: int = 0
    remaining: int = 0


@dataclass
class CoverageReport:
    stages: list[StageResult] = field(default_factory=list)
    stats: Optional[CoverageStats] = None

    @property
    def final_target_met(self) -> bool:
        if not self.stages or self.stats is None:
            return False
        return self.stats.min >= self.stages[-1].target


class CoverageJob:
    def __init__(self, ctx: RunContext, taxonomy: Taxonomy, options: CoverageOptions):
        self.ctx = ctx
        self.taxonomy = taxonomy
        self.options = options

    def leaf_keys(self) -> list[str]:
        return [leaf.key for leaf in iter_leaves(self.taxonomy, self.options.base.group_filter)]

    async def counts(self) -> dict[str, int]:
        return await self.ctx.store.count_by_categories(self.leaf_keys(), self.options.base.platform)

    def cycle_options(self, target: int, cycle: int) -> TopoffOptions:
        # The first cycle of a stage filters normally; later ones take whatever is left.
        return replace(
            self.options.base,
            target=target,
            force_relaxed=self.options.base.force_relaxed or cycle > 1,
            ledger_prefix=f"stage{target}:c{cycle}:",
        )

    async def run_stage(self, target: int) -> StageResult:
        result = StageResult(target=target)
        for cycle in range(1, self.options.max_cycles + 1):
            job = TopoffJob(self.ctx, self.taxonomy, self.cycle_options(target, cycle))
            report = await job.run()
            result.cycles = cycle
            result.added += report.added
            result.remaining = report.leaves_sparse - report.completed
            logger.info(
                "Coverage stage=%s cycle=%s sparse=%s added=%s",
                target,
                cycle,
                report.leaves_sparse,
                report.added,
            )
            if report.leaves_sparse == 0 or report.added == 0 or self.ctx.dry_run:
                break
        return result

    async def run(self) -> CoverageReport:
        report = CoverageReport()
        for target in self.options.stages:
            report.stages.append(await self.run_stage(target))
        report.stats = CoverageStats.from_counts(await self.counts(), self.options.stages)
        return report


async def run_coverage(ctx: RunContext, taxonomy: Taxonomy, options: CoverageOptions) -> CoverageReport:
    report = await CoverageJob(ctx, taxonomy, options).run()
    rows = {f"stage {s.target} added": s.added for s in report.stages}
    rows.update({f"stage {s.target} cycles": s.cycles for s in report.stages})
    if report.stats is not None:
        rows.update(report.stats.rows())
    title = "COVERAGE (dry run)" if ctx.dry_run else "COVERAGE"
    print(format_summary(title, rows, ctx.stats.as_dict()))
    return report
