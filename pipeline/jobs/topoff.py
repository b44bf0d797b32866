"""Top off sparse taxonomy leaves with freshly scraped, quality-filtered listings.

Each leaf is worked term by term. A term moves through

    pending -> prefetched -> [escalated] -> quality_filtered -> persisted -> done
    pending -> skipped

Escalation (a headless render) only happens when the static fetch comes back
thin. Quality filtering runs a sequence of relaxation stages over the same
fetched batch, strictest first, until the leaf reaches its target.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence

from integrations.marketplace.extract import INDIAMART
from integrations.marketplace.models import RawListing
from pipeline.context import RunContext, format_summary
from pipeline.images.predicate import is_bad_image
from pipeline.images.resolver import normalize_image_url, upgrade_thumbnail
from pipeline.quality import Classification, classify, passes_quality, sanitize_title
from pipeline.taxonomy import Taxonomy, TaxonomyLeaf, iter_leaves, search_terms, term_to_category_slug
from pipeline.utils.text import first_number

logger = logging.getLogger(__name__)

ESCALATION_FLOOR = 6


class TaskState(str, Enum):
    PENDING = "pending"
    PREFETCHED = "prefetched"
    ESCALATED = "escalated"
    QUALITY_FILTERED = "quality_filtered"
    PERSISTED = "persisted"
    DONE = "done"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RelaxStage:
    min_informative: int
    allow_accessories: bool


@dataclass
class TopoffOptions:
    target: int = 8
    terms: int = 3
    prefetch: int = 70
    concurrency: int = 4
    min_informative: int = 2
    allow_accessories: bool = False
    relax: bool = True
    force_relaxed: bool = False
    headless: bool = False
    skip_below: int = 1
    check_moq: bool = True
    platform: str = INDIAMART
    group_filter: Optional[str] = None
    limit: Optional[int] = None
    only_terms: Optional[list[str]] = None
    ledger_prefix: str = ""

    def __post_init__(self) -> None:
        if self.force_relaxed:
            self.min_informative = min(self.min_informative, 1)
            self.allow_accessories = True


def relax_stages(options: TopoffOptions) -> list[RelaxStage]:
    if options.force_relaxed:
        return [RelaxStage(1, True)]
    stages = [RelaxStage(options.min_informative, options.allow_accessories)]
    if options.relax:
        if options.min_informative > 1:
            stages.append(RelaxStage(1, options.allow_accessories))
        if not options.allow_accessories:
            stages.append(RelaxStage(1, True))
    return stages


def escalation_threshold(prefetch: int) -> float:
    return min(ESCALATION_FLOOR, prefetch / 2)


def passes_moq_gate(item: RawListing, check_moq: bool) -> bool:
    # Single-unit offers have nothing to pool.
    if not check_moq:
        return True
    value = first_number(item.moq)
    return value is None or value > 1


def listing_image(raw: Optional[str]) -> Optional[str]:
    url = normalize_image_url(raw)
    if not url:
        return None
    url = upgrade_thumbnail(url)
    return None if is_bad_image(url) else url


def quality_class(cls: Classification, stage_index: int) -> str:
    if cls.is_accessory:
        return "accessory"
    return "ok" if stage_index == 0 else "relaxed"


def build_listing(
    item: RawListing,
    leaf_key: str,
    term: str,
    title: str,
    cls: Classification,
    stage_index: int,
) -> dict[str, Any]:
    return {
        "platform": item.platform,
        "url": item.url,
        "title": title,
        "image": listing_image(item.image),
        "price": item.price,
        "currency": item.currency,
        "moq": item.moq,
        "store_name": item.store_name,
        "description": item.description,
        "rating": item.rating,
        "orders": item.orders,
        "detail": item.detail,
        "categories": list(dict.fromkeys([leaf_key, term_to_category_slug(term), *cls.groups])),
        "terms": list(dict.fromkeys([term, *term.split()])),
        "quality_class": quality_class(cls, stage_index),
    }


@dataclass
class TermOutcome:
    term: str
    state: TaskState = TaskState.PENDING
    history: list[TaskState] = field(default_factory=lambda: [TaskState.PENDING])
    fetched: int = 0
    kept: int = 0

    def advance(self, state: TaskState) -> None:
        self.state = state
        self.history.append(state)


@dataclass
class LeafOutcome:
    key: str
    existing: int
    kept: int = 0
    done: bool = False
    attempts: int = 0
    terms: list[TermOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.existing + self.kept


@dataclass
class TopoffReport:
    leaves_total: int = 0
    leaves_sparse: int = 0
    processed: int = 0
    skipped_done: int = 0
    added: int = 0
    completed: int = 0
    skipped_terms: int = 0
    errors: int = 0
    leaves: list[LeafOutcome] = field(default_factory=list)

    def summary_rows(self) -> dict[str, int]:
        return {
            "leaves": self.leaves_total,
            "sparse": self.leaves_sparse,
            "processed": self.processed,
            "alreadyDone": self.skipped_done,
            "completed": self.completed,
            "added": self.added,
            "skippedTerms": self.skipped_terms,
            "leafErrors": self.errors,
        }


class TopoffJob:
    def __init__(self, ctx: RunContext, taxonomy: Taxonomy, options: TopoffOptions):
        self.ctx = ctx
        self.taxonomy = taxonomy
        self.options = options
        self.stages = relax_stages(options)

    def ledger_key(self, leaf: TaxonomyLeaf) -> str:
        return f"{self.options.ledger_prefix}{leaf.key}"

    def terms_for(self, leaf: TaxonomyLeaf) -> list[str]:
        if self.options.only_terms:
            return list(self.options.only_terms)
        return search_terms(leaf, cap=self.options.terms)

    async def prefetch(self, term: str, outcome: TermOutcome) -> list[RawListing]:
        fetcher = self.ctx.fetcher(self.options.platform)
        batch = await fetcher.fetch(term, self.options.prefetch)
        outcome.advance(TaskState.PREFETCHED)

        if self.options.headless and len(batch) < escalation_threshold(self.options.prefetch):
            rendered = await fetcher.fetch(term, self.options.prefetch, headless=True)
            outcome.advance(TaskState.ESCALATED)
            self.ctx.stats.bump("escalated")
            logger.info("Escalated %r to headless: static=%s headless=%s", term, len(batch), len(rendered))
            if len(rendered) > len(batch):
                batch = rendered

        outcome.fetched = len(batch)
        self.ctx.stats.bump("fetched", len(batch))
        return batch

    def filter_stage(
        self,
        batch: Sequence[RawListing],
        leaf_key: str,
        term: str,
        stage: RelaxStage,
        stage_index: int,
        seen: set[str],
        room: int,
    ) -> list[dict[str, Any]]:
        """Pick up to `room` new listings from the batch under one relaxation stage."""
        last_stage = stage_index == len(self.stages) - 1
        accepted: list[dict[str, Any]] = []
        for item in batch:
            if len(accepted) >= room:
                break
            if not passes_moq_gate(item, self.options.check_moq):
                if last_stage:
                    self.ctx.stats.bump("rejected")
                continue
            title = sanitize_title(item.title or "")
            cls = classify(title, term)
            if not passes_quality(cls, stage.min_informative, stage.allow_accessories):
                if last_stage:
                    self.ctx.stats.bump("rejected")
                    logger.debug("Rejected %r for %s (informative=%s)", title, leaf_key, cls.informative_count)
                continue
            if cls.canonical_key in seen:
                if stage_index == 0:
                    self.ctx.stats.bump("duplicates")
                continue
            seen.add(cls.canonical_key)
            accepted.append(build_listing(item, leaf_key, term, title, cls, stage_index))
        return accepted

    async def persist(self, listings: list[dict[str, Any]]) -> int:
        if self.ctx.dry_run:
            for listing in listings:
                logger.info("[dry-run] would upsert %s %r", listing["url"], listing["title"])
            return len(listings)
        saved, failed = await self.ctx.store.upsert_many(listings)
        if failed:
            self.ctx.stats.bump("persist_failures", failed)
        return saved

    async def process_term(
        self,
        leaf: TaxonomyLeaf,
        term: str,
        existing: int,
        kept_before: int,
        seen: set[str],
        outcome: Optional[TermOutcome] = None,
    ) -> TermOutcome:
        outcome = outcome or TermOutcome(term)
        target = self.options.target
        batch = await self.prefetch(term, outcome)

        if len(batch) < self.options.skip_below:
            outcome.advance(TaskState.SKIPPED)
            self.ctx.stats.bump("skipped")
            logger.info("Skipped %r for %s: only %s results", term, leaf.key, len(batch))
            return outcome

        for index, stage in enumerate(self.stages):
            room = target - (existing + kept_before + outcome.kept)
            if room <= 0:
                break
            accepted = self.filter_stage(batch, leaf.key, term, stage, index, seen, room)
            if not accepted:
                continue
            saved = await self.persist(accepted)
            outcome.kept += saved
            self.ctx.stats.bump("kept", saved)
            logger.debug(
                "leaf=%s term=%r stage=(minInf=%s, allowAcc=%s) +%s total=%s",
                leaf.key,
                term,
                stage.min_informative,
                stage.allow_accessories,
                saved,
                existing + kept_before + outcome.kept,
            )
        outcome.advance(TaskState.QUALITY_FILTERED)
        if outcome.kept and not self.ctx.dry_run:
            outcome.advance(TaskState.PERSISTED)
        outcome.advance(TaskState.DONE)
        return outcome

    async def process_leaf(
        self,
        leaf: TaxonomyLeaf,
        existing: int,
        outcome: Optional[LeafOutcome] = None,
    ) -> LeafOutcome:
        """Fill one leaf. The ledger is marked even when a term raises; `outcome` then holds the partial result."""
        outcome = outcome or LeafOutcome(key=leaf.key, existing=existing)
        seen: set[str] = set()
        try:
            if existing < self.options.target:
                for term in self.terms_for(leaf):
                    if outcome.total >= self.options.target:
                        break
                    term_outcome = TermOutcome(term)
                    outcome.terms.append(term_outcome)
                    await self.process_term(leaf, term, existing, outcome.kept, seen, term_outcome)
                    outcome.kept += term_outcome.kept
        finally:
            outcome.kept = sum(t.kept for t in outcome.terms)
            outcome.done = outcome.total >= self.options.target
            ledger = self.ctx.ledger
            async with ledger.lock:
                state = ledger.mark(self.ledger_key(leaf), done=outcome.done)
                if not self.ctx.dry_run:
                    ledger.save()
            outcome.attempts = state["attempts"]
            logger.info(
                "leaf=%s existing=%s +%s total=%s/%s done=%s",
                leaf.key,
                existing,
                outcome.kept,
                outcome.total,
                self.options.target,
                outcome.done,
            )
        return outcome

    async def select_leaves(self, report: TopoffReport) -> tuple[list[TaxonomyLeaf], dict[str, int]]:
        leaves = list(iter_leaves(self.taxonomy, self.options.group_filter))
        counts = await self.ctx.store.count_by_categories([leaf.key for leaf in leaves], self.options.platform)
        sparse = [leaf for leaf in leaves if counts.get(leaf.key, 0) < self.options.target]
        report.leaves_total = len(leaves)
        report.leaves_sparse = len(sparse)
        if self.options.limit:
            sparse = sparse[: self.options.limit]
        return sparse, counts

    async def run(self) -> TopoffReport:
        report = TopoffReport()
        leaves, counts = await self.select_leaves(report)
        logger.info(
            "Top-off start: leaves=%s sparse=%s target=%s platform=%s stages=%s dry_run=%s",
            report.leaves_total,
            report.leaves_sparse,
            self.options.target,
            self.options.platform,
            [(s.min_informative, s.allow_accessories) for s in self.stages],
            self.ctx.dry_run,
        )

        queue: asyncio.Queue[TaxonomyLeaf] = asyncio.Queue()
        for leaf in leaves:
            queue.put_nowait(leaf)

        async def worker(worker_id: int) -> None:
            while True:
                try:
                    leaf = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if self.ctx.ledger.is_done(self.ledger_key(leaf)):
                    report.skipped_done += 1
                    logger.debug("worker=%s skip leaf=%s (done earlier)", worker_id, leaf.key)
                    continue
                report.processed += 1
                outcome = LeafOutcome(key=leaf.key, existing=counts.get(leaf.key, 0))
                try:
                    await self.process_leaf(leaf, outcome.existing, outcome)
                except Exception as exc:
                    report.errors += 1
                    self.ctx.stats.bump("errors")
                    logger.warning("Leaf %s failed: %s", leaf.key, exc, exc_info=True)
                report.leaves.append(outcome)
                report.added += outcome.kept
                report.completed += int(outcome.done)
                report.skipped_terms += sum(1 for t in outcome.terms if t.state is TaskState.SKIPPED)

        concurrency = max(1, self.options.concurrency)
        await asyncio.gather(*(worker(i + 1) for i in range(concurrency)))
        logger.info("Top-off finished: added=%s completed=%s", report.added, report.completed)
        return report


async def run_topoff(ctx: RunContext, taxonomy: Taxonomy, options: TopoffOptions) -> TopoffReport:
    report = await TopoffJob(ctx, taxonomy, options).run()
    title = "TOP-OFF (dry run)" if ctx.dry_run else "TOP-OFF"
    print(format_summary(title, report.summary_rows(), ctx.stats.as_dict()))
    return report
