from unittest.mock import AsyncMock, MagicMock

import pytest

from job_fakes import FakeFetcher, FakeStore, one_group_taxonomy, raw
from pipeline.jobs.topoff import (
    RelaxStage,
    TaskState,
    TopoffJob,
    TopoffOptions,
    escalation_threshold,
    listing_image,
    passes_moq_gate,
    relax_stages,
    run_topoff,
)
from pipeline.progress import ProgressLedger

EARBUDS = {
    "key": "wireless-earbuds",
    "label": "Wireless Earbuds",
    "term": "wireless earbuds",
    "aliases": ["tws earphones", "bluetooth earbuds"],
}

GOOD_TITLES = {
    "wireless earbuds": ["TWS Wireless Earbuds Bluetooth 5.3", "Wireless Earbuds Noise Cancelling"],
    "tws earphones": ["TWS Earphones Gaming Low Latency", "TWS Earphones Touch Control"],
    "bluetooth earbuds": ["Bluetooth Earbuds Waterproof Sports", "Bluetooth Earbuds Long Battery"],
}


def _results_with_two_passing():
    results = {}
    for term, titles in GOOD_TITLES.items():
        slug = term.replace(" ", "-")
        results[term] = [
            raw(f"https://www.indiamart.com/proddetail/{slug}-1.html", titles[0]),
            raw(f"https://www.indiamart.com/proddetail/{slug}-2.html", "Single Sample Earbuds Unit", moq="1 Piece"),
            raw(f"https://www.indiamart.com/proddetail/{slug}-3.html", titles[1]),
            raw(f"https://www.indiamart.com/proddetail/{slug}-4.html", "Retail Earbuds Trial Pack", moq="1 Piece"),
        ]
    return results


def test_relax_stages():
    assert relax_stages(TopoffOptions()) == [RelaxStage(2, False), RelaxStage(1, False), RelaxStage(1, True)]
    assert relax_stages(TopoffOptions(relax=False)) == [RelaxStage(2, False)]
    assert relax_stages(TopoffOptions(allow_accessories=True)) == [RelaxStage(2, True), RelaxStage(1, True)]
    assert relax_stages(TopoffOptions(force_relaxed=True)) == [RelaxStage(1, True)]


def test_gates_and_helpers():
    assert escalation_threshold(70) == 6
    assert escalation_threshold(8) == 4
    assert not passes_moq_gate(raw("u", "t", moq="1 Piece"), check_moq=True)
    assert passes_moq_gate(raw("u", "t", moq="1 Piece"), check_moq=False)
    assert passes_moq_gate(raw("u", "t", moq=None), check_moq=True)
    assert listing_image("//5.imimg.com/data5/a_80x80.jpg") == "https://5.imimg.com/data5/a_960x960.jpg"
    assert listing_image("https://5.imimg.com/data/company/logo.jpg") is None
    assert listing_image(None) is None


async def test_end_to_end_partial_fill(store, make_ctx, tmp_path):
    await store.upsert(
        {
            "platform": "INDIAMART",
            "url": "https://www.indiamart.com/proddetail/existing.html",
            "title": "Existing Wireless Earbuds",
            "categories": ["wireless-earbuds"],
        }
    )
    ledger = ProgressLedger(tmp_path / "topoff.json")
    fetcher = FakeFetcher(_results_with_two_passing())
    ctx = make_ctx(store, fetcher=fetcher, ledger=ledger)

    report = await TopoffJob(ctx, one_group_taxonomy(EARBUDS), TopoffOptions(target=8, terms=3)).run()

    assert [call[0] for call in fetcher.calls] == ["wireless earbuds", "tws earphones", "bluetooth earbuds"]
    assert report.added == 6
    assert report.completed == 0
    outcome = report.leaves[0]
    assert (outcome.existing, outcome.kept, outcome.done, outcome.attempts) == (1, 6, False, 1)
    assert all(t.state is TaskState.DONE for t in outcome.terms)
    assert outcome.terms[0].history == [
        TaskState.PENDING,
        TaskState.PREFETCHED,
        TaskState.QUALITY_FILTERED,
        TaskState.PERSISTED,
        TaskState.DONE,
    ]
    assert ctx.stats.kept == 6
    assert ctx.stats.rejected == 6

    assert ProgressLedger.open(tmp_path / "topoff.json").get("wireless-earbuds") == {"done": False, "attempts": 1}
    assert await store.count_by_category("wireless-earbuds") == 7
    assert await store.count_by_category("electronics") == 6
    assert await store.count_by_category("tws-earphones") == 2


async def test_stops_at_target_and_marks_done(make_ctx):
    store = FakeStore()
    store.seed("wireless-earbuds", 5)
    fetcher = FakeFetcher(_results_with_two_passing())
    ctx = make_ctx(store, fetcher=fetcher)

    report = await TopoffJob(ctx, one_group_taxonomy(EARBUDS), TopoffOptions(target=8)).run()

    assert report.added == 3
    assert report.completed == 1
    assert [call[0] for call in fetcher.calls] == ["wireless earbuds", "tws earphones"]
    assert ctx.ledger.is_done("wireless-earbuds")


async def test_full_leaves_are_not_selected(make_ctx):
    store = FakeStore()
    store.seed("wireless-earbuds", 8)
    fetcher = FakeFetcher(_results_with_two_passing())
    ctx = make_ctx(store, fetcher=fetcher)

    report = await TopoffJob(ctx, one_group_taxonomy(EARBUDS), TopoffOptions(target=8)).run()

    assert report.leaves_sparse == 0
    assert fetcher.calls == []


async def test_leaves_done_in_the_ledger_are_skipped(make_ctx):
    ledger = ProgressLedger()
    ledger.mark("wireless-earbuds", done=True)
    fetcher = FakeFetcher(_results_with_two_passing())
    ctx = make_ctx(FakeStore(), fetcher=fetcher, ledger=ledger)

    report = await TopoffJob(ctx, one_group_taxonomy(EARBUDS), TopoffOptions()).run()

    assert report.skipped_done == 1
    assert fetcher.calls == []


async def test_relaxation_admits_accessories_only_after_strict_stage(make_ctx):
    fetcher = FakeFetcher(
        {
            "wireless earbuds": [
                raw("https://x.indiamart.com/p/1.html", "Silicone Case Cover for Earbuds"),
                raw("https://x.indiamart.com/p/2.html", "Wireless Earbuds Deep Bass"),
            ]
        }
    )
    store = FakeStore()
    ctx = make_ctx(store, fetcher=fetcher)
    options = TopoffOptions(target=8, only_terms=["wireless earbuds"])

    await TopoffJob(ctx, one_group_taxonomy(EARBUDS), options).run()

    assert [(item["title"], item["quality_class"]) for item in store.upserted] == [
        ("Wireless Earbuds Deep Bass", "ok"),
        ("Silicone Case Cover for Earbuds", "accessory"),
    ]
    assert set(store.upserted[0]["categories"]) == {"wireless-earbuds", "electronics"}
    assert store.upserted[0]["terms"] == ["wireless earbuds", "wireless", "earbuds"]


async def test_no_relax_keeps_strict_filter(make_ctx):
    fetcher = FakeFetcher({"wireless earbuds": [raw("https://x.indiamart.com/p/1.html", "Silicone Case Cover")]})
    store = FakeStore()
    ctx = make_ctx(store, fetcher=fetcher)

    await TopoffJob(ctx, one_group_taxonomy(EARBUDS), TopoffOptions(relax=False, terms=1)).run()

    assert store.upserted == []
    assert ctx.stats.rejected == 1


async def test_duplicate_titles_within_a_leaf_are_kept_once(make_ctx):
    fetcher = FakeFetcher(
        {
            "wireless earbuds": [
                raw("https://x.indiamart.com/p/1.html", "Wireless Earbuds Deep Bass"),
                raw("https://x.indiamart.com/p/2.html", "Deep Bass Wireless Earbuds"),
            ]
        }
    )
    store = FakeStore()
    ctx = make_ctx(store, fetcher=fetcher)

    await TopoffJob(ctx, one_group_taxonomy(EARBUDS), TopoffOptions(terms=1)).run()

    assert len(store.upserted) == 1
    assert ctx.stats.duplicates == 1


async def test_thin_static_results_escalate_to_headless(make_ctx):
    static = [raw("https://x.indiamart.com/p/1.html", "Wireless Earbuds Deep Bass")]
    rendered = [
        raw(f"https://x.indiamart.com/p/h{n}.html", f"Wireless Earbuds Edition {name}")
        for n, name in enumerate(["Alpha", "Bravo", "Charlie"])
    ]
    fetcher = FakeFetcher({"wireless earbuds": static}, {"wireless earbuds": rendered})
    store = FakeStore()
    ctx = make_ctx(store, fetcher=fetcher)
    job = TopoffJob(ctx, one_group_taxonomy(EARBUDS), TopoffOptions(headless=True, terms=1))

    report = await job.run()

    assert fetcher.calls == [("wireless earbuds", 70, False), ("wireless earbuds", 70, True)]
    assert ctx.stats.escalated == 1
    assert report.added == 3
    assert TaskState.ESCALATED in report.leaves[0].terms[0].history


async def test_small_batches_are_skipped(make_ctx):
    fetcher = FakeFetcher({"wireless earbuds": [raw("https://x.indiamart.com/p/1.html", "Wireless Earbuds Bass")]})
    store = FakeStore()
    ctx = make_ctx(store, fetcher=fetcher)

    report = await TopoffJob(ctx, one_group_taxonomy(EARBUDS), TopoffOptions(terms=1, skip_below=3)).run()

    assert report.skipped_terms == 1
    assert report.leaves[0].terms[0].history == [TaskState.PENDING, TaskState.PREFETCHED, TaskState.SKIPPED]
    assert store.upserted == []
    assert ctx.stats.skipped == 1


async def test_leaf_errors_are_counted_and_the_run_continues(make_ctx):
    power_banks = {"key": "power-banks", "label": "Power Banks"}
    fetcher = FakeFetcher({"Power Banks": [raw("https://x.indiamart.com/p/1.html", "Slim Power Bank 10000mAh")]})
    original = fetcher.fetch

    async def flaky(term, limit, *, headless=False):
        if term == "wireless earbuds":
            raise RuntimeError("parser bug")
        return await original(term, limit, headless=headless)

    fetcher.fetch = flaky
    store = FakeStore()
    ctx = make_ctx(store, fetcher=fetcher)

    report = await TopoffJob(ctx, one_group_taxonomy(EARBUDS, power_banks), TopoffOptions(concurrency=2)).run()

    assert report.errors == 1
    assert ctx.stats.errors == 1
    assert [item["url"] for item in store.upserted] == ["https://x.indiamart.com/p/1.html"]


async def test_dry_run_performs_no_mutations(make_ctx, tmp_path):
    store = MagicMock()
    store.count_by_categories = AsyncMock(return_value={"wireless-earbuds": 1})
    store.upsert_many = AsyncMock()
    store.batch_update_by_id = AsyncMock()
    ledger = ProgressLedger(tmp_path / "dry.json")
    ctx = make_ctx(store, fetcher=FakeFetcher(_results_with_two_passing()), ledger=ledger, dry_run=True)

    report = await run_topoff(ctx, one_group_taxonomy(EARBUDS), TopoffOptions(target=8))

    assert report.added == 6
    store.upsert_many.assert_not_awaited()
    store.batch_update_by_id.assert_not_awaited()
    assert not (tmp_path / "dry.json").exists()


@pytest.mark.parametrize("group, expected", [("electronics", 1), ("kitchen", 0)])
async def test_group_filter(make_ctx, group, expected):
    ctx = make_ctx(FakeStore(), fetcher=FakeFetcher())
    report = await TopoffJob(ctx, one_group_taxonomy(EARBUDS), TopoffOptions(group_filter=group)).run()
    assert report.leaves_total == expected


async def test_explicit_terms_are_not_capped(make_ctx):
    fetcher = FakeFetcher()
    ctx = make_ctx(FakeStore(), fetcher=fetcher)
    terms = ["a", "b", "c", "d", "e"]

    await TopoffJob(ctx, one_group_taxonomy(EARBUDS), TopoffOptions(only_terms=terms, terms=3)).run()

    assert [call[0] for call in fetcher.calls] == terms


async def test_failing_term_keeps_earlier_rows_and_marks_the_ledger(make_ctx, tmp_path):
    fetcher = FakeFetcher(_results_with_two_passing())
    original = fetcher.fetch

    async def flaky(term, limit, *, headless=False):
        if term == "tws earphones":
            raise RuntimeError("parser bug")
        return await original(term, limit, headless=headless)

    fetcher.fetch = flaky
    store = FakeStore()
    ledger = ProgressLedger(tmp_path / "partial.json")
    ctx = make_ctx(store, fetcher=fetcher, ledger=ledger)

    report = await TopoffJob(ctx, one_group_taxonomy(EARBUDS), TopoffOptions(target=8)).run()

    assert report.errors == 1
    assert report.added == 2 == len(store.upserted)
    assert report.leaves[0].kept == 2
    assert ProgressLedger.open(tmp_path / "partial.json").get("wireless-earbuds") == {"done": False, "attempts": 1}
