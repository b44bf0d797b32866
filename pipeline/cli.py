from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Optional

from integrations.marketplace.browser import BrowserRenderer
from integrations.marketplace.extract import INDIAMART
from integrations.marketplace.factory import FETCHER_REGISTRY, get_fetcher
from pipeline.config import Settings, load_settings
from pipeline.context import RunContext
from pipeline.db import build_engine, build_session_factory
from pipeline.images.cache import ImageCache
from pipeline.images.predicate import MIN_DOWNLOAD_SIDE_PX
from pipeline.images.storage import ObjectStorage
from pipeline.jobs.coverage import DEFAULT_MAX_CYCLES, CoverageOptions, run_coverage
from pipeline.jobs.image_audit import AuditOptions, run_image_audit
from pipeline.jobs.image_fix import ImageFixOptions, run_image_fix
from pipeline.jobs.topoff import TopoffOptions, run_topoff
from pipeline.progress import ProgressLedger
from pipeline.services.listing_store import ListingStore
from pipeline.taxonomy import load_taxonomy
from pipeline.utils.errors import ConfigError

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2
EXIT_TARGET_UNMET = 3


def parse_terms(value: Optional[str]) -> tuple[Optional[int], Optional[list[str]]]:
    """`--terms 5` caps terms per leaf, `--terms "a,b"` replaces them."""
    if value is None:
        return None, None
    value = value.strip()
    if value.isdigit():
        return int(value), None
    terms = [t.strip() for t in value.split(",") if t.strip()]
    return None, terms or None


def parse_stages(value: str) -> tuple[int, ...]:
    try:
        stages = tuple(sorted({int(v) for v in value.split(",") if v.strip()}))
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid stage list: {value!r}") from None
    if not stages or stages[0] < 1:
        raise argparse.ArgumentTypeError("stages must be positive integers")
    return stages


def _platform(value: str) -> str:
    platform = value.upper().replace("-", "_")
    if platform not in FETCHER_REGISTRY:
        raise argparse.ArgumentTypeError(f"unknown platform {value!r}")
    return platform


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--dry-run", action="store_true", help="Log what would change, write nothing")
    parser.add_argument("--resume", metavar="PATH", help="Progress ledger file to resume from and write to")
    parser.add_argument("--concurrency", type=int, default=4, help="Parallel workers")


def _add_fetch_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--platform", type=_platform, default=INDIAMART, help="Marketplace to fetch from")
    parser.add_argument("--headless", action="store_true", help="Escalate thin searches to a headless browser")
    parser.add_argument("--group", dest="group", help="Only leaves under this top-level group")
    parser.add_argument("--terms", help="Terms per leaf (a number) or an explicit comma-separated list")
    parser.add_argument("--prefetch", type=int, default=70, help="Results fetched per term")
    parser.add_argument("--min-informative", type=int, default=2)
    parser.add_argument("--allow-accessories", action="store_true")
    parser.add_argument("--no-relax", action="store_true", help="Do not relax filters when a leaf stays short")
    parser.add_argument("--force-relaxed", action="store_true", help="Start from the most relaxed filter")
    parser.add_argument("--no-moq", action="store_true", help="Keep single-unit offers")
    parser.add_argument("--skip-below", type=int, default=1, help="Skip a term whose batch is smaller than this")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="poolbuy-ingest", description="Listing ingestion and image pipeline")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    topoff = sub.add_parser("topoff", help="Fill sparse taxonomy leaves up to a target count")
    _add_fetch_options(topoff)
    _add_common(topoff)
    topoff.add_argument("--target", type=int, default=8, help="Listings wanted per leaf")
    topoff.add_argument("--limit", type=int, help="Max leaves to process")
    topoff.set_defaults(handler=cmd_topoff)

    coverage = sub.add_parser("coverage", help="Tiered top-off passes across all leaves")
    _add_fetch_options(coverage)
    _add_common(coverage)
    coverage.add_argument("--stages", type=parse_stages, default=(1, 4, 8), help="Comma-separated stage targets")
    coverage.add_argument("--max-cycles", type=int, default=DEFAULT_MAX_CYCLES)
    coverage.add_argument("--strict", action="store_true", help="Exit non-zero when the last stage is unmet")
    coverage.set_defaults(handler=cmd_coverage)

    fix = sub.add_parser("fix-images", help="Resolve, cache and store images for listings")
    _add_common(fix)
    fix.add_argument("--platform", type=_platform)
    fix.add_argument("--limit", type=int, help="Max listings to process")
    fix.add_argument("--batch-size", type=int, default=20)
    fix.set_defaults(handler=cmd_fix_images)

    audit = sub.add_parser("audit-images", help="Clear cached images that fail the bad-image check")
    audit.add_argument("--limit", type=int, help="Max listings to check")
    audit.add_argument("--dry-run", action="store_true")
    audit.add_argument("--min-bytes", type=int, help="Defaults to IMAGE_MIN_BYTES")
    audit.add_argument(
        "--min-side", type=int, default=MIN_DOWNLOAD_SIDE_PX, help="Smallest accepted image side in pixels"
    )
    audit.set_defaults(handler=cmd_audit_images)
    return parser


def topoff_options(args: argparse.Namespace) -> TopoffOptions:
    term_cap, only_terms = parse_terms(args.terms)
    return TopoffOptions(
        target=getattr(args, "target", 8),
        terms=term_cap or 3,
        prefetch=args.prefetch,
        concurrency=args.concurrency,
        min_informative=args.min_informative,
        allow_accessories=args.allow_accessories,
        relax=not args.no_relax,
        force_relaxed=args.force_relaxed,
        headless=args.headless,
        skip_below=args.skip_below,
        check_moq=not args.no_moq,
        platform=args.platform,
        group_filter=args.group,
        limit=getattr(args, "limit", None),
        only_terms=only_terms,
    )


@asynccontextmanager
async def open_context(
    settings: Settings,
    args: argparse.Namespace,
    *,
    platforms: tuple[str, ...] = (),
    images: bool = False,
) -> AsyncIterator[RunContext]:
    """Wire up engine, store, fetchers and image cache for one command, and tear them down after."""
    dry_run = bool(getattr(args, "dry_run", False))
    async with AsyncExitStack() as stack:
        engine = build_engine(settings.database_url)
        stack.push_async_callback(engine.dispose)
        ctx = RunContext(
            settings=settings,
            store=ListingStore(build_session_factory(engine)),
            ledger=ProgressLedger.open(getattr(args, "resume", None)),
            dry_run=dry_run,
            concurrency=getattr(args, "concurrency", 4),
        )

        renderer = None
        if getattr(args, "headless", False):
            renderer = BrowserRenderer(
                settings.user_agent,
                timeout_s=settings.headless_timeout_s,
                settle_ms=settings.headless_settle_ms,
            )
            stack.push_async_callback(renderer.aclose)
        for platform in platforms:
            ctx.fetchers[platform] = await stack.enter_async_context(get_fetcher(platform, settings, renderer))

        if images and not dry_run:
            storage = ObjectStorage.from_settings(settings)
            ctx.image_cache = await stack.enter_async_context(ImageCache(settings, storage))
        yield ctx


async def cmd_topoff(args: argparse.Namespace, settings: Settings) -> int:
    taxonomy = load_taxonomy(settings.taxonomy_path)
    async with open_context(settings, args, platforms=(args.platform,)) as ctx:
        await run_topoff(ctx, taxonomy, topoff_options(args))
    return 0


async def cmd_coverage(args: argparse.Namespace, settings: Settings) -> int:
    taxonomy = load_taxonomy(settings.taxonomy_path)
    options = CoverageOptions(stages=args.stages, max_cycles=args.max_cycles, base=topoff_options(args))
    async with open_context(settings, args, platforms=(args.platform,)) as ctx:
        report = await run_coverage(ctx, taxonomy, options)
    if args.strict and not report.final_target_met:
        logger.error("Final coverage target %s not met", options.stages[-1])
        return EXIT_TARGET_UNMET
    return 0


async def cmd_fix_images(args: argparse.Namespace, settings: Settings) -> int:
    options = ImageFixOptions(
        platform=args.platform,
        limit=args.limit,
        batch_size=args.batch_size,
        concurrency=args.concurrency,
    )
    async with open_context(settings, args, images=True) as ctx:
        await run_image_fix(ctx, options)
    return 0


async def cmd_audit_images(args: argparse.Namespace, settings: Settings) -> int:
    options = AuditOptions(
        limit=args.limit,
        min_bytes=args.min_bytes if args.min_bytes is not None else settings.image_min_bytes,
        min_side=args.min_side,
    )
    async with open_context(settings, args) as ctx:
        await run_image_audit(ctx, options)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings()
        logging.basicConfig(
            level=(args.log_level or settings.log_level).upper(),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
        return asyncio.run(args.handler(args, settings))
    except ConfigError as exc:
        print(f"Configuration error: {exc.message}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
