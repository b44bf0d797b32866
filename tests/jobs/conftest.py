import pytest

from pipeline.context import RunContext
from pipeline.progress import ProgressLedger


@pytest.fixture
def make_ctx(settings):
    def _make(store, fetcher=None, image_cache=None, ledger=None, dry_run=False):
        return RunContext(
            settings=settings,
            store=store,
            ledger=ledger if ledger is not None else ProgressLedger(),
            fetchers={"INDIAMART": fetcher} if fetcher is not None else {},
            image_cache=image_cache,
            dry_run=dry_run,
        )

    return _make
