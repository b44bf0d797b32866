from __future__ import annotations

from typing import Optional, Type

import httpx

from integrations.marketplace.alibaba import AlibabaFetcher
from integrations.marketplace.base import SourceFetcher
from integrations.marketplace.browser import BrowserRenderer
from integrations.marketplace.indiamart import IndiaMartFetcher
from integrations.marketplace.made_in_china import MadeInChinaFetcher
from pipeline.config import Settings
from pipeline.utils.errors import ConfigError

# platform -> fetcher class
FETCHER_REGISTRY: dict[str, Type[SourceFetcher]] = {
    AlibabaFetcher.platform: AlibabaFetcher,
    MadeInChinaFetcher.platform: MadeInChinaFetcher,
    IndiaMartFetcher.platform: IndiaMartFetcher,
}


def get_fetcher(
    platform: str,
    settings: Settings,
    renderer: Optional[BrowserRenderer] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> SourceFetcher:
    fetcher_class = FETCHER_REGISTRY.get(platform.upper())
    if fetcher_class is None:
        raise ConfigError(
            "unknown_platform",
            f"Unknown platform {platform!r}; expected one of {', '.join(sorted(FETCHER_REGISTRY))}",
        )
    return fetcher_class(settings, client=client, renderer=renderer)
