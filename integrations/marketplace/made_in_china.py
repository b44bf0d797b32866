from __future__ import annotations

import re

from integrations.marketplace.base import SourceFetcher
from integrations.marketplace.extract import MADE_IN_CHINA


class MadeInChinaFetcher(SourceFetcher):
    platform = MADE_IN_CHINA
    base_url = "https://www.made-in-china.com"
    referer = "https://www.made-in-china.com/"
    page_size = 30
    max_pages = 5

    def search_url(self, term: str, page: int) -> str:
        slug = re.sub(r"[^A-Za-z0-9]+", "_", term.strip()).strip("_")
        suffix = "" if page <= 1 else f"_{page}"
        return f"{self.base_url}/products-search/hot-china-products/{slug}{suffix}.html"
