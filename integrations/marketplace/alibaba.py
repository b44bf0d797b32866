from __future__ import annotations

from urllib.parse import quote_plus

from integrations.marketplace.base import SourceFetcher
from integrations.marketplace.extract import ALIBABA


class AlibabaFetcher(SourceFetcher):
    platform = ALIBABA
    base_url = "https://www.alibaba.com"
    referer = "https://www.alibaba.com/"
    page_size = 48
    max_pages = 5

    def search_url(self, term: str, page: int) -> str:
        return (
            f"{self.base_url}/trade/search?fsb=y&IndexArea=product_en"
            f"&SearchText={quote_plus(term)}&page={page}"
        )
