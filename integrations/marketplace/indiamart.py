from __future__ import annotations

from urllib.parse import quote_plus

from integrations.marketplace.base import SourceFetcher
from integrations.marketplace.extract import INDIAMART


class IndiaMartFetcher(SourceFetcher):
    platform = INDIAMART
    base_url = "https://dir.indiamart.com"
    referer = "https://dir.indiamart.com/"
    page_size = 18
    max_pages = 30

    def search_url(self, term: str, page: int) -> str:
        return f"{self.base_url}/search.mp?ss={quote_plus(term)}&pg={page}"
