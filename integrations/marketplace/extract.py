"""Tolerant HTML/JSON extraction for marketplace search and detail pages.

Marketplace markup changes without notice, so none of these functions raise on
unexpected input. Each returns partial records together with the list of
expected fields that were absent. The caller decides whether to retry, escalate
to a headless render, or skip.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterator, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup, Tag

from integrations.marketplace.models import ExtractionResult, RawListing
from pipeline.utils.text import clean_text, detect_currency, first_str

logger = logging.getLogger(__name__)

ALIBABA = "ALIBABA"
MADE_IN_CHINA = "MADE_IN_CHINA"
INDIAMART = "INDIAMART"

_PRICE_RE = re.compile(
    r"(?:US\s?\$|\$|USD|RMB|CNY|¥|￥|₹|INR|Rs\.?)\s?\d[\d,]*(?:\.\d{1,2})?"
    r"(?:\s*-\s*(?:US\s?\$|\$|USD|RMB|CNY|¥|￥|₹|INR|Rs\.?)?\s?\d[\d,]*(?:\.\d{1,2})?)?",
    re.IGNORECASE,
)
_MOQ_TEXT_RE = re.compile(
    r"(?:MOQ|Min(?:imum)?\.?\s*Order(?:\s*Quantity)?|≥)\s*:?\s*[\d,]{1,7}(?:\s*[A-Za-z()]+)?",
    re.IGNORECASE,
)
_ORDERS_RE = re.compile(r"\b[\d,.]+\s*(?:orders?|sold)\b", re.IGNORECASE)
_SCRIPT_LIST_RE = re.compile(r'"(offerList|resultList|productList|list)"\s*:\s*\[')

PLACEHOLDER_IMAGES = (
    "/common/img/space.png",
    "export.imimg.com/style/countrysvg.png",
)
IMAGE_ATTRS = ("data-original", "data-src", "data-lazy-src", "data-imgsrc", "src")


@dataclass(frozen=True)
class SelectorSet:
    cards: str
    link_pattern: re.Pattern
    title: str
    price: str
    moq: str
    store: str
    description: str
    gallery: str
    supplier_logo: str
    title_attr: Optional[str] = None


SELECTORS: dict[str, SelectorSet] = {
    ALIBABA: SelectorSet(
        cards=(
            ".organic-offer, .list-item, .J-offer-wrapper, .offer-card, .offer-item, [data-offer-id], "
            ".seb-card, .m-gallery-product-item, .offer-wrapper"
        ),
        link_pattern=re.compile(r"/product-detail/|/product/|/offer/|alibaba\.com/product", re.IGNORECASE),
        title="h2, h3, .elements-title-normal, .search-card-e-title",
        price="[class*=price], .elements-offer-price, .seb__price",
        moq="[class*=min-order], .seb__min-order, .min-order",
        store=".company-name, .supplier-name, .store-name, .seb-supplier__seller-name",
        description=".organic-offer__description, .product-desc, .seb__item__desc",
        gallery=".detail-gallery img, .image-list img, [class*=gallery] img, .main-image img",
        supplier_logo=".company-logo img, .supplier-logo img",
    ),
    MADE_IN_CHINA: SelectorSet(
        cards=".products-item, .prd-list, .product-item, .prd-item, .list-item, .result-item, .pro-item, li[data-title]",
        link_pattern=re.compile(r"/product/", re.IGNORECASE),
        title=".product-name, h2, h3",
        price=".price, .prd-price, [class*=price]",
        moq=".moq, .min-order, [class*=order]",
        store=".company-name, .supplier, .s-company",
        description=".product-property, .prd-desc",
        gallery=(
            "ul.sr-proMainInfo-slide-pageUl li.J-pic-dot img, .sr-proMainInfo-slide-pageInside img, "
            ".J-proSlide-content img"
        ),
        supplier_logo=".com-logo img, .company-logo img",
        title_attr="data-title",
    ),
    INDIAMART: SelectorSet(
        cards=".prod_box, .prod-card, .lst-product, .product-card, .prd, .p_card",
        link_pattern=re.compile(r"product|detail|proddetail", re.IGNORECASE),
        title=".prd-name, .producttitle, h2, h3",
        price=".pdp-price, .price, .prd-prc, .r_price",
        moq=".moq, .min-order, .order-qty",
        store=".cmp-name, .cmp-title, .company-name",
        description=".prod-dtls, .desc, .prd-desc, .specs",
        gallery=".pdp-img img, .imgthumb img, [class*=thumb] img, .bx-img img, .img-wrap img",
        supplier_logo=".cmp-logo img, .company-logo img",
    ),
}


def canonical_url(url: str, platform: str) -> str:
    parsed = urlparse(url)
    if platform == INDIAMART:
        query = urlencode([(k, v) for k, v in parse_qsl(parsed.query) if k in ("id", "kwd")])
    else:
        query = ""
    return urlunparse(("https", parsed.netloc.lower(), parsed.path, "", query, ""))


def normalize_card_image(src: Optional[str], base_url: str) -> Optional[str]:
    if not src:
        return None
    value = src.strip()
    if "," in value and " " in value:
        # srcset: keep the first candidate
        value = value.split(",")[0].strip().split(" ")[0]
    if not value or value.startswith("data:"):
        return None
    if value.startswith("//"):
        value = f"https:{value}"
    elif value.lower().startswith("http://"):
        value = "https://" + value[7:]
    elif not value.lower().startswith("https://"):
        value = urljoin(base_url, value)
    if any(marker in value.lower() for marker in PLACEHOLDER_IMAGES):
        return None
    return value


def _text(node: Optional[Tag]) -> Optional[str]:
    return clean_text(node.get_text(" ", strip=True)) if node is not None else None


def _select_text(node: Tag, selector: str) -> Optional[str]:
    return _text(node.select_one(selector))


def _img_src(img: Optional[Tag], base_url: str) -> Optional[str]:
    if img is None:
        return None
    for attr in IMAGE_ATTRS:
        src = normalize_card_image(img.get(attr), base_url)
        if src:
            return src
    return normalize_card_image(img.get("srcset"), base_url)


def _card_image(card: Tag, base_url: str) -> Optional[str]:
    for img in card.find_all("img"):
        src = _img_src(img, base_url)
        if src:
            return src
    return None


def _title_from_url(url: str) -> Optional[str]:
    segments = [s for s in urlparse(url).path.split("/") if s]
    if not segments:
        return None
    slug = re.sub(r"\.html?$", "", segments[-1])
    return clean_text(re.sub(r"[-_]+", " ", slug))


def _match(pattern: re.Pattern, text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    found = pattern.search(text)
    return clean_text(found.group(0)) if found else None


def _record_from_card(card: Tag, link: Tag, sel: SelectorSet, platform: str, base_url: str) -> RawListing:
    url = canonical_url(urljoin(base_url, link.get("href", "")), platform)
    blob = _text(card) or ""
    title = first_str(
        card.get(sel.title_attr) if sel.title_attr else None,
        link.get("title"),
        _select_text(card, sel.title),
        _text(link),
    ) or _title_from_url(url)
    price = _match(_PRICE_RE, _select_text(card, sel.price)) or _match(_PRICE_RE, blob)
    moq = _select_text(card, sel.moq) or _match(_MOQ_TEXT_RE, blob)
    description = _select_text(card, sel.description)
    if description and re.search(r"\$|MOQ|order", description, re.IGNORECASE):
        description = None
    return RawListing(
        platform=platform,
        url=url,
        title=clean_text(title),
        image=_card_image(card, base_url),
        price=price,
        currency=detect_currency(price),
        moq=moq,
        store_name=_select_text(card, sel.store),
        description=description,
        orders=_match(_ORDERS_RE, blob),
    )


def _from_cards(soup: BeautifulSoup, sel: SelectorSet, platform: str, base_url: str) -> Iterator[RawListing]:
    for card in soup.select(sel.cards):
        link = next(
            (a for a in card.find_all("a", href=True) if sel.link_pattern.search(a["href"])),
            None,
        )
        if link is None:
            continue
        yield _record_from_card(card, link, sel, platform, base_url)


def _from_anchors(soup: BeautifulSoup, sel: SelectorSet, platform: str, base_url: str) -> Iterator[RawListing]:
    for link in soup.find_all("a", href=True):
        if not sel.link_pattern.search(link["href"]):
            continue
        container = link.find_parent(["li", "div"]) or link
        yield _record_from_card(container, link, sel, platform, base_url)


def _balanced_array(text: str, start: int) -> Optional[str]:
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def _json_item_to_record(item: dict[str, Any], platform: str, base_url: str) -> Optional[RawListing]:
    title = first_str(item.get("title"), item.get("productTitle"), item.get("subject"), item.get("name"))
    url = first_str(item.get("productUrl"), item.get("detailUrl"), item.get("url"), item.get("pdpUrl"))
    if not title or not url:
        return None
    images = item.get("images") or item.get("image")
    if isinstance(images, list):
        images = images[0] if images else None
    image = first_str(item.get("imageUrl"), item.get("imgUrl"), images if isinstance(images, str) else None)
    price = first_str(
        *(str(item.get(k)) for k in ("priceString", "displayPrice", "price", "minPrice") if item.get(k) is not None)
    )
    moq = first_str(
        *(str(item.get(k)) for k in ("minOrder", "moq", "minOrderQuantity", "orderMin") if item.get(k) is not None)
    )
    return RawListing(
        platform=platform,
        url=canonical_url(urljoin(base_url, url), platform),
        title=clean_text(title),
        image=normalize_card_image(image, base_url),
        price=price,
        currency=detect_currency(price),
        moq=moq,
        store_name=first_str(item.get("companyName"), item.get("supplierName"), item.get("storeName")),
    )


def _from_json_ld(data: Any, platform: str, base_url: str) -> Iterator[RawListing]:
    nodes = data if isinstance(data, list) else data.get("@graph", [data]) if isinstance(data, dict) else []
    for node in nodes:
        if not isinstance(node, dict) or node.get("@type") != "Product":
            continue
        offers = node.get("offers") if isinstance(node.get("offers"), dict) else {}
        image = node.get("image")
        record = _json_item_to_record(
            {
                "name": node.get("name"),
                "url": node.get("url"),
                "image": image if isinstance(image, (str, list)) else None,
                "price": offers.get("price") or offers.get("lowPrice"),
            },
            platform,
            base_url,
        )
        if record:
            if offers.get("priceCurrency"):
                record.currency = offers["priceCurrency"]
            yield record


def _from_scripts(soup: BeautifulSoup, platform: str, base_url: str) -> Iterator[RawListing]:
    for script in soup.find_all("script"):
        text = script.string or script.get_text() or ""
        if not text.strip():
            continue
        if "ld+json" in (script.get("type") or ""):
            try:
                yield from _from_json_ld(json.loads(text), platform, base_url)
            except ValueError:
                continue
            continue
        for match in _SCRIPT_LIST_RE.finditer(text):
            raw = _balanced_array(text, match.end() - 1)
            if not raw:
                continue
            try:
                items = json.loads(raw)
            except ValueError:
                continue
            for item in items:
                if isinstance(item, dict):
                    record = _json_item_to_record(item, platform, base_url)
                    if record:
                        yield record


def extract_search_results(html: Optional[str], platform: str, base_url: str) -> list[ExtractionResult]:
    """Parse a search results page into partial listings, de-duplicated by canonical URL."""
    sel = SELECTORS.get(platform)
    if not html or sel is None:
        return []
    soup = BeautifulSoup(html, "html.parser")

    results: list[ExtractionResult] = []
    seen: set[str] = set()

    def _collect(records: Iterator[RawListing]) -> None:
        for record in records:
            if not record.url or record.url in seen:
                continue
            seen.add(record.url)
            results.append(ExtractionResult.from_record(record))

    tiers = (
        ("cards", lambda: _from_cards(soup, sel, platform, base_url)),
        ("anchors", lambda: _from_anchors(soup, sel, platform, base_url)),
        ("scripts", lambda: _from_scripts(soup, platform, base_url)),
    )
    for name, tier in tiers:
        _collect(tier())
        if results:
            logger.debug("%s search page: %s results from %s", platform, len(results), name)
            break
    return results


def _meta(soup: BeautifulSoup, *names: str) -> Optional[str]:
    for name in names:
        tag = soup.find("meta", attrs={"property": name}) or soup.find("meta", attrs={"name": name})
        if tag and tag.get("content"):
            return tag["content"].strip()
    return None


def _price_tiers(soup: BeautifulSoup) -> list[dict[str, str]]:
    tiers = []
    for node in soup.select(".price-item, [class*=price-item], .ladder-price li"):
        text = _text(node) or ""
        price = _match(_PRICE_RE, text)
        quantity = re.search(r"[\d,]+\s*(?:-\s*[\d,]+)?\s*(?:pieces?|pcs|units?|sets?)|≥\s*[\d,]+", text, re.IGNORECASE)
        if price:
            tiers.append({"quantity": clean_text(quantity.group(0)) if quantity else None, "price": price})
    return tiers


def _attributes(soup: BeautifulSoup) -> dict[str, str]:
    attrs: dict[str, str] = {}
    for row in soup.select("table tr"):
        cells = row.find_all(["td", "th"])
        if len(cells) == 2:
            key, value = _text(cells[0]), _text(cells[1])
            if key and value and len(key) < 60:
                attrs.setdefault(key.rstrip(":"), value)
    for dt in soup.find_all("dt"):
        dd = dt.find_next_sibling("dd")
        key, value = _text(dt), _text(dd)
        if key and value:
            attrs.setdefault(key.rstrip(":"), value)
    return attrs


def normalize_detail(html: Optional[str], url: str, platform: str) -> dict[str, Any]:
    """Structured detail payload: title, price text and tiers, MOQ, hero image, gallery, attributes, supplier."""
    sel = SELECTORS.get(platform)
    if not html or sel is None:
        return {}
    soup = BeautifulSoup(html, "html.parser")

    gallery: list[str] = []
    for img in soup.select(sel.gallery):
        src = _img_src(img, url)
        if src and src not in gallery:
            gallery.append(src)

    h1 = soup.find("h1")
    body_text = _text(soup.body) if soup.body else None
    price_text = _select_text(soup, sel.price)
    logo = soup.select_one(sel.supplier_logo)
    return {
        "title": first_str(_text(h1), _meta(soup, "og:title")),
        "priceText": _match(_PRICE_RE, price_text) or _match(_PRICE_RE, body_text),
        "priceTiers": _price_tiers(soup),
        "moq": _select_text(soup, sel.moq) or _match(_MOQ_TEXT_RE, body_text),
        "heroImage": normalize_card_image(
            _meta(soup, "og:image", "twitter:image")
            or (soup.find("link", rel="image_src") or {}).get("href"),
            url,
        ),
        "gallery": gallery,
        "attributes": _attributes(soup),
        "supplier": {
            "name": _select_text(soup, sel.store),
            "logo": _img_src(logo, url) if logo else None,
        },
    }


def extract_detail(html: Optional[str], url: str, platform: str) -> ExtractionResult:
    detail = normalize_detail(html, url, platform)
    record = RawListing(
        platform=platform,
        url=canonical_url(url, platform),
        title=clean_text(detail.get("title")),
        image=detail.get("heroImage") or next(iter(detail.get("gallery") or []), None),
        price=detail.get("priceText"),
        currency=detect_currency(detail.get("priceText")),
        moq=detail.get("moq"),
        store_name=(detail.get("supplier") or {}).get("name"),
        detail=detail or None,
    )
    return ExtractionResult.from_record(record)
