"""Title quality heuristics for scraped marketplace listings.

Everything here is pure: no I/O and no module state that changes at runtime, so
it can run over thousands of items per leaf in tight filtering loops.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from typing import AbstractSet, Optional

MAX_TITLE_LENGTH = 180

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_TAG_RE = re.compile(r"<[^>]+>")
_MARKETING_PREFIX_RE = re.compile(
    r"^(?:hot\s+sale|new\s+arrival|best\s+sell(?:ing|er)|wholesale|factory\s+(?:price|direct|supply)|"
    r"high\s+quality|top\s+quality|premium\s+quality|new)\b[\s:|,\-]*",
    re.IGNORECASE,
)
_HEAD_SPLIT_RE = re.compile(r"\s+(?:with|including|incl|plus)\s+|\s*\+\s*", re.IGNORECASE)

STOPWORDS = frozenset(
    """
    a an the and or for with without of in on to from by at as is are be this that its it
    new hot sale best top high quality good cheap low price prices wholesale factory direct
    supplier manufacturer exporter trader dealer retailer oem odm custom customized customised
    design brand branded free shipping china chinese india indian made buy online premium latest
    fashion fashionable style stylish item product pc pcs piece set unit lot pack per
    kg gm gram ml ltr liter litre inch cm mm mtr meter size color colour type model
    multi various assorted available stock ready
    """.split()
)

UNIT_RE = re.compile(r"^\d+(?:x\d+)*(?:mm|cm|m|kg|g|gm|ml|l|ltr|w|v|mah|gb|tb|inch|in|pcs|pc)?$")

ACCESSORY_TOKENS = frozenset(
    """
    case cover strap holder stand mount cable adapter charger protector sticker spare
    replacement part pouch bracket clip skin sleeve refill lid knob gasket nozzle
    """.split()
)

GROUP_KEYWORDS: dict[str, frozenset[str]] = {
    "electronics": frozenset(
        "earbud earphone headphone headset speaker bluetooth charger power usb led solar battery "
        "phone mobile smartwatch camera wireless tws adapter".split()
    ),
    "kitchen": frozenset(
        "cookware cooker pan pot kettle bottle lunch tiffin utensil knife kitchen spoon plate bowl "
        "mug cup flask container".split()
    ),
    "home-decor": frozenset("lamp curtain cushion vase decor decorative wall clock frame rug carpet".split()),
    "apparel": frozenset(
        "shirt jean denim dress kurta saree jacket hoodie sock shoe legging trouser pant".split()
    ),
    "textiles": frozenset("cotton towel bedsheet sheet blanket quilt fabric linen".split()),
    "beauty": frozenset(
        "soap shampoo cream lotion serum lipstick makeup perfume hair dryer straightener nail "
        "cosmetic skincare herbal".split()
    ),
    "toys": frozenset("toy doll puzzle game plush kid baby".split()),
    "sports": frozenset("yoga dumbbell fitness gym ball cricket football racket bicycle cycle".split()),
    "tools": frozenset("drill tool wrench spanner screwdriver plier hammer saw grinder cordless".split()),
    "automotive": frozenset("car bike motorcycle tyre tire helmet automotive vehicle".split()),
    "packaging": frozenset("box carton packaging label tape wrap".split()),
    "office": frozenset("pen notebook stationery paper folder stapler printer".split()),
}


def _fold(token: str) -> str:
    if len(token) <= 3 or token.isdigit():
        return token
    if token.endswith("ies") and len(token) > 4:
        return token[:-3] + "y"
    if token.endswith(("sses", "xes", "ches", "shes")):
        return token[:-2]
    if token.endswith("s") and not token.endswith(("ss", "us", "is")):
        return token[:-1]
    return token


def tokenize(text: str) -> list[str]:
    return [_fold(t) for t in _TOKEN_RE.findall((text or "").lower())]


def is_informative(token: str) -> bool:
    if len(token) < 3 or token in STOPWORDS:
        return False
    if token.isdigit() or UNIT_RE.match(token):
        return False
    return True


def sanitize_title(raw: Optional[str]) -> str:
    text = html.unescape(raw or "")
    text = _TAG_RE.sub(" ", text)
    text = " ".join(text.split())
    previous = None
    while previous != text:
        previous = text
        text = _MARKETING_PREFIX_RE.sub("", text).strip()
    if len(text) > MAX_TITLE_LENGTH:
        cut = text[:MAX_TITLE_LENGTH]
        text = cut.rsplit(" ", 1)[0] if " " in cut else cut
    return text.strip(" -|,:")


@dataclass(frozen=True)
class Classification:
    tokens: tuple[str, ...]
    informative: tuple[str, ...]
    groups: tuple[str, ...]
    is_accessory: bool
    canonical_key: str
    term_overlap: int = 0
    accessory_tokens: tuple[str, ...] = field(default_factory=tuple)

    @property
    def informative_count(self) -> int:
        return len(self.informative)


def classify(title: str, term: str = "") -> Classification:
    tokens = tokenize(title)
    informative = tuple(dict.fromkeys(t for t in tokens if is_informative(t)))
    token_set = set(tokens)

    groups = tuple(sorted(name for name, words in GROUP_KEYWORDS.items() if token_set & words))

    # Only the head of the title decides accessory status: "earbuds with charging case" is not a case.
    head = _HEAD_SPLIT_RE.split(title or "", maxsplit=1)[0]
    term_tokens = set(tokenize(term))
    accessory = tuple(sorted({t for t in tokenize(head) if t in ACCESSORY_TOKENS and t not in term_tokens}))

    term_informative = {t for t in term_tokens if is_informative(t)}
    return Classification(
        tokens=tuple(tokens),
        informative=informative,
        groups=groups,
        is_accessory=bool(accessory),
        canonical_key=" ".join(sorted(informative)),
        term_overlap=len(term_informative & set(informative)),
        accessory_tokens=accessory,
    )


def passes_quality(
    cls: Classification,
    min_informative: int = 2,
    allow_accessories: bool = False,
    seen: Optional[AbstractSet[str]] = None,
) -> bool:
    if cls.informative_count < min_informative:
        return False
    if not cls.canonical_key:
        return False
    if cls.is_accessory and not allow_accessories:
        return False
    if seen is not None and cls.canonical_key in seen:
        return False
    return True
