"""Static category taxonomy and the walker that enumerates its leaves.

The taxonomy is a YAML tree of groups, sub-groups and leaves. Only leaves carry
search terms; interior nodes exist for grouping and filtering.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from pipeline.utils.errors import ConfigError

logger = logging.getLogger(__name__)


class TaxonomyLeaf(BaseModel):
    key: str
    label: str
    term: Optional[str] = None
    aliases: list[str] = Field(default_factory=list)


class TaxonomyNode(BaseModel):
    key: str
    label: str
    children: list["TaxonomyNode"] = Field(default_factory=list)
    leaves: list[TaxonomyLeaf] = Field(default_factory=list)


TaxonomyNode.model_rebuild()


class Taxonomy(BaseModel):
    groups: list[TaxonomyNode]

    def leaf(self, key: str) -> Optional[TaxonomyLeaf]:
        for entry in walk(self):
            if isinstance(entry.node, TaxonomyLeaf) and entry.node.key == key:
                return entry.node
        return None


@dataclass(frozen=True)
class WalkEntry:
    node: Union[TaxonomyNode, TaxonomyLeaf]
    path: tuple[str, ...]

    @property
    def is_leaf(self) -> bool:
        return isinstance(self.node, TaxonomyLeaf)

    @property
    def group(self) -> str:
        return self.path[0] if self.path else self.node.key


def load_taxonomy(path: Union[str, Path]) -> Taxonomy:
    path = Path(path)
    if not path.exists():
        raise ConfigError("taxonomy_missing", f"Taxonomy file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    try:
        taxonomy = Taxonomy.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError("taxonomy_invalid", f"Taxonomy file is invalid: {path}", {"details": exc.errors()}) from exc
    if not taxonomy.groups:
        raise ConfigError("taxonomy_empty", f"Taxonomy file has no groups: {path}")
    return taxonomy


def walk(taxonomy: Taxonomy) -> Iterator[WalkEntry]:
    """Yield every leaf (depth-first, file order), then the interior nodes."""
    interior: list[WalkEntry] = []

    def _visit(node: TaxonomyNode, path: tuple[str, ...]) -> Iterator[WalkEntry]:
        for leaf in node.leaves:
            yield WalkEntry(leaf, path + (node.key,))
        for child in node.children:
            yield from _visit(child, path + (node.key,))
        interior.append(WalkEntry(node, path))

    for group in taxonomy.groups:
        yield from _visit(group, ())
    yield from interior


def iter_leaves(taxonomy: Taxonomy, group_filter: Optional[str] = None) -> Iterator[TaxonomyLeaf]:
    needle = group_filter.lower().strip() if group_filter else None
    labels = {group.key: group.label.lower() for group in taxonomy.groups}
    for entry in walk(taxonomy):
        if not entry.is_leaf:
            continue
        if needle and needle not in labels.get(entry.group, ""):
            continue
        yield entry.node


def search_terms(leaf: TaxonomyLeaf, cap: Optional[int] = None) -> list[str]:
    seen: set[str] = set()
    terms: list[str] = []
    for candidate in [leaf.term or leaf.label, leaf.label, *leaf.aliases]:
        value = " ".join((candidate or "").split())
        if not value or value.lower() in seen:
            continue
        seen.add(value.lower())
        terms.append(value)
    return terms[:cap] if cap else terms


def slugify(text: str) -> str:
    value = (text or "").lower().replace("&", " and ")
    value = re.sub(r"[^a-z0-9]+", "-", value)
    return value.strip("-")


def term_to_category_slug(term: str) -> str:
    return slugify(term)
