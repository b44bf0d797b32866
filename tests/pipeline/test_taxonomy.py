import pytest

from pipeline.config import DEFAULT_TAXONOMY_PATH
from pipeline.taxonomy import iter_leaves, load_taxonomy, search_terms, slugify, term_to_category_slug, walk
from pipeline.utils.errors import ConfigError


@pytest.fixture
def taxonomy():
    return load_taxonomy(DEFAULT_TAXONOMY_PATH)


def test_walk_yields_leaves_before_interior_nodes(taxonomy):
    entries = list(walk(taxonomy))
    flags = [entry.is_leaf for entry in entries]
    first_interior = flags.index(False)
    assert all(flags[:first_interior])
    assert not any(flags[first_interior:])

    earbuds = next(e for e in entries if e.node.key == "wireless-earbuds")
    assert earbuds.path == ("electronics", "electronics-audio")
    assert earbuds.group == "electronics"


def test_group_filter_matches_group_label(taxonomy):
    keys = [leaf.key for leaf in iter_leaves(taxonomy, "kitchen")]
    assert "steel-water-bottles" in keys
    assert "wireless-earbuds" not in keys


def test_search_terms_deduplicate_and_cap(taxonomy):
    leaf = taxonomy.leaf("wireless-earbuds")
    assert search_terms(leaf) == ["wireless earbuds", "tws earphones", "bluetooth earbuds"]
    assert search_terms(leaf, cap=2) == ["wireless earbuds", "tws earphones"]
    assert taxonomy.leaf("missing") is None


def test_slugs():
    assert slugify("Home & Kitchen") == "home-and-kitchen"
    assert term_to_category_slug("stainless steel water bottle") == "stainless-steel-water-bottle"


def test_load_errors(tmp_path):
    with pytest.raises(ConfigError) as exc:
        load_taxonomy(tmp_path / "nope.yaml")
    assert exc.value.code == "taxonomy_missing"

    empty = tmp_path / "empty.yaml"
    empty.write_text("groups: []\n")
    with pytest.raises(ConfigError) as exc:
        load_taxonomy(empty)
    assert exc.value.code == "taxonomy_empty"

    invalid = tmp_path / "invalid.yaml"
    invalid.write_text("groups:\n  - label: No key\n")
    with pytest.raises(ConfigError) as exc:
        load_taxonomy(invalid)
    assert exc.value.code == "taxonomy_invalid"
