# =============================================
# File: tests/test_catalog.py
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

import pytest

from cuppa.services.catalog import InMemorySocialGraph, load_catalog


def test_bundled_catalog_loads():
    cat = load_catalog()
    assert len(cat) == 10
    item = cat.get_item("eth-yirgacheffe")
    assert item.origin_country == "Ethiopia"
    assert item.processing_method == "washed"
    assert "jasmine" in item.flavor_notes


def test_find_items_filters_and_excludes():
    cat = load_catalog()
    light = {it.id for it in cat.find_items({"roastLevel": "light"})}
    assert light == {"eth-yirgacheffe", "eth-guji-natural"}

    dark_or_decaf = cat.find_items({"roastLevel": ["dark", "decaf"]}, exclude_ids=["sum-mandheling"])
    assert {it.id for it in dark_or_decaf} == {"ita-espresso-blend", "mex-chiapas-decaf"}

    chocolatey = {it.id for it in cat.find_items({"flavorNotes": ["chocolate"]})}
    assert chocolatey == {"eth-guji-natural", "bra-cerrado"}

    with pytest.raises(KeyError):
        cat.find_items({"altitude": 1800})


def test_missing_catalog_file_is_empty(tmp_path):
    assert len(load_catalog(str(tmp_path / "nope.json"))) == 0


def test_social_graph_is_undirected():
    g = InMemorySocialGraph()
    g.connect("a", "b")
    g.connect("a", "a")
    assert g.connections("a") == ["b"]
    assert g.connections("b") == ["a"]
    assert g.connections("stranger") == []
