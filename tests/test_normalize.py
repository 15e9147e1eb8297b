"""
tests/test_normalize.py
"""
from __future__ import annotations

import copy

import pytest

from cloudnav.nav import DEFAULT_SETTINGS, normalize_document, normalize_settings


MESSY = {
    "settings": {"siteTitle": "   ", "siteIconFit": "stretch", "homeTagline": " Hi "},
    "groups": [
        {"id": "g1", "name": "  Work ", "order": 3},
        {"id": "g1", "name": "duplicate", "order": 0},
        {"name": "no id"},
        "not a dict",
        {"id": "g2", "name": "", "order": "high", "enabled": "yes"},
        {"id": "g3", "name": "Off", "order": 3, "enabled": False},
    ],
    "sections": [
        {"id": "s1", "groupId": "g1", "name": "Docs", "order": 1},
        {"id": "s2", "groupId": "ghost", "name": "Orphan", "order": 0},
    ],
    "links": [
        {"id": "l1", "groupId": "g1", "sectionId": "s1", "title": "A", "url": "https://a.example"},
        {"id": "l2", "groupId": "ghost", "title": "B", "url": "https://b.example"},
        {"id": "l3", "groupId": "g3", "sectionId": "s1", "title": "", "url": "https://c.example"},
        {"id": "l4", "groupId": "g1", "title": "No url"},
        {"id": "l5", "groupId": "g1", "title": "D", "url": "https://d.example", "icon": " ", "description": ""},
    ],
}


# ───────────────────────── tests ──────────────────────────────────────
@pytest.mark.parametrize("raw", [None, [], "junk", 42, {}, {"groups": "nope"}])
def test_garbage_becomes_empty_document(raw):
    doc = normalize_document(raw)
    assert doc == {
        "settings": DEFAULT_SETTINGS,
        "groups": [],
        "sections": [],
        "links": [],
    }


def test_normalize_is_idempotent():
    once = normalize_document(copy.deepcopy(MESSY))
    twice = normalize_document(copy.deepcopy(once))
    assert twice == once


def test_groups_are_repaired():
    doc = normalize_document(copy.deepcopy(MESSY))
    by_id = {grp["id"]: grp for grp in doc["groups"]}

    assert set(by_id) == {"g1", "g2", "g3"}
    assert by_id["g1"]["name"] == "Work"          # stripped, first duplicate wins
    assert by_id["g2"]["name"] == "Untitled"
    assert by_id["g2"]["enabled"] is True         # non-bool → default
    assert by_id["g3"]["enabled"] is False
    assert by_id["g2"]["order"] == 3              # bad order → list position


def test_orphans_are_dropped():
    doc = normalize_document(copy.deepcopy(MESSY))
    assert [s["id"] for s in doc["sections"]] == ["s1"]
    assert {lnk["id"] for lnk in doc["links"]} == {"l1", "l3", "l5"}


def test_section_reference_must_match_group():
    doc = normalize_document(copy.deepcopy(MESSY))
    links = {lnk["id"]: lnk for lnk in doc["links"]}
    assert links["l1"]["sectionId"] == "s1"
    # s1 belongs to g1, l3 lives in g3 → unassigned
    assert "sectionId" not in links["l3"]
    # blank title falls back to the url
    assert links["l3"]["title"] == "https://c.example"
    # blank optional fields are dropped
    assert "icon" not in links["l5"]
    assert "description" not in links["l5"]


def test_sort_is_stable_on_ties():
    doc = normalize_document(
        {
            "groups": [
                {"id": "b", "name": "B", "order": 1},
                {"id": "a", "name": "A", "order": 0},
                {"id": "c", "name": "C", "order": 1},
                {"id": "d", "name": "D", "order": 0},
            ]
        }
    )
    assert [grp["id"] for grp in doc["groups"]] == ["a", "d", "b", "c"]


def test_orders_need_not_be_contiguous():
    doc = normalize_document(
        {"groups": [{"id": "x", "name": "X", "order": 10}, {"id": "y", "name": "Y", "order": -2}]}
    )
    assert [(grp["id"], grp["order"]) for grp in doc["groups"]] == [("y", -2), ("x", 10)]


def test_settings_defaults_and_validation():
    settings = normalize_settings(MESSY["settings"])
    assert settings["siteTitle"] == DEFAULT_SETTINGS["siteTitle"]
    assert settings["homeTagline"] == "Hi"
    assert settings["siteIconFit"] == "contain"
    assert settings["siteIconDataUrl"] == ""

    assert normalize_settings({"siteIconFit": "cover"})["siteIconFit"] == "cover"
    assert normalize_settings("nonsense") == DEFAULT_SETTINGS


def test_group_deletion_orphans_vanish():
    doc = normalize_document(copy.deepcopy(MESSY))
    doc["groups"] = [grp for grp in doc["groups"] if grp["id"] != "g1"]
    after = normalize_document(doc)
    assert all(lnk["groupId"] != "g1" for lnk in after["links"])
    assert all(s["groupId"] != "g1" for s in after["sections"])
