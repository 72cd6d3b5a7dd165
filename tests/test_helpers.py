"""
tests/test_helpers.py
"""
from __future__ import annotations

import pytest
from markupsafe import Markup

from inkpot.blog import (
    Article,
    concat_url,
    group_by_year,
    max_page,
    md_to_html,
    pick_image,
    safe_next,
    slugify,
    sort_out_tags,
    split_tags,
    to_lowercase,
    truncate_str,
)


# ───────────────────────── tags ───────────────────────────────────────
@pytest.mark.parametrize(
    "raw, expected",
    [
        (",,hello,,world,foo,bar,", "bar, foo, hello, world"),
        ("  b , a ,b", "a, b"),
        ("", ""),
        (" , , ", ""),
        (None, ""),
        ("Zebra, apple", "Zebra, apple"),     # case-sensitive ordering
    ],
)
def test_sort_out_tags(raw, expected):
    assert sort_out_tags(raw) == expected


def test_sort_out_tags_is_idempotent():
    once = sort_out_tags("rust, python, rust , go")
    assert sort_out_tags(once) == once


def test_split_tags_skips_blanks():
    assert split_tags("a, , b") == ["a", "b"]
    assert split_tags("") == []


# ───────────────────────── filters ────────────────────────────────────
def test_truncate_counts_characters_not_bytes():
    assert truncate_str("héllo wörld", 5) == "héllo"
    assert truncate_str("short", 10) == "short"
    assert truncate_str(None, 3) == ""


def test_to_lowercase():
    assert to_lowercase("About Me") == "about me"


@pytest.mark.parametrize(
    "base, uri, expected",
    [
        ("https://x.org", "feed", "https://x.org/feed"),
        ("https://x.org/", "feed", "https://x.org/feed"),
        ("", "feed", "/feed"),
    ],
)
def test_concat_url(base, uri, expected):
    assert concat_url(base, uri) == expected


def test_md_to_html_returns_markup(client):
    html = md_to_html("**bold** and ~~gone~~")
    assert isinstance(html, Markup)
    assert "<strong>bold</strong>" in html
    assert "<del>gone</del>" in html


def test_md_code_block_is_highlighted_inline(client):
    html = md_to_html("```python\nprint('hi')\n```")
    # noclasses=True → colours end up in style attributes
    assert "style=" in html
    assert "print" in html


# ───────────────────────── pagination / grouping ──────────────────────
@pytest.mark.parametrize(
    "count, per_page, expected",
    [(0, 5, 0), (1, 5, 1), (5, 5, 1), (6, 5, 2), (11, 5, 3)],
)
def test_max_page(count, per_page, expected):
    assert max_page(count, per_page) == expected


def test_group_by_year_newest_year_first():
    arts = [
        Article(id=3, title="c", created_at="2024-03-01T00:00:00+00:00"),
        Article(id=2, title="b", created_at="2023-12-31T00:00:00+00:00"),
        Article(id=1, title="a", created_at="2023-01-01T00:00:00+00:00"),
    ]
    years, by_year = group_by_year(arts)
    assert years == [2024, 2023]
    assert [a.id for a in by_year[2023]] == [2, 1]


def test_group_by_year_empty():
    assert group_by_year([]) == ([], {})


# ───────────────────────── misc ───────────────────────────────────────
def test_pick_image():
    md = "text ![one](/a.png) more ![two](/b.png)"
    assert pick_image(md) in {"/a.png", "/b.png"}
    assert pick_image("no images here") is None


def test_slugify_is_lowercase_title():
    assert slugify("About Me") == "about me"


@pytest.mark.parametrize(
    "target, expected",
    [
        ("/admin", "/admin"),
        ("/admin/edit/article/3", "/admin/edit/article/3"),
        ("https://evil.example/", None),
        ("//evil.example/", None),
        ("relative", None),
        ("", None),
        (None, None),
    ],
)
def test_safe_next(target, expected):
    assert safe_next(target) == expected
