"""
tests/test_pagination.py
"""
from __future__ import annotations

import pytest

from inkpot.blog import app, count_articles, create_article, get_db, max_page

from conftest import is_not_found


@pytest.fixture
def per_page(monkeypatch):
    monkeypatch.setitem(app.config, "ARTICLES_PER_PAGE", 2)
    return 2


def _ensure_articles(n: int) -> int:
    db = get_db()
    while count_articles(db=db) < n:
        create_article("filler", "x", "", db=db)
    return count_articles(db=db)


def test_root_is_first_page(client, per_page):
    _ensure_articles(3)
    assert client.get("/").data == client.get("/page/1").data


def test_last_page_ok_and_beyond_not_found(client, per_page):
    total = _ensure_articles(3)
    last = max_page(total, per_page)

    assert client.get(f"/page/{last}").status_code == 200
    assert not is_not_found(client.get(f"/page/{last}"))
    assert is_not_found(client.get(f"/page/{last + 1}"))


@pytest.mark.parametrize("num", ["0", "-1", "abc"])
def test_non_positive_or_garbage_page_not_found(client, per_page, num):
    assert is_not_found(client.get(f"/page/{num}"))


def test_pages_hold_at_most_per_page_articles(client, per_page):
    _ensure_articles(3)
    html = client.get("/page/1").get_data(as_text=True)
    assert html.count("<article>") == per_page
    assert "Older" in html


def test_newest_article_on_first_page(client, per_page):
    a = create_article("Fresh off the press", "x", "", db=get_db())
    assert "Fresh off the press" in client.get("/").get_data(as_text=True)
    assert f"/article/{a.id}" in client.get("/page/1").get_data(as_text=True)


def test_page_one_renders_without_redirect(client, per_page):
    _ensure_articles(1)
    rv = client.get("/page/1")
    assert rv.status_code == 200
    assert "<article>" in rv.get_data(as_text=True)
