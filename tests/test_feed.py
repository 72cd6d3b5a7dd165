"""tests/test_feed.py"""

import uuid
import xml.etree.ElementTree as ET

from inkpot.blog import app, create_article, get_db, latest_article_update

ATOM = "{http://www.w3.org/2005/Atom}"


def test_feed_is_xml(client):
    rv = client.get("/feed")
    assert rv.status_code == 200
    assert rv.headers["Content-Type"].startswith("text/xml")


def test_feed_contains_every_article(client, monkeypatch):
    monkeypatch.setitem(app.config, "BLOG_URL", "https://blog.example.org/")
    title = f"Feed me {uuid.uuid4().hex[:8]}"
    a = create_article(title, "Some **markup** & <b>tags</b>", "rss, atom", db=get_db())

    root = ET.fromstring(client.get("/feed").data)
    assert root.find(f"{ATOM}updated").text == latest_article_update(db=get_db())

    entries = {e.find(f"{ATOM}title").text: e for e in root.iter(f"{ATOM}entry")}
    entry = entries[title]
    link = entry.find(f"{ATOM}link").get("href")
    assert link == f"https://blog.example.org/article/{a.id}"
    assert {c.get("term") for c in entry.iter(f"{ATOM}category")} == {"rss", "atom"}
    # HTML travels escaped, the parser hands it back as text
    assert "<strong>markup</strong>" in entry.find(f"{ATOM}content").text
