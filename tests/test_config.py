"""
tests/test_config.py
"""
from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from inkpot.blog import ConfigError, app, load_config


@pytest.fixture(autouse=True)
def _restore_config(monkeypatch):
    """load_config mutates the global app.config: put it back afterwards."""
    saved = dict(app.config)
    monkeypatch.delenv("INKPOT_CONFIG", raising=False)
    yield
    app.config.clear()
    app.config.update(saved)


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.toml"
    path.write_text(text)
    return path


def test_missing_file_keeps_defaults(tmp_path):
    load_config(tmp_path / "nope.toml")
    assert app.config["ADMIN_USERNAME"] == "admin"
    assert app.config["ARTICLES_PER_PAGE"] == 10


def test_toml_sections_mapped(tmp_path):
    path = _write(
        tmp_path,
        """
[deploy]
host = "0.0.0.0"
port = 8080

[meta]
blog_name = "Notes"
blog_url = "https://notes.example"

[admin]
username = "root"
inactive_expiry_days = 7

[style]
article_per_page = 3
code_syntax_highlight_theme = "monokai"

[giscus]
enable = true
repo = "me/notes"

[analytics]
plausible = "notes.example"
""",
    )
    load_config(path)

    cfg = app.config
    assert (cfg["SERVER_HOST"], cfg["SERVER_PORT"]) == ("0.0.0.0", 8080)
    assert cfg["BLOG_NAME"] == "Notes"
    assert cfg["ADMIN_USERNAME"] == "root"
    assert cfg["ARTICLES_PER_PAGE"] == 3
    assert cfg["CODE_HIGHLIGHT_THEME"] == "monokai"
    assert cfg["GISCUS"]["repo"] == "me/notes"
    assert cfg["ANALYTICS"] == {"plausible": "notes.example"}
    assert cfg["PERMANENT_SESSION_LIFETIME"] == timedelta(days=7)


def test_env_overrides_file(tmp_path, monkeypatch):
    path = _write(tmp_path, '[style]\narticle_per_page = 3\n')
    monkeypatch.setenv("INKPOT_ARTICLES_PER_PAGE", "7")
    load_config(path)
    assert app.config["ARTICLES_PER_PAGE"] == 7


def test_config_path_from_env(tmp_path, monkeypatch):
    path = _write(tmp_path, '[meta]\nblog_name = "From env"\n')
    monkeypatch.setenv("INKPOT_CONFIG", str(path))
    load_config()
    assert app.config["BLOG_NAME"] == "From env"


@pytest.mark.parametrize(
    "text",
    [
        "this is not toml",
        "[style]\narticle_per_page = 0\n",
        '[deploy]\nport = "http"\n',
        '[admin]\nusername = "  "\n',
        "[admin]\ninactive_expiry_days = 0\n",
        '[style]\ncode_syntax_highlight_theme = "no-such-theme"\n',
    ],
)
def test_invalid_config_rejected(tmp_path, text):
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path, text))


def test_blog_name_rendered(client, monkeypatch):
    monkeypatch.setitem(app.config, "BLOG_NAME", "Quill & Ink")
    html = client.get("/").get_data(as_text=True)
    assert "Quill &amp; Ink" in html


def test_analytics_snippet_only_when_configured(client, monkeypatch):
    assert "plausible.io" not in client.get("/").get_data(as_text=True)
    monkeypatch.setitem(app.config, "ANALYTICS", {"plausible": "blog.example"})
    assert "plausible.io" in client.get("/").get_data(as_text=True)
