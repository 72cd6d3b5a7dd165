#!/usr/bin/env python3
"""
A small self-hosted blog: articles with tags, custom pages and an Atom feed,
managed by a single admin account.
"""

import hmac
import os
import random
import re
import secrets
import sqlite3
import sys
import tomllib
from collections import defaultdict, deque
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import wraps
from hashlib import sha256
from importlib.metadata import PackageNotFoundError, version
from math import ceil
from pathlib import Path
from time import time
from typing import DefaultDict
from urllib.parse import quote, urlencode, urlparse

import click
import markdown
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from jinja2 import DictLoader
from markupsafe import Markup
from pygments.styles import get_style_by_name
from pygments.util import ClassNotFound
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "blog.sqlite3"
STATIC_DIR = ROOT / "static"
SECRET_FILE = ROOT / ".secret_key"

ADMIN_PREFIX = "/admin"
CHANGE_PW_URL = "/admin/change_password"
FORM_MIMETYPES = {"application/x-www-form-urlencoded", "multipart/form-data"}
SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
QUIET_PATHS = {"/ping", "/favicon.ico"}
# slugs already taken by fixed routes; a page with one of these titles
# could never be reached
RESERVED_TITLES = {
    "admin",
    "article",
    "articles",
    "feed",
    "login",
    "logout",
    "page",
    "ping",
    "static",
    "tag",
    "tags",
}
IMAGE_RE = re.compile(r"!\[.*?\]\((.*?)\)")

try:
    __version__ = version("inkpot")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


def _secret_key() -> str:
    """Reuse the key in .secret_key so sessions outlive a restart."""
    if SECRET_FILE.exists():
        return SECRET_FILE.read_text().strip()
    key = secrets.token_hex(32)
    try:
        SECRET_FILE.write_text(key)
    except OSError:
        pass  # read-only install: sessions end with the process
    return key


################################################################################
# App + config
################################################################################
app = Flask(__name__, static_folder=str(STATIC_DIR))
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=_secret_key(),
    DATABASE=str(DB_FILE),
    SERVER_HOST="127.0.0.1",
    SERVER_PORT=5299,
    ADMIN_USERNAME="admin",
    INACTIVE_EXPIRY_DAYS=30,
    ARTICLES_PER_PAGE=10,
    CODE_HIGHLIGHT_THEME="nord",
    BLOG_NAME="inkpot",
    BLOG_URL="http://127.0.0.1:5299",
    BLOG_AUTHOR="",
    ABOUT_URL=None,
    GISCUS={"enable": False},
    ANALYTICS={},
    LOG_LEVEL="INFO",
    HASH_WORKERS=2,
)
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",  # blocks most CSRF on simple links
    SESSION_COOKIE_HTTPONLY=True,  # mitigate XSS → cookie theft
    SESSION_COOKIE_SECURE=False,  # turn on when served over HTTPS
    SESSION_REFRESH_EACH_REQUEST=True,  # sliding expiry
    PERMANENT_SESSION_LIFETIME=timedelta(days=30),
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

# Templates are registered by name further down, next to the views using them.
TEMPLATES: dict[str, str] = {}
app.jinja_loader = DictLoader(TEMPLATES)

# (toml section, key) → app.config name
CONFIG_KEYS = {
    ("deploy", "host"): "SERVER_HOST",
    ("deploy", "port"): "SERVER_PORT",
    ("meta", "blog_name"): "BLOG_NAME",
    ("meta", "blog_url"): "BLOG_URL",
    ("meta", "blog_author"): "BLOG_AUTHOR",
    ("meta", "about_url"): "ABOUT_URL",
    ("admin", "username"): "ADMIN_USERNAME",
    ("admin", "inactive_expiry_days"): "INACTIVE_EXPIRY_DAYS",
    ("style", "article_per_page"): "ARTICLES_PER_PAGE",
    ("style", "code_syntax_highlight_theme"): "CODE_HIGHLIGHT_THEME",
    ("database", "path"): "DATABASE",
}


class ConfigError(Exception):
    """The configuration cannot be used; the process must not start."""


def load_config(path: str | Path | None = None) -> None:
    """
    Layer the configuration: built-in defaults → TOML file (optional) →
    INKPOT_* environment variables.  Raises ConfigError when the result is
    unusable.
    """
    path = Path(path or os.environ.get("INKPOT_CONFIG", "config.toml"))
    if path.exists():
        try:
            with path.open("rb") as fh:
                data = tomllib.load(fh)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"cannot parse {path}: {exc}") from exc

        for (section, key), name in CONFIG_KEYS.items():
            if key in data.get(section, {}):
                app.config[name] = data[section][key]
        for section in ("giscus", "analytics"):
            if section in data:
                app.config[section.upper()] = dict(data[section])

    app.config.from_prefixed_env("INKPOT")
    validate_config()
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(
        days=int(app.config["INACTIVE_EXPIRY_DAYS"])
    )


def validate_config() -> None:
    cfg = app.config
    for name in ("SERVER_PORT", "ARTICLES_PER_PAGE", "INACTIVE_EXPIRY_DAYS"):
        try:
            cfg[name] = int(cfg[name])
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{name} must be a number, got {cfg[name]!r}") from exc

    if not str(cfg["SERVER_HOST"]).strip() or not 0 < cfg["SERVER_PORT"] < 65536:
        raise ConfigError("invalid deployment config, please specify the host and port")
    if cfg["ARTICLES_PER_PAGE"] < 1:
        raise ConfigError("article_per_page must be a positive number")
    if not str(cfg["ADMIN_USERNAME"]).strip():
        raise ConfigError("the admin username must not be empty")
    if cfg["INACTIVE_EXPIRY_DAYS"] < 1:
        raise ConfigError("inactive_expiry_days must be at least 1")
    try:
        get_style_by_name(cfg["CODE_HIGHLIGHT_THEME"])
    except ClassNotFound as exc:
        raise ConfigError(
            f"unknown code highlight theme: {cfg['CODE_HIGHLIGHT_THEME']}"
        ) from exc


################################################################################
# Template filters
################################################################################
MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.superfences",
    "pymdownx.highlight",
    "pymdownx.betterem",
    "pymdownx.saneheaders",
]


def render_markdown_html(text: str | None) -> str:
    return markdown.markdown(
        text or "",
        extensions=MD_EXTENSIONS,
        extension_configs={
            "pymdownx.highlight": {
                "guess_lang": False,
                "noclasses": True,
                "pygments_style": app.config["CODE_HIGHLIGHT_THEME"],
            },
        },
    )


@app.template_filter("md_to_html")
def md_to_html(text: str | None) -> Markup:
    return Markup(render_markdown_html(text))


@app.template_filter("truncate_str")
def truncate_str(value: str | None, max_length: int) -> str:
    """Cut *value* to at most *max_length* characters (not bytes)."""
    value = value or ""
    return value[:max_length] if len(value) > max_length else value


@app.template_filter("to_lowercase")
def to_lowercase(value: str | None) -> str:
    return (value or "").lower()


@app.template_filter("concat_url")
def concat_url(value: str | None, uri: str) -> str:
    """Join a base URL and a path with exactly one slash between them."""
    value = value or ""
    if value.endswith("/"):
        return f"{value}{uri}"
    return f"{value}/{uri}"


@app.template_filter("ts")
def ts_filter(iso: str | None) -> str:
    if not iso:
        return ""
    try:
        dt = datetime.fromisoformat(iso)
    except ValueError:
        return iso
    return dt.strftime("%Y-%m-%d")


################################################################################
# Errors
################################################################################
class StoreError(Exception):
    """A write against the database failed and was rolled back."""


class StaleCredentials(StoreError):
    """The stored password hash changed between verification and update."""

    def __init__(self, username: str):
        super().__init__(f"password of {username} changed concurrently")
        self.username = username


class TitleConflict(Exception):
    """Another page already owns this title (and therefore this slug)."""

    def __init__(self, title: str):
        super().__init__(f"page with same title {title} already exists")
        self.title = title
        self.slug = slugify(title)


class EntityError(ValueError):
    """Submitted form data cannot be turned into an article or a page."""


###############################################################################
# Database helpers
###############################################################################
def slugify(title: str | None) -> str:
    """A page's URL segment is its lowercased title."""
    return (title or "").lower()


def get_db():
    if "db" not in g:
        # autocommit mode: every multi-statement write opens its own
        # transaction through transaction()
        g.db = sqlite3.connect(app.config["DATABASE"], isolation_level=None)
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
        g.db.create_function("title_slug", 1, slugify, deterministic=True)
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


@contextmanager
def transaction(db):
    """
    Run the block inside ``BEGIN IMMEDIATE … COMMIT``.

    The write lock is taken up front, so check-then-write sequences inside
    the block cannot interleave with another writer.  Any exception rolls
    everything back; database errors surface as StoreError.
    """
    try:
        db.execute("BEGIN IMMEDIATE")
    except sqlite3.Error as exc:
        raise StoreError(str(exc)) from exc
    try:
        yield db
        db.execute("COMMIT")
    except sqlite3.Error as exc:
        if db.in_transaction:
            db.execute("ROLLBACK")
        raise StoreError(str(exc)) from exc
    except BaseException:
        if db.in_transaction:
            db.execute("ROLLBACK")
        raise


def init_db():
    db = get_db()
    try:
        db.executescript(
            """
            BEGIN;
            ------------------------------------------------------------
            -- 1.  Articles + their tag rows
            ------------------------------------------------------------
            CREATE TABLE IF NOT EXISTS articles (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                title       TEXT NOT NULL,
                content     TEXT NOT NULL,
                tags        TEXT NOT NULL DEFAULT '',
                created_at  TEXT NOT NULL,
                updated_at  TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS tags (
                id          INTEGER PRIMARY KEY,
                name        TEXT NOT NULL,
                article_id  INTEGER NOT NULL,
                FOREIGN KEY (article_id) REFERENCES articles(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_tags_name    ON tags(name);
            CREATE INDEX IF NOT EXISTS idx_tags_article ON tags(article_id);

            ------------------------------------------------------------
            -- 2.  Custom pages (title doubles as the URL slug)
            ------------------------------------------------------------
            CREATE TABLE IF NOT EXISTS pages (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                title       TEXT NOT NULL,
                content     TEXT NOT NULL,
                created_at  TEXT NOT NULL,
                updated_at  TEXT NOT NULL
            );
            CREATE UNIQUE INDEX IF NOT EXISTS idx_pages_title ON pages(LOWER(title));

            ------------------------------------------------------------
            -- 3.  Accounts
            ------------------------------------------------------------
            CREATE TABLE IF NOT EXISTS users (
                id            INTEGER PRIMARY KEY,
                username      TEXT UNIQUE NOT NULL,
                password_hash TEXT NOT NULL,
                created_at    TEXT NOT NULL,
                updated_at    TEXT NOT NULL
            );
            COMMIT;
            """
        )
    except sqlite3.Error as exc:
        if db.in_transaction:
            db.execute("ROLLBACK")
        raise StoreError(f"cannot create the schema: {exc}") from exc


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return utc_now().isoformat(timespec="seconds")


###############################################################################
# Content store – articles + tags
###############################################################################
def sort_out_tags(tags: str | None) -> str:
    """
    Normalise a comma separated tag list: trim, drop blanks and duplicates,
    sort (case-sensitive) and join with ", ".

    >>> sort_out_tags(",,hello,,world,foo,bar,")
    'bar, foo, hello, world'
    """
    names = {t.strip() for t in (tags or "").split(",")}
    names.discard("")
    return ", ".join(sorted(names))


def split_tags(tags: str | None) -> list[str]:
    return [t.strip() for t in (tags or "").split(",") if t.strip()]


@dataclass
class Editable:
    """
    Something the admin editor can save.  Article and Page fill in the
    storage calls; the edit/delete views only talk to this interface.
    """

    kind = ""

    def insert(self, *, db):
        raise NotImplementedError

    def update(self, *, db):
        raise NotImplementedError

    def delete(self, *, db) -> None:
        raise NotImplementedError

    def redirect_url(self) -> str:
        raise NotImplementedError


@dataclass
class Article(Editable):
    id: int | None = None
    title: str = ""
    content: str = ""
    tags: str = ""
    created_at: str | None = None
    updated_at: str | None = None

    kind = "article"

    @classmethod
    def from_row(cls, row) -> "Article":
        return cls(**{k: row[k] for k in row.keys()})

    @classmethod
    def from_form(cls, form: "EditorForm") -> "Article":
        title = form.title.strip()
        if not title:
            raise EntityError("an article needs a title")
        return cls(
            id=form.id,
            title=title,
            content=form.content,
            tags=sort_out_tags(form.tags),
        )

    @property
    def tag_list(self) -> list[str]:
        return split_tags(self.tags)

    @property
    def year(self) -> int:
        return datetime.fromisoformat(self.created_at).year

    def insert(self, *, db) -> "Article":
        return create_article(self.title, self.content, self.tags, db=db)

    def update(self, *, db) -> "Article":
        return update_article(self.id, self.title, self.content, self.tags, db=db)

    def delete(self, *, db) -> None:
        delete_article(self.id, db=db)

    def redirect_url(self) -> str:
        return url_for("article", article_id=self.id)

    def __str__(self) -> str:
        return f"article title: {self.title}, tags: {self.tags}"


def list_articles(page: int, per_page: int, *, db) -> list[Article]:
    """One page (1-based) of articles, newest first."""
    rows = db.execute(
        "SELECT * FROM articles ORDER BY id DESC LIMIT ? OFFSET ?",
        (per_page, (page - 1) * per_page),
    )
    return [Article.from_row(r) for r in rows]


def all_articles(*, db) -> list[Article]:
    rows = db.execute("SELECT * FROM articles ORDER BY id DESC")
    return [Article.from_row(r) for r in rows]


def count_articles(*, db) -> int:
    return db.execute("SELECT COUNT(*) FROM articles").fetchone()[0]


def get_article(article_id: int, *, db) -> Article | None:
    row = db.execute("SELECT * FROM articles WHERE id=?", (article_id,)).fetchone()
    return Article.from_row(row) if row else None


def get_articles_by_tag(tag: str, *, db) -> list[Article]:
    rows = db.execute(
        """
        SELECT a.*
          FROM articles AS a
          JOIN tags     AS t ON t.article_id = a.id
         WHERE t.name = ?
      ORDER BY a.id DESC
        """,
        (tag,),
    )
    return [Article.from_row(r) for r in rows]


def latest_article_update(*, db) -> str | None:
    return db.execute("SELECT MAX(updated_at) FROM articles").fetchone()[0]


def tag_counts(*, db):
    """[{'name': 'python', 'num': 12}, …] most used first."""
    return db.execute(
        "SELECT name, COUNT(*) AS num FROM tags GROUP BY name ORDER BY num DESC, name"
    ).fetchall()


def _clear_tags(article_id: int, *, db) -> None:
    db.execute("DELETE FROM tags WHERE article_id=?", (article_id,))


def _insert_tags(article_id: int, tags: str, *, db) -> None:
    db.executemany(
        "INSERT INTO tags (name, article_id) VALUES (?,?)",
        [(name, article_id) for name in split_tags(tags)],
    )


def create_article(title: str, content: str, tags: str, *, db) -> Article:
    """Insert the article row and its tag rows in one transaction."""
    tags = sort_out_tags(tags)
    app.logger.info("inserting article: %s", title)
    now = _now_iso()
    with transaction(db):
        cur = db.execute(
            "INSERT INTO articles (title, content, tags, created_at, updated_at) "
            "VALUES (?,?,?,?,?)",
            (title, content, tags, now, now),
        )
        article_id = cur.lastrowid
        _insert_tags(article_id, tags, db=db)
    app.logger.info("inserted article %s with id %d, tags: %s", title, article_id, tags)
    return get_article(article_id, db=db)


def update_article(article_id: int, title: str, content: str, tags: str, *, db) -> Article:
    """Rewrite the article and replace all of its tag rows."""
    tags = sort_out_tags(tags)
    app.logger.info("updating article: %d", article_id)
    with transaction(db):
        cur = db.execute(
            "UPDATE articles SET title=?, content=?, tags=?, updated_at=? WHERE id=?",
            (title, content, tags, _now_iso(), article_id),
        )
        if cur.rowcount == 0:
            raise StoreError(f"article {article_id} does not exist")
        _clear_tags(article_id, db=db)
        _insert_tags(article_id, tags, db=db)
    app.logger.info("updated article %d, tags: %s", article_id, tags)
    return get_article(article_id, db=db)


def delete_article(article_id: int, *, db) -> None:
    app.logger.info("deleting article: %d", article_id)
    with transaction(db):
        _clear_tags(article_id, db=db)
        db.execute("DELETE FROM articles WHERE id=?", (article_id,))
    app.logger.info("deleted article %d and its tags", article_id)


###############################################################################
# Content store – pages
###############################################################################
@dataclass
class Page(Editable):
    id: int | None = None
    title: str = ""
    content: str = ""
    created_at: str | None = None
    updated_at: str | None = None

    kind = "page"

    @classmethod
    def from_row(cls, row) -> "Page":
        return cls(**{k: row[k] for k in row.keys()})

    @classmethod
    def from_form(cls, form: "EditorForm") -> "Page":
        title = form.title.strip()
        if not title:
            raise EntityError("a page needs a title")
        if slugify(title) in RESERVED_TITLES or "/" in title:
            raise EntityError(f"“{title}” cannot be used as a page title")
        return cls(id=form.id, title=title, content=form.content)

    @property
    def slug(self) -> str:
        return slugify(self.title)

    def insert(self, *, db) -> "Page":
        return create_page(self.title, self.content, db=db)

    def update(self, *, db) -> "Page":
        return update_page(self.id, self.title, self.content, db=db)

    def delete(self, *, db) -> None:
        delete_page(self.id, db=db)

    def redirect_url(self) -> str:
        return "/" + quote(self.slug)

    def __str__(self) -> str:
        return f"page title: {self.title}"


def list_pages(*, db) -> list[Page]:
    return [Page.from_row(r) for r in db.execute("SELECT * FROM pages ORDER BY id DESC")]


def get_page(page_id: int, *, db) -> Page | None:
    row = db.execute("SELECT * FROM pages WHERE id=?", (page_id,)).fetchone()
    return Page.from_row(row) if row else None


def get_page_by_title(title: str, *, db) -> Page | None:
    """Case-insensitive lookup, i.e. lookup by slug."""
    row = db.execute(
        "SELECT * FROM pages WHERE title_slug(title)=?", (slugify(title),)
    ).fetchone()
    return Page.from_row(row) if row else None


def list_page_titles(*, db) -> list[str]:
    rows = db.execute("SELECT title FROM pages ORDER BY title")
    return [r["title"] for r in rows]


def _claim_title(title: str, page_id: int | None, *, db) -> None:
    """Raise TitleConflict unless *title* is free or already ours."""
    row = db.execute(
        "SELECT id FROM pages WHERE title_slug(title)=?", (slugify(title),)
    ).fetchone()
    if row and row["id"] != page_id:
        raise TitleConflict(title)


def create_page(title: str, content: str, *, db) -> Page:
    app.logger.info("inserting page: %s", title)
    now = _now_iso()
    with transaction(db):
        _claim_title(title, None, db=db)
        cur = db.execute(
            "INSERT INTO pages (title, content, created_at, updated_at) VALUES (?,?,?,?)",
            (title, content, now, now),
        )
        page_id = cur.lastrowid
    app.logger.info("inserted page %s with id %d", title, page_id)
    return get_page(page_id, db=db)


def update_page(page_id: int, title: str, content: str, *, db) -> Page:
    app.logger.info("updating page: %d", page_id)
    with transaction(db):
        _claim_title(title, page_id, db=db)
        cur = db.execute(
            "UPDATE pages SET title=?, content=?, updated_at=? WHERE id=?",
            (title, content, _now_iso(), page_id),
        )
        if cur.rowcount == 0:
            raise StoreError(f"page {page_id} does not exist")
    app.logger.info("updated page %d", page_id)
    return get_page(page_id, db=db)


def delete_page(page_id: int, *, db) -> None:
    with transaction(db):
        db.execute("DELETE FROM pages WHERE id=?", (page_id,))
    app.logger.info("deleted page %d", page_id)


###############################################################################
# Content store – users
###############################################################################
@dataclass
class User:
    username: str
    password_hash: str


def get_user_by_username(username: str, *, db) -> User | None:
    row = db.execute(
        "SELECT username, password_hash FROM users WHERE username=?", (username,)
    ).fetchone()
    return User(row["username"], row["password_hash"]) if row else None


def seed_admin_if_absent(username: str, initial_hash: str, *, db) -> bool:
    """Create the account unless it exists.  Returns True if it was created."""
    now = _now_iso()
    with transaction(db):
        cur = db.execute(
            "INSERT OR IGNORE INTO users (username, password_hash, created_at, updated_at) "
            "VALUES (?,?,?,?)",
            (username, initial_hash, now, now),
        )
    if cur.rowcount:
        app.logger.info("created admin account %s", username)
    return bool(cur.rowcount)


def change_password(username: str, old_hash: str, new_hash: str, *, db) -> None:
    """
    Swap the stored hash, but only if it still equals *old_hash*.
    Raises StaleCredentials when it does not.
    """
    with transaction(db):
        cur = db.execute(
            "UPDATE users SET password_hash=?, updated_at=? "
            "WHERE username=? AND password_hash=?",
            (new_hash, _now_iso(), username, old_hash),
        )
        if cur.rowcount == 0:
            raise StaleCredentials(username)
    app.logger.info("password changed for %s", username)


def set_password(username: str, new_hash: str, *, db) -> bool:
    """Unconditional reset (CLI only).  Returns False for unknown users."""
    with transaction(db):
        cur = db.execute(
            "UPDATE users SET password_hash=?, updated_at=? WHERE username=?",
            (new_hash, _now_iso(), username),
        )
    return bool(cur.rowcount)


###############################################################################
# Authentication
###############################################################################
# Hash checks are slow on purpose; a small pool caps how many run at once.
_hash_pool: ThreadPoolExecutor | None = None


def _hasher() -> ThreadPoolExecutor:
    global _hash_pool
    if _hash_pool is None:
        _hash_pool = ThreadPoolExecutor(
            max_workers=int(app.config["HASH_WORKERS"]), thread_name_prefix="pwhash"
        )
    return _hash_pool


def verify_password(password_hash: str, password: str) -> bool:
    return _hasher().submit(check_password_hash, password_hash, password).result()


def authenticate(username: str, password: str, *, db) -> User | None:
    """Return the user if the password matches, else None (never raises)."""
    user = get_user_by_username(username, db=db)
    if user is None:
        return None
    if not verify_password(user.password_hash, password):
        return None
    return user


def session_auth_hash(user: User) -> str:
    """Digest of the stored hash: it changes whenever the password does."""
    return hmac.new(
        app.secret_key.encode(), user.password_hash.encode(), sha256
    ).hexdigest()


def login_user(user: User) -> None:
    session.clear()
    session.permanent = True
    session["user"] = user.username
    session["auth_hash"] = session_auth_hash(user)
    session["csrf"] = secrets.token_hex(16)


def logout_user() -> None:
    session.clear()


def login_url(next_path: str | None = None) -> str:
    if not next_path:
        return url_for("login")
    return url_for("login") + "?" + urlencode({"next": next_path}, safe="/")


def safe_next(target: str | None) -> str | None:
    """Only accept site-local paths as post-login redirect targets."""
    if not target:
        return None
    parts = urlparse(target)
    if parts.scheme or parts.netloc or not target.startswith("/") or target.startswith("//"):
        return None
    return target


def rate_limit(max_requests: int, window: int = 60, methods=("POST",)):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if request.method not in methods:
                return view(*args, **kwargs)

            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            # forget clients whose last attempt left the window
            stale = [k for k, d in hits.items() if not d or now - d[-1] > window]
            for key in stale:
                if key != ip:
                    del hits[key]

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        wrapped.hits = hits
        return wrapped

    return decorator


@app.before_request
def load_user():
    """Bind g.user; drop sessions whose password hash is out of date."""
    g.user = None
    username = session.get("user")
    if not username:
        return
    user = get_user_by_username(username, db=get_db())
    if user and hmac.compare_digest(session.get("auth_hash", ""), session_auth_hash(user)):
        g.user = user
    else:
        app.logger.info("dropping stale session for %s", username)
        session.clear()


@app.before_request
def require_admin():
    path = request.path
    if g.user is None and (path == ADMIN_PREFIX or path.startswith(ADMIN_PREFIX + "/")):
        return redirect(login_url(path))


@app.before_request
def csrf_protect():
    # ➊ read-only verbs ⇒ always allowed
    if request.method in SAFE_METHODS:
        return

    # ➋ anonymous ⇒ allow (covers /login POST)
    if g.user is None:
        return

    # ➌ for authenticated users we REQUIRE a valid token
    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


@app.after_request
def log_request(resp):
    if request.path not in QUIET_PATHS and not request.path.startswith("/static/"):
        app.logger.info("%s %s -> %s", request.method, request.path, resp.status_code)
    return resp


###############################################################################
# Entity extraction
###############################################################################
@dataclass
class EditorForm:
    """Raw editor submission; every field but the id is plain text."""

    id: int | None = None
    title: str = ""
    tags: str = ""
    content: str = ""


@dataclass
class Entity:
    entity: Editable
    is_new: bool


def extract_entity(kind: type[Editable], entity_id: int | None) -> Entity:
    """
    Turn the current request into an Article or Page.  The id comes from
    the URL, never from the body, and alone decides create vs update.
    """
    is_new = entity_id is None
    if request.mimetype not in FORM_MIMETYPES:
        raise EntityError(f"expected a form submission, got {request.mimetype or 'nothing'}")
    form = EditorForm(
        id=entity_id,
        title=request.form.get("title", ""),
        tags=request.form.get("tags", ""),
        content=request.form.get("content", ""),
    )
    return Entity(entity=kind.from_form(form), is_new=is_new)


###############################################################################
# Templates + Views
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{% if title %}{{ title }} · {% endif %}{{ config.BLOG_NAME }}</title>
<meta name="author" content="{{ config.BLOG_AUTHOR }}">
<meta property="og:site_name" content="{{ config.BLOG_NAME }}">
{% if image %}<meta property="og:image" content="{{ image }}">{% endif %}
<link rel="icon" type="image/svg+xml" href="{{ url_for('static', filename='favicon.svg') }}">
<link rel="alternate" type="application/atom+xml"
      href="{{ url_for('feed') }}" title="{{ config.BLOG_NAME }} – Feed">
<style>
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}
body{font-size:1.8rem;line-height:1.618;max-width:38em;margin:auto;color:#c9c9c9;background:#222;padding:13px}
h1,h2,h3{line-height:1.1;margin-top:3rem;margin-bottom:1.5rem;overflow-wrap:break-word}
a{color:#fff;text-decoration-color:transparent;text-underline-offset:.18em}
a:hover{color:#c9c9c9;text-decoration-color:#c9c9c9}
pre{background:#4a4a4a;padding:1em;overflow-x:auto;font-size:.9em}
code{font-size:.9em;background:#4a4a4a;padding:0 .4em}
pre>code{padding:0;background:transparent}
blockquote{margin:0 0 2.5rem;padding:.8em 1em;border-left:5px solid #fff;background:#4a4a4a}
img{max-width:100%;height:auto}
input,textarea{color:#c9c9c9;background:#4a4a4a;border:1px solid #4a4a4a;border-radius:4px;padding:6px 10px;margin-bottom:10px;box-sizing:border-box;width:100%}
button{padding:5px 10px;background:#fff;color:#222;border:1px solid #fff;cursor:pointer}
nav{display:flex;flex-wrap:wrap;gap:1.25rem;font-size:.9em}
.meta{color:#888;font-size:.8em}
.pill{display:inline-block;padding:.1em .6em;margin-right:.3em;background:#444;color:#fff;border-radius:1em;font-size:.75em}
.message{border-left:3px solid #c90;padding-left:1rem}
</style>
{% if config.ANALYTICS.get('google') %}
<script async src="https://www.googletagmanager.com/gtag/js?id={{ config.ANALYTICS['google'] }}"></script>
<script>
  window.dataLayer = window.dataLayer || [];
  function gtag(){dataLayer.push(arguments);}
  gtag('js', new Date());
  gtag('config', '{{ config.ANALYTICS["google"] }}');
</script>
{% endif %}
{% if config.ANALYTICS.get('plausible') %}
<script defer data-domain="{{ config.ANALYTICS['plausible'] }}" src="https://plausible.io/js/script.js"></script>
{% endif %}
</head>
<body>
<nav>
  <a href="{{ url_for('home') }}"><strong>{{ config.BLOG_NAME }}</strong></a>
  <a href="{{ url_for('articles') }}">Articles</a>
  <a href="{{ url_for('tags') }}">Tags</a>
  {% for t in page_titles() %}
  <a href="{{ url_for('custom_page', title=t|to_lowercase) }}">{{ t }}</a>
  {% endfor %}
  {% if config.ABOUT_URL %}<a href="{{ config.ABOUT_URL }}">About</a>{% endif %}
  <a href="{{ url_for('feed') }}">Feed</a>
  {% if g.user %}
  <a href="{{ url_for('admin') }}">Admin</a>
  <a href="{{ url_for('logout') }}">Logout</a>
  {% endif %}
</nav>
<main>
"""

TEMPL_EPILOG = """
</main>
<footer class="meta" style="margin-top:4rem;">
  © {{ config.BLOG_AUTHOR or config.BLOG_NAME }} · powered by inkpot {{ version }}
</footer>
</body>
</html>
"""

app.jinja_env.globals["page_titles"] = lambda: list_page_titles(db=get_db())
app.jinja_env.globals["csrf_token"] = lambda: session.get("csrf", "")
app.jinja_env.globals["version"] = __version__


def max_page(total: int, per_page: int) -> int:
    return ceil(total / per_page)


def group_by_year(articles: list[Article]) -> tuple[list[int], dict[int, list[Article]]]:
    """
    Bucket articles by the year they were written in.  Returns the years
    (newest first) and the buckets; article order inside a bucket is kept.
    """
    by_year: DefaultDict[int, list[Article]] = defaultdict(list)
    for a in articles:
        by_year[a.year].append(a)
    return sorted(by_year, reverse=True), dict(by_year)


def pick_image(content: str | None) -> str | None:
    """A random image URL referenced by the markdown, for previews."""
    urls = IMAGE_RE.findall(content or "")
    return random.choice(urls) if urls else None


def error_page(title: str, message: str, status: int):
    return render_template("error.html", title=title, message=message), status


def redirect_with_message(url: str, message: str):
    return redirect(url + "?" + urlencode({"message": message}))


###############################################################################
# Index + Listings
###############################################################################
@app.route("/")
def home():
    return article_page(1)


@app.route("/page/<int(signed=True):num>")
def article_page(num: int):
    if num <= 0:
        abort(404)
    db = get_db()
    total = count_articles(db=db)
    per_page = int(app.config["ARTICLES_PER_PAGE"])
    last = max_page(total, per_page)
    if last != 0 and num > last:
        abort(404)

    return render_template(
        "home.html",
        articles=list_articles(num, per_page, db=db),
        total_article_count=total,
        page_num=num,
        max_page=last,
    )


TEMPLATES["home.html"] = wrap("""
{% block body %}
{% for a in articles %}
<article>
  <h2><a href="{{ url_for('article', article_id=a.id) }}">{{ a.title }}</a></h2>
  <div class="meta">
    {{ a.created_at|ts }}
    {% for t in a.tag_list %}
      <a class="pill" href="{{ url_for('tag', tag=t) }}">{{ t }}</a>
    {% endfor %}
  </div>
  <p>{{ a.content|striptags|truncate_str(200) }}</p>
</article>
{% else %}
<p>Nothing here yet.</p>
{% endfor %}

{% if max_page > 1 %}
<nav style="justify-content:space-between;margin-top:2rem;">
  {% if page_num > 1 %}
  <a href="{{ url_for('article_page', num=page_num - 1) }}">← Newer</a>
  {% else %}<span></span>{% endif %}
  <span class="meta">{{ page_num }} / {{ max_page }}</span>
  {% if page_num < max_page %}
  <a href="{{ url_for('article_page', num=page_num + 1) }}">Older →</a>
  {% else %}<span></span>{% endif %}
</nav>
{% endif %}
{% endblock %}
""")


@app.route("/article/<int:article_id>")
def article(article_id: int):
    found = get_article(article_id, db=get_db())
    if found is None:
        abort(404)

    return render_template(
        "article.html",
        title=found.title,
        article=found,
        tags=found.tag_list,
        image=pick_image(found.content),
        logged_in=g.user is not None,
    )


TEMPLATES["article.html"] = wrap("""
{% block body %}
<article>
  <h1>{{ article.title }}</h1>
  <div class="meta">
    {{ article.created_at|ts }}
    {% if article.updated_at != article.created_at %} · updated {{ article.updated_at|ts }}{% endif %}
    {% for t in tags %}
      <a class="pill" href="{{ url_for('tag', tag=t) }}">{{ t }}</a>
    {% endfor %}
    {% if logged_in %}
      · <a href="{{ url_for('edit_article', entity_id=article.id) }}">edit</a>
      · <a href="{{ url_for('delete_article_view', entity_id=article.id) }}">delete</a>
    {% endif %}
  </div>
  <div class="e-content">{{ article.content|md_to_html }}</div>
</article>

{% set giscus = config.GISCUS %}
{% if giscus.get('enable') %}
<script src="https://giscus.app/client.js"
        data-repo="{{ giscus.repo }}"
        data-repo-id="{{ giscus.repo_id }}"
        data-category="{{ giscus.category }}"
        data-category-id="{{ giscus.category_id }}"
        data-mapping="{{ giscus.mapping }}"
        data-reactions-enabled="{{ giscus.reactions_enabled }}"
        data-emit-metadata="{{ giscus.emit_metadata }}"
        data-input-position="{{ giscus.input_position }}"
        data-theme="{{ giscus.theme }}"
        data-lang="{{ giscus.lang }}"
        data-loading="{{ giscus.loading }}"
        crossorigin="anonymous"
        async>
</script>
{% endif %}
{% endblock %}
""")


@app.route("/articles")
def articles():
    years, articles_by_year = group_by_year(all_articles(db=get_db()))
    return render_template(
        "articles.html", title="Articles", years=years, articles_by_year=articles_by_year
    )


TEMPLATES["articles.html"] = wrap("""
{% block body %}
<h1>Articles</h1>
{% for y in years %}
<h2>{{ y }}</h2>
<ul>
  {% for a in articles_by_year[y] %}
  <li><span class="meta">{{ a.created_at|ts }}</span>
      <a href="{{ url_for('article', article_id=a.id) }}">{{ a.title }}</a></li>
  {% endfor %}
</ul>
{% else %}
<p>Nothing here yet.</p>
{% endfor %}
{% endblock %}
""")


###############################################################################
# Tags
###############################################################################
@app.route("/tag/<tag>")
def tag(tag: str):
    matches = get_articles_by_tag(tag, db=get_db())
    # tags only exist through articles: no article, no tag
    if not matches:
        abort(404)
    years, articles_by_year = group_by_year(matches)
    return render_template(
        "tag.html",
        title=f"#{tag}",
        tag=tag,
        years=years,
        articles_by_year=articles_by_year,
    )


TEMPLATES["tag.html"] = wrap("""
{% block body %}
<h1>#{{ tag }}</h1>
{% for y in years %}
<h2>{{ y }}</h2>
<ul>
  {% for a in articles_by_year[y] %}
  <li><span class="meta">{{ a.created_at|ts }}</span>
      <a href="{{ url_for('article', article_id=a.id) }}">{{ a.title }}</a></li>
  {% endfor %}
</ul>
{% endfor %}
{% endblock %}
""")


@app.route("/tags")
def tags():
    return render_template("tags.html", title="Tags", tags=tag_counts(db=get_db()))


TEMPLATES["tags.html"] = wrap("""
{% block body %}
<h1>Tags</h1>
<p>
{% for t in tags %}
  <a class="pill" href="{{ url_for('tag', tag=t['name']) }}">{{ t['name'] }} <small>{{ t['num'] }}</small></a>
{% else %}
  No tags yet.
{% endfor %}
</p>
{% endblock %}
""")


###############################################################################
# Atom feed
###############################################################################
@app.route("/feed")
def feed():
    db = get_db()
    xml = render_template(
        "feed.xml",
        updated_at=latest_article_update(db=db) or _now_iso(),
        articles=all_articles(db=db),
    )
    return Response(xml, content_type="text/xml; charset=utf-8")


TEMPLATES["feed.xml"] = """<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>{{ config.BLOG_NAME }}</title>
  <link href="{{ config.BLOG_URL|concat_url('feed') }}" rel="self"/>
  <link href="{{ config.BLOG_URL }}"/>
  <id>{{ config.BLOG_URL }}</id>
  <updated>{{ updated_at }}</updated>
  <author><name>{{ config.BLOG_AUTHOR or config.BLOG_NAME }}</name></author>
  <generator>inkpot</generator>
{% for a in articles %}
  {% set link = config.BLOG_URL|concat_url('article/' ~ a.id) %}
  <entry>
    <title>{{ a.title }}</title>
    <link href="{{ link }}"/>
    <id>{{ link }}</id>
    <published>{{ a.created_at }}</published>
    <updated>{{ a.updated_at }}</updated>
    {% for t in a.tag_list %}<category term="{{ t }}"/>{% endfor %}
    <content type="html">{{ a.content|md_to_html|forceescape }}</content>
  </entry>
{% endfor %}
</feed>
"""


@app.route("/ping")
def ping():
    return Response("pong", mimetype="text/plain")


###############################################################################
# Login / logout
###############################################################################
@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    next_path = safe_next(request.values.get("next"))

    if request.method == "POST":
        user = authenticate(
            request.form.get("username", ""),
            request.form.get("password", ""),
            db=get_db(),
        )
        if user is None:
            # same message whether the username or the password was wrong
            flash("Invalid username or password.")
            return redirect(login_url(next_path))

        login_user(user)
        app.logger.info("%s logged in", user.username)
        return redirect(next_path or url_for("admin"))

    return render_template("login.html", title="Login", next=next_path)


TEMPLATES["login.html"] = wrap("""
{% block body %}
<h1>Login</h1>
{% for msg in get_flashed_messages() %}<p class="message">{{ msg }}</p>{% endfor %}
<form method="post" action="{{ url_for('login') }}">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  {% if next %}<input type="hidden" name="next" value="{{ next }}">{% endif %}
  <label for="username">Username</label>
  <input id="username" name="username" autocomplete="username" required>
  <label for="password">Password</label>
  <input id="password" name="password" type="password" autocomplete="current-password" required>
  <button type="submit">Sign in</button>
</form>
{% endblock %}
""")


@app.route("/logout")
def logout():
    if g.user is None:
        return redirect(login_url(request.path))
    logout_user()
    return redirect(url_for("home"))


###############################################################################
# Admin
###############################################################################
@app.route("/admin")
def admin():
    db = get_db()
    return render_template(
        "admin.html",
        title="Admin",
        pages=list_pages(db=db),
        articles=all_articles(db=db),
        message=request.args.get("message"),
    )


TEMPLATES["admin.html"] = wrap("""
{% block body %}
<h1>Admin</h1>
{% if message %}<p class="message">{{ message }}</p>{% endif %}
<p>
  <a href="{{ url_for('edit_article') }}">New article</a> ·
  <a href="{{ url_for('edit_page') }}">New page</a> ·
  <a href="{{ url_for('change_pw') }}">Change password</a>
</p>

<h2>Articles</h2>
<ul>
{% for a in articles %}
  <li>
    <a href="{{ url_for('article', article_id=a.id) }}">{{ a.title }}</a>
    <span class="meta">{{ a.updated_at|ts }}</span>
    <a href="{{ url_for('edit_article', entity_id=a.id) }}">edit</a>
    <a href="{{ url_for('delete_article_view', entity_id=a.id) }}"
       onclick="return confirm('Delete this article?');">delete</a>
  </li>
{% else %}
  <li>No articles yet.</li>
{% endfor %}
</ul>

<h2>Pages</h2>
<ul>
{% for p in pages %}
  <li>
    <a href="{{ p.redirect_url() }}">{{ p.title }}</a>
    <a href="{{ url_for('edit_page', entity_id=p.id) }}">edit</a>
    <a href="{{ url_for('delete_page_view', entity_id=p.id) }}"
       onclick="return confirm('Delete this page?');">delete</a>
  </li>
{% else %}
  <li>No pages yet.</li>
{% endfor %}
</ul>
{% endblock %}
""")


@app.route(CHANGE_PW_URL, methods=["GET", "POST"])
def change_pw():
    if request.method == "GET":
        return render_template(
            "change_pw.html", title="Change password", message=request.args.get("message")
        )

    db = get_db()
    new_password = request.form.get("new_password", "")
    if not new_password:
        return redirect_with_message(CHANGE_PW_URL, "The new password must not be empty.")

    user = authenticate(g.user.username, request.form.get("old_password", ""), db=db)
    if user is None:
        return redirect_with_message(
            CHANGE_PW_URL, "Failed to validate the old password, please try again."
        )

    try:
        change_password(
            user.username, user.password_hash, generate_password_hash(new_password), db=db
        )
    except StoreError as exc:
        app.logger.error("failed changing password of %s: %s", user.username, exc)
        return redirect_with_message(
            CHANGE_PW_URL, "Failed to update the password, please try again."
        )
    # the session carries the old hash, so this lands on the login form
    return redirect(url_for("admin"))


TEMPLATES["change_pw.html"] = wrap("""
{% block body %}
<h1>Change password</h1>
{% if message %}<p class="message">{{ message }}</p>{% endif %}
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <label for="old_password">Old password</label>
  <input id="old_password" name="old_password" type="password" autocomplete="current-password" required>
  <label for="new_password">New password</label>
  <input id="new_password" name="new_password" type="password" autocomplete="new-password" required>
  <button type="submit">Change</button>
</form>
{% endblock %}
""")


###############################################################################
# Editor (articles + pages)
###############################################################################
def save_entity(kind: type[Editable], entity_id: int | None):
    try:
        found = extract_entity(kind, entity_id)
    except EntityError as exc:
        app.logger.error("rejected %s form: %s", kind.kind, exc)
        return error_page(
            "Error",
            f"Oops, it seems like something went wrong during the posting... ({exc})",
            400,
        )

    entity = found.entity
    db = get_db()
    try:
        saved = entity.insert(db=db) if found.is_new else entity.update(db=db)
    except TitleConflict as exc:
        app.logger.error("failed processing %s: %s", entity, exc)
        return redirect_with_message(
            url_for("admin"),
            f'A page titled "{exc.title}" already exists at /{exc.slug}, '
            "please choose another title.",
        )
    except StoreError as exc:
        app.logger.error("failed processing %s: %s", entity, exc)
        return redirect_with_message(
            url_for("admin"), f"Failed to save the {kind.kind}, please try again."
        )
    return redirect(saved.redirect_url())


def delete_entity(kind: type[Editable], entity_id: int | None):
    if entity_id is None:
        return redirect(url_for("admin"))
    try:
        kind(id=entity_id).delete(db=get_db())
    except StoreError as exc:
        app.logger.error("failed deleting %s %d: %s", kind.kind, entity_id, exc)
        return redirect_with_message(
            url_for("admin"), f"Failed to delete the {kind.kind}, please try again."
        )
    return redirect(url_for("admin"))


@app.get("/admin/edit/article/new", defaults={"entity_id": None})
@app.get("/admin/edit/article/<int:entity_id>")
def edit_article(entity_id: int | None):
    found = get_article(entity_id, db=get_db()) if entity_id is not None else None
    if entity_id is not None and found is None:
        abort(404)
    return render_template(
        "editor.html", title="Edit article", article=found, is_page=False
    )


@app.post("/admin/edit/article/new", defaults={"entity_id": None})
@app.post("/admin/edit/article/<int:entity_id>")
def save_article(entity_id: int | None):
    return save_entity(Article, entity_id)


@app.route("/admin/delete/article", defaults={"entity_id": None}, methods=["GET", "POST"])
@app.route("/admin/delete/article/<int:entity_id>", methods=["GET", "POST"])
def delete_article_view(entity_id: int | None):
    return delete_entity(Article, entity_id)


@app.get("/admin/edit/page/new", defaults={"entity_id": None})
@app.get("/admin/edit/page/<int:entity_id>")
def edit_page(entity_id: int | None):
    found = get_page(entity_id, db=get_db()) if entity_id is not None else None
    if entity_id is not None and found is None:
        abort(404)
    return render_template("editor.html", title="Edit page", article=found, is_page=True)


@app.post("/admin/edit/page/new", defaults={"entity_id": None})
@app.post("/admin/edit/page/<int:entity_id>")
def save_page(entity_id: int | None):
    return save_entity(Page, entity_id)


@app.route("/admin/delete/page", defaults={"entity_id": None}, methods=["GET", "POST"])
@app.route("/admin/delete/page/<int:entity_id>", methods=["GET", "POST"])
def delete_page_view(entity_id: int | None):
    return delete_entity(Page, entity_id)


TEMPLATES["editor.html"] = wrap("""
{% block body %}
<h1>{% if article %}Edit{% else %}New{% endif %} {{ 'page' if is_page else 'article' }}</h1>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <label for="title">Title</label>
  <input id="title" name="title" value="{{ article.title if article else '' }}" required>
  {% if not is_page %}
  <label for="tags">Tags <small class="meta">(comma separated)</small></label>
  <input id="tags" name="tags" value="{{ article.tags if article else '' }}">
  {% endif %}
  <label for="content">Content <small class="meta">(markdown)</small></label>
  <textarea id="content" name="content" rows="24">{{ article.content if article else '' }}</textarea>
  <button type="submit">Save</button>
</form>
{% endblock %}
""")


###############################################################################
# Custom pages
###############################################################################
@app.route("/<title>")
def custom_page(title: str):
    page = get_page_by_title(title, db=get_db())
    if page is None:
        abort(404)
    return render_template("page.html", title=page.title, page=page)


TEMPLATES["page.html"] = wrap("""
{% block body %}
<article>
  <h1>{{ page.title }}</h1>
  <div class="e-content">{{ page.content|md_to_html }}</div>
</article>
{% endblock %}
""")


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page, served with a 200 like every other page."""
    return render_template("404.html", title="404"), 200


@app.errorhandler(500)
def internal_error(exc):
    return error_page("500", "Our fault, not yours. Please try again in a minute.", 500)


TEMPLATES["404.html"] = wrap("""
{% block body %}
  <h1>404</h1>
  <p>Oops, it seems like you've stumbled upon a URL that doesn't exist...
     <a href="{{ url_for('home') }}">Back to the front page</a>.</p>
{% endblock %}
""")

TEMPLATES["error.html"] = wrap("""
{% block body %}
  <h1>{{ title }}</h1>
  <p>{{ message }}</p>
  <p><a href="{{ url_for('home') }}">Back to the front page</a></p>
{% endblock %}
""")


###############################################################################
# Startup + CLI
###############################################################################
def bootstrap(config_path: str | Path | None = None) -> None:
    """Load config, create the schema and seed the admin account."""
    load_config(config_path)
    app.logger.setLevel(str(app.config["LOG_LEVEL"]).upper())
    with app.app_context():
        app.logger.info("initializing the database at %s", app.config["DATABASE"])
        init_db()
        username = app.config["ADMIN_USERNAME"]
        # the username doubles as the first password; change it right away
        seed_admin_if_absent(username, generate_password_hash(username), db=get_db())


@app.cli.command("init")
@click.option("--config", "config_path", default=None, help="Path to config.toml")
def cli_init(config_path: str | None):
    """Create the tables and the admin account."""
    try:
        bootstrap(config_path)
    except (ConfigError, StoreError) as exc:
        raise click.ClickException(str(exc)) from exc

    username = app.config["ADMIN_USERNAME"]
    click.secho("\n✅  Database ready.", fg="green")
    click.echo(f"\nLog in at /login as “{username}” (password: the username)")
    click.echo(f"and change it at {CHANGE_PW_URL} right away.")


@app.cli.command("passwd")
@click.option("--username", default=None, help="Account to reset (default: admin)")
@click.option("--config", "config_path", default=None, help="Path to config.toml")
@click.password_option(help="The new password")
def cli_passwd(username: str | None, config_path: str | None, password: str):
    """Reset a password without knowing the old one."""
    try:
        load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    username = username or app.config["ADMIN_USERNAME"]
    if not set_password(username, generate_password_hash(password), db=get_db()):
        raise click.ClickException(f"no such user: {username}")
    click.secho(f"\n🔑  Password of {username} reset.", fg="yellow")


###############################################################################
# main
###############################################################################
def main() -> None:
    try:
        bootstrap()
    except (ConfigError, StoreError) as exc:
        app.logger.error("failed to create app: %s", exc)
        sys.exit(1)
    app.run(host=app.config["SERVER_HOST"], port=int(app.config["SERVER_PORT"]))


if __name__ == "__main__":
    main()
