"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch
from werkzeug.security import generate_password_hash

# The single-file app lives here:
from inkpot.blog import (
    app,
    get_db,
    get_user_by_username,
    init_db,
    seed_admin_if_absent,
    session_auth_hash,
)

ADMIN = "admin"

_ip_counter = itertools.count(1)


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    db_file = tmp_path_factory.mktemp("data") / "test.sqlite3"
    return db_file


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected:
    fresh schema plus the admin account (password = username).
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        ADMIN_USERNAME=ADMIN,
    )
    with app.app_context():
        init_db()
        seed_admin_if_absent(ADMIN, generate_password_hash(ADMIN), db=get_db())


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an application context and a test client with its own
    REMOTE_ADDR, so the login rate-limit never bleeds between tests.
    """
    with app.test_client() as client:
        client.environ_base["REMOTE_ADDR"] = f"10.0.{next(_ip_counter)}.1"
        with app.app_context():
            yield client


def fake_login(client: FlaskClient, username: str = ADMIN) -> str:
    """
    Put a valid login into *client*'s session without going through the
    form.  Returns the CSRF token that POSTs must carry.
    """
    with app.app_context():
        user = get_user_by_username(username, db=get_db())
    csrf = f"csrf-{username}"
    with client.session_transaction() as sess:
        sess.permanent = True
        sess["user"] = user.username
        sess["auth_hash"] = session_auth_hash(user)
        sess["csrf"] = csrf
    return csrf


@pytest.fixture
def admin(client: FlaskClient) -> FlaskClient:
    """A client already logged in as the admin; CSRF token on ``.csrf``."""
    client.csrf = fake_login(client)
    return client


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch inkpot.blog.utc_now for the whole test session so every call
    returns an ever-increasing timestamp.  No need for time.sleep().
    """
    from inkpot import blog  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(blog, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end


NOT_FOUND_TEXT = b"stumbled upon a URL that doesn"


def is_not_found(rv) -> bool:
    """The styled not-found page, which is served with a 200 status."""
    return rv.status_code == 200 and NOT_FOUND_TEXT in rv.data
