"""Shared fixtures for the scoring tests.

Every test gets a freshly created SQLite file database so that threaded
writers contend for the same locks they would in a deployment.
"""

import json
import os
import sys
import tempfile

import pytest

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

# Must be set before the app module builds its engine
_DB_DIR = tempfile.mkdtemp(prefix='pageant-tests-')
os.environ['DATABASE_URL'] = 'sqlite:///' + os.path.join(_DB_DIR, 'pageant.db')

from app import (  # noqa: E402
    app as flask_app, db, User, Pageant, Contestant, ScoreCategory, DEFAULT_JUDGES
)


@pytest.fixture(autouse=True)
def app_ctx():
    flask_app.config.update(TESTING=True, SMTP_HOST=None, DEFAULT_JUDGE_COUNT=3)
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app_ctx):
    return flask_app.test_client()


@pytest.fixture
def login_as(client):
    """Create (if needed) and log in a user with the given role."""
    def _login_as(username, role, password='secret123'):
        user = User.query.filter_by(username=username).first()
        if user is None:
            user = User(username=username, role=role)
            user.set_password(password)
            db.session.add(user)
            db.session.commit()
        response = client.post('/login', json={'username': username, 'password': password})
        assert response.status_code == 200
        return user
    return _login_as


@pytest.fixture
def make_pageant():
    def _make_pageant(name='Spring Classic', divisions=('Teen', 'Junior'), judges=tuple(DEFAULT_JUDGES),
                      enable_casual_wear=False):
        pageant = Pageant(
            name=name,
            divisions_json=json.dumps(list(divisions)),
            judges_json=json.dumps(list(judges)),
            enable_casual_wear=enable_casual_wear
        )
        db.session.add(pageant)
        db.session.commit()
        return pageant
    return _make_pageant


@pytest.fixture
def make_contestant():
    def _make_contestant(pageant, name, division='Teen', number=None, checked_in=True,
                         photogenic=False, casual_wear=False, email=''):
        contestant = Contestant(
            pageant_id=pageant.id,
            name=name,
            division=division,
            contestant_number=number,
            checked_in=checked_in,
            photogenic=photogenic,
            casual_wear=casual_wear,
            email=email
        )
        db.session.add(contestant)
        db.session.commit()
        return contestant
    return _make_contestant


@pytest.fixture
def sheet():
    """Build a full sub-score mapping giving every criterion the same value."""
    def _sheet(category, value):
        return {name: value for name in ScoreCategory(category).criteria}
    return _sheet
