import pytest

from app import create_app
from models import db
from permissions import ROLES

TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite://',
    'SESSION_TYPE': 'sqlalchemy',
    'SEED_SAMPLE_BOOKS': False,
    'BCRYPT_ROUNDS': 4,
    'SESSION_PURGE_INTERVAL_HOURS': 0,
    'ADMIN_USERNAME': None,
    'ADMIN_PASSWORD': None,
}


@pytest.fixture(scope='session')
def app():
    return create_app(TEST_CONFIG)


@pytest.fixture
def store(app):
    # Fresh tables for every test
    store = app.extensions['library_store']
    with app.app_context():
        store.init()
        yield store
        store.teardown()


@pytest.fixture
def client(app, store):
    return app.test_client()


@pytest.fixture
def users(store):
    """One user per role; the password is '<role>-pass'."""
    return {
        role: store.create_user(
            username=role,
            password=f'{role}-pass',
            role=role,
            name=role.title(),
            email=f'{role}@example.com'
        )
        for role in ROLES
    }


@pytest.fixture
def login(client, users):
    def _login(role):
        response = client.post('/api/login', json={'username': role, 'password': f'{role}-pass'})
        assert response.status_code == 200
        return response
    return _login


@pytest.fixture
def fresh():
    """Reload rows changed by requests, which run in their own session."""
    def _fresh(obj):
        db.session.expire_all()
        return obj
    return _fresh
