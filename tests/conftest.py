import io
import os
import tempfile

import pytest

# app.py reads its configuration at import time
_tmp = tempfile.mkdtemp(prefix='courseweaver-tests-')
os.environ['DATABASE_URL'] = 'sqlite:///' + os.path.join(_tmp, 'test.db')
os.environ['UPLOAD_FOLDER'] = os.path.join(_tmp, 'uploads')
os.environ['ADMIN_USERNAME'] = 'admin'
os.environ['ADMIN_PASSWORD'] = 'admin123'

import app as portal  # noqa: E402


@pytest.fixture
def client():
    portal.app.config['TESTING'] = True
    with portal.app.app_context():
        portal.db.drop_all()
    portal.db_bootstrapped = False
    with portal.app.test_client() as c:
        yield c


@pytest.fixture
def admin_client(client):
    r = client.post('/api/admin/login', json={'username': 'admin', 'password': 'admin123'})
    assert r.status_code == 200
    return client


@pytest.fixture
def make_upload():
    def _make(name, content=b'data'):
        return (io.BytesIO(content), name)
    return _make
