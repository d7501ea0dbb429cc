import os
import tempfile

import pytest

# the engine is created at import time, so point it at SQLite first
_tmp = tempfile.mkdtemp(prefix="catalog-test-")
os.environ.setdefault("CATALOG_DATABASE_URL", f"sqlite:///{_tmp}/catalog.db")


@pytest.fixture
def catalog_client():
    from fastapi.testclient import TestClient

    import repo
    from main import app

    repo.Base.metadata.drop_all(repo.engine)
    with TestClient(app) as c:
        yield c
