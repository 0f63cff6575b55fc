import pytest

from contract_indexer.db import db, ensure_schema


@pytest.fixture
def conn(tmp_path):
    c = db(str(tmp_path / "index.sqlite"))
    ensure_schema(c)
    yield c
    c.close()
