import sys
from pathlib import Path

import pytest

repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from captiondesk.storage import MemoryStore, SqlStore  # noqa: E402


@pytest.fixture(params=["memory", "sql"])
def store(request, tmp_path):
    if request.param == "memory":
        backend = MemoryStore()
    else:
        backend = SqlStore(f"sqlite:///{tmp_path / 'captiondesk.db'}")
    yield backend
    backend.close()


@pytest.fixture()
def sql_store(tmp_path):
    backend = SqlStore(f"sqlite:///{tmp_path / 'captiondesk.db'}")
    yield backend
    backend.close()
