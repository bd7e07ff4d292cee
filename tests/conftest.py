import pytest

from leasectl.agents import create_agent
from leasectl.db import connect_db, init_db


@pytest.fixture
def db_file(tmp_path):
    path = str(tmp_path / "queue.db")
    init_db(path)
    return path


@pytest.fixture
def conn(db_file):
    c = connect_db(db_file)
    yield c
    c.close()


@pytest.fixture
def agent(conn):
    identity, _ = create_agent(conn, "agent-a")
    return identity


@pytest.fixture
def other_agent(conn):
    identity, _ = create_agent(conn, "agent-b")
    return identity
