"""
Shared fixtures: a deterministic config, a fixed clock and small on-disk
repositories.
"""

from __future__ import annotations

import os

import pytest

from pattern_guard.config import Config

NOW = 1_700_000_000.0


def write_file(root, rel_path: str, content: str) -> str:
    """Write *content* to *root/rel_path* (creating parents); return the abs path."""
    path = os.path.join(str(root), *rel_path.split("/"))
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(content)
    return path


def sql_function(name: str, table: str) -> str:
    """A small raw-SQL fetch function; only *name* and *table* vary."""
    return (
        f"def {name}(conn, record_id):\n"
        f"    cursor = conn.cursor()\n"
        f"    cursor.execute(\"SELECT * FROM {table} WHERE id = ?\", (record_id,))\n"
        f"    return cursor.fetchall()\n"
    )


QUERY_DB = (
    "def queryDb(sql, params=()):\n"
    "    connection = sqlite3.connect(DATABASE_PATH)\n"
    "    try:\n"
    "        return connection.execute(sql, params).fetchall()\n"
    "    finally:\n"
    "        connection.close()\n"
)

SQL_TABLES = ("users", "orders", "invoices", "products", "customers")


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def config(monkeypatch):
    """Defaults with no YAML and no PATTERN_GUARD_* overrides."""
    for key in list(os.environ):
        if key.startswith("PATTERN_GUARD_"):
            monkeypatch.delenv(key, raising=False)
    cfg = Config({})
    cfg.CLUSTER_THRESHOLD = 0.8
    cfg.MIN_CLUSTER_SIZE = 3
    cfg.MATCH_THRESHOLD = 0.8
    cfg.EMBEDDING_DIMENSION = 384
    cfg.STORE_RETRY_DELAY = 0.0
    cfg.EMBED_RETRY_DELAY = 0.0
    cfg.WORKER_POOL_SIZE = 2
    return cfg


@pytest.fixture
def sql_repo(tmp_path):
    """Five near-identical raw-SQL functions plus one DB wrapper."""
    for table in SQL_TABLES:
        write_file(tmp_path, f"app/{table}.py", sql_function(f"fetch_{table}", table))
    write_file(tmp_path, "app/db.py", QUERY_DB)
    return tmp_path
