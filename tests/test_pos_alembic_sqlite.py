import os
import sqlite3
import subprocess
import sys
import tempfile


def test_pos_alembic_upgrade_sqlite_uses_current_timestamp_default():
    """
    Migrations must run on SQLite (the local outbox database) and must not use
    Postgres-only defaults like NOW().
    """
    with tempfile.TemporaryDirectory() as td:
        db_path = os.path.join(td, "pos.db")
        db_url = f"sqlite+pysqlite:///{db_path}"

        env = os.environ.copy()
        env.update({"ENV": "test", "POS_DB_URL": db_url})
        env.pop("DB_SCHEMA", None)

        # Run migrations in a subprocess so Alembic's logging config does not
        # mutate the pytest process (it can reset handlers used by other tests).
        repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
        proc = subprocess.run(
            [sys.executable, "-m", "alembic", "-c", "apps/pos/alembic.ini", "upgrade", "head"],
            cwd=repo_root,
            env=env,
            text=True,
            capture_output=True,
        )
        assert proc.returncode == 0, f"alembic failed: {proc.stderr.strip()}"

        con = sqlite3.connect(db_path)
        try:
            for table in ("orders", "offline_sync_queue"):
                row = con.execute(
                    "SELECT sql FROM sqlite_master WHERE type='table' AND name=?",
                    (table,),
                ).fetchone()
                assert row and row[0]
                ddl = row[0].upper()
                assert "NOW()" not in ddl
                assert "CURRENT_TIMESTAMP" in ddl
            cols = {r[1] for r in con.execute("PRAGMA table_info(offline_sync_queue)")}
            assert {"local_id", "status", "retry_count", "error_message", "resolution", "synced_at", "claimed_at"} <= cols
            idx = {r[1] for r in con.execute("PRAGMA index_list(offline_sync_queue)")}
            assert "ix_offline_sync_queue_status_created" in idx
        finally:
            con.close()
