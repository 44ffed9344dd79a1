"""PostgresStore shares one connection between BatchWriter workers.

A fake connection records how many transactions are open at once; no
database is needed.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from unittest.mock import MagicMock

from seo_audit_etl.batch_writer import BatchWriter
from seo_audit_etl.reconcile import Instruction, Op
from seo_audit_etl.store import PostgresStore


class TransactionTrackingConnection:
    def __init__(self):
        self.row_factory = None
        self.open_transactions = 0
        self.peak = 0
        self.statements = 0
        self._guard = threading.Lock()

    @contextmanager
    def transaction(self):
        with self._guard:
            self.open_transactions += 1
            self.peak = max(self.peak, self.open_transactions)
        try:
            time.sleep(0.01)
            yield
        finally:
            with self._guard:
                self.open_transactions -= 1

    def cursor(self):
        cur = MagicMock()
        cur.__enter__.return_value = cur
        cur.executemany.side_effect = self._count
        return cur

    def _count(self, stmt, rows):
        with self._guard:
            self.statements += len(rows)


def _updates(n):
    return [
        Instruction(Op.UPDATE, {"toxicity_score": i}, i + 2, (f"a.com/{i}",), i + 1)
        for i in range(n)
    ]


class TestConcurrentWrites:
    def test_worker_threads_never_share_a_transaction(self):
        conn = TransactionTrackingConnection()
        store = PostgresStore(conn)
        writer = BatchWriter(store, chunk_size=2, max_in_flight=4)
        result = writer.write("audit_urls", _updates(16))
        assert result.chunks_written == 8
        assert result.updated == 16
        assert conn.statements == 16
        assert conn.peak == 1

    def test_direct_threads_are_serialized(self):
        conn = TransactionTrackingConnection()
        store = PostgresStore(conn)
        threads = [
            threading.Thread(target=store.update_by_id, args=("audit_urls", i, {"notes": "x"}))
            for i in range(6)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert conn.statements == 6
        assert conn.peak == 1
