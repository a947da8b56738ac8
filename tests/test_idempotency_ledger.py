"""
Idempotency Ledger Tests
========================

Coverage:
  - First claim wins, second claim of the same (provider, event_id) loses
  - Same event id under different providers is independent
  - Claim rolled back with its transaction is claimable again
  - Outcome / payload bookkeeping and unresolved listing
  - Concurrent claims: exactly one winner
  - Retention pruning
"""

import threading
from datetime import datetime, timedelta

from submeter.core.database import get_engine
from submeter.services.idempotency_ledger import IdempotencyLedger


def _claim(ledger, provider, event_id, **kwargs):
    with get_engine().begin() as conn:
        return ledger.try_claim(conn, provider, event_id, **kwargs)


class TestTryClaim:
    def test_first_claim_wins(self):
        ledger = IdempotencyLedger()
        assert _claim(ledger, "stripe", "evt_1") is True
        assert _claim(ledger, "stripe", "evt_1") is False
        assert ledger.is_claimed("stripe", "evt_1")

    def test_providers_are_separate_namespaces(self):
        ledger = IdempotencyLedger()
        assert _claim(ledger, "stripe", "evt_1") is True
        assert _claim(ledger, "paddle", "evt_1") is True

    def test_rolled_back_claim_is_released(self):
        """A claim only sticks if the transaction that made it commits."""
        ledger = IdempotencyLedger()

        class Boom(Exception):
            pass

        try:
            with get_engine().begin() as conn:
                assert ledger.try_claim(conn, "dodo", "msg_1") is True
                raise Boom()
        except Boom:
            pass

        assert ledger.is_claimed("dodo", "msg_1") is False
        assert _claim(ledger, "dodo", "msg_1") is True

    def test_concurrent_claims_have_one_winner(self):
        ledger = IdempotencyLedger()
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            won = _claim(ledger, "gumroad", "sale:42")
            with lock:
                results.append(won)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 7


class TestOutcomes:
    def test_mark_outcome_keeps_payload_only_when_given(self):
        ledger = IdempotencyLedger()
        with get_engine().begin() as conn:
            ledger.try_claim(conn, "stripe", "evt_u", event_type="invoice.paid", user_id=None)
            ledger.mark_outcome(conn, "stripe", "evt_u", "unresolved", detail="no row", payload='{"id": "evt_u"}')
        with get_engine().begin() as conn:
            ledger.try_claim(conn, "stripe", "evt_a")
            ledger.mark_outcome(conn, "stripe", "evt_a", "applied")

        unresolved = ledger.get("stripe", "evt_u")
        assert unresolved["outcome"] == "unresolved"
        assert unresolved["payload"] == '{"id": "evt_u"}'
        assert ledger.get("stripe", "evt_a")["payload"] is None

        listed = ledger.list_unresolved()
        assert [m["event_id"] for m in listed] == ["evt_u"]
        assert listed[0]["detail"] == "no row"

    def test_reclaim_unresolved_only_once(self):
        ledger = IdempotencyLedger()
        with get_engine().begin() as conn:
            ledger.try_claim(conn, "paddle", "evt_r", outcome="unresolved")
        with get_engine().begin() as conn:
            assert ledger.reclaim_unresolved(conn, "paddle", "evt_r") is True
        with get_engine().begin() as conn:
            assert ledger.reclaim_unresolved(conn, "paddle", "evt_r") is False


class TestPrune:
    def test_prune_deletes_only_old_markers(self):
        ledger = IdempotencyLedger()
        now = datetime(2026, 6, 1)
        _claim(ledger, "stripe", "old", now=now - timedelta(days=120))
        _claim(ledger, "stripe", "recent", now=now - timedelta(days=10))

        deleted = ledger.prune(now - timedelta(days=90))

        assert deleted == 1
        assert ledger.is_claimed("stripe", "old") is False
        assert ledger.is_claimed("stripe", "recent") is True
