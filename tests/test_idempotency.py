import threading
from datetime import timedelta

import pytest

from utils.idempotency import PROCESSING, IdempotencyLedger, make_idempotency_key


@pytest.fixture
def ledger(clock):
    return IdempotencyLedger(capacity=1000, retention=timedelta(hours=24), clock=clock)


class TestKeys:
    def test_format(self):
        assert make_idempotency_key("PurchaseApproved", " Ana@Studio.com ", "HP1") == "PurchaseApproved:ana@studio.com:HP1"

    def test_fallback_is_a_stable_payload_fingerprint(self):
        a = make_idempotency_key("PurchaseApproved", "a@b.com", None, {"x": 1, "y": [1, 2]})
        b = make_idempotency_key("PurchaseApproved", "a@b.com", "", {"y": [1, 2], "x": 1})
        c = make_idempotency_key("PurchaseApproved", "a@b.com", None, {"x": 2})
        assert a == b
        assert a != c
        assert a.split(":")[2].startswith("fp-")


class TestLedger:
    def test_seen_after_record(self, ledger):
        assert not ledger.seen("k")
        ledger.record("k", "applied")
        assert ledger.seen("k")
        assert ledger.get("k").outcome == "applied"

    def test_stale_records_read_as_absent(self, ledger, clock):
        ledger.record("k", "applied")
        clock.advance(hours=24)
        assert ledger.seen("k")
        clock.advance(seconds=1)
        assert not ledger.seen("k")
        assert len(ledger) == 0

    def test_oldest_evicted_past_capacity(self, clock):
        ledger = IdempotencyLedger(capacity=3, clock=clock)
        for key in ("a", "b", "c", "d"):
            ledger.record(key, "applied")
            clock.advance(seconds=1)
        assert not ledger.seen("a")
        assert all(ledger.seen(k) for k in ("b", "c", "d"))
        assert len(ledger) == 3

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            IdempotencyLedger(capacity=0)


class TestClaim:
    def test_only_first_claim_wins(self, ledger):
        assert ledger.claim("k") == (True, None)
        won, existing = ledger.claim("k")
        assert not won
        assert existing.outcome == PROCESSING

    def test_losers_see_the_final_outcome(self, ledger):
        ledger.claim("k")
        ledger.record("k", "created")
        won, existing = ledger.claim("k")
        assert not won
        assert existing.outcome == "created"

    def test_record_keeps_claim_time(self, ledger, clock):
        t0 = clock()
        ledger.claim("k")
        clock.advance(minutes=5)
        ledger.record("k", "applied")
        assert ledger.get("k").first_seen_at == t0

    def test_release_frees_an_in_flight_claim(self, ledger):
        ledger.claim("k")
        ledger.release("k")
        assert ledger.claim("k") == (True, None)

    def test_release_does_not_drop_a_finished_record(self, ledger):
        ledger.claim("k")
        ledger.record("k", "applied")
        ledger.release("k")
        assert ledger.seen("k")

    def test_expired_key_can_be_claimed_again(self, ledger, clock):
        ledger.claim("k")
        ledger.record("k", "applied")
        clock.advance(hours=25)
        assert ledger.claim("k") == (True, None)

    def test_concurrent_claims(self, ledger):
        barrier = threading.Barrier(16)
        wins = []

        def worker():
            barrier.wait()
            won, _ = ledger.claim("same-key")
            wins.append(won)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert wins.count(True) == 1
        assert wins.count(False) == 15
