import pytest

from portfolio_ledger.metrics import LedgerMetrics


@pytest.fixture
def metrics():
    return LedgerMetrics(max_errors=3)


def test_record_update_sets_timestamp(metrics: LedgerMetrics):
    assert metrics.snapshot()["last_update_at"] is None

    metrics.record_update()
    metrics.record_update()

    snapshot = metrics.snapshot()

    assert snapshot["updates_applied"] == 2
    assert snapshot["last_update_at"] is not None
    assert snapshot["recent_errors"] == []


def test_update_failures_track_conflicts_separately(metrics: LedgerMetrics):
    metrics.record_update_failure("negative balance")
    metrics.record_update_failure("database is locked", conflict=True)

    snapshot = metrics.snapshot()

    assert snapshot["update_failures"] == 2
    assert snapshot["concurrency_conflicts"] == 1
    assert [record["message"] for record in snapshot["recent_errors"]] == [
        "database is locked",
        "negative balance",
    ]


def test_error_variants_share_recent_errors(metrics: LedgerMetrics):
    metrics.record_cache_invalidation_failure("cache down")
    metrics.record_pricing_error("price source down")
    metrics.record_unmatched_outflow()

    snapshot = metrics.snapshot()

    assert snapshot["cache_invalidation_failures"] == 1
    assert snapshot["pricing_errors"] == 1
    assert snapshot["unmatched_outflows"] == 1
    assert snapshot["update_failures"] == 0
    assert snapshot["recent_errors"][0]["message"] == "price source down"
    assert snapshot["recent_errors"][1]["message"] == "cache down"


def test_recent_errors_are_bounded(metrics: LedgerMetrics):
    for i in range(5):
        metrics.record_pricing_error(f"error {i}")

    snapshot = metrics.snapshot()

    assert snapshot["pricing_errors"] == 5
    assert [record["message"] for record in snapshot["recent_errors"]] == [
        "error 4",
        "error 3",
        "error 2",
    ]


def test_snapshot_is_a_copy(metrics: LedgerMetrics):
    metrics.record_pricing_error("first")
    snapshot = metrics.snapshot()
    snapshot["recent_errors"].clear()

    assert len(metrics.snapshot()["recent_errors"]) == 1
