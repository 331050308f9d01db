import json

from voicediary.budget import MAX_STORAGE_BYTES, QuotaExceededError, StorageBudget


def test_default_capacity_is_four_and_a_half_mebibytes():
    assert StorageBudget().capacity_bytes == MAX_STORAGE_BYTES == 4718592


def test_measure_counts_utf8_bytes():
    assert StorageBudget.measure("héllo") == 6


def test_ensure_fits_allows_exact_capacity():
    budget = StorageBudget(capacity_bytes=5)
    assert budget.ensure_fits("12345") == 5

    try:
        budget.ensure_fits("123456")
    except QuotaExceededError as exc:
        assert exc.required == 6
    else:
        raise AssertionError("Expected QuotaExceededError")


def test_describe_counts_both_payload_shapes():
    budget = StorageBudget(capacity_bytes=1000)
    envelope = json.dumps({"version": "1.1", "entries": [{}, {}], "timestamp": "t"})

    assert budget.describe(envelope).entry_count == 2
    assert budget.describe(json.dumps([{}])).entry_count == 1
    assert budget.describe("garbage").entry_count == 0

    empty = budget.describe(None)
    assert empty.used_bytes == 0
    assert empty.available_bytes == 1000
    assert not empty.nearly_full
