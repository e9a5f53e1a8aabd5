"""Tests for stale-view signalling."""

from labflow.services.revalidation import CacheRevalidator


def test_fans_out_unique_paths():
    first, second = [], []
    revalidator = CacheRevalidator([first.append])
    revalidator.subscribe(second.append)

    revalidator.revalidate("/dashboard/borrowing", "/dashboard/approval-matrix", "/dashboard/borrowing")

    assert first == ["/dashboard/borrowing", "/dashboard/approval-matrix"]
    assert second == first


def test_failing_subscriber_does_not_block_others():
    seen = []

    def broken(path):
        raise RuntimeError("purge failed")

    CacheRevalidator([broken, seen.append]).revalidate("/dashboard/borrowing")
    assert seen == ["/dashboard/borrowing"]


def test_no_subscribers():
    CacheRevalidator().revalidate("/dashboard/borrowing")
