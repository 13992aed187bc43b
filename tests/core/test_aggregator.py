from __future__ import annotations

import pytest

from rollwave_core.rollouts.aggregator import summarize


@pytest.mark.core
def test_summarize_buckets_statuses():
    counts = summarize(
        {
            "RUNNING": 2,
            "DOWNLOAD": 1,
            "CANCELING": 1,
            "SCHEDULED": 1,
            "ERROR": 2,
            "FINISHED": 3,
            "CANCELED": 1,
        },
        total=12,
    )
    assert counts.running == 4
    assert counts.scheduled == 1
    assert counts.error == 2
    assert counts.finished == 3
    assert counts.cancelled == 1
    assert counts.not_started == 1


@pytest.mark.core
def test_summarize_never_reports_negative_not_started():
    counts = summarize({"FINISHED": 5}, total=3)
    assert counts.not_started == 0
    assert counts.to_dict()["finished"] == 5
