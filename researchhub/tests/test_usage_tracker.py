"""Tests for usage counters (both storage backends)."""

from datetime import datetime, timezone

import pytest

from researchhub.core.errors import ValidationError
from researchhub.features.usage.service import get_usage, reset_usage, update_usage

NOW = datetime(2026, 5, 2, 9, 30, tzinfo=timezone.utc)

both_backends = pytest.mark.parametrize("storage", ["memory", "sql"], indirect=True)


@both_backends
def test_get_usage_returns_unsaved_zero_record(storage):
    record = get_usage("fresh", now=NOW)
    assert record.studies_created == 0
    assert record.data_exports == 0
    assert storage.get_usage("fresh") is None


@both_backends
def test_named_increments(storage):
    update_usage("u1", "create-study", now=NOW)
    update_usage("u1", "create-study", now=NOW)
    update_usage("u1", "add-participant", {"participantCount": 4}, now=NOW)
    update_usage("u1", "add-participant", now=NOW)
    update_usage("u1", "export-data", now=NOW)
    record = update_usage("u1", "record-session", {"minutesUsed": 25}, now=NOW)

    assert record.studies_created == 2
    assert record.participants_recruited == 5
    assert record.data_exports == 1
    assert record.recording_minutes_used == 25
    assert get_usage("u1") == record


@both_backends
def test_record_session_without_minutes_adds_nothing(storage):
    record = update_usage("u1", "record-session", now=NOW)
    assert record.recording_minutes_used == 0


@both_backends
def test_unknown_action_leaves_record_unchanged(storage):
    update_usage("u1", "create-study", now=NOW)
    record = update_usage("u1", "advanced-analytics", now=NOW)
    assert record.studies_created == 1
    assert record.participants_recruited == 0


@both_backends
def test_reset_zeroes_counters_and_stamps_date(storage):
    update_usage("u1", "create-study", now=NOW)
    later = datetime(2026, 6, 1, tzinfo=timezone.utc)
    reset_usage("u1", now=later)

    record = get_usage("u1")
    assert record.studies_created == 0
    assert record.last_reset_date == later


@pytest.mark.parametrize("payload", [{"participantCount": 1.5}, {"participantCount": "a few"}, {"participantCount": -2}])
def test_malformed_counts_rejected_without_writing(storage, payload):
    with pytest.raises(ValidationError, match="participantCount"):
        update_usage("u1", "add-participant", payload, now=NOW)
    assert storage.get_usage("u1") is None
