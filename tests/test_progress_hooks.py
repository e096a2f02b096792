"""Tests for stage labels and the ProgressReporter percent math."""

import pytest

from grantdesk.hooks.progress_hooks import (
    SINGLE_PHASE_WEIGHTS,
    SYNC_PHASE_WEIGHTS,
    ProgressReporter,
    get_stage_label,
)

from conftest import EventLog


class TestStageLabels:
    def test_started_and_item_labels_differ(self):
        assert get_stage_label("crawl", started=True) == "URL 크롤링 시작"
        assert get_stage_label("crawl") == "URL 크롤링 중"

    def test_unknown_stage_gets_generic_label(self):
        assert get_stage_label("mystery") == "처리 중"


class TestProgressReporter:
    def test_sync_weights_cover_100_percent(self):
        assert sum(SYNC_PHASE_WEIGHTS.values()) == 100
        assert sum(SINGLE_PHASE_WEIGHTS.values()) == 100

    def test_percent_offsets_by_earlier_phases(self):
        """Halfway through phase 4 is 10 + 10 + 20 + 15."""
        reporter = ProgressReporter(EventLog(), SYNC_PHASE_WEIGHTS)
        assert reporter.percent_for(4, 5, 10) == 55

    def test_percent_is_floored(self):
        reporter = ProgressReporter(EventLog(), SINGLE_PHASE_WEIGHTS)
        assert reporter.percent_for(0, 1, 3) == 33

    def test_empty_phase_reports_its_offset(self):
        reporter = ProgressReporter(EventLog(), SYNC_PHASE_WEIGHTS)
        assert reporter.percent_for(3, 0, 0) == 20

    @pytest.mark.asyncio
    async def test_percent_never_moves_backwards(self):
        """A later frame with a smaller raw value repeats the previous percent."""
        log = EventLog()
        reporter = ProgressReporter(log, SYNC_PHASE_WEIGHTS)
        await reporter.item_done(5, "fit", 1, 1, "a")
        await reporter.phase_started(2, "prescreen", 4)
        assert [p["percent"] for p in log.progress] == [100, 100]
        assert reporter.last_percent == 100

    @pytest.mark.asyncio
    async def test_frames_carry_phase_and_label(self):
        log = EventLog()
        reporter = ProgressReporter(log, SYNC_PHASE_WEIGHTS)
        await reporter.phase_started(3, "crawl", 2)
        await reporter.item_done(3, "crawl", 1, 2, "수출바우처")

        started, item = log.progress
        assert started == {
            "stage": "URL 크롤링 시작",
            "current": 0,
            "total": 2,
            "percent": 20,
            "itemLabel": "",
            "phase": 3,
        }
        assert item["itemLabel"] == "수출바우처"
        assert item["percent"] == 30
        assert [e.sequence_id for e in log.events] == [1, 2]
