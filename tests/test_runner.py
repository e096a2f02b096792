"""Tests for PipelineRunner: phases, idempotent skips, failures and abort."""

import pytest

from grantdesk.pipeline import PaceLimiter, RunKind, RunState, SyncRun
from grantdesk.pipeline.programs import ANALYSIS_PREFIX, STRATEGIES_PREFIX, make_slug
from grantdesk.pipeline.runner import RESULT_COUNTERS
from grantdesk.store.notes import InMemoryNoteStore
from grantdesk.streaming.events import FrameType

from conftest import (
    ANALYZED,
    COMPANY,
    EventLog,
    FakeAnalyzer,
    FakeClock,
    FakeCrawler,
    FakeSource,
    build_runner,
    make_program,
    seed_program,
)


def _slug(program):
    return make_slug(program.program_name, program.id)


class TestSyncPhases:
    @pytest.mark.asyncio
    async def test_fresh_sync_runs_every_phase(self, company_store, analyzer, crawler):
        """Two new programs are created, crawled, enriched and analyzed."""
        programs = [make_program(1), make_program(2)]
        runner = build_runner(company_store, FakeSource(programs), crawler, analyzer)
        log = EventLog()

        run = SyncRun(kind=RunKind.SYNC)
        result = await runner.execute(run, log)

        assert run.state is RunState.COMPLETED
        assert result["success"] is True
        assert result["totalFetched"] == 2
        assert result["created"] == 2
        assert result["preScreenPassed"] == 2
        assert result["phase2Crawled"] == 2
        assert result["phase3Enriched"] == 2
        assert result["attachmentsDownloaded"] == 2
        assert result["analyzed"] == 2
        assert result["strategiesGenerated"] == 2
        assert (result["processed"], result["skipped"], result["errors"]) == (2, 0, 0)

        metadata, _ = await company_store.read(f"programs/{_slug(programs[0])}")
        assert metadata["status"] == "analyzed"
        assert metadata["enrichmentPhase"] == 3
        assert metadata["fitScore"] == 75
        assert metadata["applicationMethod"] == "온라인 접수"
        assert metadata["prescreenedAt"]
        assert await company_store.exists(f"{ANALYSIS_PREFIX}/{_slug(programs[0])}-fit")
        assert await company_store.exists(f"{STRATEGIES_PREFIX}/{_slug(programs[0])}")

    @pytest.mark.asyncio
    async def test_exactly_one_terminal_frame_after_progress(self, company_store):
        """complete is the last frame and follows every progress frame."""
        runner = build_runner(company_store, FakeSource([make_program(1), make_program(2)]))
        log = EventLog()

        await runner.execute(SyncRun(kind=RunKind.SYNC), log)

        assert log.types[-1] == "complete"
        assert log.types.count("complete") + log.types.count("error") == 1
        assert all(t == "progress" for t in log.types[:-1])

    @pytest.mark.asyncio
    async def test_progress_percent_never_decreases(self, company_store):
        """Percent is non-decreasing across phases and ends at 100."""
        programs = [make_program(n) for n in range(1, 5)]
        runner = build_runner(company_store, FakeSource(programs))
        log = EventLog()

        await runner.execute(SyncRun(kind=RunKind.SYNC), log)

        percents = [p["percent"] for p in log.progress]
        assert percents == sorted(percents)
        assert all(0 <= p <= 100 for p in percents)
        assert percents[-1] == 100
        assert {p["phase"] for p in log.progress} == {1, 2, 3, 4, 5}

    @pytest.mark.asyncio
    async def test_progress_frames_carry_item_labels(self, company_store):
        """Per-item frames name the program being processed."""
        runner = build_runner(company_store, FakeSource([make_program(1, "청년창업사관학교")]))
        log = EventLog()

        await runner.execute(SyncRun(kind=RunKind.SYNC), log)

        collect = [p for p in log.progress if p["phase"] == 1]
        assert collect[0]["current"] == 0
        assert collect[0]["total"] == 1
        assert collect[1]["itemLabel"] == "청년창업사관학교"

    @pytest.mark.asyncio
    async def test_complete_payload_has_all_counters(self, company_store):
        """Every counter key is present even when it stayed at zero."""
        runner = build_runner(company_store, FakeSource([]))
        result = await runner.execute(SyncRun(kind=RunKind.SYNC))

        for key in RESULT_COUNTERS:
            assert result[key] == 0
        assert result["kind"] == "sync"
        assert result["startedAt"]
        assert result["completedAt"]
        assert isinstance(result["perPhaseCounts"], dict)


class TestIdempotentSkip:
    @pytest.mark.asyncio
    async def test_second_run_makes_no_analyzer_calls(self, company_store, analyzer, crawler):
        """A repeat run with no upstream changes skips every phase's work."""
        source = FakeSource([make_program(1), make_program(2)])
        runner = build_runner(company_store, source, crawler, analyzer)
        await runner.execute(SyncRun(kind=RunKind.SYNC))
        calls_before = dict(analyzer.calls)
        crawled_before = list(crawler.urls)

        result = await runner.execute(SyncRun(kind=RunKind.SYNC))

        assert dict(analyzer.calls) == calls_before
        assert crawler.urls == crawled_before
        assert result["analyzed"] == 0
        assert result["created"] == 0
        assert result["updated"] == 2
        assert result["skipped"] == 2
        assert result["processed"] == 0

    @pytest.mark.asyncio
    async def test_force_reanalyze_reinvokes_analyzer(self, company_store, analyzer, crawler):
        """forceReanalyze re-runs crawl, enrichment and fit for every item."""
        source = FakeSource([make_program(1), make_program(2)])
        runner = build_runner(company_store, source, crawler, analyzer)
        await runner.execute(SyncRun(kind=RunKind.SYNC))
        fit_calls = analyzer.calls["analyze_fit"]

        result = await runner.execute(SyncRun(kind=RunKind.SYNC, force_reanalyze=True))

        assert analyzer.calls["analyze_fit"] == fit_calls + 2
        assert len(crawler.urls) == 4
        assert result["analyzed"] == 2
        assert result["processed"] == 2
        assert result["skipped"] == 0

    @pytest.mark.asyncio
    async def test_two_analyzed_one_synced(self, company_store, analyzer):
        """2 analyzed + 1 synced: skipped=2, processed=1."""
        programs = [make_program(1), make_program(2), make_program(3)]
        await seed_program(company_store, programs[0], **ANALYZED)
        await seed_program(company_store, programs[1], **ANALYZED)
        await seed_program(company_store, programs[2])
        runner = build_runner(company_store, FakeSource(programs), analyzer=analyzer)

        result = await runner.execute(SyncRun(kind=RunKind.SYNC))

        assert result["skipped"] == 2
        assert result["processed"] == 1
        assert analyzer.calls["analyze_fit"] == 1

    @pytest.mark.asyncio
    async def test_two_analyzed_one_synced_forced(self, company_store, analyzer):
        """Same data with forceReanalyze: processed=3, skipped=0."""
        programs = [make_program(1), make_program(2), make_program(3)]
        await seed_program(company_store, programs[0], **ANALYZED)
        await seed_program(company_store, programs[1], **ANALYZED)
        await seed_program(company_store, programs[2])
        runner = build_runner(company_store, FakeSource(programs), analyzer=analyzer)

        result = await runner.execute(SyncRun(kind=RunKind.SYNC, force_reanalyze=True))

        assert result["processed"] == 3
        assert result["skipped"] == 0
        assert analyzer.calls["analyze_fit"] == 3

    @pytest.mark.asyncio
    async def test_existing_note_is_updated_not_recreated(self, company_store):
        """Collect refreshes syncedAt on an existing note and keeps its analysis."""
        program = make_program(1)
        key = await seed_program(company_store, program, syncedAt="2000-01-01T00:00:00+00:00", **ANALYZED)
        runner = build_runner(company_store, FakeSource([program]))

        result = await runner.execute(SyncRun(kind=RunKind.SYNC))

        metadata, _ = await company_store.read(key)
        assert result["updated"] == 1
        assert result["created"] == 0
        assert metadata["syncedAt"] > "2000-01-01T00:00:00+00:00"
        assert metadata["fitScore"] == 72


class TestPrescreen:
    @pytest.mark.asyncio
    async def test_rejected_program_is_parked(self, company_store, analyzer, crawler):
        """A rejected program gets phase 99 and is neither crawled nor analyzed."""
        programs = [make_program(1), make_program(2)]
        analyzer.reject_ids = {programs[1].id}
        runner = build_runner(company_store, FakeSource(programs), crawler, analyzer)

        result = await runner.execute(SyncRun(kind=RunKind.SYNC))

        metadata, _ = await company_store.read(f"programs/{_slug(programs[1])}")
        assert metadata["enrichmentPhase"] == 99
        assert metadata["status"] == "prescreen_rejected"
        assert metadata["fitScore"] == 3
        assert metadata["eligibility"] == "부적합"
        assert metadata["preScreenReason"] == "지역 요건 불충족"
        assert programs[1].detail_url not in crawler.urls
        assert analyzer.calls["analyze_fit"] == 1
        assert result["preScreenRejected"] == 1
        assert result["preScreenPassed"] == 1

    @pytest.mark.asyncio
    async def test_batch_failure_lets_everything_through(self, company_store, analyzer):
        """A failed prescreen call counts one error and rejects nothing."""
        analyzer.prescreen_error = RuntimeError("rate limited")
        programs = [make_program(1), make_program(2)]
        runner = build_runner(company_store, FakeSource(programs), analyzer=analyzer)

        result = await runner.execute(SyncRun(kind=RunKind.SYNC))

        assert result["perPhaseCounts"]["2"]["errors"] == 1
        assert result["preScreenPassed"] == 2
        assert result["preScreenRejected"] == 0
        assert result["analyzed"] == 2
        metadata, _ = await company_store.read(f"programs/{_slug(programs[0])}")
        assert "prescreenedAt" not in metadata

    @pytest.mark.asyncio
    async def test_skipped_without_company_profile(self, store, analyzer):
        """No company name/industry on file means no prescreen call."""
        runner = build_runner(store, FakeSource([make_program(1)]), analyzer=analyzer)

        result = await runner.execute(SyncRun(kind=RunKind.SYNC))

        assert analyzer.calls["prescreen"] == 0
        assert result["success"] is True


class TestFailures:
    @pytest.mark.asyncio
    async def test_source_failure_fails_run_with_single_error_frame(self, company_store):
        """An unreachable program source fails the run before any progress."""
        source = FakeSource(error=ConnectionError("api.odcloud.kr unreachable"))
        runner = build_runner(company_store, source)
        log = EventLog()
        run = SyncRun(kind=RunKind.SYNC)

        result = await runner.execute(run, log)

        assert result is None
        assert run.state is RunState.FAILED
        assert run.failed_at is not None
        assert log.types == ["error"]
        assert log.events[0].data == {"error": "sync failed: api.odcloud.kr unreachable"}

    @pytest.mark.asyncio
    async def test_listing_failure_after_collect_is_counted(self, company_store, analyzer):
        """Once items are written, a failing note listing costs one error per phase."""

        class UnlistableStore(InMemoryNoteStore):
            async def list_keys(self, prefix):
                raise OSError("vault index unavailable")

        store = UnlistableStore()
        await store.write("company/profile", dict(COMPANY))
        runner = build_runner(store, FakeSource([make_program(1), make_program(2)]), analyzer=analyzer)
        log = EventLog()
        run = SyncRun(kind=RunKind.SYNC)

        result = await runner.execute(run, log)

        assert run.state is RunState.COMPLETED
        assert log.types[-1] == "complete"
        assert result["created"] == 2
        assert result["errors"] == 1
        for phase in ("2", "3", "4"):
            assert result["perPhaseCounts"][phase]["errors"] == 1
        assert result["perPhaseCounts"]["1"]["processed"] == 2
        assert analyzer.calls["analyze_fit"] == 0

    @pytest.mark.asyncio
    async def test_unusable_store_fails_run(self):
        """A store that cannot be prepared fails the run without fetching."""

        class BrokenStore(InMemoryNoteStore):
            async def ensure_ready(self):
                raise PermissionError("vault is read-only")

        source = FakeSource([make_program(1)])
        runner = build_runner(BrokenStore(), source)
        log = EventLog()
        run = SyncRun(kind=RunKind.SYNC)

        await runner.execute(run, log)

        assert source.calls == 0
        assert run.error == "vault is read-only"
        assert log.types == ["error"]

    @pytest.mark.asyncio
    async def test_item_failure_is_counted_and_note_left_alone(self, company_store, analyzer):
        """One failing fit analysis does not stop the others."""
        programs = [make_program(1), make_program(2), make_program(3)]
        analyzer.fail_fit = {programs[1].program_name}
        runner = build_runner(company_store, FakeSource(programs), analyzer=analyzer)
        log = EventLog()

        result = await runner.execute(SyncRun(kind=RunKind.SYNC), log)

        assert log.types[-1] == "complete"
        assert result["errors"] == 1
        assert result["processed"] == 2
        assert result["analyzed"] == 2
        metadata, _ = await company_store.read(f"programs/{_slug(programs[1])}")
        assert metadata["status"] == "enriched"
        assert metadata["fitScore"] == 0
        assert not await company_store.exists(f"{ANALYSIS_PREFIX}/{_slug(programs[1])}-fit")

    @pytest.mark.asyncio
    async def test_crawl_failure_keeps_prior_phase(self, company_store):
        """A failed crawl leaves the note at phase 1 so the next run retries it."""
        program = make_program(1)
        crawler = FakeCrawler(fail_urls={program.detail_url})
        runner = build_runner(company_store, FakeSource([program]), crawler)

        result = await runner.execute(SyncRun(kind=RunKind.SYNC))

        metadata, _ = await company_store.read(f"programs/{_slug(program)}")
        assert metadata["enrichmentPhase"] == 1
        assert "crawledContent" not in metadata
        assert result["perPhaseCounts"]["3"]["errors"] == 1

    @pytest.mark.asyncio
    async def test_strategy_failure_does_not_count_as_error(self, company_store, analyzer):
        """A failed strategy document is logged only; the fit still counts."""
        analyzer.strategy_error = RuntimeError("timeout")
        runner = build_runner(company_store, FakeSource([make_program(1)]), analyzer=analyzer)

        result = await runner.execute(SyncRun(kind=RunKind.SYNC))

        assert result["analyzed"] == 1
        assert result["strategiesGenerated"] == 0
        assert result["errors"] == 0


class TestStrategyThreshold:
    @pytest.mark.asyncio
    async def test_low_score_gets_no_strategy(self, company_store, analyzer):
        """Programs under the fit threshold get no strategy document."""
        programs = [make_program(1), make_program(2)]
        analyzer.scores = {programs[0].program_name: 40}
        runner = build_runner(company_store, FakeSource(programs), analyzer=analyzer)

        result = await runner.execute(SyncRun(kind=RunKind.SYNC))

        assert result["strategiesGenerated"] == 1
        assert not await company_store.exists(f"{STRATEGIES_PREFIX}/{_slug(programs[0])}")
        assert await company_store.exists(f"{STRATEGIES_PREFIX}/{_slug(programs[1])}")


class TestDuplicates:
    @pytest.mark.asyncio
    async def test_duplicate_names_keep_best_quality(self, company_store):
        """Notes sharing a program name collapse to the higher-quality one."""
        best = make_program(1, "창업도약패키지")
        worse = make_program(2, "창업도약패키지")
        best_key = await seed_program(company_store, best, dataQualityScore=80)
        worse_key = await seed_program(company_store, worse, dataQualityScore=10)
        runner = build_runner(company_store, FakeSource([]))

        result = await runner.execute(SyncRun(kind=RunKind.SYNC))

        assert result["cleanedDuplicates"] == 1
        assert await company_store.exists(best_key)
        assert not await company_store.exists(worse_key)


class TestAbort:
    @pytest.mark.asyncio
    async def test_abort_stops_before_next_item(self, company_store, analyzer):
        """Abort mid-phase: no terminal frame, finished items keep their status."""
        programs = [make_program(n) for n in range(1, 4)]
        runner = build_runner(company_store, FakeSource(programs), analyzer=analyzer)
        run = SyncRun(kind=RunKind.SYNC)
        events = []

        async def emit(event):
            events.append(event)
            if (
                event.event_type is FrameType.PROGRESS
                and event.data["phase"] == 5
                and event.data["current"] == 1
            ):
                run.request_abort()

        result = await runner.execute(run, emit)

        assert result is None
        assert run.state is RunState.ABORTED
        assert run.aborted_at is not None
        assert all(e.event_type is FrameType.PROGRESS for e in events)
        assert analyzer.calls["analyze_fit"] == 1
        first, _ = await company_store.read(f"programs/{_slug(programs[0])}")
        second, _ = await company_store.read(f"programs/{_slug(programs[1])}")
        assert first["status"] == "analyzed"
        assert second["status"] == "enriched"

    @pytest.mark.asyncio
    async def test_abort_before_start_does_no_work(self, company_store, analyzer):
        """An abort requested before the first item stops the run at once."""
        run = SyncRun(kind=RunKind.SYNC)
        run.request_abort()
        runner = build_runner(company_store, FakeSource([make_program(1)]), analyzer=analyzer)

        result = await runner.execute(run)

        assert result is None
        assert run.state is RunState.ABORTED
        assert not await company_store.list_keys("programs")


class TestAnalyzeAll:
    @pytest.mark.asyncio
    async def test_skips_analyzed_programs(self, company_store, analyzer):
        """analyze-all only analyzes programs without a prior analysis."""
        for n in (1, 2):
            await seed_program(company_store, make_program(n), **ANALYZED)
        await seed_program(company_store, make_program(3), enrichmentPhase=3, status="enriched")
        runner = build_runner(company_store, analyzer=analyzer)
        log = EventLog()

        result = await runner.execute(SyncRun(kind=RunKind.ANALYZE_ALL), log)

        assert result["kind"] == "analyze-all"
        assert (result["processed"], result["skipped"]) == (1, 2)
        assert analyzer.calls["analyze_fit"] == 1
        assert {p["phase"] for p in log.progress} == {0}
        assert log.progress[-1]["percent"] == 100

    @pytest.mark.asyncio
    async def test_forced_analyzes_everything(self, company_store, analyzer):
        for n in (1, 2):
            await seed_program(company_store, make_program(n), **ANALYZED)
        runner = build_runner(company_store, analyzer=analyzer)

        result = await runner.execute(SyncRun(kind=RunKind.ANALYZE_ALL, force_reanalyze=True))

        assert (result["processed"], result["skipped"]) == (2, 0)


class TestBenefitAnalysis:
    @pytest.mark.asyncio
    async def test_analyzes_unanalyzed_benefits(self, company_store, analyzer):
        """Each benefit without analyzedAt gets an analysis note."""
        await company_store.write(
            "benefits/benefit-b1",
            {"type": "benefit", "id": "b1", "programName": "고용창출장려금", "receivedAmount": 9_000_000},
        )
        await company_store.write(
            "benefits/benefit-b2",
            {"type": "benefit", "id": "b2", "programName": "일자리안정자금", "analyzedAt": "2026-02-01"},
        )
        await company_store.write("benefits/tax-scan-abc", {"type": "tax-scan"})
        runner = build_runner(company_store, analyzer=analyzer)

        result = await runner.execute(SyncRun(kind=RunKind.BENEFIT_ANALYZE_ALL))

        assert (result["processed"], result["skipped"]) == (1, 1)
        analysis, _ = await company_store.read("benefits/analysis-b1")
        assert analysis["isEligible"] is True
        assert analysis["estimatedRefund"] == 1_200_000
        benefit, _ = await company_store.read("benefits/benefit-b1")
        assert benefit["status"] == "refund_eligible"
        assert benefit["analyzedAt"]


class TestPacing:
    @pytest.mark.asyncio
    async def test_analyzer_calls_are_spaced(self, company_store, analyzer):
        """Every analyzer call after the first waits out the interval."""
        clock = FakeClock()
        pacer = PaceLimiter(2.0, clock=clock, sleep=clock.sleep, name="analyzer")
        runner = build_runner(
            company_store,
            FakeSource([make_program(1), make_program(2)]),
            analyzer=analyzer,
            analyzer_pacer=pacer,
        )

        await runner.execute(SyncRun(kind=RunKind.SYNC))

        # prescreen + 2 enrich + 2 fit + 2 strategy
        assert pacer.calls == 7
        assert clock.sleeps == [2.0] * 6
