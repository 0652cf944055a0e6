from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

import pytest

from customs_sync.domain.results import BatchStatus, Page, StopReason
from customs_sync.errors import MutationError, PersistenceError, TransportError
from customs_sync.infrastructure.stores import InMemoryCursorStore, InMemorySummaryStore
from customs_sync.orchestrator import BatchContext, BatchOrchestrator, generate_batch_id
from tests.fakes import START, FakeClock, FakeSink, FakeSource, RecordingTelemetry, make_record, make_settings

VACIER = "Vacier"
UNFULFILLED = "Unfulfilled"
CURSOR_NAME = "main"
PAGE_COST = 20
MUTATION_COST = 10


def _day(n: int) -> datetime:
    return datetime(2025, 5, n, 12, 0, tzinfo=timezone.utc)


class _BrokenSummaryStore(InMemorySummaryStore):
    def create(self, summary):
        raise PersistenceError("insert failed")

    def update(self, summary):
        raise PersistenceError("update failed")


class _BrokenCursorStore:
    def __init__(self) -> None:
        self.writes = 0

    def get(self, name):
        raise PersistenceError("select failed")

    def set(self, name, value, updated_by):
        self.writes += 1
        raise PersistenceError("upsert failed")


class _ExplodingTelemetry:
    def emit(self, *args, **kwargs):
        raise RuntimeError("telemetry backend down")

    def flush(self):
        raise RuntimeError("telemetry backend down")


def _run(context: BatchContext):
    return BatchOrchestrator(context).run_batch()


def test_batch_id_format(clock: FakeClock) -> None:
    batch_id = generate_batch_id(clock)

    assert re.fullmatch(r"batch_\d{13}_[0-9a-f]{5}", batch_id)
    assert batch_id.split("_")[1] == str(int(START.timestamp() * 1000))


def test_happy_path_aggregates_and_advances_cursor(build_context, telemetry: RecordingTelemetry) -> None:
    source = FakeSource(
        {
            VACIER: [
                Page(
                    [
                        make_record("a", order_date=_day(2)),
                        make_record("b", destination="DE", order_date=_day(9)),
                        make_record("c", order_date=_day(5)),
                    ],
                    "p2",
                    True,
                    PAGE_COST,
                ),
                Page([make_record("d", total="0", order_date=_day(7))], None, False, PAGE_COST),
            ]
        }
    )
    sink = FakeSink(cost=MUTATION_COST)
    summaries = InMemorySummaryStore()
    cursors = InMemoryCursorStore()

    summary = _run(build_context(source=source, sink=sink, cursor_store=cursors, summary_store=summaries))

    assert summary.status is BatchStatus.COMPLETED
    assert summary.stop_reason is None
    assert summary.records_queried == 4
    assert summary.records_processed == 2
    assert summary.records_skipped == 2
    assert summary.errors_count == 0
    assert summary.credits_used == 2 * PAGE_COST + 4 * MUTATION_COST
    assert summary.completed_at is not None
    # watermark comes from processed records only, not from skipped "b"
    assert cursors.get(CURSOR_NAME).last_processed_date == _day(5)
    assert cursors.get(CURSOR_NAME).updated_by_batch_id == summary.batch_id
    assert summaries.get(summary.batch_id).status is BatchStatus.COMPLETED
    assert telemetry.names()[0] == "batch_started"
    completed = next(fields for event, _, fields in telemetry.events if event.value == "batch_completed")
    assert completed["requests_in_window"] == 2 + 4
    assert completed["credits_remaining"] > 0
    assert telemetry.flushes == 1


def test_first_run_queries_from_configured_start_date(build_context) -> None:
    source = FakeSource()
    cursors = InMemoryCursorStore()

    _run(build_context(source=source, cursor_store=cursors))

    record_filter, page_cursor = source.calls[0]
    assert record_filter.date_from == datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert record_filter.date_to is None
    assert record_filter.customer_account_id == "acct-1"
    assert page_cursor is None
    assert cursors.get(CURSOR_NAME).last_processed_date == datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_existing_cursor_sets_query_start_and_never_regresses(build_context) -> None:
    cursors = InMemoryCursorStore()
    cursors.set(CURSOR_NAME, _day(20), "batch_old")
    source = FakeSource({VACIER: [Page([make_record("a", order_date=_day(3))], None, False, 1)]})

    summary = _run(build_context(source=source, cursor_store=cursors))

    assert source.calls[0][0].date_from == _day(20)
    assert summary.records_processed == 1
    assert cursors.get(CURSOR_NAME).last_processed_date == _day(20)
    assert cursors.get(CURSOR_NAME).updated_by_batch_id == "batch_old"


def test_quota_exhaustion_mid_batch_completes_early(build_context) -> None:
    settings = make_settings(
        quota_max_credits=1000,
        quota_replenish_rate=1.0,
        quota_credit_buffer=100,
        estimated_record_cost=50,
        estimated_page_cost=PAGE_COST,
        max_quota_wait_seconds=5,
        feature_unfulfilled_status=True,
    )
    source = FakeSource(
        {
            VACIER: [
                Page(
                    [make_record("a", order_date=_day(1)), make_record("b"), make_record("c")],
                    None,
                    False,
                    PAGE_COST,
                )
            ],
            UNFULFILLED: [Page([make_record("z")], None, False, PAGE_COST)],
        }
    )
    # the remote reports an empty budget after the first record's mutations
    sink = FakeSink(cost=MUTATION_COST, credits_remaining=0)
    cursors = InMemoryCursorStore()

    summary = _run(build_context(settings=settings, source=source, sink=sink, cursor_store=cursors))

    assert summary.status is BatchStatus.COMPLETED
    assert summary.stop_reason is StopReason.QUOTA_EXHAUSTED
    assert summary.records_queried == 3
    assert summary.records_processed == 1
    assert summary.records_skipped == 0
    assert summary.errors_count == 0
    assert [rid for rid, _ in sink.updates] == ["a"]
    assert all(f.fulfillment_status == VACIER for f, _ in source.calls)
    assert cursors.get(CURSOR_NAME).last_processed_date == datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_early_stop_keeps_unreached_filter_fetchable_next_run(
    build_context, telemetry: RecordingTelemetry
) -> None:
    start = datetime(2025, 1, 1, tzinfo=timezone.utc)
    settings = make_settings(
        quota_max_credits=1000,
        quota_replenish_rate=1.0,
        estimated_page_cost=PAGE_COST,
        max_quota_wait_seconds=5,
        feature_unfulfilled_status=True,
    )
    cursors = InMemoryCursorStore()
    first_source = FakeSource(
        {
            VACIER: [
                Page(
                    [make_record("v1", order_date=_day(10)), make_record("v2", order_date=_day(11))],
                    None,
                    False,
                    PAGE_COST,
                )
            ],
            UNFULFILLED: [Page([make_record("u", order_date=_day(5))], None, False, PAGE_COST)],
        }
    )

    first = _run(
        build_context(
            settings=settings,
            source=first_source,
            sink=FakeSink(cost=MUTATION_COST, credits_remaining=0),
            cursor_store=cursors,
        )
    )

    assert first.stop_reason is StopReason.QUOTA_EXHAUSTED
    assert first.records_processed == 1
    assert [f.fulfillment_status for f, _ in first_source.calls] == [VACIER]
    assert cursors.get(CURSOR_NAME).last_processed_date == start
    assert "cursor_unchanged" in telemetry.names()

    second_source = FakeSource(
        {
            VACIER: [Page([make_record("v2", order_date=_day(11))], None, False, PAGE_COST)],
            UNFULFILLED: [Page([make_record("u", order_date=_day(5))], None, False, PAGE_COST)],
        }
    )
    second_sink = FakeSink(cost=MUTATION_COST)

    second = _run(build_context(settings=settings, source=second_source, sink=second_sink, cursor_store=cursors))

    assert second.stop_reason is None
    unfulfilled_filter = next(f for f, _ in second_source.calls if f.fulfillment_status == UNFULFILLED)
    assert unfulfilled_filter.date_from <= _day(5)
    assert [rid for rid, _ in second_sink.updates] == ["v2", "u"]
    assert cursors.get(CURSOR_NAME).last_processed_date == _day(11)


def test_quota_wait_within_limit_sleeps_and_continues(build_context, clock: FakeClock) -> None:
    settings = make_settings(
        quota_max_credits=1000,
        quota_replenish_rate=100.0,
        quota_credit_buffer=100,
        estimated_record_cost=50,
        estimated_page_cost=PAGE_COST,
        max_quota_wait_seconds=10,
    )
    source = FakeSource({VACIER: [Page([make_record("a"), make_record("b")], None, False, PAGE_COST)]})
    sink = FakeSink(cost=MUTATION_COST, credits_remaining=0)

    summary = _run(build_context(settings=settings, source=source, sink=sink))

    assert summary.stop_reason is None
    assert summary.records_processed == 2
    assert clock.sleeps == [2.0]


def test_fetch_failure_aborts_only_that_filter(build_context) -> None:
    settings = make_settings(feature_unfulfilled_status=True)
    source = FakeSource(
        {
            VACIER: [
                Page([make_record("a", order_date=_day(2))], "p2", True, 1),
                TransportError("HTTP 502 after retries", status_code=502),
            ],
            UNFULFILLED: [Page([make_record("u", order_date=_day(4))], None, False, 1)],
        }
    )

    cursors = InMemoryCursorStore()

    summary = _run(build_context(settings=settings, source=source, cursor_store=cursors))

    assert summary.status is BatchStatus.COMPLETED
    assert summary.records_processed == 2
    assert summary.errors_count == 1
    assert summary.error_details[0].record_id == f"filter:{VACIER}"
    assert "502" in summary.error_details[0].message
    assert [f.fulfillment_status for f, _ in source.calls] == [VACIER, VACIER, UNFULFILLED]
    # pages after the failure were never seen, so the watermark stays put
    assert cursors.get(CURSOR_NAME).last_processed_date == datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_record_errors_are_counted_and_error_list_is_bounded(build_context) -> None:
    settings = make_settings(max_error_details=2)
    records = [make_record(f"r{i}") for i in range(4)]
    sink = FakeSink(fail_update={f"r{i}": MutationError(f"rejected r{i}") for i in range(3)})
    source = FakeSource({VACIER: [Page(records, None, False, 1)]})

    summary = _run(build_context(settings=settings, source=source, sink=sink))

    assert summary.status is BatchStatus.COMPLETED
    assert summary.errors_count == 3
    assert [d.record_id for d in summary.error_details] == ["r0", "r1"]
    assert summary.error_details[0].order_number == "#r0"
    assert summary.records_processed == 1


def test_time_limit_stops_between_records(build_context, clock: FakeClock) -> None:
    settings = make_settings(max_run_seconds=280)
    source = FakeSource({VACIER: [Page([make_record("a"), make_record("b")], "p2", True, 1)]})
    sink = FakeSink(on_call=lambda: clock.advance(150))

    summary = _run(build_context(settings=settings, source=source, sink=sink))

    assert summary.status is BatchStatus.COMPLETED
    assert summary.stop_reason is StopReason.TIME_LIMIT
    assert summary.records_processed == 1
    assert len(source.calls) == 1


def test_unexpected_failure_marks_batch_failed_but_still_persists(build_context) -> None:
    settings = make_settings(feature_vacier_status=False, feature_unfulfilled_status=False)
    summaries = InMemorySummaryStore()

    summary = _run(build_context(settings=settings, summary_store=summaries))

    assert summary.status is BatchStatus.FAILED
    assert summary.errors_count == 1
    assert summary.error_details[0].record_id == "batch"
    assert summary.completed_at is not None
    assert summaries.get(summary.batch_id).status is BatchStatus.FAILED


def test_persistence_failures_are_logged_not_fatal(build_context) -> None:
    cursors = _BrokenCursorStore()
    source = FakeSource({VACIER: [Page([make_record("a", order_date=_day(2))], None, False, 1)]})

    summary = _run(build_context(source=source, cursor_store=cursors, summary_store=_BrokenSummaryStore()))

    assert summary.status is BatchStatus.COMPLETED
    assert summary.records_processed == 1
    assert source.calls[0][0].date_from == datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert cursors.writes == 0


def test_cursor_write_failure_is_swallowed(build_context, telemetry: RecordingTelemetry) -> None:
    class _ReadOnlyCursorStore(InMemoryCursorStore):
        def set(self, name, value, updated_by):
            if updated_by is not None:
                raise PersistenceError("upsert failed")
            super().set(name, value, updated_by)

    source = FakeSource({VACIER: [Page([make_record("a", order_date=_day(2))], None, False, 1)]})

    summary = _run(build_context(source=source, cursor_store=_ReadOnlyCursorStore()))

    assert summary.status is BatchStatus.COMPLETED
    assert "cursor_error" in telemetry.names()


def test_telemetry_failures_never_affect_outcome(build_context) -> None:
    source = FakeSource({VACIER: [Page([make_record("a")], None, False, 1)]})

    summary = _run(build_context(source=source, telemetry=_ExplodingTelemetry()))

    assert summary.status is BatchStatus.COMPLETED
    assert summary.records_processed == 1


def test_dry_run_mutates_nothing_and_keeps_cursor(build_context) -> None:
    cursors = InMemoryCursorStore()
    cursors.set(CURSOR_NAME, _day(1), "batch_old")
    source = FakeSource({VACIER: [Page([make_record("a", order_date=_day(3))], None, False, 1)]})
    sink = FakeSink()

    summary = _run(build_context(source=source, sink=sink, cursor_store=cursors, dry_run=True))

    assert summary.dry_run is True
    assert summary.records_processed == 1
    assert sink.call_count == 0
    assert cursors.get(CURSOR_NAME).last_processed_date == _day(1)


def test_backfill_uses_configured_window_and_ignores_cursor(build_context) -> None:
    settings = make_settings(
        feature_manual_backfill=True,
        backfill_start_date=_day(1),
        backfill_end_date=_day(10),
    )
    cursors = InMemoryCursorStore()
    source = FakeSource({VACIER: [Page([make_record("a", order_date=_day(3))], None, False, 1)]})

    summary = _run(build_context(settings=settings, source=source, cursor_store=cursors))

    record_filter = source.calls[0][0]
    assert (record_filter.date_from, record_filter.date_to) == (_day(1), _day(10))
    assert summary.records_processed == 1
    assert cursors.get(CURSOR_NAME) is None


def test_throttle_is_reset_for_each_run(build_context) -> None:
    context = build_context(source=FakeSource({VACIER: [Page([make_record("a")], None, False, 1)]}))
    context.throttle.record_usage(999)

    summary = _run(context)

    assert summary.credits_used == 1 + 2 * 10


def test_context_builds_default_throttle_from_settings(clock: FakeClock) -> None:
    context = BatchContext(
        settings=make_settings(quota_max_credits=321),
        source=FakeSource(),
        sink=FakeSink(),
        cursor_store=InMemoryCursorStore(),
        summary_store=InMemorySummaryStore(),
        clock=clock,
        telemetry=RecordingTelemetry(),
    )

    assert context.throttle.limits.max_credits == 321
    assert context.dry_run is False


def test_context_close_runs_closers_once(clock: FakeClock) -> None:
    calls = []
    context = BatchContext(
        settings=make_settings(),
        source=FakeSource(),
        sink=FakeSink(),
        cursor_store=InMemoryCursorStore(),
        summary_store=InMemorySummaryStore(),
        clock=clock,
        closers=[lambda: calls.append("pool")],
    )

    with context:
        pass
    context.close()

    assert calls == ["pool"]


@pytest.mark.parametrize("elapsed_days", [0, 1])
def test_summary_duration_uses_clock(build_context, clock: FakeClock, elapsed_days: int) -> None:
    sink = FakeSink(on_call=lambda: clock.advance(timedelta(days=elapsed_days).total_seconds()))
    source = FakeSource({VACIER: [Page([make_record("a")], None, False, 1)]})

    summary = _run(build_context(source=source, sink=sink))

    assert summary.duration_seconds == 2 * elapsed_days * 86400
