"""
Tests for the validity monitor cycle: purge, re-validation, dry runs and overlap.
"""
import asyncio
from datetime import timedelta

import pytest

from core.models import JobPosting, ValidityStatus
from core.validity_monitor import ValidityMonitor


class StubLinkValidator:
    def __init__(self, results=None, error=None):
        self.results = results or {}
        self.error = error
        self.checked = []

    async def check(self, url):
        self.checked.append(url)
        if self.error is not None:
            raise self.error
        return self.results.get(url)


class BlockingLinkValidator:
    """Holds the cycle open until released."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def check(self, url):
        self.entered.set()
        await self.release.wait()
        return None


@pytest.fixture
def source(store):
    return store.ensure_source("alpha", "https://alpha.example.com")


@pytest.fixture
def add_posting(store, source, clock):
    def _add(title="Engineer", **kwargs):
        kwargs.setdefault("is_scraped", True)
        kwargs.setdefault("source_id", source.id)
        kwargs.setdefault("created_at", clock())
        kwargs.setdefault("expires_at", clock() + timedelta(days=30))
        kwargs.setdefault("apply_url", f"https://alpha.example.com/{title.lower()}")
        posting = JobPosting(title=title, company_name="Acme", location="Berlin", **kwargs)
        store.insert_posting(posting)
        return posting
    return _add


@pytest.fixture
def monitor(store, broadcaster, clock):
    return ValidityMonitor(
        store,
        broadcaster=broadcaster,
        clock=clock,
        interval_seconds=3600,
        batch_size=50,
        check_delay_seconds=0,
    )


@pytest.fixture
def mixed_postings(store, add_posting, clock):
    """3 expired, 2 failing re-validation, 1 healthy."""
    retired = store.ensure_source("retired")
    store.set_source_active("retired", False)

    past = clock() - timedelta(days=1)
    return {
        "expired_scraped": [add_posting("Old A", expires_at=past), add_posting("Old B", expires_at=past)],
        "expired_manual": add_posting("Manual", is_scraped=False, expires_at=past),
        "deadline_passed": add_posting("Closed", application_deadline=past),
        "inactive_source": add_posting("Orphan", source_id=retired.id),
        "healthy": add_posting("Healthy"),
    }


@pytest.mark.asyncio
async def test_dry_run_reports_without_modifying(monitor, store, mixed_postings):
    before = {p.id: (p.is_active, p.validity_status) for p in store.all_postings()}

    report = await monitor.run_cycle(dry_run=True)

    assert report.jobs_removed == 5
    assert report.jobs_expired == 3
    assert report.jobs_invalid == 2
    assert report.message == "Would remove 5 jobs (3 expired, 2 invalid)"
    after = {p.id: (p.is_active, p.validity_status) for p in store.all_postings()}
    assert after == before
    assert monitor.last_cleanup_at is None


@pytest.mark.asyncio
async def test_cycle_purges_and_invalidates(monitor, store, mixed_postings, clock):
    report = await monitor.run_cycle()

    assert report.message == "Removed 5 jobs (3 expired, 2 invalid)"
    assert report.jobs_deleted == 2
    assert report.jobs_deactivated == 1
    assert report.jobs_revalidated == 1

    for posting in mixed_postings["expired_scraped"]:
        assert store.get_posting(posting.id) is None

    manual = store.get_posting(mixed_postings["expired_manual"].id)
    assert manual.is_active is False
    assert manual.validity_status == ValidityStatus.EXPIRED

    for key in ("deadline_passed", "inactive_source"):
        posting = store.get_posting(mixed_postings[key].id)
        assert posting.is_active is False
        assert posting.validity_status == ValidityStatus.NOT_FOUND

    healthy = store.get_posting(mixed_postings["healthy"].id)
    assert healthy.is_active is True
    assert healthy.last_validated == clock()
    assert monitor.last_cleanup_at == clock()


@pytest.mark.asyncio
async def test_second_cycle_is_a_no_op(monitor, mixed_postings):
    await monitor.run_cycle()
    report = await monitor.run_cycle()
    assert report.jobs_removed == 0
    assert report.jobs_revalidated == 0
    assert monitor.cycles_completed == 2


@pytest.mark.asyncio
async def test_stale_postings_fail_revalidation(monitor, store, add_posting, clock):
    stale = add_posting("Ancient", created_at=clock() - timedelta(days=100))
    recent = add_posting("Fresh", created_at=clock() - timedelta(days=10))

    report = await monitor.run_cycle()
    assert report.jobs_invalid == 1
    assert store.get_posting(stale.id).validity_status == ValidityStatus.NOT_FOUND
    assert store.get_posting(recent.id).is_active is True


@pytest.mark.asyncio
async def test_recently_validated_postings_are_not_rechecked(monitor, store, add_posting, clock):
    add_posting("Checked", last_validated=clock() - timedelta(days=2))
    add_posting("Due", last_validated=clock() - timedelta(days=8))

    report = await monitor.run_cycle()
    assert report.jobs_revalidated == 1


@pytest.mark.asyncio
async def test_batch_size_bounds_revalidation(store, add_posting, clock):
    for i in range(5):
        add_posting(f"Engineer {i}")
    monitor = ValidityMonitor(store, clock=clock, batch_size=2, check_delay_seconds=0)

    report = await monitor.run_cycle()
    assert report.jobs_revalidated == 2


@pytest.mark.asyncio
async def test_link_check_failures_invalidate(store, add_posting, clock):
    gone = add_posting("Gone")
    alive = add_posting("Alive")
    validator = StubLinkValidator({gone.apply_url: ValidityStatus.NOT_FOUND})
    monitor = ValidityMonitor(store, link_validator=validator, clock=clock, check_delay_seconds=0)

    report = await monitor.run_cycle()
    assert report.jobs_invalid == 1
    assert store.get_posting(gone.id).validity_status == ValidityStatus.NOT_FOUND
    assert store.get_posting(alive.id).is_active is True
    assert sorted(validator.checked) == sorted([gone.apply_url, alive.apply_url])


@pytest.mark.asyncio
async def test_validation_errors_mark_invalid_url(store, add_posting, clock):
    posting = add_posting("Broken")
    validator = StubLinkValidator(error=RuntimeError("connection reset"))
    monitor = ValidityMonitor(store, link_validator=validator, clock=clock, check_delay_seconds=0)

    await monitor.run_cycle()
    assert store.get_posting(posting.id).validity_status == ValidityStatus.INVALID_URL


@pytest.mark.asyncio
async def test_summary_and_deadline_alert_are_broadcast(monitor, broadcaster, add_posting, clock):
    add_posting("Closing Soon", application_deadline=clock() + timedelta(hours=2))
    events = broadcaster.subscribe()

    await monitor.run_cycle()

    summary = events.get_nowait()
    assert summary["type"] == "CLEANUP_SUMMARY"
    assert summary["data"]["approachingDeadlines"] == 1
    alert = events.get_nowait()
    assert alert["type"] == "MONITORING_ALERT"
    assert alert["data"]["count"] == 1


@pytest.mark.asyncio
async def test_timer_tick_skips_while_cycle_running(store, add_posting, clock):
    add_posting("Slow")
    validator = BlockingLinkValidator()
    monitor = ValidityMonitor(store, link_validator=validator, clock=clock, check_delay_seconds=0)

    in_flight = asyncio.create_task(monitor.run_cycle())
    await asyncio.wait_for(validator.entered.wait(), timeout=2)

    assert monitor.cycle_in_progress is True
    assert await monitor.run_cycle_if_idle() is None
    assert monitor.cycles_skipped == 1

    validator.release.set()
    report = await in_flight
    assert report.cycle == 1
    assert monitor.cycles_completed == 1


@pytest.mark.asyncio
async def test_manual_trigger_waits_for_running_cycle(store, add_posting, clock):
    add_posting("Slow")
    validator = BlockingLinkValidator()
    monitor = ValidityMonitor(store, link_validator=validator, clock=clock, check_delay_seconds=0)

    first = asyncio.create_task(monitor.run_cycle())
    await asyncio.wait_for(validator.entered.wait(), timeout=2)
    second = asyncio.create_task(monitor.run_cycle())
    await asyncio.sleep(0)
    assert not second.done()

    validator.release.set()
    reports = await asyncio.gather(first, second)
    assert [r.cycle for r in reports] == [1, 2]


@pytest.mark.asyncio
async def test_start_runs_a_cycle_and_stop_halts(monitor, add_posting):
    add_posting("Engineer")
    await monitor.start()
    try:
        for _ in range(100):
            if monitor.cycles_completed:
                break
            await asyncio.sleep(0.01)
    finally:
        await monitor.stop(timeout=2)

    assert monitor.cycles_completed == 1
    assert monitor.running is False
    assert monitor.get_status()["running"] is False


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_cycle(store, add_posting, clock):
    posting = add_posting("Slow")
    validator = BlockingLinkValidator()
    monitor = ValidityMonitor(store, link_validator=validator, clock=clock, check_delay_seconds=0)

    await monitor.start()
    await asyncio.wait_for(validator.entered.wait(), timeout=2)

    stopping = asyncio.create_task(monitor.stop(timeout=5))
    await asyncio.sleep(0.05)
    assert not stopping.done()
    assert monitor.cycle_in_progress is True

    validator.release.set()
    await asyncio.wait_for(stopping, timeout=2)

    assert monitor.running is False
    assert monitor.cycles_completed == 1
    assert store.get_posting(posting.id).last_validated == clock()


@pytest.mark.asyncio
async def test_source_check_applies_only_to_postings_with_a_source(monitor, store, add_posting, clock):
    unsourced = add_posting("Unsourced", source_id=None)
    orphaned = add_posting("Orphaned", source_id="deleted-source")

    report = await monitor.run_cycle()

    assert report.jobs_invalid == 1
    assert store.get_posting(unsourced.id).is_active is True
    assert store.get_posting(unsourced.id).last_validated == clock()
    assert store.get_posting(orphaned.id).validity_status == ValidityStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_cleanup_stats(monitor, mixed_postings):
    await monitor.run_cycle()
    stats = await monitor.get_cleanup_stats()

    assert stats["totalJobs"] == 4
    assert stats["activeJobs"] == 1
    assert stats["inactiveJobs"] == 3
    assert stats["expiredJobs"] == 1
    assert stats["invalidJobs"] == 2
    assert stats["recentlyValidated"] == 4
    assert stats["lastCleanup"] is not None
