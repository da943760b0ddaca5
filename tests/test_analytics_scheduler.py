"""Tests for pinscheduler.scheduling.analytics_scheduler."""

import asyncio
from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pinscheduler.exceptions import PinterestAPIError, ValidationError
from pinscheduler.scheduling.analytics_scheduler import AnalyticsScheduler, AnalyticsSummary
from pinscheduler.scheduling.models import JobStatus, PinMetrics


@pytest.fixture
def analytics(store, accounts, analytics_client, clock):
    return AnalyticsScheduler(
        store=store,
        accounts=accounts,
        analytics_client=analytics_client,
        startup_delay_seconds=0,
        job_delay_seconds=0,
        account_delay_seconds=0,
        clock=clock,
    )


@pytest.fixture
def make_posted(make_job, clock):
    """Factory for posted jobs with an external pin id."""

    def _make(external_id, **overrides):
        values = {
            "status": JobStatus.POSTED,
            "external_id": external_id,
            "posted_at": clock() - timedelta(days=2),
        }
        values.update(overrides)
        return make_job(**values)

    return _make


def _summary_response(impressions, saves, clicks):
    return {
        "all": {
            "summary_metrics": {
                "IMPRESSION": impressions,
                "SAVE": saves,
                "PIN_CLICK": clicks,
            }
        }
    }


# =============================================================================
# Refresh
# =============================================================================


class TestRefresh:
    """Fetching and persisting metrics for stale posted pins."""

    @pytest.mark.asyncio
    async def test_persists_normalized_metrics(
        self, analytics, store, analytics_client, make_posted, clock
    ):
        job = store.add(make_posted("pin-1"))
        analytics_client.responses["pin-1"] = _summary_response(200, 10, 6)

        summary = await analytics.run_once()

        assert summary.refreshed == 1
        metrics = store.jobs[job.id].metrics
        assert metrics.impressions == 200
        assert metrics.saves == 10
        assert metrics.clicks == 6
        assert metrics.engagement_rate == 8.0
        assert metrics.click_through_rate == 3.0
        assert metrics.save_rate == 5.0
        assert metrics.last_updated == clock()

    @pytest.mark.asyncio
    async def test_unknown_shape_stores_zeros(
        self, analytics, store, analytics_client, make_posted, clock
    ):
        job = store.add(make_posted("pin-1"))
        analytics_client.responses["pin-1"] = {"unexpected": True}

        summary = await analytics.run_once()

        assert summary.refreshed == 1
        metrics = store.jobs[job.id].metrics
        assert (metrics.impressions, metrics.clicks, metrics.saves) == (0, 0, 0)
        assert metrics.last_updated == clock()

    @pytest.mark.asyncio
    async def test_only_posted_pins_with_external_id(
        self, analytics, store, analytics_client, make_job, make_posted
    ):
        store.add(make_job())
        store.add(make_job(status=JobStatus.POSTED, external_id=None))
        store.add(make_posted("pin-1"))

        await analytics.run_once()

        assert [call[1] for call in analytics_client.calls] == ["pin-1"]

    @pytest.mark.asyncio
    async def test_failure_is_counted_and_pass_continues(
        self, analytics, store, analytics_client, make_posted
    ):
        broken = store.add(make_posted("pin-1"))
        healthy = store.add(make_posted("pin-2"))
        analytics_client.responses["pin-1"] = PinterestAPIError("boom", status_code=500)
        analytics_client.responses["pin-2"] = _summary_response(10, 1, 1)

        summary = await analytics.run_once()

        assert summary.failed == 1
        assert summary.refreshed == 1
        assert store.jobs[broken.id].metrics.last_updated is None
        assert store.jobs[healthy.id].metrics.impressions == 10

    @pytest.mark.asyncio
    async def test_event_log_failure_keeps_refresh(
        self, store, accounts, analytics_client, make_posted, clock, caplog
    ):
        events = MagicMock()
        events.record_job = AsyncMock(side_effect=OSError("disk full"))
        job = store.add(make_posted("pin-1"))
        analytics_client.responses["pin-1"] = _summary_response(50, 2, 1)
        analytics = AnalyticsScheduler(
            store=store,
            accounts=accounts,
            analytics_client=analytics_client,
            job_delay_seconds=0,
            account_delay_seconds=0,
            event_logger=events,
            clock=clock,
        )

        summary = await analytics.run_once()

        assert (summary.refreshed, summary.failed) == (1, 0)
        assert store.jobs[job.id].metrics.impressions == 50
        assert "Failed to record metrics event" in caplog.text


# =============================================================================
# Selection
# =============================================================================


class TestSelection:
    @pytest.mark.asyncio
    async def test_staleness_window(
        self, analytics, store, analytics_client, make_posted, clock
    ):
        store.add(make_posted("fresh", metrics=PinMetrics(last_updated=clock() - timedelta(hours=1))))
        store.add(make_posted("stale", metrics=PinMetrics(last_updated=clock() - timedelta(hours=13))))
        store.add(make_posted("never"))

        await analytics.run_once()

        assert sorted(call[1] for call in analytics_client.calls) == ["never", "stale"]

    @pytest.mark.asyncio
    async def test_force_ignores_staleness(
        self, analytics, store, analytics_client, make_posted, clock
    ):
        store.add(make_posted("fresh", metrics=PinMetrics(last_updated=clock() - timedelta(hours=1))))

        summary = await analytics.run_once(force=True)

        assert summary.refreshed == 1
        assert analytics_client.calls[0][1] == "fresh"

    @pytest.mark.asyncio
    async def test_groups_by_account_and_uses_its_token(
        self, analytics, store, analytics_client, make_posted, sample_payload
    ):
        store.add(make_posted("pin-default"))
        store.add(make_posted("pin-acct", payload=replace(sample_payload, account_id="acct-1")))

        summary = await analytics.run_once()

        assert summary.accounts == 2
        tokens = {call[1]: call[0] for call in analytics_client.calls}
        assert tokens == {"pin-default": "token-default", "pin-acct": "token-acct-1"}

    @pytest.mark.asyncio
    async def test_account_without_token_is_skipped(
        self, analytics, store, analytics_client, make_posted
    ):
        store.add(make_posted("pin-other", owner="user-2"))
        store.add(make_posted("pin-1"))

        summary = await analytics.run_once()

        assert summary.skipped_accounts == 1
        assert summary.accounts == 1
        assert [call[1] for call in analytics_client.calls] == ["pin-1"]

    @pytest.mark.asyncio
    async def test_token_lookup_error_skips_account(
        self, store, accounts, analytics_client, make_posted, clock
    ):
        accounts.get_access_token = AsyncMock(side_effect=RuntimeError("db down"))
        store.add(make_posted("pin-1"))
        analytics = AnalyticsScheduler(
            store=store,
            accounts=accounts,
            analytics_client=analytics_client,
            job_delay_seconds=0,
            account_delay_seconds=0,
            clock=clock,
        )

        summary = await analytics.run_once()

        assert summary.skipped_accounts == 1
        assert analytics_client.calls == []

    @pytest.mark.asyncio
    async def test_per_account_limit(
        self, store, accounts, analytics_client, make_posted, clock
    ):
        for n in range(5):
            store.add(make_posted(f"pin-{n}"))
        analytics = AnalyticsScheduler(
            store=store,
            accounts=accounts,
            analytics_client=analytics_client,
            per_account_limit=2,
            job_delay_seconds=0,
            account_delay_seconds=0,
            clock=clock,
        )

        summary = await analytics.run_once()

        assert summary.refreshed == 2
        assert len(analytics_client.calls) == 2

    @pytest.mark.asyncio
    async def test_large_backlog_does_not_starve_other_accounts(
        self, store, accounts, analytics_client, make_posted, clock
    ):
        """Every account with stale pins is visited in the same pass."""
        accounts.tokens[("user-2", None)] = "token-user-2"
        for n in range(5):
            store.add(make_posted(f"a{n}"))
        store.add(make_posted(
            "b0",
            owner="user-2",
            metrics=PinMetrics(last_updated=clock() - timedelta(days=1)),
        ))
        analytics = AnalyticsScheduler(
            store=store,
            accounts=accounts,
            analytics_client=analytics_client,
            per_account_limit=1,
            job_delay_seconds=0,
            account_delay_seconds=0,
            clock=clock,
        )

        summary = await analytics.run_once()

        assert summary.accounts == 2
        assert summary.refreshed == 2
        refreshed = {call[1] for call in analytics_client.calls}
        assert "b0" in refreshed
        assert len(refreshed & {f"a{n}" for n in range(5)}) == 1


# =============================================================================
# Date range
# =============================================================================


class TestDateRange:
    @pytest.mark.asyncio
    async def test_starts_at_posting_date(self, analytics, store, analytics_client, make_posted, clock):
        store.add(make_posted("pin-1", posted_at=clock() - timedelta(days=3)))

        await analytics.run_once()

        _, _, start, end = analytics_client.calls[0]
        assert start == (clock() - timedelta(days=3)).date()
        assert end == clock().date()

    @pytest.mark.asyncio
    async def test_clamped_to_lookback(self, analytics, store, analytics_client, make_posted, clock):
        store.add(make_posted("pin-1", posted_at=clock() - timedelta(days=400)))

        await analytics.run_once()

        _, _, start, _ = analytics_client.calls[0]
        assert start == (clock() - timedelta(days=90)).date()


# =============================================================================
# Manual sync and pacing
# =============================================================================


class TestManualSync:
    @pytest.mark.asyncio
    async def test_restricted_to_owner(self, analytics, store, analytics_client, accounts, make_posted):
        accounts.tokens[("user-2", None)] = "token-user-2"
        store.add(make_posted("pin-1"))
        store.add(make_posted("pin-2", owner="user-2"))

        summary = await analytics.manual_sync("user-2")

        assert isinstance(summary, AnalyticsSummary)
        assert [call[1] for call in analytics_client.calls] == ["pin-2"]

    @pytest.mark.asyncio
    async def test_requires_owner(self, analytics):
        with pytest.raises(ValidationError):
            await analytics.manual_sync("")

    @pytest.mark.asyncio
    async def test_pauses_between_pins_and_accounts(
        self, store, accounts, analytics_client, make_posted, sample_payload, clock
    ):
        store.add(make_posted("pin-1"))
        store.add(make_posted("pin-2"))
        store.add(make_posted("pin-3", payload=replace(sample_payload, account_id="acct-1")))
        analytics = AnalyticsScheduler(
            store=store,
            accounts=accounts,
            analytics_client=analytics_client,
            job_delay_seconds=1,
            account_delay_seconds=2,
            clock=clock,
        )

        with patch(
            "pinscheduler.scheduling.analytics_scheduler.asyncio.sleep", new=AsyncMock()
        ) as sleep:
            await analytics.run_once()

        assert sorted(c.args[0] for c in sleep.await_args_list) == [1, 2]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_stop_during_startup_delay(self, store, accounts, analytics_client, clock):
        analytics = AnalyticsScheduler(
            store=store,
            accounts=accounts,
            analytics_client=analytics_client,
            startup_delay_seconds=60,
            clock=clock,
        )

        analytics.start()
        assert analytics.is_running
        await asyncio.wait_for(analytics.stop(), timeout=2)

        assert not analytics.is_running
        assert analytics_client.calls == []
