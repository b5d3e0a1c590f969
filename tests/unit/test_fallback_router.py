# =============================================================================
# tests/unit/test_fallback_router.py
# Unit Tests for Remote-First Routing, Offline Queue and Replay
# =============================================================================

import asyncio
import logging

import httpx
import pytest

from portfolio_core.errors import AuthorizationError, ValidationError
from portfolio_core.offline import FallbackRouter, OperationKind, cache_key
from portfolio_core.services import Provenance, ServiceHealth


class TestCacheKey:

    def test_filter_order_does_not_matter(self):
        assert cache_key("skills", {"b": 1, "a": 2}) == cache_key("skills", {"a": 2, "b": 1})

    def test_key_is_prefixed_by_collection(self):
        assert cache_key("skills").startswith("skills:")
        assert cache_key("skills", {"level": "expert"}) != cache_key("skills")


class TestRouterReads:
    """Test the cache -> remote -> local read path"""

    @pytest.mark.asyncio
    async def test_online_read_comes_from_remote_and_is_mirrored(self, router, monitor, remote, local_db):
        remote.seed("skills", [{"id": "s1", "name": "SQL", "level": "beginner"}])
        await monitor.check()

        result = await router.perform_operation("skills", "read", {})

        assert result.provenance == Provenance.REMOTE
        assert result.data == [{"id": "s1", "name": "SQL", "level": "beginner"}]
        assert local_db.get("skills", "s1")["name"] == "SQL"
        assert local_db.sync_status("skills", "s1") == "synced"

    @pytest.mark.asyncio
    async def test_second_read_hits_cache(self, router, monitor, remote):
        remote.seed("skills", [{"id": "s1", "name": "SQL"}])
        await monitor.check()

        await router.perform_operation("skills", OperationKind.READ)
        result = await router.perform_operation("skills", OperationKind.READ)

        assert result.provenance == Provenance.CACHE
        assert remote.calls.count("select:skills") == 1

    @pytest.mark.asyncio
    async def test_offline_read_serves_local_copy(self, router, local_db):
        local_db.put("skills", {"id": "s1", "name": "SQL"})

        result = await router.perform_operation("skills", "read", {"name": "SQL"})

        assert result.success
        assert result.provenance == Provenance.LOCAL
        assert result.data == [{"id": "s1", "name": "SQL"}]
        # Never confirmed by the remote
        assert result.stale is True

    @pytest.mark.asyncio
    async def test_remote_failure_falls_back_to_local(self, router, monitor, remote, cache):
        remote.seed("skills", [{"id": "s1", "name": "SQL"}])
        await monitor.check()
        await router.perform_operation("skills", "read")
        cache.clear()
        remote.fail_next(httpx.ConnectError("reset by peer"), times=3)

        result = await router.perform_operation("skills", "read")

        assert result.provenance == Provenance.LOCAL
        assert result.stale is False
        assert result.attempts == 3
        assert "reset by peer" in result.metadata["reason"]
        assert [r["id"] for r in result.data] == ["s1"]

    @pytest.mark.asyncio
    async def test_local_copy_goes_stale_after_freshness_window(self, router, monitor, remote, cache, clock):
        remote.seed("skills", [{"id": "s1", "name": "SQL"}])
        await monitor.check()
        await router.perform_operation("skills", "read")
        remote.reachable = False
        monitor.force_offline()
        cache.clear()

        clock.advance(60)
        fresh = await router.perform_operation("skills", "read")
        clock.advance(900)
        stale = await router.perform_operation("skills", "read")

        assert fresh.provenance == Provenance.LOCAL and fresh.stale is False
        assert stale.provenance == Provenance.LOCAL and stale.stale is True

    @pytest.mark.asyncio
    async def test_authorization_error_is_raised(self, router, monitor, remote):
        await monitor.check()
        remote.fail_next(AuthorizationError("JWT expired", status_code=401))

        with pytest.raises(AuthorizationError):
            await router.perform_operation("skills", "read")


class TestRouterWrites:
    """Test remote writes and offline queueing"""

    @pytest.mark.asyncio
    async def test_online_create_goes_to_remote(self, router, monitor, remote, local_db):
        await monitor.check()

        result = await router.perform_operation("skills", "create", {"name": "SQL", "level": "beginner"})

        assert result.provenance == Provenance.REMOTE
        record_id = result.data["id"]
        assert [r["id"] for r in remote.rows("skills")] == [record_id]
        assert local_db.sync_status("skills", record_id) == "synced"
        assert router.pending_count == 0

    @pytest.mark.asyncio
    async def test_offline_create_is_queued(self, router, remote, local_db):
        result = await router.perform_operation("skills", "create", {"name": "SQL", "level": "beginner"})

        assert result.success
        assert result.provenance == Provenance.QUEUED
        assert result.metadata["operation_id"]
        assert router.pending_count == 1
        assert local_db.sync_status("skills", result.data["id"]) == "pending"
        assert remote.rows("skills") == []

    @pytest.mark.asyncio
    async def test_failed_remote_write_is_queued_with_reason(self, router, monitor, remote):
        await monitor.check()
        remote.fail_next(httpx.ConnectError("dropped"), times=3)

        result = await router.perform_operation("skills", "create", {"name": "SQL"})

        assert result.provenance == Provenance.QUEUED
        assert "dropped" in result.metadata["reason"]
        assert router.pending_count == 1

    @pytest.mark.asyncio
    async def test_write_invalidates_collection_cache(self, router, monitor, remote):
        await monitor.check()
        await router.perform_operation("skills", "read")

        await router.perform_operation("skills", "create", {"name": "SQL"})
        result = await router.perform_operation("skills", "read")

        assert result.provenance == Provenance.REMOTE
        assert len(result.data) == 1

    @pytest.mark.asyncio
    async def test_offline_update_merges_into_local_record(self, router, local_db):
        local_db.put("skills", {"id": "s1", "name": "SQL", "level": "beginner"})

        result = await router.perform_operation("skills", "update", {"id": "s1", "level": "advanced"})

        assert result.data == {"id": "s1", "name": "SQL", "level": "advanced"}
        assert local_db.get("skills", "s1")["level"] == "advanced"

    @pytest.mark.asyncio
    async def test_offline_delete_removes_local_record(self, router, local_db):
        local_db.put("skills", {"id": "s1", "name": "SQL"})

        result = await router.perform_operation("skills", "delete", {"id": "s1"})

        assert result.provenance == Provenance.QUEUED
        assert local_db.get("skills", "s1") is None

    @pytest.mark.asyncio
    async def test_write_events_are_published(self, monitor, executor, cache, local_db, remote):
        events = []

        async def publisher(channel, event, payload):
            events.append((channel, event, payload["provenance"]))

        router = FallbackRouter(monitor, executor, cache, local_db, remote, publisher=publisher)
        await router.initialize()

        await router.perform_operation("skills", "create", {"name": "SQL"})

        assert events == [("skills", "create", "queued")]
        await router.close()


class TestRouterValidation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", ["update", "delete"])
    async def test_update_and_delete_require_id(self, router, kind):
        with pytest.raises(ValidationError):
            await router.perform_operation("skills", kind, {"name": "SQL"})
        assert router.pending_count == 0

    @pytest.mark.asyncio
    async def test_unknown_kind(self, router):
        with pytest.raises(ValidationError) as exc_info:
            await router.perform_operation("skills", "upsert", {})
        assert exc_info.value.code == "VALID_001"

    @pytest.mark.asyncio
    async def test_collection_required(self, router):
        with pytest.raises(ValidationError):
            await router.perform_operation("", "read")


class TestReplay:
    """Test draining the offline queue"""

    @pytest.mark.asyncio
    async def test_reconnect_replays_queued_write_exactly_once(self, router, monitor, remote, local_db):
        queued = await router.perform_operation("skills", "create", {"name": "SQL", "level": "beginner"})

        await monitor.check()
        report = await router.wait_for_replay()

        assert report.replayed == 1
        assert report.remaining == 0
        assert remote.calls.count("insert:skills") == 1
        assert local_db.sync_status("skills", queued.data["id"]) == "synced"

        again = await router.replay_pending()
        assert again.replayed == 0
        assert remote.calls.count("insert:skills") == 1

    @pytest.mark.asyncio
    async def test_concurrent_replays_send_each_operation_once(self, router, monitor, remote):
        for name in ("SQL", "Python", "React"):
            await router.perform_operation("skills", "create", {"name": name})
        await router.close()
        await monitor.check()

        first, second = await asyncio.gather(router.replay_pending(), router.replay_pending())

        assert first.replayed + second.replayed == 3
        assert remote.calls.count("insert:skills") == 3
        assert len(remote.rows("skills")) == 3

    @pytest.mark.asyncio
    async def test_replay_preserves_enqueue_order(self, router, monitor, remote):
        created = await router.perform_operation("skills", "create", {"name": "SQL", "level": "beginner"})
        skill_id = created.data["id"]
        await router.perform_operation("skills", "update", {"id": skill_id, "level": "advanced"})
        await router.perform_operation("projects", "create", {"title": "Portfolio site"})

        await monitor.check()
        report = await router.wait_for_replay()

        skill_calls = [c for c in remote.calls if c.endswith(":skills")]
        assert skill_calls == ["insert:skills", "update:skills"]
        assert report.replayed == 3
        assert sorted(report.collections) == ["projects", "skills"]
        assert remote.rows("skills")[0]["level"] == "advanced"

    @pytest.mark.asyncio
    async def test_replay_skipped_while_offline(self, router):
        await router.perform_operation("skills", "create", {"name": "SQL"})

        report = await router.replay_pending()

        assert report.skipped is True
        assert report.remaining == 1

    @pytest.mark.asyncio
    async def test_failed_replay_keeps_operation_and_blocks_collection(self, router, monitor, remote):
        await router.perform_operation("skills", "create", {"name": "SQL"})
        remote.fail_next(httpx.ConnectError("flaky"), times=3)

        await monitor.check()
        report = await router.wait_for_replay()

        assert report.failed == 1
        assert report.remaining == 1
        pending = router.pending_operations()
        assert pending[0].attempts == 1
        assert "flaky" in pending[0].last_error

        # Later writes queue behind the stuck one even though the link is up
        later = await router.perform_operation("skills", "create", {"name": "Python"})
        assert later.provenance == Provenance.QUEUED
        assert router.pending_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_operation_goes_to_dead_letters(self, router, monitor, remote):
        router.max_replay_attempts = 2
        queued = await router.perform_operation("skills", "create", {"name": "SQL"})
        op_id = queued.metadata["operation_id"]
        remote.fail_next(ValidationError("duplicate key value", field="name"), times=2)

        await monitor.check()
        first = await router.wait_for_replay()
        second = await router.replay_pending()

        assert first.failed == 1
        assert second.dead_lettered == 1
        assert router.pending_count == 0

        letters = router.dead_letters()
        assert [letter.operation.id for letter in letters] == [op_id]
        assert letters[0].error["code"] == "QUEUE_001"
        assert letters[0].operation.attempts == 2
        assert router.health() == ServiceHealth.DEGRADED

    @pytest.mark.asyncio
    async def test_dead_letter_does_not_block_later_operations(self, router, monitor, remote):
        router.max_replay_attempts = 1
        await router.perform_operation("skills", "create", {"name": "SQL"})
        await router.perform_operation("skills", "create", {"name": "Python"})
        remote.fail_next(ValidationError("rejected"), times=1)

        await monitor.check()
        report = await router.wait_for_replay()

        assert report.dead_lettered == 1
        assert report.replayed == 1
        assert [r["name"] for r in remote.rows("skills")] == ["Python"]

    @pytest.mark.asyncio
    async def test_retry_dead_letter(self, router, monitor, remote):
        router.max_replay_attempts = 1
        queued = await router.perform_operation("skills", "create", {"name": "SQL"})
        op_id = queued.metadata["operation_id"]
        remote.fail_next(ValidationError("rejected"), times=1)
        await monitor.check()
        await router.wait_for_replay()

        assert router.retry_dead_letter(op_id) is True
        assert router.retry_dead_letter("missing") is False
        assert router.pending_count == 1

        report = await router.replay_pending()

        assert report.replayed == 1
        assert router.dead_letters() == []
        assert router.health() == ServiceHealth.HEALTHY

    @pytest.mark.asyncio
    async def test_purge_dead_letters(self, router, monitor, remote):
        router.max_replay_attempts = 1
        await router.perform_operation("skills", "create", {"name": "SQL"})
        remote.fail_next(ValidationError("rejected"), times=1)
        await monitor.check()
        await router.wait_for_replay()

        assert router.purge_dead_letters() == 1
        assert router.purge_dead_letters() == 0


class TestRouterReporting:

    @pytest.mark.asyncio
    async def test_stats(self, router, monitor):
        await router.perform_operation("skills", "create", {"name": "SQL"})
        await router.perform_operation("skills", "read")

        stats = router.stats()

        assert stats["queued_writes"] == 1
        assert stats["local_reads"] == 1
        assert stats["pending"] == 1
        assert stats["dead_letters"] == 0
        assert stats["replaying"] is False


class TestReadsWithQueuedWrites:
    """Test online reads of a collection that still has queued writes"""

    @pytest.fixture
    def seeded(self, remote):
        remote.seed("skills", [{"id": "s1", "name": "SQL", "level": "beginner"}])
        return remote

    @pytest.mark.asyncio
    async def test_read_before_replay_keeps_queued_values(self, router, monitor, seeded, local_db):
        await monitor.check()
        await router.perform_operation("skills", "read")
        monitor.force_offline()
        await router.perform_operation("skills", "update", {"id": "s1", "level": "expert"})
        await router.perform_operation("skills", "create", {"id": "s2", "name": "Python"})

        # Back online, but the replay has not run yet
        await router.close()
        await monitor.check()
        result = await router.perform_operation("skills", "read")

        assert result.provenance == Provenance.REMOTE
        assert {r["id"]: r.get("level") for r in result.data} == {"s1": "expert", "s2": None}
        assert local_db.get("skills", "s1")["level"] == "expert"
        assert local_db.sync_status("skills", "s1") == "pending"
        assert router.pending_count == 2

        report = await router.replay_pending()

        assert report.replayed == 2
        assert local_db.sync_status("skills", "s1") == "synced"
        after = await router.perform_operation("skills", "read")
        assert {r["id"]: r.get("level") for r in after.data} == {"s1": "expert", "s2": None}

    @pytest.mark.asyncio
    async def test_read_after_failed_round_keeps_queued_values(self, router, monitor, seeded, local_db):
        await monitor.check()
        monitor.force_offline()
        await router.perform_operation("skills", "update", {"id": "s1", "level": "expert"})
        seeded.fail_next(ValidationError("rejected", field="level"))

        await monitor.check()
        report = await router.wait_for_replay()
        result = await router.perform_operation("skills", "read")

        assert report.failed == 1
        assert [r["level"] for r in result.data] == ["expert"]
        assert local_db.sync_status("skills", "s1") == "pending"
        assert local_db.last_confirmed("skills") is None

        # A dropped link after the read still shows the queued value
        monitor.force_offline()
        router.cache.clear()
        local = await router.perform_operation("skills", "read")
        assert local.provenance == Provenance.LOCAL
        assert [r["level"] for r in local.data] == ["expert"]

    @pytest.mark.asyncio
    async def test_queued_delete_is_hidden(self, router, monitor, seeded):
        await monitor.check()
        monitor.force_offline()
        await router.perform_operation("skills", "delete", {"id": "s1"})

        await router.close()
        await monitor.check()
        result = await router.perform_operation("skills", "read")

        assert result.data == []
        assert len(seeded.rows("skills")) == 1


class TestReplayLogging:

    @pytest.mark.asyncio
    async def test_replay_round_is_logged(self, router, monitor, caplog):
        caplog.set_level(logging.INFO, logger="FallbackRouter")
        await router.perform_operation("skills", "create", {"name": "SQL"})
        await router.close()
        await monitor.check()

        await router.replay_pending()

        messages = [r.getMessage() for r in caplog.records if r.name == "FallbackRouter"]
        assert "Replaying 1 operation(s) across 1 collection(s)... started" in messages
        assert any(m.startswith("Replaying 1 operation(s) across 1 collection(s)... completed") for m in messages)
