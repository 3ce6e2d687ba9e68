import json
import threading

import pytest

from muxgate.errors import ConfigError
from muxgate.pool import PoolGeneration, ProviderPool


def fail(pool, credential_id, times):
    for _ in range(times):
        pool.record_failure(credential_id, retryable=True)


class TestSelection:

    def test_highest_priority_first(self, pool):
        assert pool.select("openai-custom").id == "openai-1"

    def test_priority_sorting_is_stable(self, clock):
        pool = ProviderPool({"openai-custom": [
            {"uuid": "c", "priority": 2},
            {"uuid": "a", "priority": 1},
            {"uuid": "b", "priority": 1},
        ]}, clock=clock)
        assert [c.id for c in pool.snapshot().credentials("openai-custom")] == ["a", "b", "c"]

    def test_alias_lookup(self, pool):
        assert pool.select("kiro").id == "kiro-1"

    def test_exclude_ids(self, pool):
        assert pool.select("openai-custom", exclude_ids={"openai-1"}).id == "openai-2"
        assert pool.select("openai-custom", exclude_ids={"openai-1", "openai-2"}) is None

    def test_select_counts_usage(self, pool, clock):
        cred = pool.select("gemini-cli-oauth")
        assert cred.usage_count == 1
        assert cred.last_used == clock.now

    def test_disabled_definition_is_skipped(self, clock):
        pool = ProviderPool({"openai-custom": [{"uuid": "off", "isDisabled": True}, {"uuid": "on", "priority": 5}]}, clock=clock)
        assert pool.select("openai-custom").id == "on"

    def test_auth_material_is_kept(self, pool):
        assert pool.select("gemini-cli-oauth").auth == {"access_token": "ya29.test", "PROJECT_ID": "proj-1"}


class TestHealth:

    def test_disabled_at_threshold(self, pool):
        fail(pool, "openai-1", 2)
        assert pool.select("openai-custom").id == "openai-1"
        fail(pool, "openai-1", 1)
        assert pool.select("openai-custom").id == "openai-2"

    def test_fourth_select_returns_none(self, clock):
        pool = ProviderPool({"openai-custom": [{"uuid": "only"}]}, max_error_count=3, clock=clock)
        for _ in range(3):
            assert pool.select("openai-custom").id == "only"
            pool.record_failure("only", retryable=True)
        assert pool.select("openai-custom") is None

    def test_cooldown_elapses(self, pool, clock):
        fail(pool, "openai-1", 3)
        clock.advance(299)
        assert pool.select("openai-custom").id == "openai-2"
        clock.advance(2)
        assert pool.select("openai-custom").id == "openai-1"

    def test_success_resets_errors(self, pool, clock):
        fail(pool, "openai-1", 3)
        clock.advance(301)
        pool.record_success("openai-1")
        cred = pool.snapshot().get("openai-1")
        assert cred.error_count == 0
        assert cred.disabled_until is None

    def test_success_keeps_active_disable_period(self, pool):
        fail(pool, "openai-1", 3)
        pool.record_success("openai-1")
        cred = pool.snapshot().get("openai-1")
        assert cred.error_count == 0
        assert cred.disabled_until is not None

    def test_non_retryable_failure_is_ignored(self, pool):
        for _ in range(5):
            pool.record_failure("openai-1", retryable=False)
        assert pool.snapshot().get("openai-1").error_count == 0
        assert pool.select("openai-custom").id == "openai-1"

    def test_unknown_credential_is_ignored(self, pool):
        pool.record_failure("nope", retryable=True)
        pool.record_success("nope")
        pool.reset_health("nope")
        pool.mark_refreshed("nope")

    def test_concurrent_failures_are_all_counted(self, pool):
        threads = [threading.Thread(target=pool.record_failure, args=("openai-1", True)) for _ in range(100)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert pool.snapshot().get("openai-1").error_count == 100

    def test_reset_health(self, pool):
        fail(pool, "openai-1", 3)
        pool.reset_health("openai-1")
        cred = pool.snapshot().get("openai-1")
        assert cred.error_count == 0
        assert pool.select("openai-custom") is cred

    def test_mark_refreshed(self, pool):
        fail(pool, "kiro-1", 3)
        assert pool.select("kiro") is None
        pool.mark_refreshed("kiro-1", {"accessToken": "new-token"})
        cred = pool.select("kiro")
        assert cred.auth == {"accessToken": "new-token"}
        assert cred.error_count == 3


class TestAvailability:

    def test_absent_vs_exhausted(self, pool):
        assert pool.availability("claude-custom") == "absent"
        assert pool.availability("openai-custom") == "available"
        fail(pool, "openai-1", 3)
        fail(pool, "openai-2", 3)
        assert pool.availability("openai-custom") == "exhausted"

    def test_excluded_counts_as_exhausted(self, pool):
        assert pool.availability("gemini-cli-oauth", exclude_ids={"gemini-1"}) == "exhausted"

    def test_select_absent_returns_none(self, pool):
        assert pool.select("claude-custom") is None

    def test_status(self, pool):
        fail(pool, "openai-1", 3)
        status = pool.status()
        assert [s["id"] for s in status["openai-custom"]] == ["openai-1", "openai-2"]
        assert status["openai-custom"][0]["available"] is False
        assert status["openai-custom"][0]["error_count"] == 3
        assert "auth" not in status["openai-custom"][0]


class TestReload:

    def test_reload_swaps_generation(self, pool):
        old = pool.snapshot()
        new = pool.reload({"claude-custom": [{"uuid": "claude-1"}]})
        assert new.generation == old.generation + 1
        assert pool.snapshot() is new
        assert pool.select("claude-custom").id == "claude-1"
        assert pool.availability("openai-custom") == "absent"

    def test_old_generation_is_isolated(self, pool):
        old = pool.snapshot()
        pool.reload({"openai-custom": [{"uuid": "openai-1"}]})
        fail(old, "openai-1", 3)
        assert old.select("openai-custom").id == "openai-2"
        assert pool.snapshot().get("openai-1").error_count == 0
        assert pool.select("openai-custom").id == "openai-1"

    def test_reload_changes_thresholds(self, pool):
        pool.reload({"openai-custom": [{"uuid": "a"}]}, max_error_count=1)
        pool.record_failure("a", retryable=True)
        assert pool.select("openai-custom") is None

    def test_from_file(self, tmp_path, clock):
        path = tmp_path / "provider_pools.json"
        path.write_text(json.dumps({"gemini": [{"uuid": "g1", "PROJECT_ID": "p"}]}))
        pool = ProviderPool.from_file(path, clock=clock)
        assert pool.select("gemini-cli-oauth").id == "g1"

    def test_generation_accepts_plain_dicts(self, pool_definitions, clock):
        generation = PoolGeneration(pool_definitions, clock=clock)
        assert generation.provider_types() == ["openai-custom", "gemini-cli-oauth", "claude-kiro-oauth"]

    def test_duplicate_uuid_keeps_old_generation(self, pool):
        old = pool.snapshot()
        with pytest.raises(ConfigError, match="Duplicate credential uuid 'a'"):
            pool.reload({"openai-custom": [{"uuid": "a"}], "gemini": [{"uuid": "a"}]})
        assert pool.snapshot() is old
