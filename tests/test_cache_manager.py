import pytest

from core.cache import CacheManager, CacheSerializationError, InvalidTTLError, generate_request_hash
from models.cache import ApiProvider, CacheStats

from conftest import make_settings


@pytest.mark.asyncio
async def test_scenario_set_get_info_invalidate(cache):
    assert await cache.set("epc", "SW1A1AA", {"rating": "C"}, ttl_seconds=3600)

    assert await cache.get("epc", "SW1A1AA") == {"rating": "C"}

    info = await cache.get_info("epc", "SW1A1AA")
    assert info.cached is True
    assert info.ttl == 3600
    assert info.cache_key == "SW1A1AA"

    assert await cache.invalidate("epc", "SW1A1AA")
    assert await cache.get("epc", "SW1A1AA") is None


@pytest.mark.asyncio
async def test_get_returns_none_once_ttl_elapsed(cache, clock):
    await cache.set("flood", "E1 6AN", {"risk": "low"}, ttl_seconds=1)
    assert await cache.get("flood", "E1 6AN") == {"risk": "low"}

    clock.advance(2)
    assert await cache.get("flood", "E1 6AN") is None


@pytest.mark.asyncio
async def test_entry_still_valid_at_exact_expiry(cache, clock):
    await cache.set("flood", "E1 6AN", "ok", ttl_seconds=60)
    clock.advance(60)
    assert await cache.get("flood", "E1 6AN") == "ok"


@pytest.mark.asyncio
async def test_expired_get_marks_row_stale(cache, database, clock):
    await cache.set("crime", "LS1", [1, 2, 3], ttl_seconds=60)
    clock.advance(61)

    assert await cache.get("crime", "LS1") is None

    row = await database.get_cache_entry("crime", "LS1")
    assert row is not None
    assert row.is_stale is True

    # Rewinding the clock must not resurrect the entry
    clock.advance(-30)
    assert await cache.get("crime", "LS1") is None


@pytest.mark.asyncio
async def test_second_set_wins_and_keeps_one_row(cache, database):
    await cache.set("epc", "key", "A")
    first = await database.get_cache_entry("epc", "key")

    await cache.set("epc", "key", "B")
    second = await database.get_cache_entry("epc", "key")

    assert await cache.get("epc", "key") == "B"
    assert (await cache.get_stats()).total_entries == 1
    assert second.id == first.id
    assert second.request_hash != first.request_hash


@pytest.mark.asyncio
async def test_invalidate_missing_key_succeeds(cache):
    assert await cache.invalidate("planning", "never-cached") is True
    assert await cache.get("planning", "never-cached") is None


@pytest.mark.asyncio
async def test_mark_stale_is_sticky_until_next_set(cache):
    await cache.set("planning", "ref-1", {"status": "approved"}, ttl_seconds=3600)

    assert await cache.mark_stale("planning", "ref-1")
    assert await cache.get("planning", "ref-1") is None
    assert await cache.get("planning", "ref-1") is None
    assert await cache.exists("planning", "ref-1") is False

    await cache.set("planning", "ref-1", {"status": "refused"}, ttl_seconds=3600)
    assert await cache.get("planning", "ref-1") == {"status": "refused"}


@pytest.mark.asyncio
async def test_exists_does_not_touch_stale_flag(cache, database, clock):
    await cache.set("hmlr", "title-1", {"tenure": "freehold"}, ttl_seconds=60)
    assert await cache.exists("hmlr", "title-1") is True

    clock.advance(120)
    assert await cache.exists("hmlr", "title-1") is False

    row = await database.get_cache_entry("hmlr", "title-1")
    assert row.is_stale is False


@pytest.mark.asyncio
async def test_get_info_reports_expired_and_missing_entries(cache, clock):
    assert await cache.get_info("epc", "missing") is None

    await cache.set("epc", "key", {"rating": "B"}, ttl_seconds=60, etag='"abc"')
    clock.advance(61)

    info = await cache.get_info("epc", "key")
    assert info.cached is False
    assert info.etag == '"abc"'
    assert info.expires_at.endswith("+00:00")


@pytest.mark.asyncio
async def test_enum_and_string_providers_share_a_namespace(cache):
    await cache.set(ApiProvider.POSTCODES, "SW1A 1AA", {"lat": 51.5})
    assert await cache.get("postcodes", "SW1A 1AA") == {"lat": 51.5}


@pytest.mark.asyncio
async def test_providers_do_not_collide(cache):
    await cache.set("epc", "SW1A1AA", "epc-data")
    await cache.set("flood", "SW1A1AA", "flood-data")

    assert await cache.get("epc", "SW1A1AA") == "epc-data"
    assert await cache.get("flood", "SW1A1AA") == "flood-data"


@pytest.mark.asyncio
async def test_default_and_provider_specific_ttls(tmp_path, database, clock):
    settings = make_settings(tmp_path, cache_provider_ttls={"flood": 120})
    manager = CacheManager(settings, database, clock=clock)

    await manager.set("flood", "k", 1)
    await manager.set("epc", "k", 1)
    await manager.set("flood", "explicit", 1, ttl_seconds=90)

    assert (await manager.get_info("flood", "k")).ttl == 120
    assert (await manager.get_info("epc", "k")).ttl == 3600
    assert (await manager.get_info("flood", "explicit")).ttl == 90


@pytest.mark.asyncio
async def test_set_records_hash_and_size(cache, database):
    value = {"b": 2, "a": 1}
    await cache.set("companies", "0123", value)

    row = await database.get_cache_entry("companies", "0123")
    assert row.request_hash == generate_request_hash("companies", "0123", value)
    assert row.response_size_bytes == len('{"b":2,"a":1}')
    assert row.is_stale is False


def test_request_hash_is_order_independent():
    first = generate_request_hash("epc", "k", {"a": 1, "b": 2})
    second = generate_request_hash("epc", "k", {"b": 2, "a": 1})
    assert first == second
    assert generate_request_hash("epc", "k", {"a": 2}) != first
    assert len(first) == 64


@pytest.mark.asyncio
async def test_unserializable_payload_raises(cache):
    with pytest.raises(CacheSerializationError):
        await cache.set("epc", "bad", {"value": object()})

    with pytest.raises(CacheSerializationError):
        await cache.set("epc", "nan", float("nan"))

    assert await cache.get("epc", "bad") is None


@pytest.mark.asyncio
async def test_payload_with_non_string_keys_is_stored_as_json(cache, database):
    assert await cache.set("epc", "mixed", {1: "a", "b": 2}) is True

    assert await cache.get("epc", "mixed") == {"1": "a", "b": 2}
    row = await database.get_cache_entry("epc", "mixed")
    assert row.request_hash == generate_request_hash("epc", "mixed", {"1": "a", "b": 2})


@pytest.mark.asyncio
async def test_negative_ttl_is_rejected(cache):
    with pytest.raises(InvalidTTLError):
        await cache.set("epc", "k", 1, ttl_seconds=-5)

    with pytest.raises(InvalidTTLError):
        await cache.batch_set("epc", [{"key": "k", "value": 1, "ttl": -1}])

    await cache.set("epc", "k", 1, ttl_seconds=60)
    with pytest.raises(InvalidTTLError):
        await cache.revalidate("epc", "k", ttl_seconds=-60)

    assert (await cache.get_info("epc", "k")).ttl == 60


@pytest.mark.asyncio
async def test_short_positive_ttl_is_kept(cache):
    await cache.set("epc", "k", 1, ttl_seconds=1)
    assert (await cache.get_info("epc", "k")).ttl == 1


@pytest.mark.asyncio
async def test_clear_provider_leaves_other_providers(cache):
    await cache.set("epc", "a", 1)
    await cache.set("epc", "b", 2)
    await cache.set("flood", "a", 3)

    assert await cache.clear_provider("epc")

    assert await cache.get("epc", "a") is None
    assert await cache.get("epc", "b") is None
    assert await cache.get("flood", "a") == 3


@pytest.mark.asyncio
async def test_clear_all(cache):
    await cache.set("epc", "a", 1)
    await cache.set("flood", "a", 2)

    assert await cache.clear_all()
    assert (await cache.get_stats()).total_entries == 0


@pytest.mark.asyncio
async def test_stats_count_live_entries_per_provider(cache):
    await cache.set("epc", "a", "abc")
    await cache.set("epc", "b", "abc")
    await cache.set("flood", "a", "abc")
    await cache.mark_stale("epc", "b")

    stats = await cache.get_stats()
    assert stats.total_entries == 3
    assert stats.stale_entries == 1
    assert stats.total_size == 3 * len('"abc"')
    assert stats.providers == {"epc": 1, "flood": 1}


@pytest.mark.asyncio
async def test_revalidate_restores_an_expired_entry(cache, clock):
    await cache.set("inspire", "poly-9", {"area": 120}, ttl_seconds=60, etag="v1")
    clock.advance(61)
    assert await cache.get("inspire", "poly-9") is None

    assert await cache.revalidate("inspire", "poly-9") == {"area": 120}
    assert await cache.get("inspire", "poly-9") == {"area": 120}
    assert (await cache.get_info("inspire", "poly-9")).etag == "v1"

    assert await cache.revalidate("inspire", "missing") is None


@pytest.mark.asyncio
async def test_store_failures_fail_open(offline_cache):
    cache = offline_cache

    assert await cache.get("epc", "k") is None
    assert await cache.set("epc", "k", {"rating": "A"}) is False
    assert await cache.exists("epc", "k") is False
    assert await cache.get_info("epc", "k") is None
    assert await cache.invalidate("epc", "k") is False
    assert await cache.mark_stale("epc", "k") is False
    assert await cache.revalidate("epc", "k") is None
    assert await cache.clear_provider("epc") is False
    assert await cache.clear_all() is False
    assert await cache.cleanup() == 0
    assert await cache.enforce_max_size() == 0
    assert await cache.get_stats() == CacheStats()
