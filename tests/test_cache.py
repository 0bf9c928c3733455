from zyra_store.cache import ResponseCache


def test_get_set_and_hit_counters():
    cache = ResponseCache(maxsize=10, ttl=60)
    assert cache.get("orders:1") is None
    cache.set("orders:1", {"orders": []})
    assert cache.get("orders:1") == {"orders": []}
    assert cache.hits == 1
    assert cache.misses == 1


def test_cached_falsy_values_are_hits():
    cache = ResponseCache()
    cache.set("empty", [])
    assert cache.get("empty", "missing") == []
    assert cache.hits == 1


def test_invalidate_prefix_only_drops_matching_keys():
    cache = ResponseCache()
    cache.set("orders:list:a", 1)
    cache.set("orders:detail:b", 2)
    cache.set("catalog:products:", 3)

    assert cache.invalidate_prefix("orders:") == 2
    assert "orders:list:a" not in cache
    assert "catalog:products:" in cache
    assert len(cache) == 1


def test_delete_and_clear():
    cache = ResponseCache()
    cache.set("a", 1)
    cache.set("b", 2)
    cache.delete("a")
    cache.delete("missing")
    assert len(cache) == 1
    cache.clear()
    assert len(cache) == 0


def test_maxsize_evicts_old_entries():
    cache = ResponseCache(maxsize=2, ttl=60)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3)
    assert len(cache) == 2
    assert "c" in cache
