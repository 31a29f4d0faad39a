from ztoapi.response_cache import ResponseCache, build_cache_key


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_entry_is_served_until_ttl_then_absent():
    clock = FakeClock()
    cache = ResponseCache(ttl=60, clock=clock)
    cache.put("k", "hello world")

    clock.now += 59.9
    assert cache.get("k") == "hello world"

    clock.now += 0.2
    assert cache.get("k") is None
    assert len(cache) == 0


def test_per_entry_ttl_overrides_default():
    clock = FakeClock()
    cache = ResponseCache(ttl=60, clock=clock)
    cache.put("short", "value", ttl=1)

    clock.now += 2

    assert cache.get("short") is None


def test_empty_values_are_not_cached():
    cache = ResponseCache(ttl=60)
    cache.put("k", "")

    assert cache.get("k") is None


def test_zero_ttl_disables_cache():
    cache = ResponseCache(ttl=0)
    cache.put("k", "value")

    assert cache.enabled is False
    assert cache.get("k") is None


def test_sweep_removes_expired_entries_once_threshold_is_passed():
    clock = FakeClock()
    cache = ResponseCache(ttl=10, clock=clock)
    for i in range(100):
        cache.put(f"old-{i}", "value")

    clock.now += 11
    cache.put("fresh", "value")

    assert len(cache) == 1
    assert cache.get("fresh") == "value"


def test_max_entries_drops_oldest():
    cache = ResponseCache(ttl=60, max_entries=2)
    cache.put("a", "1")
    cache.put("b", "2")
    cache.put("c", "3")

    assert cache.get("a") is None
    assert cache.get("b") == "2"
    assert cache.get("c") == "3"


def test_cache_key_depends_on_model_and_stream_flag():
    contents = ["system prompt", "hello"]

    assert build_cache_key("GLM-4.5", contents, False) != build_cache_key("GLM-4.6", contents, False)
    assert build_cache_key("GLM-4.5", contents, False) != build_cache_key("GLM-4.5", contents, True)
    assert build_cache_key("GLM-4.5", contents, False) == build_cache_key("GLM-4.5", list(contents), False)


def test_cache_key_only_uses_first_hundred_characters():
    prefix = "x" * 100

    key_a = build_cache_key("m", [prefix + "tail one"], False)
    key_b = build_cache_key("m", [prefix, "tail two"], False)

    # Different conversations sharing a 100-char prefix share a key.
    assert key_a == key_b
