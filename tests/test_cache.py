from nodesocket.cache import ENFORCED_SIZE_TIME, ReceivedPacket, ReceivedPacketCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_enforced_size_time_is_one_second():
    cache = ReceivedPacketCache(target=1, time_window=5, clock=FakeClock())
    assert ENFORCED_SIZE_TIME == 1
    assert cache.cache_insert("a") is True


def test_insert_until_target_reached():
    clock = FakeClock()
    cache = ReceivedPacketCache(target=3, time_window=5, clock=clock)
    results = [cache.cache_insert(n) for n in range(5)]
    assert results == [True, True, True, False, False]
    assert len(cache) == 3


def test_target_frees_up_after_enforced_time():
    clock = FakeClock()
    cache = ReceivedPacketCache(target=2, time_window=5, clock=clock)
    assert cache.cache_insert("a")
    assert cache.cache_insert("b")
    assert not cache.cache_insert("c")
    clock.now += ENFORCED_SIZE_TIME + 0.5
    assert cache.cache_insert("d")
    assert [p.content for p in cache] == ["a", "b", "d"]


def test_entries_expire_after_time_window():
    clock = FakeClock()
    cache = ReceivedPacketCache(target=10, time_window=5, clock=clock)
    cache.cache_insert("old")
    clock.now += 3
    cache.cache_insert("mid")
    clock.now += 2.5
    cache.reset()
    assert [p.content for p in cache] == ["mid"]
    clock.now += 10
    cache.reset()
    assert len(cache) == 0
    assert cache.within_enforced_time == 0


def test_iteration_is_time_ordered():
    clock = FakeClock()
    cache = ReceivedPacketCache(target=10, time_window=5, clock=clock)
    for n in range(4):
        cache.cache_insert(n)
        clock.now += 0.1
    packets = list(cache)
    assert [p.content for p in packets] == [0, 1, 2, 3]
    times = [p.received for p in packets]
    assert times == sorted(times)
    assert all(isinstance(p, ReceivedPacket) for p in packets)


def test_reset_recounts_recent_entries():
    clock = FakeClock()
    cache = ReceivedPacketCache(target=10, time_window=5, clock=clock)
    cache.cache_insert("a")
    clock.now += 2
    cache.cache_insert("b")
    cache.cache_insert("c")
    cache.reset()
    assert cache.within_enforced_time == 2
    assert len(cache) == 3


def test_zero_target_rejects_everything():
    cache = ReceivedPacketCache(target=0, time_window=5, clock=FakeClock())
    assert cache.cache_insert("a") is False
    assert len(cache) == 0