import asyncio

from callrelay.services.dedup import DedupSet


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestDedupSet:
    def test_first_mark_passes_second_fails(self):
        dedup = DedupSet()

        async def scenario():
            return await dedup.check_and_mark("777"), await dedup.check_and_mark("777")

        assert asyncio.run(scenario()) == (True, False)
        assert "777" in dedup

    def test_concurrent_marks_single_winner(self):
        dedup = DedupSet()

        async def scenario():
            return await asyncio.gather(*(dedup.check_and_mark("777") for _ in range(10)))

        results = asyncio.run(scenario())
        assert results.count(True) == 1

    def test_entries_expire_after_ttl(self):
        clock = FakeClock()
        dedup = DedupSet(ttl_seconds=60, clock=clock)

        asyncio.run(dedup.check_and_mark("777"))
        clock.now += 59
        assert "777" in dedup
        clock.now += 2
        assert "777" not in dedup
        assert len(dedup) == 0
        assert asyncio.run(dedup.check_and_mark("777")) is True

    def test_numeric_and_string_ids_are_the_same_call(self):
        dedup = DedupSet()

        async def scenario():
            return await dedup.check_and_mark(777), await dedup.check_and_mark("777")

        assert asyncio.run(scenario()) == (True, False)
