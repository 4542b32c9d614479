import asyncio
import unittest

from hardcover_sync.throttle import RequestThrottle


class FakeTime:
    """Monotonic clock whose sleep just moves time forward."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestRequestThrottle(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.time = FakeTime()

    def build(self, budget):
        return RequestThrottle(budget, clock=self.time.clock, sleep=self.time.sleep)

    async def test_admits_up_to_budget_without_waiting(self):
        throttle = self.build(5)
        for _ in range(5):
            await throttle.acquire()
        self.assertEqual(self.time.sleeps, [])
        self.assertEqual(throttle.in_window, 5)

    async def test_waits_for_oldest_to_leave_window(self):
        throttle = self.build(2)
        await throttle.acquire()
        self.time.now = 10.0
        await throttle.acquire()

        await throttle.acquire()

        self.assertEqual(len(self.time.sleeps), 1)
        self.assertAlmostEqual(self.time.sleeps[0], 50.1)
        self.assertAlmostEqual(self.time.now, 60.1)
        # Admission is recorded after the wait
        self.assertEqual(throttle.in_window, 2)

    async def test_window_expiry_frees_budget(self):
        throttle = self.build(1)
        await throttle.acquire()
        self.time.now = 60.0
        await throttle.acquire()
        self.assertEqual(self.time.sleeps, [])

    async def test_budget_clamped_to_hard_cap(self):
        self.assertEqual(self.build(500).budget, 60)
        self.assertEqual(self.build(0).budget, 1)

    async def test_concurrent_callers_are_delayed_not_rejected(self):
        throttle = self.build(3)
        await asyncio.gather(*(throttle.acquire() for _ in range(7)))
        self.assertEqual(len(self.time.sleeps), 2)
        for wait in self.time.sleeps:
            self.assertAlmostEqual(wait, 60.1)


if __name__ == '__main__':
    unittest.main()
