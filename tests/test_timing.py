import unittest

from plan_profiler.errors import InvalidInput
from plan_profiler.timing import SampleSet, TimingSampler


def fake_clock(ticks):
    it = iter(ticks)
    return lambda: next(it)


class TestSampleSet(unittest.TestCase):
    def test_samples_are_sorted(self):
        s = SampleSet("load", (4.0, 1.0, 3.0))
        self.assertEqual(s.samples, (1.0, 3.0, 4.0))
        self.assertEqual(s.count, 3)

    def test_median_odd_count(self):
        s = SampleSet("load", (5.0, 1.0, 3.0))
        self.assertEqual(s.median, 3.0)

    def test_median_even_count_takes_index_half(self):
        s = SampleSet("load", (4.0, 1.0, 3.0, 2.0))
        self.assertEqual(s.median, 3.0)

    def test_mean(self):
        s = SampleSet("predict", (1.0, 2.0, 6.0))
        self.assertAlmostEqual(s.mean, 3.0)

    def test_pick(self):
        s = SampleSet("predict", (1.0, 2.0, 6.0))
        self.assertEqual(s.pick("median"), 2.0)
        self.assertAlmostEqual(s.pick("average"), 3.0)
        self.assertEqual(s.pick(None), 2.0)
        with self.assertRaises(InvalidInput):
            s.pick("p99")

    def test_empty_rejected(self):
        with self.assertRaises(InvalidInput):
            SampleSet("load", ())

    def test_negative_rejected(self):
        with self.assertRaises(InvalidInput):
            SampleSet("load", (1.0, -0.5))

    def test_summary(self):
        d = SampleSet("compile", (2.0, 1.0)).summary()
        self.assertEqual(d["phase"], "compile")
        self.assertEqual(d["samples"], [1.0, 2.0])
        self.assertEqual(d["median"], 2.0)


class TestTimingSampler(unittest.TestCase):
    def test_runs_operation_n_times_and_returns_last_value(self):
        calls = []

        def op():
            calls.append(1)
            return len(calls)

        # each call takes 2 ms, 1 ms, 3 ms
        clock = fake_clock([0, 2_000_000, 10_000_000, 11_000_000, 20_000_000, 23_000_000])
        value, samples = TimingSampler(clock=clock).sample("load", op, repetitions=3)
        self.assertEqual(len(calls), 3)
        self.assertEqual(value, 3)
        self.assertEqual(samples.samples, (1.0, 2.0, 3.0))
        self.assertEqual(samples.median, 2.0)
        self.assertEqual(samples.phase, "load")

    def test_single_repetition(self):
        value, samples = TimingSampler().sample("compile", lambda: "artifact", repetitions=1)
        self.assertEqual(value, "artifact")
        self.assertEqual(samples.count, 1)
        self.assertGreaterEqual(samples.samples[0], 0.0)

    def test_invalid_repetitions(self):
        calls = []
        sampler = TimingSampler()
        for bad in (0, -1, 2.5, True, "3"):
            with self.assertRaises(InvalidInput):
                sampler.sample("load", lambda: calls.append(1), repetitions=bad)
        self.assertEqual(calls, [])

    def test_first_failure_propagates(self):
        calls = []

        def op():
            calls.append(1)
            if len(calls) == 2:
                raise RuntimeError("boom")
            return None

        with self.assertRaises(RuntimeError):
            TimingSampler().sample("predict", op, repetitions=5)
        self.assertEqual(len(calls), 2)


if __name__ == "__main__":
    unittest.main()
