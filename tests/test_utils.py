from datetime import UTC, datetime, timedelta, timezone
import unittest

from digestq.utils import from_iso, new_job_id, new_schedule_id, percentile, to_iso


class UtilsTest(unittest.TestCase):
    def test_iso_is_fixed_width_utc(self) -> None:
        whole = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
        offset = datetime(2026, 1, 1, 14, 0, 0, 5, tzinfo=timezone(timedelta(hours=2)))
        self.assertEqual(to_iso(whole), "2026-01-01T12:00:00.000000+00:00")
        self.assertEqual(to_iso(offset), "2026-01-01T12:00:00.000005+00:00")
        self.assertLess(to_iso(whole), to_iso(offset))

    def test_from_iso_assumes_utc_for_naive_values(self) -> None:
        parsed = from_iso("2026-01-01T12:00:00")
        assert parsed is not None
        self.assertEqual(parsed.tzinfo, UTC)
        self.assertIsNone(from_iso(None))
        self.assertIsNone(from_iso(""))

    def test_ids(self) -> None:
        self.assertTrue(new_job_id().startswith("job_"))
        self.assertNotEqual(new_job_id(), new_job_id())
        self.assertTrue(new_schedule_id().startswith("sched_"))

    def test_percentile(self) -> None:
        self.assertEqual(percentile([], 95), 0.0)
        self.assertEqual(percentile([5.0], 95), 5.0)
        values = [float(item) for item in range(1, 101)]
        self.assertEqual(percentile(values, 50), 51.0)
        self.assertEqual(percentile(values, 100), 100.0)


if __name__ == "__main__":
    unittest.main()
