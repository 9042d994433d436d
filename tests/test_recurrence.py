import unittest
from datetime import date

from recurrence import fixed_replica_dates, is_month_end, new_series_id


class FixedReplicaDatesTests(unittest.TestCase):
    def test_one_replica_per_remaining_month(self):
        dates = list(fixed_replica_dates(date(2025, 3, 15)))
        self.assertEqual(len(dates), 12 - 3)
        self.assertEqual(dates[0], date(2025, 4, 15))
        self.assertEqual(dates[-1], date(2025, 12, 15))

    def test_never_crosses_into_next_year(self):
        self.assertEqual(list(fixed_replica_dates(date(2025, 12, 5))), [])
        for d in fixed_replica_dates(date(2025, 1, 1)):
            self.assertEqual(d.year, 2025)

    def test_month_end_base_follows_month_end(self):
        dates = list(fixed_replica_dates(date(2025, 1, 31)))
        self.assertEqual(dates[0], date(2025, 2, 28))
        self.assertEqual(dates[1], date(2025, 3, 31))
        self.assertEqual(dates[2], date(2025, 4, 30))

    def test_day_clamped_to_shorter_months(self):
        dates = list(fixed_replica_dates(date(2025, 1, 30)))
        self.assertEqual(dates[0], date(2025, 2, 28))
        self.assertEqual(dates[1], date(2025, 3, 30))

    def test_leap_year(self):
        self.assertEqual(next(fixed_replica_dates(date(2024, 1, 31))), date(2024, 2, 29))

    def test_is_month_end(self):
        self.assertTrue(is_month_end(date(2025, 2, 28)))
        self.assertFalse(is_month_end(date(2024, 2, 28)))

    def test_series_ids_are_unique(self):
        self.assertNotEqual(new_series_id(), new_series_id())


if __name__ == "__main__":
    unittest.main()
