import unittest
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from codex_relay.domain.errors import ValidationError
from codex_relay.services.cron_utils import (
    build_one_shot_cron,
    cron_next_run,
    parse_cron,
    parse_when,
    resolve_zone,
    validate_cron,
)

UTC = timezone.utc


class TestCronParsing(unittest.TestCase):
    def test_rejects_wrong_field_count_and_ranges(self):
        for expr in ("* * * *", "61 * * * *", "* 24 * * *", "* * 0 * *", "*/0 * * * *", "5-1 * * * *", "a * * * *"):
            with self.subTest(expr=expr):
                with self.assertRaises(ValidationError):
                    parse_cron(expr)

    def test_names_ranges_and_sunday_seven(self):
        spec = parse_cron("0 9 * jan-mar mon-fri,7")
        self.assertEqual(spec.months, frozenset({1, 2, 3}))
        self.assertEqual(spec.weekdays, frozenset({0, 1, 2, 3, 4, 5}))
        self.assertFalse(spec.days_restricted)
        self.assertTrue(spec.weekdays_restricted)

    def test_single_value_with_step_runs_to_max(self):
        self.assertEqual(parse_cron("50/5 * * * *").minutes, frozenset({50, 55}))

    def test_validate_normalizes_whitespace(self):
        self.assertEqual(validate_cron("  */5   *  * * * "), "*/5 * * * *")

    def test_unknown_timezone(self):
        with self.assertRaises(ValidationError):
            resolve_zone("Mars/Olympus_Mons")
        self.assertEqual(resolve_zone("").key, "UTC")


class TestCronNextRun(unittest.TestCase):
    def test_every_five_minutes(self):
        nxt = cron_next_run("*/5 * * * *", datetime(2026, 3, 1, 10, 2, tzinfo=UTC))
        self.assertEqual(nxt, datetime(2026, 3, 1, 10, 5, tzinfo=UTC))

    def test_result_is_strictly_after(self):
        nxt = cron_next_run("*/5 * * * *", datetime(2026, 3, 1, 10, 5, tzinfo=UTC))
        self.assertEqual(nxt, datetime(2026, 3, 1, 10, 10, tzinfo=UTC))

    def test_day_of_month_or_day_of_week(self):
        # 2026-03-31 is a Tuesday; the 1st matches before the next Monday does.
        nxt = cron_next_run("0 9 1 * mon", datetime(2026, 3, 31, 10, 0, tzinfo=UTC))
        self.assertEqual(nxt, datetime(2026, 4, 1, 9, 0, tzinfo=UTC))

    def test_weekday_names_with_month_range(self):
        # 2026-03-01 is a Sunday.
        nxt = cron_next_run("30 8 * jan-mar mon-fri", datetime(2026, 3, 1, 0, 0, tzinfo=UTC))
        self.assertEqual(nxt, datetime(2026, 3, 2, 8, 30, tzinfo=UTC))

    def test_seven_means_sunday(self):
        nxt = cron_next_run("0 12 * * 7", datetime(2026, 3, 2, 0, 0, tzinfo=UTC))
        self.assertEqual(nxt, datetime(2026, 3, 8, 12, 0, tzinfo=UTC))

    def test_fields_evaluated_in_job_timezone(self):
        # 00:00 UTC is 09:00 in Seoul, which is not strictly after.
        nxt = cron_next_run("0 9 * * *", datetime(2026, 3, 1, 0, 0, tzinfo=UTC), "Asia/Seoul")
        self.assertEqual(nxt, datetime(2026, 3, 2, 0, 0, tzinfo=UTC))

    def test_wall_time_inside_dst_gap_is_skipped(self):
        # New York skips 02:00-03:00 on 2026-03-08.
        nxt = cron_next_run("30 2 * * *", datetime(2026, 3, 7, 12, 0, tzinfo=UTC), "America/New_York")
        self.assertEqual(nxt, datetime(2026, 3, 9, 6, 30, tzinfo=UTC))

    def test_naive_after_is_treated_as_utc(self):
        nxt = cron_next_run("0 * * * *", datetime(2026, 3, 1, 10, 30))
        self.assertEqual(nxt, datetime(2026, 3, 1, 11, 0, tzinfo=UTC))

    def test_impossible_date_raises(self):
        with self.assertRaises(ValidationError):
            cron_next_run("0 0 31 2 *", datetime(2026, 1, 1, tzinfo=UTC))


class TestOneShot(unittest.TestCase):
    def test_iso_time_becomes_single_date_cron(self):
        shot = build_one_shot_cron(
            "2026-02-21T16:00:45+09:00",
            now=datetime(2026, 2, 20, 0, 0, tzinfo=UTC),
            tz_name="Asia/Seoul",
        )
        self.assertEqual(shot.cron, "0 16 21 2 *")
        self.assertEqual(shot.run_at, datetime(2026, 2, 21, 7, 0, tzinfo=UTC))

    def test_naive_iso_time_uses_given_timezone(self):
        shot = build_one_shot_cron(
            "2026-02-21T16:00:00",
            now=datetime(2026, 2, 20, 0, 0, tzinfo=UTC),
            tz_name="Asia/Seoul",
        )
        self.assertEqual(shot.run_at, datetime(2026, 2, 21, 7, 0, tzinfo=UTC))

    def test_past_time_is_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            build_one_shot_cron("2026-02-21T16:00:00+09:00", now=datetime(2026, 2, 22, tzinfo=UTC))
        self.assertIn("future", str(ctx.exception))

    def test_unparseable_time_is_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            build_one_shot_cron("@@@", now=datetime(2026, 2, 20, tzinfo=UTC))
        self.assertIn("Invalid --at value", str(ctx.exception))

    def test_next_run_of_one_shot_matches_run_at(self):
        now = datetime(2026, 2, 20, 0, 0, tzinfo=UTC)
        shot = build_one_shot_cron("2026-02-21T16:00:00+09:00", now=now, tz_name="Asia/Seoul")
        self.assertEqual(cron_next_run(shot.cron, now, "Asia/Seoul"), shot.run_at)


class TestParseWhen(unittest.TestCase):
    def test_relative_phrase(self):
        tz_name = "Europe/Amsterdam"
        base = datetime(2026, 3, 1, 16, 0, tzinfo=ZoneInfo(tz_name))
        parsed = parse_when("in 2 hours", tz_name=tz_name, now=base)
        self.assertIsNotNone(parsed)
        local = parsed.astimezone(ZoneInfo(tz_name))
        self.assertEqual((local.day, local.hour, local.minute), (1, 18, 0))

    def test_empty_text(self):
        self.assertIsNone(parse_when("  "))


if __name__ == "__main__":
    unittest.main()
