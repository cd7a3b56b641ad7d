import unittest
from datetime import datetime, timezone

from entitlements.core.settings import S
from entitlements.core.time import iso, local_date_bucket, next_local_midnight, parse_instant, parse_timezone
from entitlements.services import entitlements as resolver
from entitlements.services.subscriptions import derive_state

NOW = 1_800_000_000


def ts(*args):
    return int(datetime(*args, tzinfo=timezone.utc).timestamp())


class TestResolve(unittest.TestCase):
    def test_free_plan_gets_free_slots(self):
        ent = resolver.resolve("free", "free", None, now=NOW)
        self.assertFalse(ent.premium)
        self.assertEqual(ent.slots, S.free_character_slots)
        self.assertEqual(ent.tier, resolver.TIER_FREE)

    def test_active_paid_plan_is_premium_even_without_end(self):
        ent = resolver.resolve("monthly", "active", None, now=NOW)
        self.assertTrue(ent.premium)
        self.assertEqual(ent.slots, S.premium_character_slots)

    def test_canceled_keeps_premium_until_paid_period_ends(self):
        self.assertTrue(resolver.resolve("yearly", "canceled", NOW + 1, now=NOW).premium)
        self.assertFalse(resolver.resolve("yearly", "canceled", NOW, now=NOW).premium)
        self.assertFalse(resolver.resolve("yearly", "canceled", None, now=NOW).premium)

    def test_past_due_and_inactive_are_not_premium(self):
        for status in ("past_due", "inactive", "free", None):
            self.assertFalse(resolver.resolve("monthly", status, NOW + 100, now=NOW).premium, status)

    def test_unknown_plan_is_not_premium(self):
        self.assertFalse(resolver.resolve("lifetime", "active", NOW + 100, now=NOW).premium)

    def test_resolve_user_reads_stored_fields(self):
        user = {"subscription_plan": "weekly", "subscription_status": "canceled", "subscription_ends_at": NOW + 60}
        self.assertTrue(resolver.resolve_user(user, now=NOW).premium)
        self.assertFalse(resolver.resolve_user({}, now=NOW).premium)


class TestNormalizePlan(unittest.TestCase):
    def test_loose_cycle_names(self):
        cases = {
            "Weekly": "weekly",
            "week": "weekly",
            "month": "monthly",
            "quillia-yearly-tribute": "yearly",
            "annual": "yearly",
            "yearly": "yearly",
            "": None,
            None: None,
            "daily": None,
        }
        for raw, expected in cases.items():
            self.assertEqual(resolver.normalize_plan(raw), expected, raw)

    def test_cycle_end_defaults_to_monthly(self):
        self.assertEqual(resolver.cycle_end("weekly", 0), 7 * 86400)
        self.assertEqual(resolver.cycle_end(None, 0), 30 * 86400)


class TestDeriveState(unittest.TestCase):
    def test_past_end_collapses_to_free(self):
        state = derive_state("monthly", "activated", NOW - 1, NOW)
        self.assertEqual((state.plan, state.status, state.ends_at), ("free", "free", NOW - 1))

    def test_signal_maps_to_status(self):
        self.assertEqual(derive_state("yearly", "canceled", NOW + 10, NOW).status, "canceled")
        self.assertEqual(derive_state("yearly", "payment_failed", NOW + 10, NOW).status, "past_due")
        self.assertEqual(derive_state("yearly", "suspended", NOW + 10, NOW).status, "inactive")
        self.assertEqual(derive_state(None, "created", None, NOW).plan, "monthly")

    def test_unknown_signal_rejected(self):
        with self.assertRaises(ValueError):
            derive_state("monthly", "refunded", None, NOW)


class TestTimeBuckets(unittest.TestCase):
    def test_fixed_offset_bucket_is_previous_local_day(self):
        instant = ts(2024, 1, 2, 3, 0)
        self.assertEqual(local_date_bucket(instant, "UTC"), "2024-01-02")
        self.assertEqual(local_date_bucket(instant, "UTC-5"), "2024-01-01")
        self.assertEqual(next_local_midnight(instant, "UTC-5"), ts(2024, 1, 2, 5, 0))

    def test_iana_zone(self):
        instant = ts(2024, 7, 1, 2, 0)
        self.assertEqual(local_date_bucket(instant, "America/New_York"), "2024-06-30")

    def test_unknown_timezone_falls_back_to_utc(self):
        self.assertEqual(parse_timezone("Mars/Olympus"), timezone.utc)
        self.assertEqual(parse_timezone("UTC+99"), timezone.utc)
        self.assertEqual(local_date_bucket(ts(2024, 1, 2, 3, 0), "Mars/Olympus"), "2024-01-02")

    def test_parse_instant_formats(self):
        expected = ts(2024, 1, 2, 3, 4, 5)
        self.assertEqual(parse_instant(expected), expected)
        self.assertEqual(parse_instant(expected * 1000), expected)
        self.assertEqual(parse_instant(str(expected)), expected)
        self.assertEqual(parse_instant("2024-01-02T03:04:05Z"), expected)
        self.assertEqual(parse_instant("2024-01-02T03:04:05.123456+00:00"), expected)
        self.assertIsNone(parse_instant("soon"))
        self.assertIsNone(parse_instant(True))
        self.assertIsNone(parse_instant(""))

    def test_iso_round(self):
        self.assertEqual(iso(ts(2024, 1, 2, 3, 4, 5)), "2024-01-02T03:04:05Z")
        self.assertIsNone(iso(None))


if __name__ == "__main__":
    unittest.main()
