import unittest
from unittest.mock import patch

from fakes import StoreTestCase

from entitlements.services import subscriptions, sweeper

DAY = 86400


class TestSweep(StoreTestCase):
    def setUp(self):
        super().setUp()
        self.override(free_character_slots=1, premium_character_slots=3)

    def test_lapsed_cancellation_expires_and_fixes_active_pointer(self):
        self.add_premium_user("u1", subscription_status="canceled", subscription_ends_at=self.now - DAY, active_character_id="c2")
        self.add_character("u1", "c1", 1000)
        self.add_character("u1", "c2", 2000)
        stats = sweeper.sweep(now=self.now)
        self.assertEqual(stats["expired"], 1)
        user = self.users.get(user_sub="u1")
        self.assertEqual((user["subscription_plan"], user["subscription_status"]), ("free", "free"))
        self.assertEqual(user["character_slots"], 1)
        self.assertEqual(user["active_character_id"], "c1")
        # Characters are locked, never deleted.
        self.assertIsNotNone(self.characters.get(user_sub="u1", character_id="c2"))

    def test_grace_period_untouched(self):
        self.add_premium_user("u1", subscription_status="canceled", subscription_ends_at=self.now + DAY)
        stats = sweeper.sweep(now=self.now)
        self.assertEqual((stats["expired"], stats["repaired"]), (0, 0))
        self.assertEqual(self.users.get(user_sub="u1")["subscription_status"], "canceled")

    def test_drifted_slot_cache_repaired(self):
        self.add_premium_user("u1", character_slots=1)
        self.add_user("u2", character_slots=3)
        stats = sweeper.sweep(now=self.now)
        self.assertEqual(stats["repaired"], 2)
        self.assertEqual(self.users.get(user_sub="u1")["character_slots"], 3)
        self.assertEqual(self.users.get(user_sub="u2")["character_slots"], 1)

    def test_pages_through_users(self):
        for i in range(5):
            self.add_user(f"u{i}")
        stats = sweeper.sweep(batch_size=2, now=self.now)
        self.assertEqual((stats["scanned"], stats["batches"]), (5, 3))

    def test_user_deleted_mid_run_is_skipped(self):
        self.add_premium_user("u1", character_slots=1)
        self.add_premium_user("u2", character_slots=1)
        with patch.object(subscriptions, "enforce_slot_limit", side_effect=[LookupError("user u1 not found"), None]):
            stats = sweeper.sweep(now=self.now)
        self.assertEqual((stats["scanned"], stats["repaired"], stats["skipped"], stats["errors"]), (2, 1, 1, 0))

    def test_rerun_is_noop(self):
        self.add_premium_user("u1", subscription_status="canceled", subscription_ends_at=self.now - DAY)
        sweeper.sweep(now=self.now)
        stats = sweeper.sweep(now=self.now)
        self.assertEqual((stats["expired"], stats["repaired"]), (0, 0))


if __name__ == "__main__":
    unittest.main()
