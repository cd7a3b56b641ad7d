import unittest

from fakes import StoreTestCase

from entitlements.core.errors import AlreadyLinked, StoreUnavailable
from entitlements.services import checkout_bridge, subscriptions, users

DAY = 86400


class TestApply(StoreTestCase):
    def setUp(self):
        super().setUp()
        self.add_user("u1")

    def apply(self, signal, event_at, sid="sub_1", ends_at=None):
        return subscriptions.apply_subscription(
            "u1",
            provider="stripe",
            subscription_id=sid,
            plan="monthly",
            signal=signal,
            ends_at=ends_at or self.now + 30 * DAY,
            event_at=event_at,
            now=self.now,
        )

    def test_same_event_twice_is_idempotent(self):
        self.assertTrue(self.apply("created", self.now - 5))
        first = dict(self.users.get(user_sub="u1"))
        self.assertTrue(self.apply("created", self.now - 5))
        second = self.users.get(user_sub="u1")
        for field in ("subscription_plan", "subscription_status", "subscription_ends_at", "subscription_id"):
            self.assertEqual(first[field], second[field])

    def test_older_event_dropped(self):
        self.apply("canceled", self.now - 5)
        self.assertFalse(self.apply("updated", self.now - 50))
        self.assertEqual(self.users.get(user_sub="u1")["subscription_status"], "canceled")

    def test_activation_rebinds_to_new_subscription(self):
        self.apply("created", self.now - 50)
        self.assertTrue(self.apply("created", self.now - 5, sid="sub_2"))
        self.assertEqual(self.users.get(user_sub="u1")["subscription_id"], "sub_2")
        self.assertEqual(subscriptions.find_user_by_subscription_id("sub_2"), "u1")

    def test_unknown_user_not_created(self):
        result = subscriptions.apply_subscription(
            "ghost", provider="stripe", subscription_id="s", plan="monthly", signal="created", ends_at=None, now=self.now
        )
        self.assertFalse(result)
        self.assertIsNone(users.get_user("ghost"))

    def test_store_failure_surfaces(self):
        self.users.error_code = "ProvisionedThroughputExceededException"
        with self.assertRaises(StoreUnavailable):
            self.apply("created", self.now)


class TestLink(StoreTestCase):
    def setUp(self):
        super().setUp()
        self.add_user("u1")

    def link(self, sid="sub_1"):
        return subscriptions.link_subscription(
            "u1", provider="paddle", subscription_id=sid, plan="yearly", signal="activated",
            ends_at=self.now + 365 * DAY, now=self.now,
        )

    def test_link_fills_empty_row(self):
        self.assertTrue(self.link())
        view = subscriptions.subscription_view(self.users.get(user_sub="u1"), now=self.now)
        self.assertEqual((view["plan"], view["status"], view["premium"]), ("yearly", "active", True))

    def test_link_after_webhook_reports_already_linked(self):
        self.link()
        self.users.get(user_sub="u1")["subscription_status"] = "canceled"
        with self.assertRaises(AlreadyLinked):
            self.link()
        self.assertEqual(self.users.get(user_sub="u1")["subscription_status"], "canceled")

    def test_account_link_first_writer_wins(self):
        self.assertTrue(subscriptions.link_account("paddle", "ctm_1", "u1"))
        self.assertTrue(subscriptions.link_account("paddle", "ctm_1", "u1"))
        self.assertFalse(subscriptions.link_account("paddle", "ctm_1", "u2"))
        self.assertEqual(subscriptions.find_user_by_account("paddle", "ctm_1"), "u1")

    def test_order_claim_once(self):
        self.assertTrue(subscriptions.claim_order("fastspring", "o1#pkg", "u1"))
        self.assertFalse(subscriptions.claim_order("fastspring", "o1#pkg", "u1"))
        subscriptions.release_order("fastspring", "o1#pkg")
        self.assertTrue(subscriptions.claim_order("fastspring", "o1#pkg", "u1"))


class TestExpire(StoreTestCase):
    def test_only_lapsed_cancellations_expire(self):
        self.add_premium_user("u1", subscription_status="active", subscription_ends_at=self.now - DAY)
        self.assertFalse(subscriptions.expire_subscription("u1", now=self.now))
        self.add_premium_user("u2", subscription_status="canceled", subscription_ends_at=self.now + DAY)
        self.assertFalse(subscriptions.expire_subscription("u2", now=self.now))
        self.add_premium_user("u3", subscription_status="canceled", subscription_ends_at=self.now - DAY)
        self.assertTrue(subscriptions.expire_subscription("u3", now=self.now))


class TestUsersAndCheckout(StoreTestCase):
    def test_ensure_user_creates_once_with_timezone(self):
        self.override(initial_credits=25)
        first = users.ensure_user("u1", "America/New_York")
        second = users.ensure_user("u1", "Europe/Paris")
        self.assertEqual(first["timezone"], "America/New_York")
        self.assertEqual(second["timezone"], "America/New_York")
        self.assertEqual(second["credits"], 25)

    def test_require_user_missing(self):
        with self.assertRaises(LookupError):
            users.require_user("nobody")

    def test_recent_checkout_window(self):
        self.override(pending_checkout_ttl_seconds=300)
        checkout_bridge.start_checkout("old", now=self.now - 600)
        checkout_bridge.start_checkout("a", now=self.now - 100)
        checkout_bridge.start_checkout("b", now=self.now - 20)
        self.assertEqual(checkout_bridge.find_recent_checkout(now=self.now)["user_sub"], "b")
        self.assertIsNone(checkout_bridge.get_pending_checkout("old", now=self.now))

    def test_clear_checkout_keeps_newer_restart(self):
        checkout_bridge.start_checkout("a", now=self.now - 100)
        checkout_bridge.start_checkout("a", now=self.now - 10)
        self.assertFalse(checkout_bridge.clear_checkout("a", self.now - 100))
        self.assertTrue(checkout_bridge.clear_checkout("a", self.now - 10))
        self.assertIsNone(self.pending_checkouts.get(user_sub="a"))


if __name__ == "__main__":
    unittest.main()
