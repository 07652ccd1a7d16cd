from decimal import Decimal

from alerts import FELL_BELOW, ROSE_ABOVE, AlertEvaluator, crossing


class TestCrossing:
    def test_rose_above(self):
        assert crossing(Decimal("1900"), Decimal("2100"), Decimal("2000")) == ROSE_ABOVE

    def test_landing_on_target_from_below(self):
        assert crossing(Decimal("1900"), Decimal("2000"), Decimal("2000")) == ROSE_ABOVE

    def test_fell_below(self):
        assert crossing(Decimal("2100"), Decimal("1900"), Decimal("2000")) == FELL_BELOW

    def test_starting_on_target_does_not_fire(self):
        assert crossing(Decimal("2000"), Decimal("2100"), Decimal("2000")) is None
        assert crossing(Decimal("2000"), Decimal("1900"), Decimal("2000")) is None

    def test_no_previous_price(self):
        assert crossing(None, Decimal("2100"), Decimal("2000")) is None

    def test_staying_on_one_side(self):
        assert crossing(Decimal("1800"), Decimal("1900"), Decimal("2000")) is None


class TestAlertEvaluator:
    def test_fires_once(self):
        evaluator = AlertEvaluator()
        evaluator.add("pool", Decimal("2000"), chat_id=1)

        fired = evaluator.evaluate("pool", Decimal("1990"), Decimal("2010"))
        assert [f.direction for f in fired] == [ROSE_ABOVE]
        assert fired[0].alert.triggered is True

        # back down and up again: the alert is spent
        assert evaluator.evaluate("pool", Decimal("2010"), Decimal("1990")) == []
        assert evaluator.evaluate("pool", Decimal("1990"), Decimal("2010")) == []
        assert evaluator.active("pool") == []

    def test_untouched_alerts_stay_active(self):
        evaluator = AlertEvaluator()
        evaluator.add("pool", Decimal("2000"), chat_id=1)
        evaluator.add("pool", Decimal("2500"), chat_id=1)

        fired = evaluator.evaluate("pool", Decimal("1990"), Decimal("2010"))

        assert len(fired) == 1
        assert [a.target_price for a in evaluator.active("pool")] == [Decimal("2500")]

    def test_pools_are_independent(self):
        evaluator = AlertEvaluator()
        evaluator.add("a", Decimal("2000"), chat_id=1)
        assert evaluator.evaluate("b", Decimal("1990"), Decimal("2010")) == []

    def test_trigger_persisted(self, store):
        evaluator = AlertEvaluator(store)
        alert = evaluator.add("pool", Decimal("2000"), chat_id=1)
        assert alert.id is not None
        assert len(store.get_alerts("pool")) == 1

        evaluator.evaluate("pool", Decimal("2100"), Decimal("1900"))

        assert store.get_alerts("pool") == []

    def test_load_from_store(self, store):
        AlertEvaluator(store).add("pool", Decimal("2000"), chat_id=1)

        evaluator = AlertEvaluator(store)
        evaluator.load("pool")

        assert [a.target_price for a in evaluator.active("pool")] == [Decimal("2000")]

    def test_clear_one_chat(self, store):
        evaluator = AlertEvaluator(store)
        evaluator.add("pool", Decimal("2000"), chat_id=1)
        evaluator.add("pool", Decimal("2000"), chat_id=2)

        evaluator.clear("pool", chat_id=1)

        assert [a.chat_id for a in evaluator.active("pool")] == [2]
        assert [a.chat_id for a in store.get_alerts("pool")] == [2]
