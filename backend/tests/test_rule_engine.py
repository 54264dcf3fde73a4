"""
Tests for the compound rule evaluator.
"""

import pytest
from pydantic import ValidationError

from adspend.schemas import BudgetEntity, MetricsSnapshot, TargetRef
from adspend.services.rule_engine import (
    CompoundRule, Condition, Metric, Operator, RuleAction,
    apply, matches, metric_value, roas_rule, flat_percentage_rule, fixed_budget_rule,
)


def _entity(budget=10.0, roas=2.0, spend=None, sales=None, profit=None, adset_id="as-1"):
    return BudgetEntity(
        target=TargetRef.adset(adset_id),
        name=f"Ad set {adset_id}",
        metrics=MetricsSnapshot(budget=budget, roas=roas, spend=spend, sales=sales, profit=profit),
    )


def _rule(*conditions, operator="AND", action=None):
    return CompoundRule(
        conditions=list(conditions),
        logical_operator=operator,
        action=action or RuleAction(type="percentage", value=20, direction="increase"),
    )


ROAS_HIGH = Condition(metric=Metric.ROAS, operator=Operator.GTE, value=1.5)
SPEND_LOW = Condition(metric=Metric.SPEND, operator=Operator.LT, value=5)


def test_and_requires_every_condition():
    entity = _entity(roas=2.0, spend=8.0)
    assert matches(entity, _rule(ROAS_HIGH, SPEND_LOW, operator="AND")) is False


def test_or_requires_any_condition():
    entity = _entity(roas=2.0, spend=8.0)
    assert matches(entity, _rule(ROAS_HIGH, SPEND_LOW, operator="OR")) is True


def test_zero_conditions_never_match():
    assert matches(_entity(), _rule(operator="AND")) is False
    assert matches(_entity(), _rule(operator="OR")) is False


def test_missing_metric_makes_condition_false():
    rule = _rule(Condition(metric=Metric.PROFIT, operator=Operator.LT, value=1_000_000))
    assert matches(_entity(profit=None), rule) is False


def test_missing_metric_under_or_still_allows_other_conditions():
    rule = _rule(Condition(metric=Metric.SALES, operator=Operator.GT, value=0), ROAS_HIGH, operator="OR")
    assert matches(_entity(sales=None, roas=3.0), rule) is True


def test_between_is_inclusive():
    rule = _rule(Condition(metric=Metric.ROAS, operator=Operator.BETWEEN, value=1.0, value2=2.0))
    assert matches(_entity(roas=1.0), rule)
    assert matches(_entity(roas=2.0), rule)
    assert not matches(_entity(roas=2.01), rule)


def test_between_without_upper_bound_is_rejected():
    with pytest.raises(ValidationError, match="value2"):
        Condition(metric=Metric.ROAS, operator=Operator.BETWEEN, value=1.0)


def test_equality_uses_tolerance():
    rule = _rule(Condition(metric=Metric.BUDGET, operator=Operator.EQ, value=10.0))
    assert matches(_entity(budget=10.005), rule)
    assert not matches(_entity(budget=10.02), rule)


def test_roi_is_profit_over_budget():
    assert metric_value(_entity(budget=20.0, profit=5.0), Metric.ROI) == pytest.approx(25.0)
    assert metric_value(_entity(budget=0.0, profit=5.0), Metric.ROI) == 0.0
    assert metric_value(_entity(budget=20.0, profit=None), Metric.ROI) is None


def test_apply_unmatched_returns_current_budget():
    assert apply(_entity(budget=7.0, roas=0.5), _rule(ROAS_HIGH)) == 7.0


def test_apply_percentage_increase_and_decrease():
    entity = _entity(budget=10.0, roas=2.0)
    up = _rule(ROAS_HIGH, action=RuleAction(type="percentage", value=20, direction="increase"))
    down = _rule(ROAS_HIGH, action=RuleAction(type="percentage", value=20, direction="decrease"))
    assert apply(entity, up) == pytest.approx(12.0)
    assert apply(entity, down) == pytest.approx(8.0)


def test_apply_fixed_sets_value():
    assert apply(_entity(budget=10.0), fixed_budget_rule(35.0)) == 35.0


@pytest.mark.parametrize("action", [
    RuleAction(type="percentage", value=100, direction="decrease"),
    RuleAction(type="percentage", value=150, direction="decrease"),
    RuleAction(type="fixed", value=0),
])
def test_budget_never_drops_below_floor(action):
    entity = _entity(budget=10.0, roas=2.0)
    assert apply(entity, _rule(ROAS_HIGH, action=action)) == 1.0


def test_custom_floor():
    rule = flat_percentage_rule(100, "decrease")
    assert apply(_entity(budget=10.0), rule, min_budget=2.5) == 2.5


def test_roas_rule_above_always_increases():
    rule = roas_rule("above", 2.0, RuleAction(type="percentage", value=10, direction="decrease"))
    assert rule.conditions[0].operator == Operator.GTE
    assert apply(_entity(budget=10.0, roas=2.0), rule) == pytest.approx(11.0)


def test_roas_rule_below_always_decreases():
    rule = roas_rule("below", 1.0, RuleAction(type="percentage", value=10))
    assert apply(_entity(budget=10.0, roas=0.99), rule) == pytest.approx(9.0)
    assert apply(_entity(budget=10.0, roas=1.0), rule) == 10.0


def test_roas_rule_between_keeps_action_direction():
    rule = roas_rule("between", 1.0, RuleAction(type="percentage", value=50, direction="decrease"), upper_threshold=1.5)
    assert apply(_entity(budget=10.0, roas=1.2), rule) == pytest.approx(5.0)


def test_flat_rules_match_everything():
    assert matches(_entity(budget=0.0, roas=0.0), flat_percentage_rule(10, "increase"))


def test_legacy_operator_spellings_are_accepted():
    rule = CompoundRule.model_validate({
        "conditions": [{"type": "roas", "operator": "greater_equal", "value": 1.5}],
        "operator": "OR",
        "action": {"type": "percentage", "value": 15, "direction": "increase"},
    })
    assert rule.conditions[0].operator == Operator.GTE
    assert rule.conditions[0].metric == Metric.ROAS
    assert rule.logical_operator == "OR"
