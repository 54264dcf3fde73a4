"""
Compound Rule Evaluator — AND/OR conditions over an entity's metrics plus
one budget action.

A rule matches when its conditions combine to true; a rule with no
conditions never matches. A condition on a metric the entity does not have
(spend, sales, profit or roi) is false. Budget and ROAS are always known.

Applying a matching rule either scales the budget by a percentage or sets a
fixed amount; the result is never below the minimum budget.
"""

import enum
import logging
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from adspend.schemas import BudgetEntity

logger = logging.getLogger(__name__)

MIN_BUDGET = 1.0
EQUALITY_TOLERANCE = 0.01


class Metric(str, enum.Enum):
    ROAS = "roas"
    SPEND = "spend"
    PROFIT = "profit"
    BUDGET = "budget"
    SALES = "sales"
    ROI = "roi"


class Operator(str, enum.Enum):
    GT = ">"
    LT = "<"
    EQ = "="
    GTE = ">="
    LTE = "<="
    BETWEEN = "between"


# Spellings used by older saved profiles
_OPERATOR_ALIASES = {
    "greater": ">",
    "less": "<",
    "equal": "=",
    "greater_equal": ">=",
    "less_equal": "<=",
    "≥": ">=",
    "≤": "<=",
}


class Condition(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    metric: Metric = Field(alias="type")
    operator: Operator
    value: float
    value2: Optional[float] = None

    @field_validator("operator", mode="before")
    @classmethod
    def _normalize_operator(cls, v):
        if isinstance(v, str):
            return _OPERATOR_ALIASES.get(v, v)
        return v

    @model_validator(mode="after")
    def _between_needs_upper_bound(self) -> "Condition":
        if self.operator == Operator.BETWEEN and self.value2 is None:
            raise ValueError("'between' conditions require value2")
        return self


class RuleAction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["percentage", "fixed"]
    value: float = Field(ge=0)
    direction: Literal["increase", "decrease"] = "increase"


class CompoundRule(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    conditions: list[Condition] = Field(default_factory=list)
    logical_operator: Literal["AND", "OR"] = Field(default="AND", alias="operator")
    action: RuleAction


# ── Evaluation ───────────────────────────────────────────────────────

def metric_value(entity: BudgetEntity, metric: Metric) -> Optional[float]:
    """Value of ``metric`` for ``entity``; None when the entity lacks it."""
    m = entity.metrics
    if metric == Metric.BUDGET:
        return m.budget
    if metric == Metric.ROAS:
        return m.roas
    if metric == Metric.SPEND:
        return m.spend
    if metric == Metric.SALES:
        return m.sales
    if metric == Metric.PROFIT:
        return m.profit
    if metric == Metric.ROI:
        if m.profit is None:
            return None
        return m.profit / m.budget * 100 if m.budget else 0.0
    return None


def condition_holds(entity: BudgetEntity, condition: Condition) -> bool:
    actual = metric_value(entity, condition.metric)
    if actual is None:
        return False

    op = condition.operator
    if op == Operator.GT:
        return actual > condition.value
    if op == Operator.LT:
        return actual < condition.value
    if op == Operator.EQ:
        return abs(actual - condition.value) < EQUALITY_TOLERANCE
    if op == Operator.GTE:
        return actual >= condition.value
    if op == Operator.LTE:
        return actual <= condition.value
    if op == Operator.BETWEEN:
        return condition.value2 is not None and condition.value <= actual <= condition.value2
    return False


def matches(entity: BudgetEntity, rule: CompoundRule) -> bool:
    if not rule.conditions:
        return False
    results = (condition_holds(entity, c) for c in rule.conditions)
    if rule.logical_operator == "AND":
        return all(results)
    return any(results)


def apply(entity: BudgetEntity, rule: CompoundRule, min_budget: float = MIN_BUDGET) -> float:
    """New budget for ``entity``. Unchanged if the rule does not match."""
    if not matches(entity, rule):
        return entity.budget

    action = rule.action
    if action.type == "fixed":
        new_budget = action.value
    elif action.direction == "increase":
        new_budget = entity.budget * (1 + action.value / 100)
    else:
        new_budget = entity.budget * (1 - action.value / 100)
    return max(min_budget, new_budget)


# ── Single-dimension rules ───────────────────────────────────────────

def roas_rule(
    filter_type: Literal["above", "below", "between"],
    threshold: float,
    action: RuleAction,
    upper_threshold: Optional[float] = None,
) -> CompoundRule:
    """
    ROAS above (≥), below (<) or between two thresholds. For percentage actions
    "above" always increases and "below" always decreases; "between" keeps the
    direction given on the action.
    """
    if filter_type == "above":
        condition = Condition(metric=Metric.ROAS, operator=Operator.GTE, value=threshold)
        if action.type == "percentage":
            action = action.model_copy(update={"direction": "increase"})
    elif filter_type == "below":
        condition = Condition(metric=Metric.ROAS, operator=Operator.LT, value=threshold)
        if action.type == "percentage":
            action = action.model_copy(update={"direction": "decrease"})
    else:
        condition = Condition(
            metric=Metric.ROAS, operator=Operator.BETWEEN, value=threshold, value2=upper_threshold
        )
    return CompoundRule(conditions=[condition], action=action)


def _everything() -> Condition:
    return Condition(metric=Metric.BUDGET, operator=Operator.GTE, value=0)


def flat_percentage_rule(percentage: float, direction: Literal["increase", "decrease"]) -> CompoundRule:
    """Increase-all / decrease-all."""
    return CompoundRule(
        conditions=[_everything()],
        action=RuleAction(type="percentage", value=percentage, direction=direction),
    )


def fixed_budget_rule(amount: float) -> CompoundRule:
    """Set every selected entity to the same budget."""
    return CompoundRule(conditions=[_everything()], action=RuleAction(type="fixed", value=amount))
