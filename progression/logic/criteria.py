"""
Achievement criteria

A rule table instead of a central conditional:
- per-code predicates, registered with @registry.register("code")
- data-driven threshold descriptors evaluated in memory
- named custom rules (@registry.register_rule("name")) referenced from
  catalog rows with {"kind": "custom", "rule": "name", "params": {...}}

Predicates receive the learner aggregate and the check context and must
not touch storage.
"""
from typing import Any, Callable, Dict, List, Optional
import logging
import operator

from progression.schemas import AchievementContext, LearnerAggregate
from progression.schemas_achievements import (
    AchievementDefinition,
    CustomCriteria,
    ThresholdCriteria,
)

logger = logging.getLogger(__name__)

Predicate = Callable[[LearnerAggregate, AchievementContext], bool]
CustomRule = Callable[[LearnerAggregate, AchievementContext, Dict[str, Any]], bool]

_OPERATORS = {
    '>=': operator.ge,
    '>': operator.gt,
    '==': operator.eq,
    '<=': operator.le,
    '<': operator.lt,
}


def learner_metrics(learner: LearnerAggregate, context: AchievementContext) -> Dict[str, int]:
    """Metrics available to threshold criteria"""
    return {
        'total_xp': learner.total_xp,
        'current_streak': learner.current_streak,
        'longest_streak': learner.longest_streak,
        'lessons_completed': context.data.lessons_completed or 0,
        'perfect_exercises': context.data.perfect_exercises or 0,
    }


def evaluate_condition(condition: ThresholdCriteria, metrics: Dict[str, int]) -> bool:
    """
    Evaluate one {metric, operator, value} condition.

    Examples:
        {"metric": "total_xp", "operator": ">=", "value": 1000}
        {"metric": "current_streak", "operator": ">=", "value": 7}
    """
    current_value = metrics.get(condition.metric, 0)
    result = _OPERATORS[condition.operator](current_value, condition.value)
    logger.debug(
        f"Condition eval: {condition.metric} {condition.operator} {condition.value} "
        f"(current: {current_value}) -> {result}"
    )
    return result


class CriteriaRegistry:
    """Maps achievement codes and custom rule names to predicates"""

    def __init__(self):
        self._predicates: Dict[str, Predicate] = {}
        self._rules: Dict[str, CustomRule] = {}

    def register(self, code: str) -> Callable[[Predicate], Predicate]:
        def decorator(predicate: Predicate) -> Predicate:
            if code in self._predicates:
                raise ValueError(f"Predicate already registered for achievement {code}")
            self._predicates[code] = predicate
            return predicate
        return decorator

    def register_rule(self, name: str) -> Callable[[CustomRule], CustomRule]:
        def decorator(rule: CustomRule) -> CustomRule:
            if name in self._rules:
                raise ValueError(f"Custom rule already registered: {name}")
            self._rules[name] = rule
            return rule
        return decorator

    def has_predicate(self, code: str) -> bool:
        return code in self._predicates

    def evaluate(
        self,
        definition: AchievementDefinition,
        learner: LearnerAggregate,
        context: AchievementContext
    ) -> bool:
        """
        Decide whether `definition` is satisfied.

        Code predicates win over the stored descriptor. Opaque or missing
        criteria are never satisfied.
        """
        predicate = self._predicates.get(definition.code)
        if predicate is not None:
            return predicate(learner, context)

        criteria = definition.criteria
        if isinstance(criteria, ThresholdCriteria):
            if criteria.triggers and context.trigger not in criteria.triggers:
                return False
            return evaluate_condition(criteria, learner_metrics(learner, context))

        if isinstance(criteria, CustomCriteria):
            rule = self._rules.get(criteria.rule)
            if rule is None:
                logger.warning(f"No custom rule '{criteria.rule}' for achievement {definition.code}")
                return False
            return rule(learner, context, criteria.params)

        return False


default_registry = CriteriaRegistry()


# ============= BUILT-IN PREDICATES =============

STREAK_TRIGGERS = ("streak_updated", "lesson_completed")
XP_TRIGGERS = ("xp_earned", "lesson_completed")


@default_registry.register("first_lesson")
def first_lesson(learner: LearnerAggregate, context: AchievementContext) -> bool:
    if context.trigger != "lesson_completed":
        return False
    completed = context.data.lessons_completed
    return completed is None or completed >= 1


def _streak_predicate(days: int) -> Predicate:
    def predicate(learner: LearnerAggregate, context: AchievementContext) -> bool:
        return context.trigger in STREAK_TRIGGERS and learner.current_streak >= days
    return predicate


for _days in (3, 7, 30):
    default_registry.register(f"streak_{_days}")(_streak_predicate(_days))


@default_registry.register("perfect_10")
def perfect_10(learner: LearnerAggregate, context: AchievementContext) -> bool:
    if context.trigger != "exercise_completed" or not context.data.is_correct:
        return False
    return (context.data.perfect_exercises or 0) >= 10


@default_registry.register("xp_100")
def xp_100(learner: LearnerAggregate, context: AchievementContext) -> bool:
    return context.trigger in XP_TRIGGERS and learner.total_xp >= 100


@default_registry.register_rule("lesson_accuracy")
def lesson_accuracy(learner: LearnerAggregate, context: AchievementContext, params: Dict[str, Any]) -> bool:
    """Lesson finished with at least params["accuracy"] percent"""
    if context.trigger != "lesson_completed" or context.data.accuracy is None:
        return False
    return context.data.accuracy >= float(params.get("accuracy", 100))


# ============= DEFAULT CATALOG =============

DEFAULT_ACHIEVEMENTS: List[Dict[str, Optional[Any]]] = [
    {
        'code': 'first_lesson',
        'name': 'First Steps',
        'description': 'Complete your first lesson',
        'xp_reward': 10,
    },
    {
        'code': 'streak_3',
        'name': 'On Fire',
        'description': 'Keep a 3-day streak',
        'xp_reward': 20,
    },
    {
        'code': 'streak_7',
        'name': 'Week Warrior',
        'description': 'Keep a 7-day streak',
        'xp_reward': 50,
    },
    {
        'code': 'streak_30',
        'name': 'Month Master',
        'description': 'Keep a 30-day streak',
        'xp_reward': 200,
    },
    {
        'code': 'perfect_10',
        'name': 'Perfectionist',
        'description': 'Answer 10 exercises with 100% accuracy',
        'xp_reward': 50,
    },
    {
        'code': 'xp_100',
        'name': 'Century',
        'description': 'Earn 100 XP',
        'xp_reward': 25,
    },
    {
        'code': 'xp_1000',
        'name': 'Scholar',
        'description': 'Earn 1000 XP',
        'xp_reward': 100,
        'criteria': {'kind': 'threshold', 'metric': 'total_xp', 'operator': '>=', 'value': 1000,
                     'triggers': ['xp_earned', 'lesson_completed']},
    },
    {
        'code': 'flawless_lesson',
        'name': 'Flawless',
        'description': 'Finish a lesson with 100% accuracy',
        'xp_reward': 30,
        'criteria': {'kind': 'custom', 'rule': 'lesson_accuracy', 'params': {'accuracy': 100}},
    },
]
