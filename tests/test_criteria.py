"""
Tests for achievement criteria evaluation

Covers:
- Built-in predicates and their trigger gating
- Threshold descriptors and custom rules
- Registry errors and unknown criteria payloads
"""
import logging
import pytest

from progression.logic.criteria import (
    CriteriaRegistry,
    default_registry,
    evaluate_condition,
    learner_metrics,
)
from progression.schemas import AchievementContext, ContextData, LearnerAggregate
from progression.schemas_achievements import (
    AchievementDefinition,
    CustomCriteria,
    OpaqueCriteria,
    ThresholdCriteria,
    parse_criteria,
)


def _learner(**fields):
    return LearnerAggregate(learner_id="u1", **fields)


def _context(trigger, **data):
    return AchievementContext(trigger=trigger, data=ContextData(**data))


def _definition(code, criteria=None):
    return AchievementDefinition(id=f"id-{code}", code=code, name=code, criteria=criteria)


class TestBuiltInPredicates:

    def test_first_lesson_needs_lesson_trigger(self):
        definition = _definition("first_lesson")

        assert default_registry.evaluate(definition, _learner(), _context("lesson_completed"))
        assert not default_registry.evaluate(definition, _learner(), _context("xp_earned"))

    def test_first_lesson_with_zero_completed_count(self):
        definition = _definition("first_lesson")
        context = _context("lesson_completed", lessons_completed=0)

        assert not default_registry.evaluate(definition, _learner(), context)

    @pytest.mark.parametrize("code,days", [("streak_3", 3), ("streak_7", 7), ("streak_30", 30)])
    def test_streak_thresholds(self, code, days):
        definition = _definition(code)
        context = _context("streak_updated")

        assert not default_registry.evaluate(definition, _learner(current_streak=days - 1), context)
        assert default_registry.evaluate(definition, _learner(current_streak=days), context)

    def test_streak_ignored_on_exercise_trigger(self):
        definition = _definition("streak_3")

        assert not default_registry.evaluate(
            definition, _learner(current_streak=10), _context("exercise_completed", is_correct=True)
        )

    def test_perfect_10(self):
        definition = _definition("perfect_10")

        assert default_registry.evaluate(
            definition, _learner(), _context("exercise_completed", is_correct=True, perfect_exercises=10)
        )
        assert not default_registry.evaluate(
            definition, _learner(), _context("exercise_completed", is_correct=True, perfect_exercises=9)
        )
        assert not default_registry.evaluate(
            definition, _learner(), _context("exercise_completed", is_correct=False, perfect_exercises=12)
        )

    def test_xp_100(self):
        definition = _definition("xp_100")

        assert default_registry.evaluate(definition, _learner(total_xp=100), _context("xp_earned"))
        assert not default_registry.evaluate(definition, _learner(total_xp=99), _context("xp_earned"))
        assert not default_registry.evaluate(definition, _learner(total_xp=500), _context("streak_updated"))


class TestDescriptors:

    def test_threshold_descriptor(self):
        definition = _definition("xp_1000", ThresholdCriteria(
            metric="total_xp", value=1000, triggers=["xp_earned"]
        ))

        assert default_registry.evaluate(definition, _learner(total_xp=1000), _context("xp_earned"))
        assert not default_registry.evaluate(definition, _learner(total_xp=999), _context("xp_earned"))
        assert not default_registry.evaluate(definition, _learner(total_xp=5000), _context("lesson_completed"))

    def test_threshold_without_triggers_matches_any(self):
        definition = _definition("lessons_5", ThresholdCriteria(metric="lessons_completed", value=5))

        assert default_registry.evaluate(
            definition, _learner(), _context("lesson_completed", lessons_completed=5)
        )

    def test_custom_rule(self):
        definition = _definition("flawless_lesson", CustomCriteria(rule="lesson_accuracy", params={"accuracy": 90}))

        assert default_registry.evaluate(definition, _learner(), _context("lesson_completed", accuracy=95.0))
        assert not default_registry.evaluate(definition, _learner(), _context("lesson_completed", accuracy=80.0))
        assert not default_registry.evaluate(definition, _learner(), _context("lesson_completed"))

    def test_unknown_custom_rule_is_never_satisfied(self, caplog):
        definition = _definition("mystery", CustomCriteria(rule="does_not_exist"))

        with caplog.at_level(logging.WARNING):
            assert not default_registry.evaluate(definition, _learner(), _context("lesson_completed"))
        assert "does_not_exist" in caplog.text

    def test_opaque_and_missing_criteria_never_satisfied(self):
        opaque = _definition("future_badge", OpaqueCriteria(payload={"kind": "social", "friends": 3}))
        missing = _definition("no_criteria")

        assert not default_registry.evaluate(opaque, _learner(total_xp=10**6), _context("xp_earned"))
        assert not default_registry.evaluate(missing, _learner(total_xp=10**6), _context("xp_earned"))

    def test_code_predicate_wins_over_descriptor(self):
        definition = _definition("xp_100", ThresholdCriteria(metric="total_xp", value=1))

        assert not default_registry.evaluate(definition, _learner(total_xp=50), _context("xp_earned"))


class TestParseCriteria:

    def test_threshold(self):
        criteria = parse_criteria({"kind": "threshold", "metric": "current_streak", "value": 14})

        assert isinstance(criteria, ThresholdCriteria)
        assert criteria.operator == ">="

    def test_custom(self):
        criteria = parse_criteria({"kind": "custom", "rule": "lesson_accuracy", "params": {"accuracy": 100}})
        assert isinstance(criteria, CustomCriteria)

    @pytest.mark.parametrize("raw", [
        {"kind": "social", "friends": 3},
        {"kind": "threshold", "metric": "hearts", "value": 5},
        {"kind": "threshold", "metric": "total_xp", "value": 0},
        {"type": "total_xp", "value": 100},
    ])
    def test_unrecognized_payload_kept_as_opaque(self, raw):
        criteria = parse_criteria(raw)

        assert isinstance(criteria, OpaqueCriteria)
        assert criteria.payload == raw

    def test_none(self):
        assert parse_criteria(None) is None


class TestConditions:

    @pytest.mark.parametrize("operator,value,expected", [
        (">=", 7, True),
        (">", 7, False),
        ("==", 7, True),
        ("<=", 6, False),
        ("<", 8, True),
    ])
    def test_operators(self, operator, value, expected):
        condition = ThresholdCriteria(metric="current_streak", operator=operator, value=value)
        assert evaluate_condition(condition, {'current_streak': 7}) is expected

    def test_missing_metric_counts_as_zero(self):
        condition = ThresholdCriteria(metric="perfect_exercises", value=1)
        assert evaluate_condition(condition, {}) is False

    def test_learner_metrics(self):
        metrics = learner_metrics(
            _learner(total_xp=120, current_streak=3, longest_streak=9),
            _context("lesson_completed", lessons_completed=4),
        )

        assert metrics == {
            'total_xp': 120,
            'current_streak': 3,
            'longest_streak': 9,
            'lessons_completed': 4,
            'perfect_exercises': 0,
        }


class TestRegistry:

    def test_custom_registry_predicate(self):
        registry = CriteriaRegistry()

        @registry.register("night_owl")
        def night_owl(learner, context):
            return context.data.extra.get("hour", 12) < 5

        definition = _definition("night_owl")
        assert registry.has_predicate("night_owl")
        assert registry.evaluate(definition, _learner(), _context("lesson_completed", extra={"hour": 3}))
        assert not registry.evaluate(definition, _learner(), _context("lesson_completed"))

    def test_duplicate_predicate_rejected(self):
        registry = CriteriaRegistry()
        registry.register("night_owl")(lambda learner, context: True)

        with pytest.raises(ValueError):
            registry.register("night_owl")(lambda learner, context: False)

    def test_duplicate_rule_rejected(self):
        with pytest.raises(ValueError):
            default_registry.register_rule("lesson_accuracy")(lambda learner, context, params: True)
