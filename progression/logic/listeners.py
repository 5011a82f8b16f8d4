"""
Event listeners for XP-earning actions

PRINCIPLES:
1. Validate payloads before any write
2. The XP append is the primary action: its failures propagate
3. Leaderboard, streak and achievement updates are best-effort: caught,
   logged with the event context and never roll back the XP award
"""
import logging
from datetime import date
from typing import Dict, Any, List, Optional

from progression.dynamo import ALL_LANGUAGES
from progression.exceptions import InvalidInput

logger = logging.getLogger(__name__)


# ============================================================================
# Event Payload Validators
# ============================================================================

def validate_base_event(event: Dict[str, Any]) -> Optional[str]:
    """
    Validate common fields in all events.

    Returns error message if invalid, None if valid
    """
    learner_id = event.get('learnerId')
    if not isinstance(learner_id, str) or not learner_id.strip():
        return "Missing required field: learnerId"

    xp_reward = event.get('xpReward', 0)
    if isinstance(xp_reward, bool) or not isinstance(xp_reward, int) or xp_reward < 0:
        return f"xpReward must be a non-negative integer, got: {xp_reward!r}"

    language_id = event.get('languageId')
    if language_id is not None and (not isinstance(language_id, str) or not language_id.strip()):
        return f"Invalid languageId: {language_id!r}"
    if language_id is not None and (language_id.upper() == ALL_LANGUAGES or '#' in language_id):
        return f"languageId {language_id!r} is reserved"

    return None


def _best_effort(step: str, log_context: Dict[str, Any], func, *args, **kwargs):
    """Run a side effect, log and swallow its failure"""
    try:
        return True, func(*args, **kwargs)
    except Exception as e:
        logger.error(f"{step} failed: {e}", extra=log_context, exc_info=True)
        return False, None


def _check_achievements(engine, learner_id: str, contexts: List[Dict[str, Any]], log_context: Dict[str, Any]) -> list:
    unlocked = []
    for context in contexts:
        ok, results = _best_effort(
            f"Achievement check ({context['trigger']})",
            log_context,
            engine.achievements.check_and_unlock_achievements,
            learner_id,
            context,
        )
        if ok:
            unlocked.extend(results)
    if unlocked:
        logger.info(f"🏆 {len(unlocked)} new achievement(s)", extra=log_context)
    return unlocked


# ============================================================================
# Listener: Exercise Answered
# ============================================================================

def on_exercise_answered(engine, event: Dict[str, Any]) -> Dict[str, Any]:
    """
    Correct answer: award XP, then leaderboard and achievements.
    Wrong answer: lose a heart.

    Event Payload:
    {
        "learnerId": "learner-1",
        "exerciseId": "ex-42",
        "correct": true,
        "xpReward": 10,
        "languageId": "es",            (optional)
        "perfectExercises": 10,        (optional, from the exercise layer)
        "idempotencyKey": "answer-abc" (optional)
    }

    Returns:
        {
            "success": true,
            "correct": true,
            "xpAwarded": 10,
            "xpEvent": XPEvent | None,
            "hearts": HeartsState | None,
            "newAchievements": [UnlockResult, ...],
            "leaderboardUpdated": true,
            "duplicate": false          (true when idempotencyKey was already used)
        }
    """
    log_context = {
        'event': 'on_exercise_answered',
        'learner_id': event.get('learnerId'),
        'exercise_id': event.get('exerciseId'),
    }

    error = validate_base_event(event)
    if error is None and not event.get('exerciseId'):
        error = "Missing required field: exerciseId"
    if error is None and not isinstance(event.get('correct'), bool):
        error = "correct must be a boolean"
    if error:
        logger.warning(f"Invalid event payload: {error}", extra=log_context)
        raise InvalidInput(error)

    learner_id = event['learnerId']
    result = {
        'success': True,
        'correct': event['correct'],
        'xpAwarded': 0,
        'xpEvent': None,
        'hearts': None,
        'newAchievements': [],
        'leaderboardUpdated': False,
        'duplicate': False,
    }

    if not event['correct']:
        result['hearts'] = engine.hearts.lose_heart(learner_id)
        return result

    xp_reward = event.get('xpReward', 0)
    if xp_reward > 0:
        result['xpEvent'], created = engine.ledger.append_xp_with_status(
            learner_id,
            xp_reward,
            "exercise",
            source_id=event['exerciseId'],
            description="Exercise answered correctly",
            idempotency_key=event.get('idempotencyKey'),
        )
        if not created:
            logger.warning("Replayed answer, side effects already applied", extra=log_context)
            result['duplicate'] = True
            return result
        result['xpAwarded'] = xp_reward

    contexts = [{
        'trigger': 'exercise_completed',
        'data': {
            'is_correct': True,
            'exercise_id': event['exerciseId'],
            'perfect_exercises': event.get('perfectExercises'),
        },
    }]
    if xp_reward > 0:
        contexts.append({'trigger': 'xp_earned', 'data': {'exercise_id': event['exerciseId']}})
    result['newAchievements'] = _check_achievements(engine, learner_id, contexts, log_context)

    board_xp = xp_reward + sum(unlock.xp_reward for unlock in result['newAchievements'])
    if board_xp > 0:
        result['leaderboardUpdated'], _ = _best_effort(
            "Leaderboard update", log_context,
            engine.leaderboard.record_xp, learner_id, board_xp, event.get('languageId'),
        )

    return result


# ============================================================================
# Listener: Lesson Completed
# ============================================================================

def on_lesson_completed(engine, event: Dict[str, Any]) -> Dict[str, Any]:
    """
    Lesson finished: award XP, advance the streak, check achievements and
    update the leaderboard.

    Event Payload:
    {
        "learnerId": "learner-1",
        "lessonId": "lesson-001",
        "xpReward": 20,
        "accuracy": 100.0,          (optional)
        "lessonsCompleted": 3,      (optional)
        "languageId": "es",         (optional)
        "activityDate": date        (optional, defaults to today in LEADERBOARD_TIMEZONE)
    }
    """
    log_context = {
        'event': 'on_lesson_completed',
        'learner_id': event.get('learnerId'),
        'lesson_id': event.get('lessonId'),
    }

    error = validate_base_event(event)
    if error is None and not event.get('lessonId'):
        error = "Missing required field: lessonId"
    if error is None and event.get('activityDate') is not None and not isinstance(event['activityDate'], date):
        error = "activityDate must be a date"
    if error:
        logger.warning(f"Invalid event payload: {error}", extra=log_context)
        raise InvalidInput(error)

    learner_id = event['learnerId']
    xp_reward = event.get('xpReward', 0)
    result = {
        'success': True,
        'xpAwarded': 0,
        'xpEvent': None,
        'streak': None,
        'newAchievements': [],
        'leaderboardUpdated': False,
        'duplicate': False,
    }

    if xp_reward > 0:
        result['xpEvent'], created = engine.ledger.append_xp_with_status(
            learner_id,
            xp_reward,
            "lesson",
            source_id=event['lessonId'],
            description="Lesson completed",
            idempotency_key=event.get('idempotencyKey'),
        )
        if not created:
            logger.warning("Replayed lesson completion, side effects already applied", extra=log_context)
            result['duplicate'] = True
            return result
        result['xpAwarded'] = xp_reward

    _ok, result['streak'] = _best_effort(
        "Streak update", log_context,
        engine.streaks.record_activity, learner_id, event.get('activityDate'),
    )

    lesson_data = {
        'lesson_id': event['lessonId'],
        'accuracy': event.get('accuracy'),
        'lessons_completed': event.get('lessonsCompleted'),
    }
    contexts = [{'trigger': 'lesson_completed', 'data': lesson_data}]
    if result['streak'] and result['streak']['streak_increased']:
        contexts.append({'trigger': 'streak_updated', 'data': lesson_data})
    result['newAchievements'] = _check_achievements(engine, learner_id, contexts, log_context)

    board_xp = xp_reward + sum(unlock.xp_reward for unlock in result['newAchievements'])
    if board_xp > 0:
        result['leaderboardUpdated'], _ = _best_effort(
            "Leaderboard update", log_context,
            engine.leaderboard.record_xp, learner_id, board_xp, event.get('languageId'),
        )

    logger.info(
        f"Lesson {event['lessonId']} completed by {learner_id}: +{xp_reward} XP, "
        f"{len(result['newAchievements'])} achievement(s)",
        extra=log_context
    )
    return result
