"""
Tests for stage collectors.

Collectors are driven directly with a CollectorContext whose complete and
bind_artifact callbacks just record what they were given.
"""

import asyncio
from datetime import date

from conftest import USER_ID, sample_meal_plan_row

from blueprint.calculator import resolve_activity_level
from blueprint.collectors import CollectorContext
from blueprint.collectors.base import SAVE_FAILED_MESSAGE
from blueprint.collectors.calorie_calculation import CalorieCalculationCollector, CalorieState
from blueprint.collectors.diet_preferences import DietPreferencesCollector, DietState
from blueprint.collectors.finalization import FinalizationCollector
from blueprint.collectors.identity import IdentityCollector, IdentityState
from blueprint.collectors.metrics import MetricsCollector, MetricsState
from blueprint.collectors.shopping_list import ShoppingListCollector, ShoppingListState
from blueprint.events import EventType
from blueprint.generation import ArtifactKind, Operation
from blueprint.state import ConversationSession, ConversationStage


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio needed)."""
    return asyncio.run(coro)


class Recorder:
    """Collects the orchestrator-facing callbacks."""

    def __init__(self):
        self.completed = []
        self.artifacts = {}

    def complete(self, stage, result):
        self.completed.append((stage, result))

    def bind_artifact(self, name, value):
        self.artifacts[name] = value


def _context(stage, store, events, session=None, pipeline=None):
    session = session or ConversationSession(user_id=USER_ID, conversation_id="conv-1")
    recorder = Recorder()
    context = CollectorContext(
        stage_slice=session.slice_for(stage),
        conversation_id=session.conversation_id,
        user_id=USER_ID,
        store=store,
        events=events,
        complete=recorder.complete,
        bind_artifact=recorder.bind_artifact,
        pipeline=pipeline,
    )
    return context, recorder


def _last_text(events, event_type=EventType.BOT_MESSAGE):
    return events.of_type(event_type)[-1].payload["text"]


# =============================================================================
# Identity
# =============================================================================


class TestIdentityCollector:

    def _answer_all_but_sex(self, collector):
        async def scenario():
            await collector.start()
            await collector.select("start")
            await collector.process_message("Ada Lovelace")
            await collector.process_message("(555) 123-4567")
            await collector.process_message("1994-05-01")
        _run(scenario())

    def test_happy_path_saves_once(self, store, events):
        context, recorder = _context(ConversationStage.IDENTITY, store, events)
        collector = IdentityCollector(context)
        self._answer_all_but_sex(collector)

        assert collector.state == IdentityState.SEX
        assert _run(collector.select("FEMALE")) is True

        assert collector.is_complete()
        assert store.users[USER_ID]["first_name"] == "Ada"
        assert store.users[USER_ID]["phone_number"] == "5551234567"
        assert store.users[USER_ID]["biological_sex"] == "FEMALE"
        assert recorder.completed[0][0] == ConversationStage.IDENTITY
        assert events.of_type(EventType.STAGE_COMPLETE)[0].payload["stage"] == "identity"
        assert "Thank you, Ada!" in _last_text(events)

    def test_invalid_phone_reprompts(self, store, events):
        context, _ = _context(ConversationStage.IDENTITY, store, events)
        collector = IdentityCollector(context)

        async def scenario():
            await collector.start()
            await collector.select("start")
            await collector.process_message("Ada Lovelace")
            return await collector.process_message("12345")

        assert _run(scenario()) is False
        assert collector.state == IdentityState.PHONE
        assert "phone_number" not in context.stage_slice.answers
        assert _last_text(events, EventType.ERROR) == "Please enter a valid 10-digit phone number."

    def test_text_on_choice_question_shows_options(self, store, events):
        context, _ = _context(ConversationStage.IDENTITY, store, events)
        collector = IdentityCollector(context)
        _run(collector.start())

        assert _run(collector.process_message("hello")) is False
        assert collector.state == IdentityState.WELCOME
        assert events.of_type(EventType.BOT_MESSAGE)[-1].payload["choices"][0]["value"] == "start"

    def test_save_failure_keeps_state_then_retry_succeeds(self, store, events):
        context, recorder = _context(ConversationStage.IDENTITY, store, events)
        collector = IdentityCollector(context)
        self._answer_all_but_sex(collector)
        store.fail_on.add("save_identity")

        assert _run(collector.select("MALE")) is False
        assert collector.state == IdentityState.SEX
        assert not collector.is_complete()
        assert "biological_sex" not in context.stage_slice.answers
        assert _last_text(events, EventType.ERROR) == SAVE_FAILED_MESSAGE
        assert recorder.completed == []

        store.fail_on.clear()
        assert _run(collector.select("MALE")) is True
        assert collector.is_complete()
        assert len(recorder.completed) == 1

    def test_no_input_after_completion(self, store, events):
        context, _ = _context(ConversationStage.IDENTITY, store, events)
        collector = IdentityCollector(context)
        self._answer_all_but_sex(collector)
        _run(collector.select("MALE"))

        assert _run(collector.process_message("anything")) is False
        assert _run(collector.select("MALE")) is False
        assert collector.current_choices is None


# =============================================================================
# Metrics
# =============================================================================


class TestMetricsCollector:

    def test_invalid_height_is_rejected(self, store, events):
        context, _ = _context(ConversationStage.METRICS, store, events)
        collector = MetricsCollector(context)
        _run(collector.start())

        assert collector.state == MetricsState.HEIGHT
        assert _run(collector.process_message("abc")) is False
        assert collector.state == MetricsState.HEIGHT
        assert "height_inches" not in context.stage_slice.answers
        assert "valid height" in _last_text(events, EventType.ERROR)

    def test_fresh_user_flow(self, store, events):
        context, recorder = _context(ConversationStage.METRICS, store, events)
        collector = MetricsCollector(context)

        async def scenario():
            await collector.start()
            await collector.process_message("70")
            await collector.process_message("180 lbs")
            await collector.select("2")
            return await collector.select("LOSE_WEIGHT")

        assert _run(scenario()) is True
        saved = store.metrics[-1]
        assert saved["height_inches"] == 70
        assert saved["weight_pounds"] == 180
        assert saved["activity_level"] == resolve_activity_level("2").description
        assert saved["health_fitness_goal"] == "Lose Weight"
        assert saved["conversation_id"] == "conv-1"
        assert len(recorder.completed) == 1

    def test_returning_user_confirms_saved_values(self, store, events, sample_metrics):
        store.metrics.append(sample_metrics)
        context, _ = _context(ConversationStage.METRICS, store, events)
        collector = MetricsCollector(context)
        _run(collector.start())

        assert collector.state == MetricsState.CONFIRM_HEIGHT
        assert "5'10\"" in _last_text(events)

        async def scenario():
            await collector.select("yes")
            await collector.process_message("175")
            await collector.select("yes")
            await collector.select("no")

        _run(scenario())
        assert collector.state == MetricsState.FITNESS_GOAL
        assert context.stage_slice.get("height_inches") == 70

        assert _run(collector.select("GAIN_MUSCLE")) is True
        saved = store.metrics[-1]
        assert saved["weight_pounds"] == 175
        assert saved["health_fitness_goal"] == "Gain Muscle"

    def test_rejecting_saved_height_asks_again(self, store, events, sample_metrics):
        store.metrics.append(sample_metrics)
        context, _ = _context(ConversationStage.METRICS, store, events)
        collector = MetricsCollector(context)
        _run(collector.start())

        _run(collector.select("no"))
        assert collector.state == MetricsState.HEIGHT
        assert "height_inches" not in context.stage_slice.answers

    def test_unreadable_saved_metrics_start_fresh(self, store, events):
        store.fail_on.add("get_latest_metrics")
        context, _ = _context(ConversationStage.METRICS, store, events)
        collector = MetricsCollector(context)
        _run(collector.start())
        assert collector.state == MetricsState.HEIGHT


# =============================================================================
# Diet preferences
# =============================================================================


class TestDietPreferencesCollector:

    def test_branches_for_portions_snacks_and_favorites(self, store, events):
        context, recorder = _context(ConversationStage.DIET_PREFERENCES, store, events)
        collector = DietPreferencesCollector(context)

        async def scenario():
            await collector.start()
            await collector.process_message("peanuts, shellfish")
            await collector.process_message("no mushrooms")
            await collector.process_message("3")
            assert collector.state == DietState.PORTION_DETAILS
            await collector.process_message("2 adults and 1 child")
            await collector.select("yes")
            assert collector.state == DietState.SNACKS_DETAILS
            await collector.process_message("apples, almonds")
            await collector.select("yes")
            assert collector.state == DietState.FAVORITES_DETAILS
            return await collector.process_message("lasagna and tacos")

        assert _run(scenario()) is True
        saved = store.diet[USER_ID]
        assert saved["dietary_restrictions"] == ["peanuts", "shellfish"]
        assert saved["meal_portion_people_count"] == 3
        assert saved["meal_portion_details"] == "2 adults and 1 child"
        assert saved["include_snacks"] is True
        assert (saved["snack_1"], saved["snack_2"]) == ("apples", "almonds")
        assert (saved["favorite_meal_1"], saved["favorite_meal_2"]) == ("lasagna", "tacos")
        assert len(recorder.completed) == 1

    def test_single_person_skips_details(self, store, events):
        context, _ = _context(ConversationStage.DIET_PREFERENCES, store, events)
        collector = DietPreferencesCollector(context)

        async def scenario():
            await collector.start()
            await collector.process_message("none")
            await collector.process_message("none")
            await collector.process_message("1")
            assert collector.state == DietState.SNACKS_CHOICE
            await collector.select("no")
            return await collector.select("no")

        assert _run(scenario()) is True
        saved = store.diet[USER_ID]
        assert saved["include_snacks"] is False
        assert saved["snack_1"] == ""
        assert saved["include_favorite_meals"] is False

    def test_portion_count_out_of_range(self, store, events):
        context, _ = _context(ConversationStage.DIET_PREFERENCES, store, events)
        collector = DietPreferencesCollector(context)

        async def scenario():
            await collector.start()
            await collector.process_message("none")
            await collector.process_message("none")
            return await collector.process_message("12")

        assert _run(scenario()) is False
        assert collector.state == DietState.PORTIONS


# =============================================================================
# Calorie calculation
# =============================================================================


class TestCalorieCalculationCollector:

    def test_missing_data_fails_then_retry_succeeds(self, store, events, sample_user, sample_metrics):
        context, recorder = _context(ConversationStage.CALORIE_CALCULATION, store, events)
        collector = CalorieCalculationCollector(context, today=date(2024, 6, 1))
        _run(collector.start())

        assert collector.state == CalorieState.FAILED
        assert "Missing height or weight" in _last_text(events, EventType.ERROR)
        assert collector.current_choices == [{"value": "retry", "label": "Try again"}]
        assert "calorie_result" not in recorder.artifacts

        store.users[USER_ID] = sample_user
        store.metrics.append(sample_metrics)
        assert _run(collector.select("retry")) is True
        assert collector.state == CalorieState.SHOWING_RESULTS
        assert recorder.artifacts["calorie_result"].tdee == 2451
        assert store.calories == []

    def test_create_plan_saves_the_calculation(self, store, events, sample_user, sample_metrics):
        store.users[USER_ID] = sample_user
        store.metrics.append(sample_metrics)
        context, recorder = _context(ConversationStage.CALORIE_CALCULATION, store, events)
        collector = CalorieCalculationCollector(context, today=date(2024, 6, 1))
        _run(collector.start())

        assert "2,451" in events.of_type(EventType.BOT_MESSAGE)[-2].payload["text"]
        assert _run(collector.select("create_plan")) is True
        assert store.calories[-1]["weekly_calorie_intake"] == 17157
        assert store.calories[-1]["five_two_split"] == "weekdays:2411 weekends:2551"
        completion = events.of_type(EventType.STAGE_COMPLETE)[0].payload["result"]
        assert completion["weekly_calories"] == 17157
        assert recorder.completed[0][0] == ConversationStage.CALORIE_CALCULATION

    def test_store_outage_is_reported(self, store, events):
        store.fail_on.add("get_user")
        context, _ = _context(ConversationStage.CALORIE_CALCULATION, store, events)
        collector = CalorieCalculationCollector(context)
        _run(collector.start())
        assert collector.state == CalorieState.FAILED
        assert "error calculating" in _last_text(events, EventType.ERROR)


# =============================================================================
# Shopping list and finalization
# =============================================================================


class TestShoppingListCollector:

    def test_brands_are_passed_to_generation(self, store, backend, pipeline, events):
        session = ConversationSession(user_id=USER_ID, conversation_id="conv-1", meal_plan_id="mp-1")
        store.meal_plans["mp-1"] = sample_meal_plan_row(meal_plan_id="mp-1", conversation_id="conv-1")
        context, recorder = _context(ConversationStage.SHOPPING_LIST, store, events, session, pipeline)
        collector = ShoppingListCollector(context)

        async def scenario():
            await collector.start()
            await collector.select("yes")
            return await collector.process_message("Chobani, Kerrygold")

        assert _run(scenario()) is True
        assert collector.is_complete()
        assert backend.calls[-1] == ("create_shopping_list", "mp-1", ("Chobani", "Kerrygold"))
        assert len(recorder.artifacts["shopping_list"]) == 3
        ready = events.of_type(EventType.ARTIFACT_READY)[-1].payload
        assert list(ready["shopping_list"]) == ["Produce", "Meat", "Dairy"]

    def test_generation_already_running_offers_retry(self, store, backend, pipeline, events):
        session = ConversationSession(user_id=USER_ID, conversation_id="conv-1", meal_plan_id="mp-1")
        context, recorder = _context(ConversationStage.SHOPPING_LIST, store, events, session, pipeline)
        collector = ShoppingListCollector(context)
        running = pipeline.registry.begin(ArtifactKind.SHOPPING_LIST, Operation.CREATE, "conv-1")
        _run(collector.start())

        assert _run(collector.select("no")) is False
        assert collector.state == ShoppingListState.FAILED
        assert [c["value"] for c in collector.current_choices] == ["retry"]

        pipeline.registry.finish(running)
        assert _run(collector.select("retry")) is True
        assert collector.is_complete()
        assert backend.count("create_shopping_list") == 1

    def test_missing_meal_plan_fails(self, store, pipeline, events):
        context, _ = _context(ConversationStage.SHOPPING_LIST, store, events, pipeline=pipeline)
        collector = ShoppingListCollector(context)
        _run(collector.start())

        assert _run(collector.select("no")) is False
        assert not collector.is_complete()
        assert "couldn't find your meal plan" in _last_text(events, EventType.ERROR)


class TestFinalizationCollector:

    def test_marks_plan_finalized_and_ignores_input(self, store, events):
        store.meal_plans["mp-1"] = sample_meal_plan_row(meal_plan_id="mp-1", status="approved")
        session = ConversationSession(user_id=USER_ID, conversation_id="conv-1", meal_plan_id="mp-1")
        context, recorder = _context(ConversationStage.FINALIZATION, store, events, session)
        collector = FinalizationCollector(context)
        _run(collector.start())

        assert store.meal_plans["mp-1"]["status"] == "finalized"
        assert collector.is_complete()
        assert recorder.completed == []
        assert _run(collector.process_message("hello?")) is False

    def test_save_edited_shopping_list(self, store, events):
        session = ConversationSession(user_id=USER_ID, conversation_id="conv-1", meal_plan_id="mp-1")
        context, recorder = _context(ConversationStage.FINALIZATION, store, events, session)
        collector = FinalizationCollector(context)

        saved = _run(collector.save_shopping_list([{"ingredient_name": "Oats", "category": "Pantry"}]))
        assert saved[0]["ingredient_name"] == "Oats"
        assert store.groceries["mp-1"][0]["meal_plan_id"] == "mp-1"
        assert recorder.artifacts["shopping_list"] == saved
