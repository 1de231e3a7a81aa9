"""Tests for stage form parsers and records."""

from datetime import date

import pytest
from pydantic import ValidationError

from blueprint.forms import (
    CalorieRecord,
    DietPreferencesRecord,
    IdentityRecord,
    MetricsRecord,
    get_form_options,
    parse_birth_date_text,
    parse_full_name,
    parse_int_in_range,
    parse_number_in_range,
    parse_phone_number,
    split_list_answer,
)


class TestParsers:

    def test_full_name(self):
        assert parse_full_name("  Ada   Lovelace King ") == ("Ada", "Lovelace King")
        assert parse_full_name("Al") == ("Al", "")
        assert parse_full_name("A") is None

    def test_phone_number(self):
        assert parse_phone_number("(555) 123-4567") == "5551234567"
        assert parse_phone_number("555-1234") is None

    def test_birth_date_formats(self):
        today = date(2024, 6, 1)
        assert parse_birth_date_text("1994-05-01", today) == date(1994, 5, 1)
        assert parse_birth_date_text("05/01/1994", today) == date(1994, 5, 1)
        assert parse_birth_date_text("May 1, 1994", today) == date(1994, 5, 1)

    def test_birth_date_range(self):
        today = date(2024, 6, 1)
        assert parse_birth_date_text("2030-01-01", today) is None
        assert parse_birth_date_text("1900-01-01", today) is None
        assert parse_birth_date_text("yesterday", today) is None

    def test_number_in_range(self):
        assert parse_number_in_range("about 70 inches", 36, 96) == 70
        assert parse_number_in_range("abc", 36, 96) is None
        assert parse_number_in_range("120", 36, 96) is None

    def test_int_in_range(self):
        assert parse_int_in_range(" 3 ", 1, 10) == 3
        assert parse_int_in_range("3.5", 1, 10) is None
        assert parse_int_in_range("11", 1, 10) is None

    def test_split_list_answer(self):
        assert split_list_answer("apples, nuts and yogurt") == ["apples", "nuts", "yogurt"]
        assert split_list_answer("a; b; c", limit=2) == ["a", "b"]

    def test_form_options(self):
        options = get_form_options()
        assert [o["value"] for o in options["activity_level"]] == ["1", "2", "3", "4", "5"]
        assert {o["value"] for o in options["fitness_goal"]} == {"LOSE_WEIGHT", "GAIN_MUSCLE", "MAINTENANCE"}


class TestRecords:

    def test_identity_accepts_camel_case(self):
        record = IdentityRecord.model_validate({
            "firstName": "Ada",
            "lastName": "Lovelace",
            "phoneNumber": "555 123 4567",
            "birthDate": "1994-05-01",
            "biologicalSex": "FEMALE",
        })
        assert record.to_row() == {
            "first_name": "Ada",
            "last_name": "Lovelace",
            "phone_number": "5551234567",
            "birth_date": "1994-05-01",
            "biological_sex": "FEMALE",
        }

    def test_identity_rejects_bad_phone(self):
        with pytest.raises(ValidationError):
            IdentityRecord(first_name="Ada", phone_number="123", birth_date="1994-05-01", biological_sex="MALE")

    def test_metrics_normalizes_activity_and_goal(self):
        record = MetricsRecord(height_inches=70, weight_pounds=180, activity_level="4", health_fitness_goal="GAIN_MUSCLE")
        assert record.activity_level == "Athletic: Regular competitive sports"
        assert record.health_fitness_goal == "Gain Muscle"

    def test_metrics_range(self):
        with pytest.raises(ValidationError):
            MetricsRecord(height_inches=20, weight_pounds=180, activity_level="2", health_fitness_goal="Maintenance")

    def test_diet_preferences_coerces_lists(self):
        record = DietPreferencesRecord.model_validate({
            "dietaryRestrictions": "peanuts, shellfish",
            "dietaryPreferences": None,
            "snack1": "apples",
        })
        assert record.dietary_restrictions == ["peanuts", "shellfish"]
        assert record.dietary_preferences == []
        assert record.snack_1 == "apples"

    def test_calorie_record_split_format(self):
        record = CalorieRecord(weekly_calorie_intake=17157, five_two_split="weekdays:2411 weekends:2551", macronutrient_split="35/35/30")
        assert record.five_two_split == "weekdays:2411 weekends:2551"
        with pytest.raises(ValidationError):
            CalorieRecord(weekly_calorie_intake=17157, five_two_split="2411/2551", macronutrient_split="35/35/30")

    def test_calorie_record_split_from_mapping(self):
        record = CalorieRecord.model_validate({
            "weeklyCalorieIntake": 17157,
            "fiveTwoSplit": {"weekdays": 2411, "weekends": 2551},
            "macronutrientSplit": "35/35/30",
        })
        assert record.five_two_split == "weekdays:2411 weekends:2551"
