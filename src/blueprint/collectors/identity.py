"""
Identity stage: name, phone, birth date, biological sex -> users row.
"""

from enum import Enum
from typing import Any

from blueprint.collectors.base import FieldRule, StageCollector
from blueprint.forms import (
    SEX_OPTIONS,
    IdentityRecord,
    parse_birth_date_text,
    parse_full_name,
    parse_phone_number,
)
from blueprint.state import ConversationStage, StageAnswer

START = "start"


class IdentityState(Enum):
    WELCOME = "welcome"
    NAME = "name"
    PHONE = "phone"
    BIRTH_DATE = "birth_date"
    SEX = "sex"
    COMPLETE = "complete"


class IdentityCollector(StageCollector):
    stage = ConversationStage.IDENTITY
    State = IdentityState
    ORDER = (
        IdentityState.WELCOME,
        IdentityState.NAME,
        IdentityState.PHONE,
        IdentityState.BIRTH_DATE,
        IdentityState.SEX,
    )
    RULES = {
        IdentityState.WELCOME: FieldRule(
            question="Hi there! Ready to create your personalized meal plan for the week?",
            choices=({"value": START, "label": "Let's get started"},),
        ),
        IdentityState.NAME: FieldRule(
            question="Great! Let's start with your name. What's your full name?",
            error="Please enter your full name.",
            validate=lambda text: parse_full_name(text) is not None,
            parse=parse_full_name,
        ),
        IdentityState.PHONE: FieldRule(
            question="Thanks! What's your phone number?",
            field="phone_number",
            error="Please enter a valid 10-digit phone number.",
            validate=lambda text: parse_phone_number(text) is not None,
            parse=parse_phone_number,
        ),
        IdentityState.BIRTH_DATE: FieldRule(
            question="Now, what's your birth date? (YYYY-MM-DD)",
            field="birth_date",
            error="Please select a valid birth date.",
            validate=lambda text: parse_birth_date_text(text) is not None,
            parse=lambda text: parse_birth_date_text(text).isoformat(),
        ),
        IdentityState.SEX: FieldRule(
            question="What is your biological sex?",
            field="biological_sex",
            error="Please select your biological sex.",
            choices=tuple(SEX_OPTIONS),
            parse=lambda value: value.upper(),
        ),
    }

    def answers_for(self, state: Enum, value: Any, raw_text: str) -> list[StageAnswer]:
        if state == IdentityState.NAME:
            first, last = value
            return [
                StageAnswer(field="first_name", value=first, raw_text=raw_text),
                StageAnswer(field="last_name", value=last, raw_text=raw_text),
            ]
        return super().answers_for(state, value, raw_text)

    async def persist(self, values: dict[str, Any]) -> dict:
        record = IdentityRecord(**values)
        return await self.context.store.save_identity(
            self.context.user_id,
            record.to_row(),
            self.context.conversation_id,
        )

    def on_saved(self, result: Any) -> None:
        first_name = self.context.stage_slice.get("first_name", "")
        self.context.events.bot_message(
            f"Thank you, {first_name}! Your basic information has been saved. "
            "Now, let's talk about your health metrics and fitness goals."
        )
