# studyplan/plan_generator.py
import logging
from datetime import date, timedelta
from typing import Any, Dict, Tuple

from langchain_core.messages import HumanMessage, SystemMessage

from studyplan.llm_client import ChatLlmClient, MaxRetryErrorsException
from studyplan.plan_prompts import CURRICULUM_SYSTEM_PROMPT, CURRICULUM_USER_PROMPT, DIFFICULTY_LABELS
from studyplan.utils import Utils

logger = logging.getLogger("studyplan_backend")

MAX_PLAN_DAYS = 30
DEFAULT_PLAN_DAYS = 7
DEFAULT_DAILY_HOURS = 2

DAY_FIELDS = (
    "topic",
    "level",
    "duration_minutes",
    "focus_level",
    "key_topics",
    "sub_topics",
    "resources",
)


class PlanGenerationError(Exception):
    pass


def plan_days(start_date: str | None, end_date: str | None) -> int:
    if not start_date or not end_date:
        return DEFAULT_PLAN_DAYS
    try:
        days = (date.fromisoformat(end_date) - date.fromisoformat(start_date)).days + 1
    except ValueError:
        return DEFAULT_PLAN_DAYS
    return max(1, min(days, MAX_PLAN_DAYS))


class PlanGenerator(Utils):
    def __init__(self, chat_llm: ChatLlmClient | None):
        self.chat_llm = chat_llm

    def _messages_for(self, subject: str, details: dict, daily_hours: int) -> list:
        days = plan_days(details.get("start_date"), details.get("end_date"))
        difficulty = int(details.get("difficulty") or 2)
        user_prompt = self.unsafe_string_format(
            CURRICULUM_USER_PROMPT,
            subject=subject,
            start_date=details.get("start_date") or "today",
            end_date=details.get("end_date") or "open",
            days=days,
            difficulty_label=DIFFICULTY_LABELS.get(difficulty, "medium"),
            daily_hours=daily_hours,
        )
        return [SystemMessage(content=CURRICULUM_SYSTEM_PROMPT), HumanMessage(content=user_prompt)]

    def parse_curriculum(self, raw: str) -> Dict[str, Dict[str, Any]]:
        data = self.load_fault_tolerant_json(self.clean_triple_backticks(raw or "").strip(), llm=self.chat_llm)
        if not isinstance(data, dict) or not isinstance(data.get("curriculum"), dict):
            raise PlanGenerationError("AI response has no 'curriculum' object")

        curriculum: Dict[str, Dict[str, Any]] = {}
        for day_key in sorted(data["curriculum"], key=lambda k: int(k) if str(k).isdigit() else 0):
            day = data["curriculum"][day_key]
            if not isinstance(day, dict):
                continue
            entry = {k: day.get(k) for k in DAY_FIELDS}
            entry["topic"] = self._coerce_field_to_str(entry["topic"])
            if not entry["topic"]:
                continue
            curriculum[str(day_key)] = entry

        if not curriculum:
            raise PlanGenerationError("AI curriculum is empty")
        return curriculum

    def fallback_curriculum(self, subject: str, details: dict, daily_hours: int) -> Dict[str, Dict[str, Any]]:
        days = plan_days(details.get("start_date"), details.get("end_date"))
        minutes = max(30, min(int(daily_hours) * 60, 120))
        start = details.get("start_date")
        try:
            first_day = date.fromisoformat(start) if start else None
        except ValueError:
            first_day = None

        curriculum = {}
        for i in range(days):
            label = f"{subject}: review session {i + 1}"
            if first_day is not None:
                label += f" ({(first_day + timedelta(days=i)).isoformat()})"
            curriculum[str(i + 1)] = {
                "topic": label,
                "level": "beginner",
                "duration_minutes": minutes,
                "focus_level": "medium",
                "key_topics": [],
                "sub_topics": [],
                "resources": [],
            }
        return curriculum

    def generate_subject(self, subject: str, details: dict, daily_hours: int) -> Tuple[Dict[str, Any], bool]:
        """
        Returns (curriculum, used_fallback).
        """
        if self.chat_llm is None:
            return self.fallback_curriculum(subject, details, daily_hours), True
        try:
            raw = self.chat_llm.invoke(self._messages_for(subject, details, daily_hours))
            return self.parse_curriculum(raw), False
        except (MaxRetryErrorsException, PlanGenerationError, ValueError) as e:
            logger.error("Curriculum generation failed for subject=%s: %s", subject, e)
            return self.fallback_curriculum(subject, details, daily_hours), True

    def generate(self, subjects: dict, daily_hours: int | None = None) -> Tuple[Dict[str, Any], bool]:
        daily_hours = daily_hours or DEFAULT_DAILY_HOURS
        plan: Dict[str, Any] = {}
        any_fallback = False
        for subject, details in (subjects or {}).items():
            curriculum, used_fallback = self.generate_subject(subject, details or {}, daily_hours)
            plan[subject] = curriculum
            any_fallback = any_fallback or used_fallback
        return plan, any_fallback
