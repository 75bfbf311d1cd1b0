# studyplan/onboarding_service.py
import logging
import re
from datetime import date

from sqlalchemy.orm import Session

from studyplan.entities import StudyPlan, User
from studyplan.job_service import JobService
from studyplan.utils import Utils

logger = logging.getLogger("studyplan_backend")

TOTAL_STEPS = 4
MIN_DAILY_HOURS = 1
MAX_DAILY_HOURS = 6
MAX_SUBJECTS = 6
DEFAULT_DIFFICULTY = 2

_HAS_LETTER = re.compile(r"[^\W\d_]")

PREPARING_STATUS = "Preparing your study journey..."
REGENERATING_STATUS = "Crafting your personalized study journey..."

STEP_FIELDS = {
    1: ("daily_study_hours", "study_goal"),
    2: ("subjects", "subject_difficulties"),
    3: ("subject_start_dates", "subject_end_dates"),
    4: ("timezone",),
}

PREFERENCE_FIELDS = (
    "daily_study_hours",
    "study_goal",
    "timezone",
    "subjects",
    "subject_difficulties",
    "subject_start_dates",
    "subject_end_dates",
)


class OnboardingError(ValueError):
    pass


class OnboardingService(Utils):
    """
    Owns every write to the onboarding / plan-generation flags the gate reads.
    All methods take an open session and commit it.
    """

    def __init__(self, session: Session, jobs: JobService):
        self.session = session
        self.jobs = jobs

    # -----------------------
    # Validation
    # -----------------------

    def _validate(self, changes: dict) -> None:
        hours = changes.get("daily_study_hours")
        if hours is not None and not (MIN_DAILY_HOURS <= int(hours) <= MAX_DAILY_HOURS):
            raise OnboardingError(
                f"daily_study_hours must be between {MIN_DAILY_HOURS} and {MAX_DAILY_HOURS}"
            )

        for subject, level in (changes.get("subject_difficulties") or {}).items():
            if int(level) not in (1, 2, 3):
                raise OnboardingError(f"Difficulty for '{subject}' must be 1, 2 or 3")

        starts = changes.get("subject_start_dates") or {}
        ends = changes.get("subject_end_dates") or {}
        for subject, start in starts.items():
            end = ends.get(subject)
            if end is None:
                continue
            try:
                if date.fromisoformat(end) < date.fromisoformat(start):
                    raise OnboardingError(f"End date for '{subject}' is before its start date")
            except ValueError as e:
                if isinstance(e, OnboardingError):
                    raise
                raise OnboardingError(f"Invalid date for '{subject}': {e}") from e

    def _normalize_subjects(self, changes: dict) -> dict:
        """
        Trim, title-case and de-duplicate (case-insensitively) the subject list,
        dropping entries without a letter. Per-subject dicts are re-keyed to match.
        """
        if changes.get("subjects") is None:
            return changes

        subjects = []
        seen = set()
        for raw in changes["subjects"]:
            name = str(raw).strip()
            if not name or not _HAS_LETTER.search(name):
                continue
            name = name.title()
            if name.lower() in seen:
                continue
            seen.add(name.lower())
            subjects.append(name)

        if not subjects:
            raise OnboardingError("Please add at least one valid subject.")
        if len(subjects) > MAX_SUBJECTS:
            raise OnboardingError(f"You can select a maximum of {MAX_SUBJECTS} subjects.")

        out = dict(changes, subjects=subjects)
        by_lower = {s.lower(): s for s in subjects}
        for field in ("subject_difficulties", "subject_start_dates", "subject_end_dates"):
            if changes.get(field) is None:
                continue
            out[field] = {
                by_lower[str(k).strip().lower()]: v
                for k, v in changes[field].items()
                if str(k).strip().lower() in by_lower
            }
        return out

    def _submit_or_clear(self, user: User, only: list | None = None) -> None:
        try:
            self.jobs.submit_plan_generation(user.id, self.subjects_payload(user, only=only))
        except Exception:
            logger.exception("Plan generation enqueue failed for user_id=%s", user.id)
            self.session.rollback()
            user.is_generating_plan = False
            user.generating_status = None
            self.session.commit()
            raise

    def _apply(self, user: User, changes: dict, fields) -> None:
        for field in fields:
            if field in changes and changes[field] is not None:
                setattr(user, field, changes[field])

    # -----------------------
    # Onboarding steps
    # -----------------------

    def save_step(self, user: User, step: int, answers: dict) -> User:
        if step not in STEP_FIELDS:
            raise OnboardingError(f"Unknown onboarding step: {step}")
        answers = self._normalize_subjects(answers)
        self._validate(answers)
        self._apply(user, answers, STEP_FIELDS[step])
        user.onboarding_step = min(max(int(user.onboarding_step or 1), step + 1), TOTAL_STEPS)
        self.session.commit()
        return user

    def subjects_payload(self, user: User, only: list | None = None) -> dict:
        """
        subject -> {start_date, end_date, difficulty}, for the plan job.
        """
        out = {}
        starts = user.subject_start_dates or {}
        ends = user.subject_end_dates or {}
        difficulties = user.subject_difficulties or {}
        for subject in user.subjects or []:
            if only is not None and subject not in only:
                continue
            out[subject] = {
                "start_date": starts.get(subject),
                "end_date": ends.get(subject),
                "difficulty": difficulties.get(subject, DEFAULT_DIFFICULTY),
            }
        return out

    def complete_onboarding(self, user: User, confirm: bool) -> User:
        if not confirm:
            raise OnboardingError("Please confirm that your details are correct before finishing.")

        user.onboarding_completed = True
        user.onboarding_step = TOTAL_STEPS
        user.is_generating_plan = True
        user.generating_status = PREPARING_STATUS
        self.session.commit()

        if user.subjects:
            self._submit_or_clear(user)
        else:
            user.is_generating_plan = False
            user.generating_status = None
            self.session.commit()
        return user

    # -----------------------
    # Settings
    # -----------------------

    def update_preferences(self, user: User, changes: dict, regenerate_plan: bool = False) -> bool:
        """
        Returns True when a regeneration was queued.
        """
        changes = self._normalize_subjects(changes)
        self._validate(changes)
        old_subjects = list(user.subjects or [])
        old_difficulties = dict(user.subject_difficulties or {})
        self._apply(user, changes, PREFERENCE_FIELDS)

        new_subjects = list(user.subjects or [])
        changed = [s for s in new_subjects if s not in old_subjects]
        changed += [
            s for s in new_subjects
            if s in old_subjects and (user.subject_difficulties or {}).get(s) != old_difficulties.get(s)
        ]

        if not (changed or regenerate_plan) or not new_subjects:
            self.session.commit()
            return False

        user.is_generating_plan = True
        user.generating_status = REGENERATING_STATUS
        self.session.commit()
        only = None if regenerate_plan else changed
        self._submit_or_clear(user, only=only)
        return True

    def reset_onboarding(self, user: User) -> User:
        user.onboarding_step = 1
        user.onboarding_completed = False
        user.subjects = None
        user.subject_difficulties = None
        user.daily_study_hours = None
        user.study_goal = None
        user.timezone = None
        active = (
            self.session.query(StudyPlan)
            .filter(StudyPlan.user_id == user.id, StudyPlan.status == "active")
            .all()
        )
        for plan in active:
            plan.status = "archived"
        self.session.commit()
        logger.info("Onboarding reset for user_id=%s", user.id)
        return user


def finish_generation(session: Session, user_id: int) -> None:
    """
    Clear the generating flag. The worker calls this whatever the outcome.
    """
    user = session.get(User, user_id)
    if user is None:
        logger.warning("finish_generation: user_id=%s not found", user_id)
        return
    user.is_generating_plan = False
    user.generating_status = None
    session.commit()


def set_generating_status(session: Session, user_id: int, status: str) -> None:
    user = session.get(User, user_id)
    if user is None:
        return
    user.generating_status = status
    session.commit()
