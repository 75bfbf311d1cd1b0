# studyplan/schemas.py
"""
Records handed to the UI shell (page props). Display only: nothing here
feeds back into the gate.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class Achievement(BaseModel):
    id: int
    name: str
    description: str
    icon: str
    earned: bool
    earned_at: Optional[datetime] = None


class User(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    name: str
    email: str
    avatar: Optional[str] = None
    email_verified_at: Optional[datetime] = None
    two_factor_enabled: Optional[bool] = None
    created_at: datetime
    updated_at: datetime
    # Study statistics
    total_study_hours: Optional[float] = None
    current_streak: Optional[int] = None
    longest_streak: Optional[int] = None
    completed_sessions: Optional[int] = None
    weekly_goal: Optional[int] = None
    weekly_progress: Optional[int] = None
    achievements: Optional[List[Achievement]] = None


class Auth(BaseModel):
    user: User


def user_record(user_row, achievements=None) -> User:
    return User(
        id=user_row.id,
        name=user_row.name,
        email=user_row.email,
        avatar=user_row.avatar,
        email_verified_at=user_row.email_verified_at,
        two_factor_enabled=bool(user_row.two_factor_enabled),
        created_at=user_row.created_at,
        updated_at=user_row.updated_at,
        total_study_hours=float(user_row.total_study_hours or 0),
        current_streak=user_row.study_streak,
        longest_streak=user_row.longest_streak,
        completed_sessions=user_row.completed_sessions,
        weekly_goal=user_row.weekly_goal,
        weekly_progress=user_row.weekly_progress,
        achievements=[
            Achievement(
                id=a.id,
                name=a.name,
                description=a.description,
                icon=a.icon,
                earned=bool(a.earned),
                earned_at=a.earned_at,
            )
            for a in (achievements or [])
        ],
    )


def shared_props(user_row, achievements=None) -> Dict[str, Any]:
    """
    Props every page receives: {"auth": {"user": {...}}}.
    """
    auth = Auth(user=user_record(user_row, achievements))
    return {"auth": auth.model_dump(mode="json")}


# --- request bodies ---

class RegisterRequest(BaseModel):
    name: str
    email: str


class LoginRequest(BaseModel):
    user_id: int


class OnboardingStepRequest(BaseModel):
    step: int
    daily_study_hours: Optional[int] = None
    study_goal: Optional[str] = None
    timezone: Optional[str] = None
    subjects: Optional[List[str]] = None
    subject_difficulties: Optional[Dict[str, int]] = None
    subject_start_dates: Optional[Dict[str, str]] = None
    subject_end_dates: Optional[Dict[str, str]] = None
    confirm: Optional[bool] = None


class PreferencesRequest(BaseModel):
    daily_study_hours: Optional[int] = None
    study_goal: Optional[str] = None
    timezone: Optional[str] = None
    subjects: Optional[List[str]] = None
    subject_difficulties: Optional[Dict[str, int]] = None
    subject_start_dates: Optional[Dict[str, str]] = None
    subject_end_dates: Optional[Dict[str, str]] = None
    regenerate_plan: bool = False
