# studyplan/auth.py
from typing import Optional

from sqlalchemy.orm import Session
from starlette.requests import Request

from studyplan.access_gate import UserGateState
from studyplan.entities import User

SESSION_USER_KEY = "user_id"


def login(request: Request, user_id: int) -> None:
    request.session[SESSION_USER_KEY] = int(user_id)


def logout(request: Request) -> None:
    request.session.pop(SESSION_USER_KEY, None)


def load_user(request: Request, session: Session) -> Optional[User]:
    user_id = request.session.get(SESSION_USER_KEY)
    if user_id is None:
        return None
    try:
        return session.get(User, int(user_id))
    except (TypeError, ValueError):
        return None


def current_user(request: Request, session: Session) -> Optional[UserGateState]:
    """
    Fresh gate snapshot for this request; None when nobody is logged in.
    """
    user = load_user(request, session)
    if user is None:
        return None
    return UserGateState.from_user(user)
