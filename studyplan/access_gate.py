# studyplan/access_gate.py
"""
Onboarding gate.

Decides, for one request, whether the user may proceed to the requested
route or must be sent to the dashboard / onboarding flow:

    decision = decide(current_user, request.url.path)
    if isinstance(decision, RedirectTo):
        return RedirectResponse(route_url(decision.target), status_code=302)

The decision only reads the snapshot it is given. It is evaluated again on
every request because `is_generating_plan` flips while a plan is built in
the background.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

DASHBOARD = "dashboard"
ONBOARDING = "onboarding"

ROUTE_URLS = {
    DASHBOARD: "/dashboard",
    ONBOARDING: "/onboarding",
}


@dataclass(frozen=True)
class UserGateState:
    is_authenticated: bool
    onboarding_completed: bool
    is_generating_plan: bool

    @classmethod
    def from_user(cls, user) -> "UserGateState":
        return cls(
            is_authenticated=True,
            onboarding_completed=bool(user.onboarding_completed),
            is_generating_plan=bool(user.is_generating_plan),
        )


@dataclass(frozen=True)
class Continue:
    pass


@dataclass(frozen=True)
class RedirectTo:
    target: str


GateDecision = Union[Continue, RedirectTo]


def normalize_path(path: str) -> str:
    return (path or "").strip("/")


def request_is(path: str, pattern: str) -> bool:
    """
    Route match on a slash-trimmed path. `pattern` is either a literal
    route ("dashboard") or a prefix wildcard ("onboarding/*") that needs at
    least one more segment.
    """
    path = normalize_path(path)
    pattern = normalize_path(pattern)
    if pattern.endswith("/*"):
        prefix = pattern[:-1]
        return path.startswith(prefix) and len(path) > len(prefix)
    return path == pattern


def _is_onboarding(path: str) -> bool:
    return request_is(path, ONBOARDING) or request_is(path, f"{ONBOARDING}/*")


def decide(user: Optional[UserGateState], path: str) -> GateDecision:
    if user is None or not user.is_authenticated:
        return Continue()

    if user.onboarding_completed:
        # plan generation is watched from the dashboard loading screen only
        if user.is_generating_plan and not request_is(path, DASHBOARD):
            return RedirectTo(DASHBOARD)

        if _is_onboarding(path):
            return RedirectTo(DASHBOARD)

        return Continue()

    if _is_onboarding(path):
        return Continue()

    return RedirectTo(ONBOARDING)


def route_url(name: str) -> str:
    return ROUTE_URLS[name]
