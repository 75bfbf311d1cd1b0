import os
import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

from dotenv import load_dotenv

from studyplan import auth
from studyplan.access_gate import RedirectTo, decide, route_url
from studyplan.entities import Achievement, StudyPlan, User
from studyplan.google_helpers import get_session_factory
from studyplan.job_service import JobService
from studyplan.onboarding_service import TOTAL_STEPS, OnboardingError, OnboardingService
from studyplan.schemas import (
    LoginRequest,
    OnboardingStepRequest,
    PreferencesRequest,
    RegisterRequest,
    shared_props,
)

load_dotenv()

logger = logging.getLogger("studyplan_backend")

SESSION_SECRET = os.getenv("SESSION_SECRET", "dev-session-secret")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

app = FastAPI(title="StudyPlan")

app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET, same_site="lax")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class GateRedirect(Exception):
    def __init__(self, url: str):
        super().__init__(url)
        self.url = url


@app.exception_handler(GateRedirect)
async def gate_redirect_handler(request: Request, exc: GateRedirect):
    return RedirectResponse(exc.url, status_code=302)


@app.exception_handler(OnboardingError)
async def onboarding_error_handler(request: Request, exc: OnboardingError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# --- Dependencies ---

def get_db():
    session = get_session_factory()()
    try:
        yield session
    finally:
        session.close()


def get_job_service() -> JobService:
    return JobService(get_session_factory())


def ensure_onboarded(request: Request, db: Session = Depends(get_db)) -> None:
    decision = decide(auth.current_user(request, db), request.url.path)
    if isinstance(decision, RedirectTo):
        logger.debug("Gate redirect %s -> %s", request.url.path, decision.target)
        raise GateRedirect(route_url(decision.target))


def require_user(request: Request, db: Session = Depends(get_db)) -> User:
    user = auth.load_user(request, db)
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def get_onboarding_service(
    db: Session = Depends(get_db),
    jobs: JobService = Depends(get_job_service),
) -> OnboardingService:
    return OnboardingService(db, jobs)


def _page_props(db: Session, user: User) -> dict:
    achievements = db.query(Achievement).filter(Achievement.user_id == user.id).all()
    return shared_props(user, achievements)


def _active_plan(db: Session, user: User) -> Optional[dict]:
    plan = (
        db.query(StudyPlan)
        .filter(StudyPlan.user_id == user.id, StudyPlan.status == "active")
        .order_by(StudyPlan.id.desc())
        .first()
    )
    if plan is None:
        return None
    return {"id": plan.id, "is_fallback": plan.is_fallback, "curriculum": plan.curriculum}


def _preferences(user: User) -> dict:
    return {
        "daily_study_hours": user.daily_study_hours,
        "study_goal": user.study_goal,
        "timezone": user.timezone,
        "subjects": user.subjects or [],
        "subject_difficulties": user.subject_difficulties or {},
        "subject_start_dates": user.subject_start_dates or {},
        "subject_end_dates": user.subject_end_dates or {},
    }


# --- Ungated routes ---

@app.get("/")
async def landing():
    return {"page": "landing"}


@app.get("/welcome")
async def welcome():
    return {"page": "welcome", "canRegister": True}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/register")
def register(body: RegisterRequest, request: Request, db: Session = Depends(get_db)):
    user = User(name=body.name.strip(), email=body.email.strip().lower())
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Email already registered")
    auth.login(request, user.id)
    return {"status": "success", "user_id": user.id}


@app.post("/login")
def login(body: LoginRequest, request: Request, db: Session = Depends(get_db)):
    if db.get(User, body.user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")
    auth.login(request, body.user_id)
    return {"status": "success", "user_id": body.user_id}


@app.post("/logout")
async def logout(request: Request):
    auth.logout(request)
    return {"status": "success"}


# --- Gated routes ---

gated = APIRouter(dependencies=[Depends(ensure_onboarded)])


@gated.get("/dashboard")
def dashboard(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return {
        "page": "dashboard",
        **_page_props(db, user),
        "plan": _active_plan(db, user),
        "onboardingCompleted": user.onboarding_completed,
        "isGeneratingPlan": user.is_generating_plan,
        "generatingStatus": user.generating_status,
    }


@gated.get("/study-planner")
def study_planner(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return {
        "page": "study-planner",
        **_page_props(db, user),
        "plan": _active_plan(db, user),
        "isGeneratingPlan": user.is_generating_plan,
    }


@gated.get("/progress")
def progress(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return {
        "page": "progress",
        **_page_props(db, user),
        "stats": {
            "total_study_hours": float(user.total_study_hours or 0),
            "current_streak": user.study_streak,
            "longest_streak": user.longest_streak,
            "completed_sessions": user.completed_sessions,
            "weekly_goal": user.weekly_goal,
            "weekly_progress": user.weekly_progress,
        },
    }


@gated.get("/events")
def get_events(user: User = Depends(require_user), jobs: JobService = Depends(get_job_service)):
    try:
        return jobs.responses_for(user.id)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@gated.get("/onboarding")
def onboarding_show(user: User = Depends(require_user)):
    return {
        "page": "onboarding",
        "step": user.onboarding_step,
        "totalSteps": TOTAL_STEPS,
        "answers": _preferences(user),
    }


@gated.post("/onboarding")
def onboarding_store(
    body: OnboardingStepRequest,
    user: User = Depends(require_user),
    service: OnboardingService = Depends(get_onboarding_service),
):
    answers = body.model_dump(exclude={"step", "confirm"}, exclude_none=True)
    if body.step > TOTAL_STEPS:
        raise OnboardingError(f"Unknown onboarding step: {body.step}")
    if body.step >= TOTAL_STEPS and body.confirm is not None:
        if answers:
            service.save_step(user, body.step, answers)
        service.complete_onboarding(user, bool(body.confirm))
        return RedirectResponse(route_url("dashboard"), status_code=302)

    service.save_step(user, body.step, answers)
    return RedirectResponse(route_url("onboarding"), status_code=302)


@gated.get("/onboarding/{rest:path}")
def onboarding_catch_all(rest: str):
    return RedirectResponse(route_url("onboarding"), status_code=302)


@gated.get("/settings")
def settings(user: User = Depends(require_user), db: Session = Depends(get_db)):
    return {
        "page": "settings",
        **_page_props(db, user),
        "preferences": _preferences(user),
        "onboardingCompleted": user.onboarding_completed,
        "isGeneratingPlan": user.is_generating_plan,
    }


@gated.post("/settings/onboarding")
def settings_update(
    body: PreferencesRequest,
    user: User = Depends(require_user),
    service: OnboardingService = Depends(get_onboarding_service),
):
    changes = body.model_dump(exclude={"regenerate_plan"}, exclude_none=True)
    regenerating = service.update_preferences(user, changes, regenerate_plan=body.regenerate_plan)
    return {"status": "success", "regenerating": regenerating}


@gated.post("/settings/onboarding/reset")
def settings_reset(
    user: User = Depends(require_user),
    service: OnboardingService = Depends(get_onboarding_service),
):
    service.reset_onboarding(user)
    return RedirectResponse(route_url("onboarding"), status_code=302)


app.include_router(gated)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
