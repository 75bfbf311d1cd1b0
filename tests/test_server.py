import pytest

from studyplan.entities import Achievement, QueueMessage, StudyPlan, User
from studyplan.job_service import GENERATE_PLAN, plan_sender_id


def login(client, user_id):
    resp = client.post("/login", json={"user_id": user_id})
    assert resp.status_code == 200


def get(client, path):
    return client.get(path, follow_redirects=False)


@pytest.mark.parametrize("path", ["/", "/welcome", "/health"])
def test_public_routes(client, path):
    assert get(client, path).status_code == 200


def test_gated_route_without_login_is_unauthorized(client):
    assert get(client, "/dashboard").status_code == 401


def test_login_unknown_user(client):
    assert client.post("/login", json={"user_id": 999}).status_code == 404


def test_register_logs_in_and_sends_to_onboarding(client):
    resp = client.post("/register", json={"name": "Ada", "email": "Ada@Example.com"})
    assert resp.status_code == 200

    resp = get(client, "/dashboard")
    assert resp.status_code == 302
    assert resp.headers["location"] == "/onboarding"

    assert client.post("/register", json={"name": "Ada", "email": "ada@example.com"}).status_code == 409


def test_new_user_can_walk_onboarding(client, make_user):
    login(client, make_user())

    resp = get(client, "/onboarding")
    assert resp.status_code == 200
    assert resp.json()["step"] == 1

    resp = get(client, "/onboarding/anything/else")
    assert resp.status_code == 302
    assert resp.headers["location"] == "/onboarding"


@pytest.mark.parametrize("path", ["/study-planner", "/progress", "/settings", "/onboarding", "/onboarding/step-2"])
def test_generating_user_is_pinned_to_dashboard(client, make_user, path):
    login(client, make_user(onboarding_completed=True, is_generating_plan=True, generating_status="busy"))
    resp = get(client, path)
    assert resp.status_code == 302
    assert resp.headers["location"] == "/dashboard"


def test_generating_user_sees_loading_dashboard(client, make_user):
    login(client, make_user(onboarding_completed=True, is_generating_plan=True, generating_status="busy"))
    body = get(client, "/dashboard").json()
    assert body["isGeneratingPlan"] is True
    assert body["generatingStatus"] == "busy"
    assert body["plan"] is None


def test_onboarded_user_is_kept_out_of_onboarding(client, make_user):
    login(client, make_user(onboarding_completed=True))
    resp = get(client, "/onboarding")
    assert resp.status_code == 302
    assert resp.headers["location"] == "/dashboard"
    assert get(client, "/settings").status_code == 200


def test_gate_reads_fresh_state_every_request(client, session_factory, make_user):
    user_id = make_user(onboarding_completed=True, is_generating_plan=True)
    login(client, user_id)
    assert get(client, "/progress").status_code == 302

    session = session_factory()
    try:
        session.get(User, user_id).is_generating_plan = False
        session.commit()
    finally:
        session.close()

    assert get(client, "/progress").status_code == 200


def test_finishing_onboarding_starts_generation(client, session_factory, make_user):
    user_id = make_user()
    login(client, user_id)

    resp = client.post(
        "/onboarding",
        json={"step": 1, "daily_study_hours": 2, "study_goal": "exams"},
        follow_redirects=False,
    )
    assert resp.status_code == 302
    assert resp.headers["location"] == "/onboarding"

    client.post(
        "/onboarding",
        json={"step": 2, "subjects": ["Math"], "subject_difficulties": {"Math": 2}},
        follow_redirects=False,
    )
    resp = client.post("/onboarding", json={"step": 4, "confirm": True}, follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"] == "/dashboard"

    session = session_factory()
    try:
        user = session.get(User, user_id)
        assert user.onboarding_completed is True
        assert user.is_generating_plan is True
        messages = session.query(QueueMessage).filter(QueueMessage.type == GENERATE_PLAN).all()
        assert [m.sender_id for m in messages] == [plan_sender_id(user_id)]
    finally:
        session.close()

    assert get(client, "/study-planner").headers["location"] == "/dashboard"


def test_step_past_the_last_is_rejected(client, session_factory, make_user):
    user_id = make_user()
    login(client, user_id)
    resp = client.post("/onboarding", json={"step": 5, "confirm": True}, follow_redirects=False)
    assert resp.status_code == 422

    session = session_factory()
    try:
        assert session.get(User, user_id).onboarding_completed is False
    finally:
        session.close()


def test_unconfirmed_finish_is_rejected(client, make_user):
    login(client, make_user())
    resp = client.post("/onboarding", json={"step": 4, "confirm": False}, follow_redirects=False)
    assert resp.status_code == 422


def test_settings_regeneration_and_reset(client, session_factory, make_user):
    user_id = make_user(onboarding_completed=True, subjects=["Math"], onboarding_step=4)
    login(client, user_id)

    resp = client.post("/settings/onboarding", json={"study_goal": "relax"})
    assert resp.json() == {"status": "success", "regenerating": False}

    resp = client.post("/settings/onboarding", json={"regenerate_plan": True})
    assert resp.json() == {"status": "success", "regenerating": True}

    # mid-generation, settings writes are gated as well
    resp = client.post("/settings/onboarding/reset", follow_redirects=False)
    assert resp.headers["location"] == "/dashboard"

    session = session_factory()
    try:
        session.get(User, user_id).is_generating_plan = False
        session.commit()
    finally:
        session.close()

    resp = client.post("/settings/onboarding/reset", follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"] == "/onboarding"
    assert get(client, "/dashboard").headers["location"] == "/onboarding"


def test_dashboard_props(client, session_factory, make_user):
    user_id = make_user(onboarding_completed=True, study_streak=4, longest_streak=9)
    session = session_factory()
    try:
        session.add(Achievement(user_id=user_id, name="First steps", description="d", icon="star", earned=True))
        session.add(StudyPlan(user_id=user_id, status="active", curriculum={"Math": {"1": {"topic": "Sets"}}}))
        session.commit()
    finally:
        session.close()
    login(client, user_id)

    body = get(client, "/dashboard").json()
    user = body["auth"]["user"]
    assert user["id"] == user_id
    assert user["current_streak"] == 4
    assert user["longest_streak"] == 9
    assert user["achievements"][0]["name"] == "First steps"
    assert body["plan"]["curriculum"]["Math"]["1"]["topic"] == "Sets"
    assert body["onboardingCompleted"] is True


def test_events_drain_worker_responses(client, session_factory, make_user):
    user_id = make_user(onboarding_completed=True)
    session = session_factory()
    try:
        session.add(QueueMessage(
            sender_id="plan_worker",
            receiver_id=plan_sender_id(user_id),
            type=f"{GENERATE_PLAN}_response",
            payload={"status": "success"},
        ))
        session.commit()
    finally:
        session.close()
    login(client, user_id)

    events = get(client, "/events").json()
    assert [e["type"] for e in events] == [f"{GENERATE_PLAN}_response"]
    assert get(client, "/events").json() == []
