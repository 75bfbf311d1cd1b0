import asyncio
import json
from unittest import mock

from studyplan.entities import QueueMessage, StudyPlan, User
from studyplan.job_service import GENERATE_PLAN, JobService, plan_sender_id
from studyplan.llm_client import MaxRetryErrorsException
from studyplan.plan_generator import PlanGenerator
from worker_main import AppHost, AsyncGuard, PlanApp

RECEIVER = "test_worker"
MATH = {"start_date": "2026-03-01", "end_date": "2026-03-02", "difficulty": 2}


def reply(topic):
    return json.dumps({"curriculum": {"1": {"topic": topic, "level": "beginner", "duration_minutes": 45}}})


def build_host(session_factory, llm):
    apps = [PlanApp(session_factory, PlanGenerator(llm))]
    return AppHost(session_factory, receiver_id=RECEIVER, apps=apps)


def job_for(user_id, subjects, msg_type=GENERATE_PLAN, sender=None):
    return {
        "id": "job-1",
        "sender_id": sender or plan_sender_id(user_id),
        "receiver_id": RECEIVER,
        "type": msg_type,
        "payload": {"user_id": user_id, "subjects": subjects},
    }


def responses(session_factory, address):
    session = session_factory()
    try:
        return [
            (m.type, m.payload)
            for m in session.query(QueueMessage).filter(QueueMessage.receiver_id == address).all()
        ]
    finally:
        session.close()


def test_generate_plan_stores_plan_and_clears_flag(session_factory, make_user):
    user_id = make_user(onboarding_completed=True, is_generating_plan=True, subjects=["Math"], daily_study_hours=2)
    llm = mock.MagicMock()
    llm.invoke.return_value = reply("Sets")

    build_host(session_factory, llm).process_queue_job(job_for(user_id, {"Math": MATH}))

    session = session_factory()
    try:
        user = session.get(User, user_id)
        assert user.is_generating_plan is False
        assert user.generating_status is None
        plan = session.query(StudyPlan).filter(StudyPlan.user_id == user_id).one()
        assert plan.status == "active"
        assert plan.is_fallback is False
        assert plan.curriculum["Math"]["1"]["topic"] == "Sets"
    finally:
        session.close()

    sent = responses(session_factory, plan_sender_id(user_id))
    types = [t for t, _ in sent]
    assert f"{GENERATE_PLAN}_progress" in types
    final = [p for t, p in sent if t == f"{GENERATE_PLAN}_response"]
    assert final[0]["status"] == "success"
    assert final[0]["subjects"] == ["Math"]


def test_partial_regeneration_keeps_other_subjects(session_factory, make_user):
    user_id = make_user(onboarding_completed=True, is_generating_plan=True, subjects=["Math", "Art"])
    session = session_factory()
    try:
        session.add(StudyPlan(user_id=user_id, status="active", curriculum={
            "Math": {"1": {"topic": "old math"}},
            "Art": {"1": {"topic": "Colour"}},
            "Dropped": {"1": {"topic": "gone"}},
        }))
        session.commit()
    finally:
        session.close()

    llm = mock.MagicMock()
    llm.invoke.return_value = reply("Limits")
    build_host(session_factory, llm).process_queue_job(job_for(user_id, {"Math": MATH}))

    session = session_factory()
    try:
        plans = session.query(StudyPlan).filter(StudyPlan.user_id == user_id).order_by(StudyPlan.id).all()
        assert [p.status for p in plans] == ["archived", "active"]
        assert plans[1].curriculum["Math"]["1"]["topic"] == "Limits"
        assert plans[1].curriculum["Art"]["1"]["topic"] == "Colour"
        assert "Dropped" not in plans[1].curriculum
    finally:
        session.close()


def test_provider_failure_stores_fallback_plan(session_factory, make_user):
    user_id = make_user(onboarding_completed=True, is_generating_plan=True, subjects=["Math"])
    llm = mock.MagicMock()
    llm.invoke.side_effect = MaxRetryErrorsException("down")

    build_host(session_factory, llm).process_queue_job(job_for(user_id, {"Math": MATH}))

    session = session_factory()
    try:
        plan = session.query(StudyPlan).filter(StudyPlan.user_id == user_id).one()
        assert plan.is_fallback is True
        assert len(plan.curriculum["Math"]) == 2
        assert session.get(User, user_id).is_generating_plan is False
    finally:
        session.close()


def test_unexpected_failure_still_clears_flag(session_factory, make_user):
    user_id = make_user(onboarding_completed=True, is_generating_plan=True, subjects=["Math"])
    generator = mock.MagicMock()
    generator.generate.side_effect = RuntimeError("kaboom")
    host = AppHost(session_factory, receiver_id=RECEIVER, apps=[PlanApp(session_factory, generator)])

    host.process_queue_job(job_for(user_id, {"Math": MATH}))

    session = session_factory()
    try:
        assert session.get(User, user_id).is_generating_plan is False
    finally:
        session.close()
    final = [p for t, p in responses(session_factory, plan_sender_id(user_id)) if t.endswith("_response")]
    assert final == [{"status": "error", "message": "kaboom"}]


def test_unknown_sender_prefix_gets_error_response(session_factory):
    host = build_host(session_factory, None)
    host.process_queue_job(job_for(1, {}, sender="chat::1"))
    sent = responses(session_factory, "chat::1")
    assert sent[0][0] == f"{GENERATE_PLAN}_response"
    assert sent[0][1]["status"] == "error"
    assert "No app matched" in sent[0][1]["message"]


def test_unsupported_message_type(session_factory, make_user):
    user_id = make_user()
    build_host(session_factory, None).process_queue_job(job_for(user_id, {}, msg_type="noop"))
    sent = responses(session_factory, plan_sender_id(user_id))
    assert sent == [("noop_response", {"status": "error", "message": "PlanApp: unsupported message type 'noop'"})]


def test_async_guard_claims_only_its_messages(session_factory, make_user):
    user_id = make_user(onboarding_completed=True, is_generating_plan=True, subjects=["Math"])
    JobService(session_factory, receiver_id=RECEIVER).submit_plan_generation(user_id, {"Math": MATH})
    JobService(session_factory, receiver_id="other_worker").submit_plan_generation(user_id, {"Math": MATH})

    host = build_host(session_factory, None)
    guard = AsyncGuard(host, receiver_id=RECEIVER, poll_interval=0.01, max_concurrent=2)

    async def drive():
        started = await guard.run_once()
        assert len(guard._tasks) == started
        while guard._in_flight or guard._tasks:
            await asyncio.sleep(0.01)
        return started

    assert asyncio.run(drive()) == 1

    session = session_factory()
    try:
        left = session.query(QueueMessage).filter(QueueMessage.type == GENERATE_PLAN).all()
        assert [m.receiver_id for m in left] == ["other_worker"]
        assert session.get(User, user_id).is_generating_plan is False
        assert session.query(StudyPlan).filter(StudyPlan.user_id == user_id).count() == 1
    finally:
        session.close()


def test_async_guard_respects_capacity(session_factory):
    guard = AsyncGuard(build_host(session_factory, None), receiver_id=RECEIVER, max_concurrent=1)
    guard._in_flight.add("busy")
    assert asyncio.run(guard.run_once()) == 0
