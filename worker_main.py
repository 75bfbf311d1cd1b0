# worker_main.py
"""
DB Queue Worker for background plan generation.

Receiver logic
--------------
Each QueueMessage row has a receiver_id column. This worker process is
identified by QUEUE_RECEIVER_ID (env var) and AsyncGuard polls ONLY messages
where:
    QueueMessage.receiver_id == QUEUE_RECEIVER_ID

The web app decides which worker runs a job by writing that receiver_id
(see studyplan/job_service.py).

Routing logic
-------------
Routing is done by sender_id prefix, read as:
    "<app_key><app_key_delim><user_id>"

Example sender_ids:
  - "plan::42" -> PlanApp (key="plan", key_delim="::"), user_id="42"

STRICT mode: there is no default app. A sender_id that matches no registered
prefix gets an error response.

Responses go back to the original sender address as "<type>_response"
messages; the web app drains them from GET /events.
"""

import os
import asyncio
import logging
import traceback
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv
load_dotenv()

from studyplan.entities import StudyPlan, User, QueueMessage
from studyplan.google_helpers import get_session_factory
from studyplan.job_service import GENERATE_PLAN, PLAN_APP_KEY, PLAN_APP_KEY_DELIM
from studyplan.llm_client import ChatLlmClient
from studyplan.model_props import ProviderConfigError, build_provider_settings
from studyplan.onboarding_service import finish_generation, set_generating_status
from studyplan.plan_generator import PlanGenerator


logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n",
)
logger = logging.getLogger("studyplan_worker")

QUEUE_RECEIVER_ID = os.getenv("QUEUE_RECEIVER_ID", "plan_worker")
CONCURRENT_INSTANCES = int(os.getenv("CONCURRENT_INSTANCES", "4"))
LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "300"))

FINALIZING_STATUS = "Perfecting your study balance..."


class JobContext:
    def __init__(
        self,
        host: "AppHost",
        job: Dict[str, Any],
        sender_full: str,
        subject_id: str,
        app_prefix: str,
    ):
        self.host = host
        self.job = job
        self.sender_full = sender_full
        self.subject_id = subject_id
        self.app_prefix = app_prefix

    def emit(self, msg_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
        payload = payload or {}
        payload.setdefault("correlation_id", self.job.get("id"))
        payload.setdefault("app_prefix", self.app_prefix)

        self.host._send_queue_message(
            to_receiver_id=self.sender_full,
            msg_type=msg_type,
            payload=payload,
            from_sender_id=str(self.job.get("receiver_id")),
        )


class AppHost:
    def __init__(self, Session, receiver_id: str, apps: List[Any]):
        self.SessionFactory = Session
        self.receiver_id = receiver_id
        self.apps = list(apps or [])

    def _send_queue_message(
        self,
        to_receiver_id: str,
        msg_type: str,
        payload: Dict[str, Any],
        from_sender_id: str,
    ) -> None:
        session = self.SessionFactory()
        try:
            session.add(
                QueueMessage(
                    sender_id=str(from_sender_id),
                    receiver_id=str(to_receiver_id),
                    type=msg_type,
                    payload=payload,
                )
            )
            session.commit()
        finally:
            session.close()

    def _resolve_app(self, sender_full: str) -> Tuple[Any, str, str]:
        """
        STRICT: must match a registered app prefix.
        Returns: (app, matched_prefix, remainder_id)
        """
        candidates: List[Tuple[int, str, Any]] = []

        for app in self.apps:
            key = getattr(app, "key", "")
            delim = getattr(app, "key_delim", "")
            prefix = f"{key}{delim}"
            if not prefix:
                continue
            if sender_full.startswith(prefix):
                candidates.append((len(prefix), prefix, app))

        if not candidates:
            known = [f"{getattr(a,'key','')}{getattr(a,'key_delim','')}" for a in self.apps]
            raise RuntimeError(f"No app matched sender_id='{sender_full}'. Known prefixes: {known}")

        candidates.sort(key=lambda x: x[0], reverse=True)
        _, prefix, app = candidates[0]
        return app, prefix, sender_full[len(prefix):]

    def process_queue_job(self, job: Dict[str, Any]) -> None:
        sender_full = str(job.get("sender_id") or "")
        msg_type = job.get("type") or "unknown"

        try:
            app, prefix, subject_id = self._resolve_app(sender_full)
            ctx = JobContext(self, job, sender_full, subject_id, prefix)
            response_payload = app.handle(job, ctx)
        except Exception as e:
            logger.info("Error processing job id=%s type=%s: %s", job.get("id"), msg_type, e)
            traceback.print_exc()
            response_payload = {"status": "error", "message": str(e)}

        self._send_queue_message(
            to_receiver_id=sender_full,
            msg_type=f"{msg_type}_response",
            payload=response_payload,
            from_sender_id=str(job.get("receiver_id")),
        )


class PlanApp:
    """
    Builds study plans. sender_id must start with "plan::".
    """
    key = PLAN_APP_KEY
    key_delim = PLAN_APP_KEY_DELIM

    def __init__(self, Session, generator: PlanGenerator) -> None:
        self.SessionFactory = Session
        self.generator = generator

    def handle(self, job: Dict[str, Any], ctx: JobContext) -> Dict[str, Any]:
        msg_type = job.get("type")
        if msg_type != GENERATE_PLAN:
            raise ValueError(f"PlanApp: unsupported message type '{msg_type}'")

        payload = job.get("payload") or {}
        user_id = int(payload.get("user_id") or ctx.subject_id)
        subjects = payload.get("subjects") or {}

        session = self.SessionFactory()
        try:
            user = session.get(User, user_id)
            if user is None:
                raise ValueError(f"User not found: {user_id}")
            daily_hours = user.daily_study_hours

            plan, used_fallback = self.generator.generate(subjects, daily_hours)
            set_generating_status(session, user_id, FINALIZING_STATUS)
            ctx.emit(f"{GENERATE_PLAN}_progress", {"generating_status": FINALIZING_STATUS})

            # a partial regeneration keeps the untouched subjects of the current plan
            current = (
                session.query(StudyPlan)
                .filter(StudyPlan.user_id == user_id, StudyPlan.status == "active")
                .all()
            )
            merged: Dict[str, Any] = {}
            for old in current:
                merged.update(old.curriculum or {})
                old.status = "archived"
            merged = {s: c for s, c in merged.items() if s in (user.subjects or [])}
            merged.update(plan)

            new_plan = StudyPlan(
                user_id=user_id,
                status="active",
                is_fallback=used_fallback,
                curriculum=merged,
            )
            session.add(new_plan)
            session.commit()
            logger.info("Stored study plan id=%s for user_id=%s (fallback=%s)", new_plan.id, user_id, used_fallback)

            return {
                "status": "success",
                "user_id": user_id,
                "plan_id": new_plan.id,
                "is_fallback": used_fallback,
                "subjects": sorted(plan.keys()),
            }
        except Exception:
            session.rollback()
            raise
        finally:
            try:
                finish_generation(session, user_id)
            finally:
                session.close()


class Executor:
    def __init__(self, host: AppHost):
        self.host = host

    def execute(self, job: Dict[str, Any]) -> None:
        self.host.process_queue_job(job)


class AsyncGuard:
    def __init__(
        self,
        host: AppHost,
        receiver_id: str,
        poll_interval: float = 1.0,
        max_concurrent: int = 4,
    ):
        self.host = host
        self.receiver_id = receiver_id
        self.poll_interval = poll_interval
        self.max_concurrent = max_concurrent
        self._in_flight = set()
        self._tasks: set[asyncio.Task] = set()
        self.SessionFactory = host.SessionFactory

    async def _run_executor_for_message(self, job: Dict[str, Any]) -> None:
        executor = Executor(self.host)
        try:
            await asyncio.to_thread(executor.execute, job)
        finally:
            self._in_flight.discard(job["id"])

    def claim_jobs(self, limit: int) -> List[Dict[str, Any]]:
        session = self.SessionFactory()
        try:
            rows = (
                session.query(QueueMessage)
                .filter(QueueMessage.receiver_id == str(self.receiver_id))
                .order_by(QueueMessage.created_at.asc())
                .with_for_update(skip_locked=True)
                .limit(limit)
                .all()
            )

            jobs = [
                {
                    "id": r.id,
                    "sender_id": r.sender_id,
                    "receiver_id": r.receiver_id,
                    "type": r.type,
                    "payload": r.payload,
                }
                for r in rows
            ]

            for r in rows:
                session.delete(r)

            session.commit()
            return jobs
        finally:
            session.close()

    async def run_once(self) -> int:
        available_slots = self.max_concurrent - len(self._in_flight)
        if available_slots <= 0:
            return 0

        jobs = self.claim_jobs(available_slots)
        started = 0
        for job in jobs:
            if job["id"] in self._in_flight:
                continue
            self._in_flight.add(job["id"])
            task = asyncio.create_task(self._run_executor_for_message(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started += 1
        return started

    async def run(self) -> None:
        logger.info("AsyncGuard running - receiver_id=%s (max_concurrent=%d)", self.receiver_id, self.max_concurrent)

        while True:
            await self.run_once()
            await asyncio.sleep(self.poll_interval)


def build_chat_llm() -> ChatLlmClient | None:
    try:
        return ChatLlmClient(build_provider_settings(strict_response=True), timeout=LLM_TIMEOUT)
    except ProviderConfigError as e:
        logger.warning("Plan generation will use fallback plans only: %s", e)
        return None


def main() -> None:
    if not QUEUE_RECEIVER_ID:
        raise RuntimeError("QUEUE_RECEIVER_ID env var is required for DB queue mode")

    Session = get_session_factory()
    apps = [
        PlanApp(Session, PlanGenerator(build_chat_llm())),
    ]
    host = AppHost(Session, receiver_id=QUEUE_RECEIVER_ID, apps=apps)
    guard = AsyncGuard(
        host=host,
        receiver_id=QUEUE_RECEIVER_ID,
        max_concurrent=CONCURRENT_INSTANCES,
    )
    asyncio.run(guard.run())


if __name__ == "__main__":
    main()
