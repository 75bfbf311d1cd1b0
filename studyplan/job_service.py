import logging
import os

from sqlalchemy.orm import sessionmaker

from studyplan.entities import QueueMessage
from studyplan.utils import Utils

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("studyplan_backend")

QUEUE_RECEIVER_ID = os.getenv("QUEUE_RECEIVER_ID", "plan_worker")

PLAN_APP_KEY = "plan"
PLAN_APP_KEY_DELIM = "::"
GENERATE_PLAN = "generate_plan"


def plan_sender_id(user_id) -> str:
    return f"{PLAN_APP_KEY}{PLAN_APP_KEY_DELIM}{user_id}"


class JobService(Utils):
    def __init__(self, session_factory: sessionmaker, receiver_id: str | None = None):
        self.SessionFactory = session_factory
        self.receiver_id = receiver_id or QUEUE_RECEIVER_ID

    def submit_plan_generation(self, user_id: int, subjects: dict) -> dict:
        """
        Queue a plan generation run for the worker addressed by receiver_id.
        `subjects` maps subject name -> {start_date, end_date, difficulty}.
        """
        if not isinstance(subjects, dict):
            return {
                "job_id": None,
                "status": "error",
                "message": "submit_plan_generation subjects must be a JSON object",
            }

        session = self.SessionFactory()
        try:
            msg = QueueMessage(
                sender_id=plan_sender_id(user_id),
                receiver_id=str(self.receiver_id),
                type=GENERATE_PLAN,
                payload={"user_id": user_id, "subjects": subjects},
            )
            session.add(msg)
            session.commit()
            job_id = msg.id
        except Exception as e:
            self.color_print(f"submit_plan_generation(): DB error -> {e}", color="red")
            session.rollback()
            raise
        finally:
            session.close()

        logger.info("Queued %s job id=%s for user_id=%s", GENERATE_PLAN, job_id, user_id)
        return {
            "job_id": job_id,
            "status": "PENDING",
            "message": "Plan generation queued.",
        }

    def responses_for(self, user_id: int) -> list[dict]:
        """
        Drain the worker responses addressed back to this user's sender id.
        """
        session = self.SessionFactory()
        try:
            rows = (
                session.query(QueueMessage)
                .filter(QueueMessage.receiver_id == plan_sender_id(user_id))
                .order_by(QueueMessage.created_at.asc())
                .all()
            )
            out = [{"id": r.id, "type": r.type, "payload": r.payload} for r in rows]
            for r in rows:
                session.delete(r)
            session.commit()
            return out
        finally:
            session.close()
