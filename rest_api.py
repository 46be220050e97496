import datetime
import logging
from typing import List, Optional

from fastapi import APIRouter, Body, FastAPI, HTTPException
from pydantic import BaseModel, Field

from config import APP_VERSION, YamlConfig
from db import (
    ExerciseRepository,
    LiftLogRepository,
    PersonalRecordRepository,
    PRDetectionLogRepository,
)
from exceptions import CascadeLimitError, InconsistentLedgerError
from lift_log_service import LiftLogService
from models import LiftLog, PersonalRecord, PRClassification, PRDetectionLog
from pr_audit_service import PRAuditService
from pr_detection_service import PRDetectionService
from pr_ledger_service import PRLedgerService
from pr_recalculation_service import PRRecalculationService

logger = logging.getLogger(__name__)


class LiftSetIn(BaseModel):
    weight: float
    reps: int
    band_color: Optional[str] = None


class LiftLogIn(BaseModel):
    user_id: int
    exercise_id: int
    sets: List[LiftSetIn] = Field(default_factory=list)
    logged_at: Optional[datetime.datetime] = None
    comments: Optional[str] = None


class LiftLogUpdate(BaseModel):
    sets: Optional[List[LiftSetIn]] = None
    logged_at: Optional[datetime.datetime] = None
    exercise_id: Optional[int] = None
    comments: Optional[str] = None


def lift_log_dict(log: LiftLog) -> dict:
    return {
        "id": log.id,
        "user_id": log.user_id,
        "exercise_id": log.exercise_id,
        "logged_at": log.logged_at.isoformat(),
        "sets": [
            {"weight": s.weight, "reps": s.reps, "band_color": s.band_color}
            for s in log.sets
        ],
        "comments": log.comments,
        "is_pr": log.is_pr,
        "pr_count": log.pr_count,
    }


def classification_dict(result: PRClassification) -> dict:
    return {
        "lift_log_id": result.lift_log_id,
        "eligible": result.eligible,
        "is_pr": result.is_pr,
        "pr_count": result.pr_count,
        "categories": sorted(result.categories),
        "metrics": result.metrics.to_dict() if result.metrics else None,
        "awards": [
            {
                "pr_type": a.pr_type,
                "value": a.value,
                "rep_count": a.rep_count,
                "weight": a.weight,
                "previous_value": a.previous_value,
                "previous_lift_log_id": a.previous_lift_log_id,
                "reason": a.reason,
            }
            for a in result.awards
        ],
        "rejections": [
            {
                "pr_type": r.pr_type,
                "value": r.value,
                "best_value": r.best_value,
                "blocking_lift_log_id": r.blocking_lift_log_id,
                "rep_count": r.rep_count,
                "weight": r.weight,
                "reason": r.reason,
            }
            for r in result.rejections
        ],
        "reasons": result.per_category_reason,
    }


def record_dict(record: PersonalRecord) -> dict:
    return {
        "id": record.id,
        "lift_log_id": record.lift_log_id,
        "pr_type": record.pr_type,
        "rep_count": record.rep_count,
        "weight": record.weight,
        "value": record.value,
        "previous_pr_id": record.previous_pr_id,
        "previous_value": record.previous_value,
        "achieved_at": record.achieved_at.isoformat() if record.achieved_at else None,
        "superseded_by_id": record.superseded_by_id,
    }


def audit_dict(entry: PRDetectionLog) -> dict:
    return {
        "id": entry.id,
        "lift_log_id": entry.lift_log_id,
        "user_id": entry.user_id,
        "exercise_id": entry.exercise_id,
        "trigger_event": entry.trigger_event,
        "is_cascade": entry.is_cascade,
        "pr_types_detected": list(entry.pr_types_detected),
        "calculation_snapshot": entry.calculation_snapshot,
        "detected_at": entry.detected_at.isoformat(),
    }


def _raise_http(e: Exception) -> None:
    if isinstance(e, CascadeLimitError):
        raise HTTPException(status_code=409, detail=str(e))
    if isinstance(e, InconsistentLedgerError):
        logger.error("ledger check failed: %s", e)
        raise HTTPException(status_code=500, detail=str(e))
    if isinstance(e, RuntimeError):
        raise HTTPException(status_code=500, detail=str(e))
    if "not found" in str(e):
        raise HTTPException(status_code=404, detail=str(e))
    raise HTTPException(status_code=400, detail=str(e))


class PRAPI:
    """Provides REST endpoints for lift logging and personal records."""

    def __init__(
        self, db_path: str | None = None, yaml_path: str | None = None
    ) -> None:
        self.config = YamlConfig(yaml_path)
        self.settings = self.config.settings()
        self.db_path = db_path or self.settings.db_path
        self.exercises = ExerciseRepository(self.db_path)
        self.lift_logs = LiftLogRepository(self.db_path)
        self.records = PersonalRecordRepository(self.db_path)
        self.detection_logs = PRDetectionLogRepository(self.db_path)
        self.detector = PRDetectionService(self.lift_logs, self.exercises, self.settings)
        self.ledger = PRLedgerService(self.records, self.lift_logs)
        self.audit = PRAuditService(self.detection_logs)
        self.recalculator = PRRecalculationService(
            self.lift_logs,
            self.exercises,
            self.detector,
            self.ledger,
            self.audit,
            self.settings,
        )
        self.lift_log_service = LiftLogService(
            self.lift_logs, self.exercises, self.recalculator
        )
        self.app = FastAPI(title="Lift PR Tracker", version=APP_VERSION)
        self._setup_routes()

    def _setup_routes(self) -> None:
        lift_logs_router = APIRouter(prefix="/lift_logs", tags=["Lift Logs"])
        records_router = APIRouter(prefix="/records", tags=["Records"])
        audit_router = APIRouter(prefix="/audit", tags=["Audit"])

        @self.app.get("/health")
        def health():
            """Return API and database connection status."""
            try:
                self.exercises.fetch_all_exercises()
                return {"status": "ok", "version": APP_VERSION}
            except Exception as e:  # pragma: no cover - connectivity failure
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.post("/exercises")
        def add_exercise(
            name: str, exercise_type: str = "regular", user_id: int | None = None
        ):
            try:
                eid = self.exercises.add(name, exercise_type, user_id)
                return {"id": eid}
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

        @self.app.get("/exercises")
        def list_exercises(user_id: int | None = None):
            return [
                {
                    "id": ex.id,
                    "name": ex.name,
                    "exercise_type": ex.exercise_type,
                    "user_id": ex.user_id,
                }
                for ex in self.exercises.fetch_all_exercises(user_id)
            ]

        @lift_logs_router.post("")
        def create_lift_log(payload: LiftLogIn = Body(...)):
            try:
                log, results = self.lift_log_service.create(
                    payload.user_id,
                    payload.exercise_id,
                    [s.model_dump() for s in payload.sets],
                    payload.logged_at,
                    payload.comments,
                )
            except (ValueError, RuntimeError) as e:
                _raise_http(e)
            return {
                "lift_log": lift_log_dict(log),
                "classifications": [classification_dict(r) for r in results],
            }

        @lift_logs_router.get("/{lift_log_id}")
        def get_lift_log(lift_log_id: int):
            try:
                return lift_log_dict(self.lift_logs.fetch(lift_log_id))
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @lift_logs_router.put("/{lift_log_id}")
        def update_lift_log(lift_log_id: int, payload: LiftLogUpdate = Body(...)):
            sets = None
            if payload.sets is not None:
                sets = [s.model_dump() for s in payload.sets]
            try:
                log, results = self.lift_log_service.update(
                    lift_log_id,
                    sets=sets,
                    logged_at=payload.logged_at,
                    exercise_id=payload.exercise_id,
                    comments=payload.comments,
                )
            except (ValueError, RuntimeError) as e:
                _raise_http(e)
            return {
                "lift_log": lift_log_dict(log),
                "classifications": [classification_dict(r) for r in results],
            }

        @lift_logs_router.delete("/{lift_log_id}")
        def delete_lift_log(lift_log_id: int):
            try:
                results = self.lift_log_service.delete(lift_log_id)
            except (ValueError, RuntimeError) as e:
                _raise_http(e)
            return {
                "status": "deleted",
                "classifications": [classification_dict(r) for r in results],
            }

        @lift_logs_router.get("/{lift_log_id}/classification")
        def classify_lift_log(lift_log_id: int):
            try:
                return classification_dict(self.detector.classify_lift_log(lift_log_id))
            except ValueError as e:
                _raise_http(e)

        @records_router.get("")
        def current_records(
            user_id: int,
            exercise_id: int,
            pr_type: str | None = None,
            rep_count: int | None = None,
        ):
            rows = self.records.current_records(user_id, exercise_id, pr_type, rep_count)
            return [record_dict(r) for r in rows]

        @records_router.get("/chain")
        def record_chain(
            user_id: int,
            exercise_id: int,
            pr_type: str,
            rep_count: int | None = None,
            weight: float | None = None,
        ):
            try:
                rows = self.records.chain(user_id, exercise_id, pr_type, rep_count, weight)
            except InconsistentLedgerError as e:
                raise HTTPException(status_code=500, detail=str(e))
            return [record_dict(r) for r in rows]

        @records_router.post("/recalculate")
        def recalculate_historical(
            user_id: int | None = None,
            exercise_id: int | None = None,
            dry_run: bool = False,
        ):
            return self.recalculator.recalculate_historical(user_id, exercise_id, dry_run)

        @audit_router.get("/lift_logs/{lift_log_id}")
        def audit_for_lift_log(lift_log_id: int):
            return [audit_dict(e) for e in self.audit.for_lift_log(lift_log_id)]

        @audit_router.get("/exercises/{exercise_id}")
        def audit_for_exercise(exercise_id: int, user_id: int | None = None):
            return [audit_dict(e) for e in self.audit.for_exercise(exercise_id, user_id)]

        self.app.include_router(lift_logs_router)
        self.app.include_router(records_router)
        self.app.include_router(audit_router)


def create_app(db_path: str | None = None, yaml_path: str | None = None) -> FastAPI:
    return PRAPI(db_path, yaml_path).app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app())
