from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from typing import Optional

from config.database import get_db
from .models import Job
from .queue import JobQueue

router = APIRouter(prefix="/queues", tags=["queues"])


class PauseRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


@router.get("/stats")
def queue_stats(db: Session = Depends(get_db)):
    """Job counts per queue and status"""
    return JobQueue(db).stats()


@router.get("/status")
def queue_status(db: Session = Depends(get_db)):
    """Pause state and job counts per queue"""
    return JobQueue(db).queue_status()


@router.post("/{queue_name}/pause")
def pause_queue(queue_name: str, request: Optional[PauseRequest] = None, db: Session = Depends(get_db)):
    try:
        control = JobQueue(db).pause(queue_name, request.reason if request else None)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"queue": control.queue, "paused": control.paused, "reason": control.reason, "paused_at": control.paused_at}


@router.post("/{queue_name}/resume")
def resume_queue(queue_name: str, db: Session = Depends(get_db)):
    try:
        control = JobQueue(db).resume(queue_name)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"queue": control.queue, "paused": control.paused}


@router.get("/worker")
def worker_status(request: Request):
    worker = getattr(request.app.state, "job_worker", None)
    if worker is None:
        return {"is_running": False, "enabled": False}
    return {"enabled": True, **worker.get_status()}


@router.get("/jobs/{job_id}")
def get_job(job_id: int, db: Session = Depends(get_db)):
    job = db.get(Job, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return {
        "id": job.id,
        "queue": job.queue,
        "name": job.name,
        "status": job.status,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "last_error": job.last_error,
        "run_at": job.run_at,
        "created_at": job.created_at,
        "completed_at": job.completed_at,
    }


@router.post("/jobs/{job_id}/retry")
def retry_job(job_id: int, db: Session = Depends(get_db)):
    job = JobQueue(db).retry_job(job_id)
    if job is None:
        raise HTTPException(status_code=409, detail="Job is not in a failed state or is already queued again")
    return {"id": job.id, "status": job.status}
