"""
BILLING HOUSEKEEPING JOBS

Jobs live in the background_jobs collection and are run either on demand
(POST /jobs) or by the server's periodic sweep:

    TOKEN_CLEANUP     delete expired payment-link tokens
    OVERDUE_SWEEP     flag unpaid documents past their due date
    LEDGER_INTEGRITY  re-derive stored money figures and raise alerts

A runner CLAIMS a job by flipping it to RUNNING in a single update, so a job
is executed by one runner even when several server processes sweep the same
collection. A failed job goes back to RETRYING with an exponential delay
until MAX_ATTEMPTS is reached, then FAILED.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List
from bson import ObjectId
import asyncio
import logging

from billing_engine.ledger_integrity_job import LedgerIntegrityJob

logger = logging.getLogger(__name__)


class JobStatus:
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETRYING = "RETRYING"


RUNNABLE = [JobStatus.PENDING, JobStatus.RETRYING]


class JobType:
    TOKEN_CLEANUP = "TOKEN_CLEANUP"
    OVERDUE_SWEEP = "OVERDUE_SWEEP"
    LEDGER_INTEGRITY = "LEDGER_INTEGRITY"


def _public(job: Optional[Dict]) -> Optional[Dict]:
    if job is not None:
        job["job_id"] = str(job.pop("_id"))
    return job


class BackgroundJobEngine:
    MAX_ATTEMPTS = 5
    RETRY_BASE_SECONDS = 60

    def __init__(self, db: AsyncIOMotorDatabase, billing_service):
        self.jobs = db.background_jobs
        self.db = db
        self.billing = billing_service

    def _handler(self, job_type: str):
        return {
            JobType.TOKEN_CLEANUP: self._cleanup_tokens,
            JobType.OVERDUE_SWEEP: self._sweep_overdue,
            JobType.LEDGER_INTEGRITY: self._check_ledger,
        }.get(job_type)

    async def schedule_job(
        self,
        job_type: str,
        params: Optional[Dict[str, Any]] = None,
        scheduled_by: Optional[str] = None,
        run_at: Optional[datetime] = None
    ) -> str:
        if self._handler(job_type) is None:
            raise ValueError(f"Unknown job type: {job_type}")

        now = datetime.utcnow()
        inserted = await self.jobs.insert_one({
            "job_type": job_type,
            "params": params or {},
            "status": JobStatus.PENDING,
            "scheduled_by": scheduled_by or "SYSTEM",
            "scheduled_at": now,
            "run_at": run_at or now,
            "retry_count": 0,
            "error_message": None,
            "result": None,
        })
        logger.info(f"[JOB] {job_type} scheduled as {inserted.inserted_id}")
        return str(inserted.inserted_id)

    async def run_job_async(self, job_id: str):
        """Start a job without waiting for it (used by the API)."""
        asyncio.create_task(self.execute_job(job_id))
        return {"status": "started", "job_id": job_id}

    async def _claim(self, query: Dict[str, Any]) -> Optional[Dict]:
        return await self.jobs.find_one_and_update(
            {**query, "status": {"$in": RUNNABLE}},
            {"$set": {"status": JobStatus.RUNNING, "started_at": datetime.utcnow()}},
            sort=[("run_at", 1)],
            return_document=ReturnDocument.AFTER
        )

    async def execute_job(self, job_id: str):
        """Run one job by id, if it is still waiting to run."""
        if not ObjectId.is_valid(job_id):
            logger.error(f"[JOB] Invalid job id: {job_id}")
            return
        job = await self._claim({"_id": ObjectId(job_id)})
        if job is None:
            logger.warning(f"[JOB] {job_id} not found or already taken")
            return
        await self._run(job)

    async def run_due_jobs(self) -> int:
        """Claim and run due jobs one at a time until none are left. Returns how many ran."""
        ran = 0
        while True:
            job = await self._claim({"run_at": {"$lte": datetime.utcnow()}})
            if job is None:
                return ran
            await self._run(job)
            ran += 1

    async def _run(self, job: Dict):
        job_id = job["_id"]
        try:
            result = await self._handler(job["job_type"])(job.get("params") or {})
        except Exception as e:
            logger.exception(f"[JOB] {job['job_type']} {job_id} failed")
            await self._record_failure(job, str(e))
            return

        await self.jobs.update_one(
            {"_id": job_id},
            {"$set": {"status": JobStatus.COMPLETED, "completed_at": datetime.utcnow(), "result": result}}
        )
        logger.info(f"[JOB] {job['job_type']} {job_id} completed: {result}")

    async def _record_failure(self, job: Dict, error: str):
        attempts = job.get("retry_count", 0)
        if attempts >= self.MAX_ATTEMPTS:
            await self.jobs.update_one(
                {"_id": job["_id"]},
                {"$set": {"status": JobStatus.FAILED, "completed_at": datetime.utcnow(), "error_message": error}}
            )
            logger.error(f"[JOB] {job['_id']} gave up after {attempts} retries")
            return

        delay = self.RETRY_BASE_SECONDS * (2 ** attempts)
        await self.jobs.update_one(
            {"_id": job["_id"]},
            {
                "$set": {
                    "status": JobStatus.RETRYING,
                    "error_message": error,
                    "run_at": datetime.utcnow() + timedelta(seconds=delay),
                },
                "$inc": {"retry_count": 1}
            }
        )
        logger.info(f"[JOB] {job['_id']} retry {attempts + 1} in {delay}s")

    async def periodic_sweep(self, interval_seconds: int):
        """Server background loop: queue the token and overdue sweeps, then drain due jobs."""
        logger.info(f"[JOB] Periodic sweep every {interval_seconds}s")
        while True:
            await self.schedule_job(JobType.TOKEN_CLEANUP)
            await self.schedule_job(JobType.OVERDUE_SWEEP)
            await self.run_due_jobs()
            await asyncio.sleep(interval_seconds)

    # ---- handlers -------------------------------------------------------

    async def _cleanup_tokens(self, params: Dict) -> Dict:
        return {"tokens_deleted": await self.billing.links.cleanup_expired()}

    async def _sweep_overdue(self, params: Dict) -> Dict:
        return {"documents_marked_overdue": await self.billing.mark_overdue()}

    async def _check_ledger(self, params: Dict) -> Dict:
        report = await LedgerIntegrityJob(self.db).run(params.get("document_types"))
        return {"documents_checked": report["documents_checked"], "mismatches_found": report["mismatches_found"]}

    # ---- queries --------------------------------------------------------

    async def get_job_status(self, job_id: str) -> Optional[Dict]:
        if not ObjectId.is_valid(job_id):
            return None
        return _public(await self.jobs.find_one({"_id": ObjectId(job_id)}))

    async def get_pending_jobs(self) -> List[Dict]:
        jobs = await self.jobs.find(
            {"status": {"$in": RUNNABLE}, "run_at": {"$lte": datetime.utcnow()}}
        ).to_list(length=100)
        return [_public(job) for job in jobs]
