"""Job lifecycle: accept capture requests, run them in the background, expose status."""
import asyncio
import logging
import os
import secrets
import shutil
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .cloner import SITE_DIR, CaptureOptions, Progress, clone_page
from .config import Settings, settings as global_settings
from .egress import Resolver, evaluate
from .errors import ClonerError, EgressDenied, InvalidInput, NotFound, NotReady

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.ERROR)


ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.RUNNING, JobStatus.ERROR},
    JobStatus.RUNNING: {JobStatus.DONE, JobStatus.ERROR},
    JobStatus.DONE: set(),
    JobStatus.ERROR: set(),
}


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Job:
    """Immutable snapshot of a job; updates swap in a new instance."""

    id: str
    url: str
    options: CaptureOptions
    work_dir: str
    status: JobStatus = JobStatus.QUEUED
    progress: Progress = field(default_factory=lambda: Progress("queued", "Queued"))
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    archive_path: Optional[str] = None
    error: Optional[str] = None

    @property
    def archive_name(self) -> str:
        return f"site-clone-{self.id}.zip"


class JobStore:
    """Storage for job snapshots. Implementations must replace records atomically."""

    def get(self, job_id: str) -> Optional[Job]:
        raise NotImplementedError

    def put(self, job: Job) -> None:
        raise NotImplementedError

    def list(self) -> List[Job]:
        raise NotImplementedError


class InMemoryJobStore(JobStore):
    """Process-lifetime store; everything is lost on restart."""

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def put(self, job: Job) -> None:
        with self._lock:
            self._jobs[job.id] = job

    def list(self) -> List[Job]:
        with self._lock:
            return sorted(self._jobs.values(), key=lambda j: j.created_at)


@dataclass
class JobHandle:
    task: asyncio.Task
    cancel_event: asyncio.Event


class JobManager:
    """Owns every job record; the capture driver only reports through callbacks."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[JobStore] = None,
        runner=None,
        resolver: Optional[Resolver] = None,
        session_factory=None,
    ):
        self.settings = settings or global_settings
        self.store = store or InMemoryJobStore()
        self._runner = runner or clone_page
        self._resolver = resolver
        self._session_factory = session_factory
        self._handles: Dict[str, JobHandle] = {}
        self._slots: Optional[asyncio.Semaphore] = None
        self._update_lock = threading.Lock()

    def _semaphore(self) -> asyncio.Semaphore:
        # created lazily so it binds to the running loop
        if self._slots is None:
            self._slots = asyncio.Semaphore(max(1, self.settings.max_concurrent_jobs))
        return self._slots

    async def submit(self, url: str, options: Optional[CaptureOptions] = None) -> str:
        url = (url or "").strip()
        if not url:
            raise InvalidInput("Missing url")

        decision = await evaluate(url, self.settings.allowed_hosts, resolver=self._resolver)
        if not decision.allowed:
            raise EgressDenied(decision.reason or "URL not allowed")

        job_id = secrets.token_hex(10)
        work_dir = os.path.join(self.settings.jobs_dir, job_id)
        os.makedirs(work_dir, exist_ok=True)

        job = Job(id=job_id, url=url, options=options or CaptureOptions(), work_dir=work_dir)
        self.store.put(job)

        cancel_event = asyncio.Event()
        task = asyncio.create_task(self._run_job(job_id, cancel_event), name=f"clone-{job_id}")
        self._handles[job_id] = JobHandle(task=task, cancel_event=cancel_event)
        task.add_done_callback(lambda _: self._handles.pop(job_id, None))
        logger.info(f"🆕 Job {job_id} queued for {url}")
        return job_id

    def get(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job is None:
            raise NotFound("Not found")
        return job

    def status(self, job_id: str) -> Job:
        return self.get(job_id)

    def download(self, job_id: str) -> Tuple[str, str]:
        """Return (archive path, download filename) for a finished job."""
        job = self.get(job_id)
        if job.status is not JobStatus.DONE or not job.archive_path:
            raise NotReady("Job not done")
        return job.archive_path, job.archive_name

    def _update(self, job_id: str, **changes) -> Optional[Job]:
        """Swap in a new snapshot; terminal jobs and illegal transitions are left untouched."""
        with self._update_lock:
            current = self.store.get(job_id)
            if current is None or current.status.terminal:
                return None
            status = changes.get("status", current.status)
            if status != current.status and status not in ALLOWED_TRANSITIONS[current.status]:
                raise ValueError(f"Illegal transition {current.status.value} -> {status.value}")
            updated = replace(current, updated_at=max(current.updated_at, now_ms()), **changes)
            self.store.put(updated)
            return updated

    def _on_progress(self, job_id: str, progress: Progress) -> None:
        self._update(job_id, progress=progress)

    async def _run_job(self, job_id: str, cancel_event: asyncio.Event) -> None:
        job = self.store.get(job_id)
        try:
            async with self._semaphore():
                if cancel_event.is_set():
                    raise asyncio.CancelledError()
                self._update(
                    job_id,
                    status=JobStatus.RUNNING,
                    progress=Progress("running", "Launching browser"),
                )
                archive_path = os.path.join(job.work_dir, job.archive_name)
                kwargs = {}
                if self._session_factory is not None:
                    kwargs["session_factory"] = self._session_factory
                result = await self._runner(
                    job.url,
                    job.work_dir,
                    archive_path,
                    job.options,
                    on_progress=lambda p: self._on_progress(job_id, p),
                    single_process=self.settings.browser_single_process,
                    **kwargs,
                )
            self._update(
                job_id,
                status=JobStatus.DONE,
                archive_path=result.archive_path,
                progress=Progress("done", "ZIP ready", result.assets),
            )
            logger.info(f"✅ Job {job_id} done")
        except asyncio.CancelledError:
            self._fail(job_id, "Job cancelled")
            raise
        except ClonerError as e:
            self._fail(job_id, str(e))
        except Exception as e:
            logger.exception(f"Job {job_id} crashed")
            self._fail(job_id, str(e) or type(e).__name__)

    def _fail(self, job_id: str, message: str) -> None:
        job = self.store.get(job_id)
        assets = job.progress.assets if job else 0
        updated = self._update(
            job_id,
            status=JobStatus.ERROR,
            error=message,
            archive_path=None,
            progress=Progress("error", message, assets),
        )
        if updated is not None:
            logger.warning(f"❌ Job {job_id} failed: {message}")
            shutil.rmtree(os.path.join(updated.work_dir, SITE_DIR), ignore_errors=True)

    async def wait(self, job_id: str) -> Job:
        """Wait for the background task of a job to finish (used by the CLI and tests)."""
        handle = self._handles.get(job_id)
        if handle is not None:
            await asyncio.gather(handle.task, return_exceptions=True)
        return self.get(job_id)

    async def shutdown(self) -> None:
        handles = list(self._handles.items())
        for _, handle in handles:
            handle.cancel_event.set()
            handle.task.cancel()
        if handles:
            await asyncio.gather(*(h.task for _, h in handles), return_exceptions=True)
        # tasks cancelled before their first step never reach their own handler
        for job_id, _ in handles:
            self._fail(job_id, "Job cancelled")
