import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.background import BackgroundTask

from app.auth import single_user_guard
from app.db import make_engine
from app.generators import ContentGenerator, PublishGenerator, QuestionDraftGenerator
from app.job_store import InvalidJobTransition, JobNotFound, JobStore, JobWriterConflict
from app.models import JobStatus
from app.repository import AssignmentNotFound, AssignmentRepository
from app.runner import JobRunner
from app.schemas import (
    AssignmentCreate,
    AssignmentOut,
    GenerateQuestionsRequest,
    JobCreatedResponse,
    JobStatusResponse,
    PublishAssignmentRequest,
    QuestionIn,
)
from app.settings import Settings, settings as default_settings
from app.stream import StatusStreamPublisher

logger = logging.getLogger(__name__)

# ----- Dependencies -----
def get_store(request: Request) -> JobStore:
    return request.app.state.store

def get_runner(request: Request) -> JobRunner:
    return request.app.state.runner

def get_repository(request: Request) -> AssignmentRepository:
    return request.app.state.repository

def get_publisher(request: Request) -> StatusStreamPublisher:
    return request.app.state.publisher

def get_generators(request: Request) -> Dict[str, ContentGenerator]:
    return request.app.state.generators


router = APIRouter(prefix="/api/assignments", tags=["assignments"])

# ----- Assignments -----
@router.post("", response_model=AssignmentOut)
async def create_assignment(
    payload: AssignmentCreate,
    repo: AssignmentRepository = Depends(get_repository),
    _: str = Depends(single_user_guard),
):
    assignment = repo.create(payload.name, payload.introduction)
    return AssignmentOut(**assignment.model_dump(), questions=[])

@router.get("/{assignment_id}", response_model=AssignmentOut)
async def get_assignment(
    assignment_id: int,
    repo: AssignmentRepository = Depends(get_repository),
    _: str = Depends(single_user_guard),
):
    assignment = repo.get(assignment_id)
    return AssignmentOut(**assignment.model_dump(), questions=repo.list_questions(assignment_id))

# ----- Jobs: start -----
@router.put("/{assignment_id}/publish", response_model=JobCreatedResponse)
async def publish_assignment(
    assignment_id: int,
    payload: PublishAssignmentRequest,
    user_id: str = Depends(single_user_guard),
    repo: AssignmentRepository = Depends(get_repository),
    runner: JobRunner = Depends(get_runner),
    generators: Dict[str, ContentGenerator] = Depends(get_generators),
):
    """
    Start publishing and return the job id right away.
    Without a question list the stored questions are re-checked and republished.
    """
    repo.get(assignment_id)
    if payload.questions is None:
        stored = [QuestionIn.model_validate(q) for q in repo.list_questions(assignment_id)]
        payload = payload.model_copy(update={"questions": stored})

    job = runner.create_job(assignment_id, user_id, "publish")

    def mark_published(_questions):
        fields = {"published": True}
        if payload.introduction is not None:
            fields["introduction"] = payload.introduction
        repo.update(assignment_id, **fields)

    runner.run_job(job.id, payload, generators["publish"], persist=True, after_save=mark_published)
    return JobCreatedResponse(job_id=job.id, message="Publishing started")

@router.post("/{assignment_id}/generate-questions", response_model=JobCreatedResponse)
async def generate_questions(
    assignment_id: int,
    payload: GenerateQuestionsRequest,
    user_id: str = Depends(single_user_guard),
    repo: AssignmentRepository = Depends(get_repository),
    runner: JobRunner = Depends(get_runner),
    generators: Dict[str, ContentGenerator] = Depends(get_generators),
):
    repo.get(assignment_id)
    if payload.questions_to_generate.total() == 0:
        raise HTTPException(status_code=400, detail="At least one question must be requested")

    # Drafts go back to the editor; they are saved when the author publishes.
    job = runner.create_job(assignment_id, user_id, "generate")
    runner.run_job(job.id, payload, generators["generate"], persist=False)
    return JobCreatedResponse(job_id=job.id, message="Question generation started")

# ----- Jobs: status -----
@router.get("/jobs/{job_id}/status", response_model=JobStatusResponse, response_model_exclude_none=True)
async def job_status(job_id: int, store: JobStore = Depends(get_store), _: str = Depends(single_user_guard)):
    job = store.get(job_id)
    if job.status is JobStatus.COMPLETED:
        return JobStatusResponse(status=job.status.value, progress=job.progress, questions=job.parsed_result())
    return JobStatusResponse(status=job.status.value, progress=job.progress)

@router.get("/jobs/{job_id}/status-stream")
async def job_status_stream(
    job_id: int,
    publisher: StatusStreamPublisher = Depends(get_publisher),
    _: str = Depends(single_user_guard),
):
    # Unknown ids raise before the response starts, so the client gets a plain 404.
    stream = publisher.open_stream(job_id)
    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        background=BackgroundTask(stream.aclose),
    )


# ----- App -----
async def reap_forever(store: JobStore, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            store.reap()
        except Exception:
            logger.exception("Job reaper pass failed")

@asynccontextmanager
async def lifespan(app: FastAPI):
    reaper = asyncio.create_task(reap_forever(app.state.store, app.state.settings.REAPER_INTERVAL_SECONDS))
    try:
        yield
    finally:
        reaper.cancel()
        await asyncio.gather(reaper, return_exceptions=True)
        await app.state.runner.shutdown()

def create_app(
    settings: Optional[Settings] = None,
    generators: Optional[Dict[str, ContentGenerator]] = None,
) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")

    app = FastAPI(title="Assignment Job Service", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    engine = make_engine(settings.DATABASE_URL)
    store = JobStore(engine, retention_seconds=settings.JOB_RETENTION_SECONDS)
    repository = AssignmentRepository(engine)
    app.state.settings = settings
    app.state.store = store
    app.state.repository = repository
    app.state.runner = JobRunner(store, repository)
    app.state.publisher = StatusStreamPublisher(store, heartbeat_seconds=settings.STREAM_HEARTBEAT_SECONDS)
    app.state.generators = generators or {
        "publish": PublishGenerator(settings.STEP_DELAY_SECONDS),
        "generate": QuestionDraftGenerator(settings.STEP_DELAY_SECONDS),
    }

    @app.exception_handler(JobNotFound)
    async def job_not_found(request: Request, exc: JobNotFound):
        return JSONResponse(status_code=404, content={"detail": "Job not found"})

    @app.exception_handler(AssignmentNotFound)
    async def assignment_not_found(request: Request, exc: AssignmentNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(JobWriterConflict)
    @app.exception_handler(InvalidJobTransition)
    async def job_conflict(request: Request, exc: Exception):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.get("/healthz", include_in_schema=False)
    async def healthz():
        return {"ok": True}

    app.include_router(router)
    return app

app = create_app()
