import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

import services
from config import get_settings
from database import close_client, ensure_indexes, get_db
from logging_setup import setup_logging
from outcomes import InvalidParameter, RequestOutcome, ok, validation_message
from schemas import TaskPayload, UserPayload

logger = logging.getLogger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level)
    try:
        await ensure_indexes(get_db())
    except PyMongoError:
        logger.exception("Could not create indexes; continuing without them")
    yield
    await close_client()


app = FastAPI(title="Task API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -----------------------------
# Helpers
# -----------------------------

def respond(outcome: RequestOutcome) -> JSONResponse:
    return JSONResponse(status_code=outcome.status, content=outcome.body())


@app.exception_handler(RequestValidationError)
async def invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
    return respond(InvalidParameter(validation_message(exc)).to_outcome())


# -----------------------------
# User endpoints
# -----------------------------
@app.get("/users")
async def list_users(request: Request, db=Depends(get_db)):
    return respond(await services.list_users(db, dict(request.query_params)))


@app.post("/users")
async def create_user(body: Optional[UserPayload] = None, db=Depends(get_db)):
    payload = (body or UserPayload()).model_dump()
    return respond(await services.create_user(db, payload))


@app.get("/users/{user_id}")
async def get_user(user_id: str, request: Request, db=Depends(get_db)):
    return respond(await services.get_user(db, user_id, dict(request.query_params)))


@app.put("/users/{user_id}")
async def update_user(user_id: str, body: Optional[UserPayload] = None, db=Depends(get_db)):
    payload = (body or UserPayload()).model_dump()
    return respond(await services.update_user(db, user_id, payload))


@app.delete("/users/{user_id}")
async def delete_user(user_id: str, db=Depends(get_db)):
    return respond(await services.delete_user(db, user_id))


# -----------------------------
# Task endpoints
# -----------------------------
@app.get("/tasks")
async def list_tasks(request: Request, db=Depends(get_db)):
    return respond(await services.list_tasks(db, dict(request.query_params)))


@app.post("/tasks")
async def create_task(body: Optional[TaskPayload] = None, db=Depends(get_db)):
    payload = (body or TaskPayload()).model_dump()
    return respond(await services.create_task(db, payload))


@app.get("/tasks/{task_id}")
async def get_task(task_id: str, request: Request, db=Depends(get_db)):
    return respond(await services.get_task(db, task_id, dict(request.query_params)))


@app.put("/tasks/{task_id}")
async def update_task(task_id: str, body: Optional[TaskPayload] = None, db=Depends(get_db)):
    payload = (body or TaskPayload()).model_dump()
    return respond(await services.update_task(db, task_id, payload))


@app.delete("/tasks/{task_id}")
async def delete_task(task_id: str, db=Depends(get_db)):
    return respond(await services.delete_task(db, task_id))


# -----------------------------
# Health
# -----------------------------
@app.get("/")
def read_root():
    return respond(ok(None, "Task API is running"))


@app.get("/health")
async def health(db=Depends(get_db)):
    response = {
        "backend": "running",
        "database": "unavailable",
        "database_name": settings.database_name,
        "collections": [],
    }
    try:
        collections = await db.list_collection_names()
        response["collections"] = collections[:10]
        response["database"] = "connected"
    except PyMongoError as e:
        response["database"] = f"error: {str(e)[:50]}"
    return respond(ok(response))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
