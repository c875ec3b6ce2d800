import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import HTTPConnection
from fastapi.responses import JSONResponse
from pymongo.database import Database
from starlette.exceptions import HTTPException as StarletteHTTPException

import auth
import crud
import dashboard
import notify
from config import Settings, get_settings
from database import close_db, get_db, oid, utcnow
from errors import AppError
from realtime import LiveChannel
from schemas import (
    AuthResponse,
    CommentCreate,
    GoogleLoginRequest,
    LoginRequest,
    ProjectCreate,
    ProjectUpdate,
    RegisterRequest,
    RoleUpdate,
    TaskCreate,
    TaskUpdate,
    UserPublic,
)

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.channel = LiveChannel()
    logger.info("Project Management API starting (%s)", settings.environment)
    yield
    await app.state.channel.close()
    close_db()
    logger.info("Project Management API stopped")


app = FastAPI(title="Project Management API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

api = APIRouter()


# -----------------------------
# Helpers
# -----------------------------

def get_channel(connection: HTTPConnection) -> LiveChannel:
    return connection.app.state.channel


@app.exception_handler(AppError)
async def app_error_handler(request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
        message = f"{field}: {first.get('msg')}" if field else first.get("msg", message)
    return JSONResponse(status_code=400, content={"message": message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


# -----------------------------
# Auth endpoints
# -----------------------------
@api.post("/auth/register", status_code=status.HTTP_201_CREATED, response_model=AuthResponse)
def register(body: RegisterRequest, db: Database = Depends(get_db), cfg: Settings = Depends(get_settings)):
    user = auth.register_user(db, body.name, body.email, body.password, body.role)
    return auth.auth_payload(user, cfg)


@api.post("/auth/login", response_model=AuthResponse)
def login(body: LoginRequest, db: Database = Depends(get_db), cfg: Settings = Depends(get_settings)):
    user = auth.authenticate_user(db, body.email, body.password)
    return auth.auth_payload(user, cfg)


@api.post("/auth/google-login", response_model=AuthResponse)
def google_login(body: GoogleLoginRequest, db: Database = Depends(get_db), cfg: Settings = Depends(get_settings)):
    user = auth.google_login(db, body.token, cfg)
    return auth.auth_payload(user, cfg)


@api.get("/auth/me", response_model=UserPublic)
def me(user=Depends(auth.get_current_user)):
    return auth.public_user(user)


# -----------------------------
# Project endpoints
# -----------------------------
@api.get("/projects")
def list_projects(user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    return crud.list_projects(db, user)


@api.post("/projects", status_code=status.HTTP_201_CREATED)
def create_project(body: ProjectCreate, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    return crud.create_project(db, user, body)


@api.get("/projects/{project_id}")
def get_project(project_id: str, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    return crud.get_project(db, user, project_id)


@api.put("/projects/{project_id}")
def update_project(
    project_id: str, body: ProjectUpdate, user=Depends(auth.get_current_user), db: Database = Depends(get_db)
):
    return crud.update_project(db, user, project_id, body.model_dump(exclude_unset=True))


@api.delete("/projects/{project_id}")
def delete_project(project_id: str, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    return crud.delete_project(db, user, project_id)


# -----------------------------
# Task endpoints
# -----------------------------
@api.get("/tasks")
def list_tasks(
    project: Optional[str] = Query(None),
    q: Optional[str] = Query(None),
    task_status: Optional[str] = Query(None, alias="status"),
    assignee: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    due_before: Optional[datetime] = Query(None, alias="dueBefore"),
    due_after: Optional[datetime] = Query(None, alias="dueAfter"),
    page: int = Query(1),
    limit: int = Query(crud.DEFAULT_PAGE_SIZE),
    user=Depends(auth.get_current_user),
    db: Database = Depends(get_db),
):
    return crud.list_tasks(
        db, user,
        project=project, q=q, status=task_status, assignee=assignee, priority=priority,
        due_before=due_before, due_after=due_after, page=page, limit=limit,
    )


@api.post("/tasks", status_code=status.HTTP_201_CREATED)
async def create_task(
    body: TaskCreate,
    user=Depends(auth.get_current_user),
    db: Database = Depends(get_db),
    channel: LiveChannel = Depends(get_channel),
):
    return await crud.create_task(db, channel, user, body)


@api.get("/tasks/{task_id}")
def get_task(task_id: str, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    return crud.get_task(db, user, task_id)


@api.put("/tasks/{task_id}")
async def update_task(
    task_id: str,
    body: TaskUpdate,
    user=Depends(auth.get_current_user),
    db: Database = Depends(get_db),
    channel: LiveChannel = Depends(get_channel),
):
    return await crud.update_task(db, channel, user, task_id, body.model_dump(exclude_unset=True))


@api.delete("/tasks/{task_id}")
async def delete_task(
    task_id: str,
    user=Depends(auth.get_current_user),
    db: Database = Depends(get_db),
    channel: LiveChannel = Depends(get_channel),
):
    return await crud.delete_task(db, channel, user, task_id)


# -----------------------------
# Comment endpoints
# -----------------------------
@api.get("/comments")
def list_comments(
    task: Optional[str] = Query(None), user=Depends(auth.get_current_user), db: Database = Depends(get_db)
):
    return crud.list_comments(db, user, task)


@api.post("/comments", status_code=status.HTTP_201_CREATED)
def create_comment(body: CommentCreate, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    return crud.create_comment(db, user, body)


@api.delete("/comments/{comment_id}")
def delete_comment(comment_id: str, user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    return crud.delete_comment(db, user, comment_id)


# -----------------------------
# Notifications
# -----------------------------
@api.get("/notifications")
def list_notifications(user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    return notify.list_notifications(db, user)


@api.put("/notifications/{notification_id}/read")
def mark_notification_read(
    notification_id: str, user=Depends(auth.get_current_user), db: Database = Depends(get_db)
):
    return notify.mark_read(db, user, notification_id)


# -----------------------------
# Dashboard
# -----------------------------
@api.get("/dashboard/overview")
def dashboard_overview(user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    return dashboard.overview(db, user)


@api.get("/dashboard/stats")
def dashboard_stats(user=Depends(auth.get_current_user), db: Database = Depends(get_db)):
    return dashboard.stats(db, user)


@api.get("/dashboard/calendar")
def dashboard_calendar(
    project: Optional[str] = Query(None),
    start: Optional[datetime] = Query(None, alias="from"),
    end: Optional[datetime] = Query(None, alias="to"),
    user=Depends(auth.get_current_user),
    db: Database = Depends(get_db),
):
    return dashboard.calendar(db, user, project=project, start=start, end=end)


@api.get("/dashboard/report")
def dashboard_report(
    project_id: Optional[str] = Query(None, alias="projectId"),
    user=Depends(auth.get_current_user),
    db: Database = Depends(get_db),
):
    return dashboard.project_report(db, user, project_id)


# -----------------------------
# Admin
# -----------------------------
@api.get("/admin/users", response_model=List[UserPublic])
def admin_list_users(user=Depends(auth.require_role("admin")), db: Database = Depends(get_db)):
    return [auth.public_user(u) for u in db["user"].find().sort("created_at", 1)]


@api.put("/admin/users/{user_id}/role", response_model=UserPublic)
def admin_set_role(
    user_id: str, body: RoleUpdate, user=Depends(auth.require_role("admin")), db: Database = Depends(get_db)
):
    updated = auth.set_user_role(db, oid(user_id, "user id"), body.role)
    logger.info("User %s set role of %s to %s", user["_id"], user_id, body.role)
    return auth.public_user(updated)


app.include_router(api, prefix=settings.api_prefix)


# -----------------------------
# Live updates
# -----------------------------
@app.websocket("/ws")
async def live_updates(websocket: WebSocket, channel: LiveChannel = Depends(get_channel)):
    await channel.connect(websocket)
    logger.info("Socket connected")
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message: Any = json.loads(raw)
            except ValueError:
                continue
            await channel.handle_message(websocket, message)
    except WebSocketDisconnect:
        logger.info("Socket disconnected")
    finally:
        channel.disconnect(websocket)


# -----------------------------
# Health
# -----------------------------
@app.get("/")
def read_root():
    return {"message": "Project Management API", "version": "1.0.0", "environment": settings.environment}


@app.get("/health")
def health():
    response: Dict[str, Any] = {
        "status": "ok",
        "timestamp": utcnow().isoformat(),
        "environment": settings.environment,
        "database": "Not Available",
    }
    try:
        database = get_db()
        database.command("ping")
        response["database"] = "Connected"
    except AppError as e:
        response["database"] = e.message
    except Exception as e:
        response["database"] = f"Error: {str(e)[:80]}"
    return response


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", settings.port))
    uvicorn.run(app, host="0.0.0.0", port=port)
