"""
Project, task and comment store.

Every operation loads the documents it needs, checks the access policy against
that fresh state, validates input, and only then writes. Deletes remove
children before parents so an interrupted cascade never leaves orphans behind.
"""
import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, get_args

from bson import ObjectId
from pymongo.database import Database

import policy
from database import as_utc, create_document, oid, same_id, serialize, utcnow
from errors import AuthorizationError, NotFoundError, ValidationError
from notify import broadcast_to_project, notify
from realtime import LiveChannel
from schemas import (
    Comment,
    CommentCreate,
    Project,
    ProjectCreate,
    Task,
    TaskCreate,
    TaskPriority,
    TaskStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100

TASK_STATUSES = get_args(TaskStatus)
TASK_PRIORITIES = get_args(TaskPriority)


# -----------------------------
# Shared helpers
# -----------------------------

def user_summaries(db: Database, ids: Iterable[Any]) -> Dict[str, Dict[str, Any]]:
    wanted = {oid(i) for i in ids if i is not None}
    if not wanted:
        return {}
    cursor = db["user"].find({"_id": {"$in": list(wanted)}}, {"name": 1, "email": 1})
    return {str(u["_id"]): {"id": str(u["_id"]), "name": u.get("name"), "email": u.get("email")} for u in cursor}


def _require_user(db: Database, user_id: str, label: str) -> ObjectId:
    ref = oid(user_id, label)
    if not db["user"].find_one({"_id": ref}, {"_id": 1}):
        raise NotFoundError(f"User not found: {user_id}")
    return ref


def _member_refs(db: Database, member_ids: List[str]) -> List[ObjectId]:
    refs: List[ObjectId] = []
    for m in member_ids:
        ref = _require_user(db, m, "member id")
        if ref not in refs:
            refs.append(ref)
    return refs


def _clean_title(value: Optional[str]) -> str:
    title = (value or "").strip()
    if not title:
        raise ValidationError("Title required")
    return title


def user_project_ids(db: Database, user: Dict[str, Any]) -> List[ObjectId]:
    cursor = db["project"].find(
        {"$or": [{"owner_id": user["_id"]}, {"member_ids": user["_id"]}]}, {"_id": 1}
    )
    return [p["_id"] for p in cursor]


# -----------------------------
# Projects
# -----------------------------

def load_project(db: Database, project_id: Any) -> Dict[str, Any]:
    project = db["project"].find_one({"_id": oid(project_id, "project id")})
    if not project:
        raise NotFoundError("Project not found")
    return project


def present_project(db: Database, project: Dict[str, Any], users: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, Any]:
    if users is None:
        users = user_summaries(db, [project.get("owner_id"), *(project.get("member_ids") or [])])
    out = serialize(project)
    out["owner"] = users.get(str(project.get("owner_id")))
    out["members"] = [users[str(m)] for m in project.get("member_ids") or [] if str(m) in users]
    return out


def list_projects(db: Database, user: Dict[str, Any]) -> List[Dict[str, Any]]:
    if policy.is_admin(user):
        query: Dict[str, Any] = {}
    else:
        query = {"$or": [{"owner_id": user["_id"]}, {"member_ids": user["_id"]}]}
    projects = list(db["project"].find(query).sort("created_at", -1))
    ids: List[Any] = []
    for p in projects:
        ids.append(p.get("owner_id"))
        ids.extend(p.get("member_ids") or [])
    users = user_summaries(db, ids)
    return [present_project(db, p, users) for p in projects if policy.can_view_project(user, p)]


def create_project(db: Database, user: Dict[str, Any], body: ProjectCreate) -> Dict[str, Any]:
    title = _clean_title(body.title)
    members = _member_refs(db, body.member_ids)
    doc = Project(
        title=title,
        description=body.description or "",
        start_date=as_utc(body.start_date),
        end_date=as_utc(body.end_date),
        owner_id=str(user["_id"]),
        status=body.status or "active",
    ).model_dump()
    doc["owner_id"] = user["_id"]
    doc["member_ids"] = members
    inserted = create_document(db, "project", doc)
    logger.info("Project %s created by %s", inserted, user["_id"])
    return present_project(db, db["project"].find_one({"_id": inserted}))


def get_project(db: Database, user: Dict[str, Any], project_id: str) -> Dict[str, Any]:
    project = load_project(db, project_id)
    if not policy.can_view_project(user, project):
        raise AuthorizationError("Forbidden")
    return present_project(db, project)


def update_project(db: Database, user: Dict[str, Any], project_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    project = load_project(db, project_id)
    if not policy.can_mutate_project(user, project):
        raise AuthorizationError("Only owner or admin can update project")

    update: Dict[str, Any] = {}
    if "title" in changes:
        update["title"] = _clean_title(changes["title"])
    if "description" in changes:
        update["description"] = changes["description"] or ""
    for field in ("start_date", "end_date"):
        if field in changes:
            update[field] = as_utc(changes[field])
    if "member_ids" in changes:
        update["member_ids"] = _member_refs(db, changes["member_ids"] or [])
    if "status" in changes:
        status = (changes["status"] or "").strip()
        if not status:
            raise ValidationError("Invalid status")
        update["status"] = status

    update["updated_at"] = utcnow()
    db["project"].update_one({"_id": project["_id"]}, {"$set": update})
    return present_project(db, db["project"].find_one({"_id": project["_id"]}))


def delete_project(db: Database, user: Dict[str, Any], project_id: str) -> Dict[str, Any]:
    project = load_project(db, project_id)
    if not policy.can_mutate_project(user, project):
        raise AuthorizationError("Only owner or admin can delete project")

    tasks = comments = 0
    # Repeat until a pass finds no tasks; each pass clears comments before their tasks.
    while True:
        task_ids = [t["_id"] for t in db["task"].find({"project_id": project["_id"]}, {"_id": 1})]
        if not task_ids:
            break
        comments += db["comment"].delete_many({"task_id": {"$in": task_ids}}).deleted_count
        tasks += db["task"].delete_many({"_id": {"$in": task_ids}}).deleted_count
    db["project"].delete_one({"_id": project["_id"]})
    logger.info("Project %s removed with %d tasks and %d comments", project["_id"], tasks, comments)
    return {"message": "Project removed", "deletedTasks": tasks, "deletedComments": comments}


# -----------------------------
# Tasks
# -----------------------------

def _task_link(project_id: Any, task_id: Any) -> str:
    return f"/projects/{project_id}/tasks/{task_id}"


def load_task(db: Database, task_id: Any) -> Dict[str, Any]:
    task = db["task"].find_one({"_id": oid(task_id, "task id")})
    if not task:
        raise NotFoundError("Task not found")
    return task


def present_task(
    db: Database,
    task: Dict[str, Any],
    project: Optional[Dict[str, Any]] = None,
    users: Optional[Dict[str, Dict[str, Any]]] = None,
    viewer: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Serialize a task with its project and assignee summaries.

    When `viewer` is given and cannot see the project itself (an assignee
    dropped from the team), the project summary is cut to id and title.
    """
    if project is None:
        project = db["project"].find_one({"_id": task["project_id"]})
    if users is None:
        users = user_summaries(db, [task.get("assignee_id")])
    out = serialize(task)
    out["project"] = None
    if project:
        summary: Dict[str, Any] = {"id": str(project["_id"]), "title": project.get("title")}
        if viewer is None or policy.can_view_project(viewer, project):
            summary["owner_id"] = str(project.get("owner_id"))
            summary["member_ids"] = [str(m) for m in project.get("member_ids") or []]
        out["project"] = summary
    assignee = task.get("assignee_id")
    out["assignee"] = users.get(str(assignee)) if assignee else None
    return out


def _validated_assignee(db: Database, assignee_id: str, project: Dict[str, Any]) -> ObjectId:
    ref = _require_user(db, assignee_id, "assignee id")
    if not policy.is_valid_assignee(ref, project):
        raise ValidationError("Assignee must be the project owner or a member")
    return ref


def list_tasks(
    db: Database,
    user: Dict[str, Any],
    project: Optional[str] = None,
    q: Optional[str] = None,
    status: Optional[str] = None,
    assignee: Optional[str] = None,
    priority: Optional[str] = None,
    due_before: Optional[datetime] = None,
    due_after: Optional[datetime] = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
) -> List[Dict[str, Any]]:
    """Filter, then page over the tasks the user can see."""
    clauses: List[Dict[str, Any]] = []
    if project:
        clauses.append({"project_id": oid(project, "project id")})
    if status:
        if status not in TASK_STATUSES:
            raise ValidationError("Invalid status")
        clauses.append({"status": status})
    if assignee:
        clauses.append({"assignee_id": oid(assignee, "assignee id")})
    if priority:
        if priority not in TASK_PRIORITIES:
            raise ValidationError("Invalid priority")
        clauses.append({"priority": priority})
    if due_before or due_after:
        window: Dict[str, Any] = {}
        if due_before:
            window["$lte"] = as_utc(due_before)
        if due_after:
            window["$gte"] = as_utc(due_after)
        clauses.append({"due_date": window})
    if q:
        pattern = re.escape(q.strip())
        clauses.append({"$or": [
            {"title": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]})
    if not policy.is_admin(user):
        clauses.append({"$or": [
            {"project_id": {"$in": user_project_ids(db, user)}},
            {"assignee_id": user["_id"]},
        ]})

    page = max(1, page)
    limit = min(max(1, limit), MAX_PAGE_SIZE)
    query = {"$and": clauses} if clauses else {}
    tasks = list(
        db["task"].find(query)
        .sort([("due_date", 1), ("created_at", 1)])
        .skip((page - 1) * limit)
        .limit(limit)
    )

    projects = {
        p["_id"]: p
        for p in db["project"].find({"_id": {"$in": list({t["project_id"] for t in tasks})}})
    }
    users = user_summaries(db, [t.get("assignee_id") for t in tasks])
    visible = []
    for t in tasks:
        p = projects.get(t["project_id"])
        if p is None or not policy.can_view_task(user, t, p):
            continue
        visible.append(present_task(db, t, p, users, viewer=user))
    return visible


def get_task(db: Database, user: Dict[str, Any], task_id: str) -> Dict[str, Any]:
    task = load_task(db, task_id)
    project = db["project"].find_one({"_id": task["project_id"]})
    if not policy.can_view_task(user, task, project):
        raise AuthorizationError("Forbidden")
    return present_task(db, task, project, viewer=user)


async def create_task(
    db: Database, channel: Optional[LiveChannel], user: Dict[str, Any], body: TaskCreate
) -> Dict[str, Any]:
    title = _clean_title(body.title)
    project = load_project(db, body.project_id)
    if not policy.can_create_task_in_project(user, project):
        raise AuthorizationError("Not allowed to create tasks in this project")
    assignee = _validated_assignee(db, body.assignee_id, project) if body.assignee_id else None

    doc = Task(
        project_id=str(project["_id"]),
        title=title,
        description=body.description or "",
        status=body.status,
        priority=body.priority,
        due_date=as_utc(body.due_date),
    ).model_dump()
    doc["project_id"] = project["_id"]
    doc["assignee_id"] = assignee
    inserted = create_document(db, "task", doc)
    task = db["task"].find_one({"_id": inserted})
    out = present_task(db, task, project)

    if assignee:
        await notify(
            db, channel, assignee, user["_id"], "task_assigned",
            f"New task assigned: {title}",
            f'You were assigned a task in project "{project["title"]}"',
            _task_link(project["_id"], inserted),
        )
    await broadcast_to_project(channel, project["_id"], "taskCreated", out)
    return out


async def update_task(
    db: Database, channel: Optional[LiveChannel], user: Dict[str, Any], task_id: str, changes: Dict[str, Any]
) -> Dict[str, Any]:
    task = load_task(db, task_id)
    project = db["project"].find_one({"_id": task["project_id"]})
    if project is None:
        raise NotFoundError("Project not found")
    if not policy.can_update_task(user, task, project):
        raise AuthorizationError("Not allowed to update task")

    update: Dict[str, Any] = {}
    if "title" in changes:
        update["title"] = _clean_title(changes["title"])
    if "description" in changes:
        update["description"] = changes["description"] or ""
    if "assignee_id" in changes:
        new_assignee = changes["assignee_id"]
        update["assignee_id"] = _validated_assignee(db, new_assignee, project) if new_assignee else None
    if "status" in changes:
        if changes["status"] not in TASK_STATUSES:
            raise ValidationError("Invalid status")
        update["status"] = changes["status"]
    if "priority" in changes:
        if changes["priority"] not in TASK_PRIORITIES:
            raise ValidationError("Invalid priority")
        update["priority"] = changes["priority"]
    if "due_date" in changes:
        update["due_date"] = as_utc(changes["due_date"])

    old_status = task.get("status")
    old_assignee = task.get("assignee_id")

    update["updated_at"] = utcnow()
    db["task"].update_one({"_id": task["_id"]}, {"$set": update})
    task = db["task"].find_one({"_id": task["_id"]})
    out = present_task(db, task, project)

    link = _task_link(project["_id"], task["_id"])
    new_assignee = task.get("assignee_id")
    if new_assignee and not same_id(new_assignee, old_assignee):
        await notify(
            db, channel, new_assignee, user["_id"], "task_assigned",
            f"You were assigned: {task['title']}",
            f'Assigned in project "{project["title"]}"',
            link,
        )

    if "status" in update and update["status"] != old_status:
        # Assignee and owner get separate records even when they are one person.
        if new_assignee:
            await notify(
                db, channel, new_assignee, user["_id"], "task_updated",
                f"Task status changed: {task['title']}",
                f"Status is now: {task['status']}",
                link,
            )
        if project.get("owner_id"):
            await notify(
                db, channel, project["owner_id"], user["_id"], "task_updated",
                f"Task status changed in your project: {task['title']}",
                f"Status: {task['status']}",
                link,
            )

    await broadcast_to_project(channel, project["_id"], "taskUpdated", out)
    return present_task(db, task, project, viewer=user)


async def delete_task(
    db: Database, channel: Optional[LiveChannel], user: Dict[str, Any], task_id: str
) -> Dict[str, Any]:
    task = load_task(db, task_id)
    project = db["project"].find_one({"_id": task["project_id"]})
    if not policy.can_delete_task(user, task, project):
        raise AuthorizationError("Only project owner or admin can delete tasks")

    db["comment"].delete_many({"task_id": task["_id"]})
    db["task"].delete_one({"_id": task["_id"]})

    await broadcast_to_project(channel, task["project_id"], "taskDeleted", {"taskId": str(task["_id"])})
    if task.get("assignee_id"):
        title = project.get("title") if project else ""
        await notify(
            db, channel, task["assignee_id"], user["_id"], "task_deleted",
            f"Task removed: {task['title']}",
            f'Task removed from project "{title}"',
            f"/projects/{task['project_id']}",
        )
    return {"message": "Task removed"}


# -----------------------------
# Comments
# -----------------------------

def present_comment(db: Database, comment: Dict[str, Any], users: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, Any]:
    if users is None:
        users = user_summaries(db, [comment.get("author_id")])
    out = serialize(comment)
    out["author"] = users.get(str(comment.get("author_id")))
    return out


def list_comments(db: Database, user: Dict[str, Any], task_id: Optional[str]) -> List[Dict[str, Any]]:
    if not task_id:
        raise ValidationError("task query param required")
    task = load_task(db, task_id)
    project = db["project"].find_one({"_id": task["project_id"]})
    if not policy.can_view_task(user, task, project):
        raise AuthorizationError("Forbidden")
    comments = list(db["comment"].find({"task_id": task["_id"]}).sort("created_at", 1))
    users = user_summaries(db, [c.get("author_id") for c in comments])
    return [present_comment(db, c, users) for c in comments]


def create_comment(db: Database, user: Dict[str, Any], body: CommentCreate) -> Dict[str, Any]:
    text = (body.text or "").strip()
    if not body.task_id or not text:
        raise ValidationError("task_id and text required")
    task = load_task(db, body.task_id)
    project = db["project"].find_one({"_id": task["project_id"]})
    if not policy.can_comment_on_task(user, project):
        raise AuthorizationError("Forbidden")

    doc = Comment(task_id=str(task["_id"]), author_id=str(user["_id"]), text=text).model_dump()
    doc["task_id"] = task["_id"]
    doc["author_id"] = user["_id"]
    inserted = create_document(db, "comment", doc)
    return present_comment(db, db["comment"].find_one({"_id": inserted}))


def delete_comment(db: Database, user: Dict[str, Any], comment_id: str) -> Dict[str, Any]:
    comment = db["comment"].find_one({"_id": oid(comment_id, "comment id")})
    if not comment:
        raise NotFoundError("Comment not found")
    task = db["task"].find_one({"_id": comment["task_id"]})
    project = db["project"].find_one({"_id": task["project_id"]}) if task else None
    if not policy.can_delete_comment(user, comment, task, project):
        raise AuthorizationError("Not allowed to delete comment")
    db["comment"].delete_one({"_id": comment["_id"]})
    return {"message": "Comment removed"}
