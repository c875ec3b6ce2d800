"""Read-only summaries for the dashboard screens."""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo.database import Database

import policy
from crud import load_project, present_task, user_project_ids, user_summaries
from database import as_utc, serialize, utcnow
from errors import AuthorizationError, ValidationError

UPCOMING_WINDOW = timedelta(days=7)


def _percent(part: int, total: int) -> int:
    if total == 0:
        return 0
    return int(part * 100 / total + 0.5)


def overview(db: Database, user: Dict[str, Any]) -> Dict[str, Any]:
    uid = user["_id"]
    projects = list(db["project"].find(
        {"$or": [{"owner_id": uid}, {"member_ids": uid}]},
        {"title": 1, "start_date": 1, "end_date": 1, "status": 1},
    ))
    titles = {p["_id"]: p.get("title") for p in projects}

    assigned = list(db["task"].find(
        {"assignee_id": uid},
        {"title": 1, "status": 1, "due_date": 1, "project_id": 1},
    ))
    missing = [t["project_id"] for t in assigned if t["project_id"] not in titles]
    if missing:
        for p in db["project"].find({"_id": {"$in": missing}}, {"title": 1}):
            titles[p["_id"]] = p.get("title")

    status_counts: Dict[str, int] = {}
    for t in assigned:
        status_counts[t.get("status")] = status_counts.get(t.get("status"), 0) + 1

    now = utcnow()
    upcoming = list(db["task"].find(
        {
            "due_date": {"$gte": now, "$lte": now + UPCOMING_WINDOW},
            "$or": [{"assignee_id": uid}, {"project_id": {"$in": [p["_id"] for p in projects]}}],
        },
        {"title": 1, "due_date": 1, "status": 1, "project_id": 1},
    ).sort("due_date", 1))

    def with_project(task):
        out = serialize(task)
        out["project"] = {"id": str(task["project_id"]), "title": titles.get(task["project_id"])}
        return out

    return {
        "projects": [serialize(p) for p in projects],
        "assignedTasks": [with_project(t) for t in assigned],
        "statusCounts": status_counts,
        "upcoming": [with_project(t) for t in upcoming],
    }


def stats(db: Database, user: Dict[str, Any]) -> Dict[str, Any]:
    project_ids = user_project_ids(db, user)
    total = db["task"].count_documents({"project_id": {"$in": project_ids}})
    done = db["task"].count_documents({"project_id": {"$in": project_ids}, "status": "done"})
    return {"totalTasks": total, "done": done, "percent": _percent(done, total)}


def calendar(
    db: Database,
    user: Dict[str, Any],
    project: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if project:
        query["project_id"] = load_project(db, project)["_id"]
    if start or end:
        window: Dict[str, Any] = {}
        if start:
            window["$gte"] = as_utc(start)
        if end:
            window["$lte"] = as_utc(end)
        query["due_date"] = window
    if not policy.is_admin(user):
        query["$or"] = [
            {"project_id": {"$in": user_project_ids(db, user)}},
            {"assignee_id": user["_id"]},
        ]

    tasks = list(db["task"].find(query).sort("due_date", 1))
    projects = {
        p["_id"]: p
        for p in db["project"].find({"_id": {"$in": list({t["project_id"] for t in tasks})}})
    }
    users = user_summaries(db, [t.get("assignee_id") for t in tasks])
    return [
        present_task(db, t, projects[t["project_id"]], users, viewer=user)
        for t in tasks
        if t["project_id"] in projects and policy.can_view_task(user, t, projects[t["project_id"]])
    ]


def project_report(db: Database, user: Dict[str, Any], project_id: Optional[str]) -> Dict[str, Any]:
    if not project_id:
        raise ValidationError("projectId required")
    project = load_project(db, project_id)
    if not policy.can_view_project(user, project):
        raise AuthorizationError("Forbidden")

    by_status = [
        {"status": row["_id"], "count": row["count"]}
        for row in db["task"].aggregate([
            {"$match": {"project_id": project["_id"]}},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ])
    ]
    total = sum(row["count"] for row in by_status)
    completed = next((row["count"] for row in by_status if row["status"] == "done"), 0)
    return {"total": total, "byStatus": by_status, "completed": completed, "percent": _percent(completed, total)}
