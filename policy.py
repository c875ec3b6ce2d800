"""
Access policy: who may view, change or delete projects, tasks and comments.

Every predicate is pure. Callers pass documents loaded during the current
request (raw Mongo documents or serialized dicts both work, ids are compared by
their string form) so that membership changes take effect immediately.
"""
from typing import Any, Dict, Optional

from database import same_id

Doc = Dict[str, Any]


def _user_id(user: Doc) -> Any:
    return user.get("_id", user.get("id"))


def _doc_id(doc: Optional[Doc]) -> Any:
    if not doc:
        return None
    return doc.get("_id", doc.get("id"))


def is_admin(user: Doc) -> bool:
    return user.get("role") == "admin"


def has_role(user: Doc, *roles: str) -> bool:
    return user.get("role") in roles


def is_owner(user: Doc, project: Optional[Doc]) -> bool:
    return bool(project) and same_id(project.get("owner_id"), _user_id(user))


def is_member(user: Doc, project: Optional[Doc]) -> bool:
    if not project:
        return False
    uid = _user_id(user)
    return any(same_id(m, uid) for m in project.get("member_ids") or [])


def is_assignee(user: Doc, task: Optional[Doc]) -> bool:
    return bool(task) and same_id(task.get("assignee_id"), _user_id(user))


# -----------------------------
# Projects
# -----------------------------

def can_view_project(user: Doc, project: Optional[Doc]) -> bool:
    return is_owner(user, project) or is_member(user, project) or is_admin(user)


def can_mutate_project(user: Doc, project: Optional[Doc]) -> bool:
    """Members may look at a project but only the owner or an admin may change it."""
    return is_owner(user, project) or is_admin(user)


def can_create_task_in_project(user: Doc, project: Optional[Doc]) -> bool:
    return can_view_project(user, project)


# -----------------------------
# Tasks
# -----------------------------

def can_view_task(user: Doc, task: Doc, project: Optional[Doc]) -> bool:
    return can_view_project(user, project) or is_assignee(user, task)


def can_update_task(user: Doc, task: Doc, project: Optional[Doc]) -> bool:
    # Any member may move any card on the board.
    return (
        is_assignee(user, task)
        or is_owner(user, project)
        or is_member(user, project)
        or is_admin(user)
    )


def can_delete_task(user: Doc, task: Doc, project: Optional[Doc]) -> bool:
    return is_owner(user, project) or is_admin(user)


def is_valid_assignee(candidate_user_id: Any, project: Optional[Doc]) -> bool:
    if not project or candidate_user_id is None:
        return False
    if same_id(project.get("owner_id"), candidate_user_id):
        return True
    return any(same_id(m, candidate_user_id) for m in project.get("member_ids") or [])


# -----------------------------
# Comments
# -----------------------------

def can_comment_on_task(user: Doc, project: Optional[Doc]) -> bool:
    return can_view_project(user, project)


def can_delete_comment(user: Doc, comment: Doc, task: Optional[Doc], project: Optional[Doc]) -> bool:
    if same_id(comment.get("author_id"), _user_id(user)):
        return True
    if task is not None and project is not None and not same_id(task.get("project_id"), _doc_id(project)):
        # project does not belong to this comment's task
        return is_admin(user)
    return is_owner(user, project) or is_admin(user)
