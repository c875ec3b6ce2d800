"""
Database Schemas for the Project Management API

Each collection document is described by a Pydantic model below; the collection
name is the lowercased class name, e.g. Task -> "task". References to other
documents are stored as ObjectIds and exposed as string ids.

Request bodies accepted by the HTTP layer live in the second half of the file.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["admin", "manager", "member"]
TaskStatus = Literal["todo", "inprogress", "done"]
TaskPriority = Literal["low", "medium", "high"]

# Roles a user may pick for themselves on registration
SelfServiceRole = Literal["manager", "member"]


# Auth and Users
class User(BaseModel):
    name: str = Field(..., description="Display name")
    email: EmailStr = Field(..., description="Unique email, stored lower-cased")
    password_hash: Optional[str] = Field(None, description="Absent for Google accounts")
    role: Role = "member"
    google_id: Optional[str] = None
    avatar: Optional[str] = Field(None, description="Profile picture URL")


class UserPublic(BaseModel):
    id: str
    name: str
    email: EmailStr
    role: Role = "member"
    avatar: Optional[str] = None


class AuthResponse(UserPublic):
    token: str


# Projects
class Project(BaseModel):
    title: str
    description: str = ""
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    owner_id: str = Field(..., description="User id of the project owner")
    member_ids: List[str] = Field(default_factory=list, description="User ids with access")
    status: str = "active"


# Tasks
class Task(BaseModel):
    project_id: str
    title: str
    description: str = ""
    status: TaskStatus = "todo"
    priority: TaskPriority = "medium"
    assignee_id: Optional[str] = None
    due_date: Optional[datetime] = None


# Comments
class Comment(BaseModel):
    task_id: str
    author_id: str
    text: str


# Notifications
class Notification(BaseModel):
    user_id: str
    actor_id: Optional[str] = None
    type: str = Field(..., description="e.g. task_assigned, task_updated, task_deleted")
    title: str
    body: Optional[str] = None
    link: Optional[str] = None
    read: bool = False


# -----------------------------
# Request bodies
# -----------------------------
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=1)
    role: SelfServiceRole = "member"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class GoogleLoginRequest(BaseModel):
    token: str = Field(..., min_length=1)


class ProjectCreate(BaseModel):
    title: str
    description: str = ""
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    member_ids: List[str] = Field(default_factory=list)
    status: str = "active"


class ProjectUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    member_ids: Optional[List[str]] = None
    status: Optional[str] = None


class TaskCreate(BaseModel):
    title: str
    description: str = ""
    project_id: str
    assignee_id: Optional[str] = None
    status: TaskStatus = "todo"
    priority: TaskPriority = "medium"
    due_date: Optional[datetime] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    assignee_id: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None


class CommentCreate(BaseModel):
    task_id: str
    text: str


class RoleUpdate(BaseModel):
    role: Role
