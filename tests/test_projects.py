"""Project CRUD and cascade deletes."""
import pytest
from bson import ObjectId

import crud
from database import create_document


@pytest.fixture
def owner(make_user):
    return make_user("Owner")


@pytest.fixture
def member(make_user):
    return make_user("Member")


def new_project(client, headers, user, **fields):
    body = {"title": "Sprint 1"}
    body.update(fields)
    res = client.post("/api/projects", json=body, headers=headers(user))
    assert res.status_code == 201, res.json()
    return res.json()


def test_create_makes_caller_owner(client, headers, owner, member):
    project = new_project(client, headers, owner, member_ids=[str(member["_id"]), str(member["_id"])])
    assert project["owner_id"] == str(owner["_id"])
    assert project["owner"]["name"] == "Owner"
    assert project["member_ids"] == [str(member["_id"])]
    assert project["members"][0]["email"] == "member@example.com"
    assert project["status"] == "active"


def test_create_requires_title(client, headers, owner):
    res = client.post("/api/projects", json={"title": "  "}, headers=headers(owner))
    assert res.status_code == 400
    assert res.json() == {"message": "Title required"}


def test_create_rejects_unknown_member(client, headers, owner, db):
    res = client.post("/api/projects", json={"title": "X", "member_ids": [str(ObjectId())]}, headers=headers(owner))
    assert res.status_code == 404
    assert db["project"].count_documents({}) == 0


def test_list_shows_owned_and_member_projects(client, headers, owner, member, make_user):
    outsider = make_user("Outsider")
    new_project(client, headers, owner, title="Mine", member_ids=[str(member["_id"])])
    new_project(client, headers, outsider, title="Theirs")
    assert [p["title"] for p in client.get("/api/projects", headers=headers(member)).json()] == ["Mine"]
    admin = make_user("Admin", role="admin")
    assert len(client.get("/api/projects", headers=headers(admin)).json()) == 2


def test_get_project_access(client, headers, owner, member, make_user):
    project = new_project(client, headers, owner, member_ids=[str(member["_id"])])
    outsider = make_user("Outsider")
    admin = make_user("Admin", role="admin")
    url = f"/api/projects/{project['id']}"
    assert client.get(url, headers=headers(member)).status_code == 200
    assert client.get(url, headers=headers(admin)).status_code == 200
    res = client.get(url, headers=headers(outsider))
    assert res.status_code == 403
    assert res.json() == {"message": "Forbidden"}
    assert client.get("/api/projects/bad-id", headers=headers(owner)).status_code == 400
    assert client.get(f"/api/projects/{ObjectId()}", headers=headers(owner)).status_code == 404


def test_update_is_partial(client, headers, owner, member):
    project = new_project(client, headers, owner, description="first")
    res = client.put(
        f"/api/projects/{project['id']}",
        json={"status": "archived", "member_ids": [str(member["_id"])]},
        headers=headers(owner),
    )
    assert res.status_code == 200
    data = res.json()
    assert data["status"] == "archived"
    assert data["description"] == "first"
    assert data["member_ids"] == [str(member["_id"])]


def test_members_cannot_update_or_delete(client, headers, owner, member):
    project = new_project(client, headers, owner, member_ids=[str(member["_id"])])
    url = f"/api/projects/{project['id']}"
    assert client.put(url, json={"title": "Mine now"}, headers=headers(member)).status_code == 403
    assert client.delete(url, headers=headers(member)).status_code == 403


def test_admin_can_update(client, headers, owner, make_user):
    project = new_project(client, headers, owner)
    admin = make_user("Admin", role="admin")
    res = client.put(f"/api/projects/{project['id']}", json={"title": "Renamed"}, headers=headers(admin))
    assert res.json()["title"] == "Renamed"
    assert res.json()["owner_id"] == str(owner["_id"])


@pytest.mark.parametrize("n_tasks", [0, 1, 3])
@pytest.mark.parametrize("n_comments", [0, 1, 3])
def test_delete_cascades(client, headers, owner, db, n_tasks, n_comments):
    project = new_project(client, headers, owner)
    keep = new_project(client, headers, owner, title="Keep")
    kept_task = client.post("/api/tasks", json={"title": "stay", "project_id": keep["id"]}, headers=headers(owner)).json()
    client.post("/api/comments", json={"task_id": kept_task["id"], "text": "stay"}, headers=headers(owner))

    task_ids = []
    for i in range(n_tasks):
        task = client.post("/api/tasks", json={"title": f"t{i}", "project_id": project["id"]}, headers=headers(owner)).json()
        task_ids.append(ObjectId(task["id"]))
        for j in range(n_comments):
            client.post("/api/comments", json={"task_id": task["id"], "text": f"c{j}"}, headers=headers(owner))

    res = client.delete(f"/api/projects/{project['id']}", headers=headers(owner))
    assert res.status_code == 200
    assert res.json() == {
        "message": "Project removed",
        "deletedTasks": n_tasks,
        "deletedComments": n_tasks * n_comments,
    }
    assert db["task"].count_documents({"project_id": ObjectId(project["id"])}) == 0
    assert db["comment"].count_documents({"task_id": {"$in": task_ids}}) == 0
    assert db["project"].count_documents({"_id": ObjectId(project["id"])}) == 0
    assert db["task"].count_documents({}) == 1
    assert db["comment"].count_documents({}) == 1


class _HookedCollection:
    """Runs `hook` once, just before the first delete_many on the wrapped collection."""

    def __init__(self, collection, hook):
        self._collection = collection
        self._hook = hook

    def __getattr__(self, name):
        return getattr(self._collection, name)

    def delete_many(self, *args, **kwargs):
        if self._hook:
            hook, self._hook = self._hook, None
            hook()
        return self._collection.delete_many(*args, **kwargs)


class _RacingDatabase:
    def __init__(self, db, hook):
        self._db = db
        self._comments = _HookedCollection(db["comment"], hook)

    def __getitem__(self, name):
        return self._comments if name == "comment" else self._db[name]


def test_delete_catches_tasks_added_mid_cascade(headers, client, owner, db):
    project = new_project(client, headers, owner)
    client.post("/api/tasks", json={"title": "first", "project_id": project["id"]}, headers=headers(owner))
    late = {}

    def add_late_task():
        late["task"] = create_document(db, "task", {"title": "late", "project_id": ObjectId(project["id"])})
        late["comment"] = create_document(db, "comment", {"task_id": late["task"], "text": "late"})

    result = crud.delete_project(_RacingDatabase(db, add_late_task), owner, project["id"])
    assert result["deletedTasks"] == 2
    assert result["deletedComments"] == 1
    assert db["task"].count_documents({}) == 0
    assert db["comment"].count_documents({}) == 0
