"""Live update channel: rooms, publishing and the /ws endpoint."""
import asyncio

import pytest

from conftest import FakeSocket
from realtime import LiveChannel, project_room, user_room


def run(coro):
    return asyncio.run(coro)


class TestLiveChannel:
    def test_publish_reaches_only_room_members(self):
        channel = LiveChannel()
        a, b = FakeSocket(), FakeSocket()
        channel.join(project_room("p1"), a)
        channel.join(project_room("p2"), b)
        run(channel.emit_to_project("p1", "taskCreated", {"id": "t"}))
        assert a.sent == [{"event": "taskCreated", "data": {"id": "t"}}]
        assert b.sent == []

    def test_join_twice_delivers_once(self):
        channel = LiveChannel()
        a = FakeSocket()
        channel.join(user_room("u"), a)
        channel.join(user_room("u"), a)
        run(channel.emit_to_user("u", "notification", {}))
        assert len(a.sent) == 1

    def test_failed_socket_is_dropped_everywhere(self):
        channel = LiveChannel()
        bad, good = FakeSocket(fail=True), FakeSocket()
        channel.join(project_room("p"), bad)
        channel.join(user_room("u"), bad)
        channel.join(project_room("p"), good)
        run(channel.emit_to_project("p", "taskUpdated", {}))
        assert channel.rooms == {project_room("p"): [good]}
        assert len(good.sent) == 1

    def test_publish_to_empty_room_is_noop(self):
        run(LiveChannel().emit_to_project("nobody", "taskDeleted", {"taskId": "x"}))

    def test_control_messages(self):
        channel = LiveChannel()
        ws = FakeSocket()
        run(channel.connect(ws))
        assert ws.accepted
        run(channel.handle_message(ws, {"type": "join", "userId": "u1"}))
        run(channel.handle_message(ws, {"type": "joinProject", "projectId": "p1"}))
        assert [m["data"]["room"] for m in ws.events("joined")] == ["user:u1", "project:p1"]
        run(channel.handle_message(ws, {"type": "leaveProject", "projectId": "p1"}))
        assert set(channel.rooms) == {"user:u1"}

        run(channel.handle_message(ws, {"type": "join"}))
        run(channel.handle_message(ws, "garbage"))
        run(channel.handle_message(ws, {"type": "shout"}))
        assert len(ws.sent) == 2

    def test_close_disconnects_everyone(self):
        channel = LiveChannel()
        ws = FakeSocket()
        run(channel.connect(ws))
        channel.join(user_room("u"), ws)
        run(channel.close())
        assert ws.closed
        assert channel.rooms == {} and channel.connections == []


def test_websocket_endpoint_delivers_task_events(client, headers, make_user):
    owner = make_user("Owner")
    project = client.post("/api/projects", json={"title": "P"}, headers=headers(owner)).json()

    with client.websocket_connect("/ws") as ws:
        ws.send_text("not json")
        ws.send_json({"type": "join", "userId": str(owner["_id"])})
        assert ws.receive_json() == {"event": "joined", "data": {"room": f"user:{owner['_id']}"}}
        ws.send_json({"type": "joinProject", "projectId": project["id"]})
        assert ws.receive_json()["data"]["room"] == f"project:{project['id']}"

        res = client.post(
            "/api/tasks",
            json={"title": "T", "project_id": project["id"], "assignee_id": str(owner["_id"])},
            headers=headers(owner),
        )
        assert res.status_code == 201

        notification = ws.receive_json()
        created = ws.receive_json()
        assert notification["event"] == "notification"
        assert notification["data"]["type"] == "task_assigned"
        assert created["event"] == "taskCreated"
        assert created["data"]["id"] == res.json()["id"]


def test_websocket_cleanup_after_unexpected_error(client, channel, make_user):
    user = make_user("Owner")
    with pytest.raises(KeyError):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "join", "userId": str(user["_id"])})
            ws.receive_json()
            assert set(channel.rooms) == {f"user:{user['_id']}"}
            ws.send_bytes(b"\x00\x01")
            ws.receive_json()
    assert channel.connections == []
    assert channel.rooms == {}
