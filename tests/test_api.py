import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from chatcore.container import ChatCore
from chatcore.main import create_app

KEY = "alice_bob"
ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}
CAROL = {"X-User-Id": "carol"}


@pytest.fixture
def client(settings, clock, store):
    app = create_app(settings, core=ChatCore(settings, store))
    with TestClient(app) as client:
        yield client


def _send(client, content="hi", headers=ALICE, to="bob"):
    response = client.post("/messages", json={"receiver_id": to, "content": content}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["message"]


def test_root(client):
    body = client.get("/").json()
    assert body["queued"] == 0


class TestMessages:

    def test_send_and_read_back(self, client):
        message = _send(client, "  hello  ")
        assert message["content"] == "hello"
        assert message["status"] == "sent"

        response = client.get(f"/messages/{message['id']}", headers=BOB)
        assert response.status_code == 200
        assert client.get(f"/messages/{message['id']}", headers=CAROL).status_code == 404

    def test_blank_content_rejected(self, client):
        response = client.post("/messages", json={"receiver_id": "bob", "content": "   "}, headers=ALICE)
        assert response.status_code == 422

    def test_identity_required(self, client):
        assert client.post("/messages", json={"receiver_id": "bob", "content": "x"}).status_code == 401
        bad = {"X-User-Id": "al_ice"}
        assert client.post("/messages", json={"receiver_id": "bob", "content": "x"}, headers=bad).status_code == 400

    def test_status_flow(self, client):
        message = _send(client)
        url = f"/messages/{message['id']}/status"

        assert client.post(url, json={"status": "delivered"}, headers=ALICE).status_code == 403
        assert client.post(url, json={"status": "read"}, headers=BOB).json()["queued"] is False
        assert client.post(url, json={"status": "delivered"}, headers=BOB).status_code == 409

    def test_unknown_message(self, client):
        assert client.get("/messages/nope", headers=ALICE).status_code == 404

    def test_delete_by_sender_only(self, client):
        message = _send(client)
        assert client.delete(f"/messages/{message['id']}", headers=BOB).status_code == 403
        deleted = client.delete(f"/messages/{message['id']}", headers=ALICE).json()["message"]
        assert deleted["is_deleted"] is True
        assert deleted["content"] == "This message was deleted"
        assert client.delete(f"/messages/{message['id']}", headers=ALICE).status_code == 409

    def test_changes_queued_while_store_down(self, client, store):
        message = _send(client)
        store.set_reachable(False)

        status = client.post(f"/messages/{message['id']}/status", json={"status": "read"}, headers=BOB)
        assert status.status_code == 200
        assert status.json()["queued"] is True
        deleted = client.delete(f"/messages/{message['id']}", headers=ALICE)
        assert deleted.status_code == 200
        assert deleted.json()["queued"] is True
        assert client.get("/").json()["queued"] == 2

        store.set_reachable(True)
        deadline = time.monotonic() + 1.0
        while client.get("/").json()["queued"] and time.monotonic() < deadline:
            time.sleep(0.01)
        assert client.get("/").json()["queued"] == 0

        stored = client.get(f"/messages/{message['id']}", headers=BOB).json()
        assert stored["status"] == "read"
        assert stored["is_deleted"] is True


class TestConversations:

    def test_list_page_and_mark_read(self, client):
        for i in range(3):
            _send(client, f"m{i}")

        [conversation] = client.get("/conversations", headers=BOB).json()["items"]
        assert conversation["conversation_key"] == KEY
        assert conversation["unread_count"]["bob"] == 3

        page = client.get(f"/conversations/{KEY}/messages", params={"limit": 2}, headers=BOB).json()
        assert [m["content"] for m in page["items"]] == ["m2", "m1"]
        rest = client.get(f"/conversations/{KEY}/messages", params={"before": page["next_cursor"]}, headers=BOB).json()
        assert [m["content"] for m in rest["items"]] == ["m0"]
        assert rest["next_cursor"] is None

        assert client.post(f"/conversations/{KEY}/read", headers=BOB).json() == {"updated": 3}
        [conversation] = client.get("/conversations", headers=ALICE).json()["items"]
        assert conversation["unread_count"]["bob"] == 0

    def test_outsider_forbidden(self, client):
        _send(client)
        assert client.get(f"/conversations/{KEY}/messages", headers=CAROL).status_code == 403
        assert client.post(f"/conversations/{KEY}/read", headers=CAROL).status_code == 403
        assert client.get("/conversations/nokey/messages", headers=ALICE).status_code == 400

    def test_typing(self, client):
        response = client.put(f"/conversations/{KEY}/typing", json={"is_typing": True}, headers=ALICE)
        assert response.json()["typing"]["is_typing"] is True


class TestPresence:

    def test_set_and_get(self, client):
        assert client.get("/presence/alice").json()["online"] is False
        client.put("/presence", json={"is_online": True}, headers=ALICE)
        assert client.get("/presence/alice").json()["online"] is True


class TestRealtime:

    def test_receives_events_after_subscribing(self, client):
        with client.websocket_connect(f"/ws?topics=conversation:{KEY}", headers=BOB) as ws:
            assert ws.receive_json() == {"type": "subscribed", "topics": [f"conversation:{KEY}"]}
            _send(client, "live")
            frame = ws.receive_json()
            assert frame["topic"] == f"conversation:{KEY}"
            assert frame["event"]["kind"] == "message_created"
            assert frame["event"]["message"]["content"] == "live"

    def test_send_command(self, client):
        with client.websocket_connect(f"/ws?user_id=bob&topics=userConversations:bob") as ws:
            ws.receive_json()
            ws.send_json({"type": "send", "to": "alice", "content": "yo", "client_message_id": "c1"})
            frames = [ws.receive_json(), ws.receive_json()]
            ack = next(f for f in frames if f.get("type") == "ack")
            update = next(f for f in frames if "event" in f)
            assert ack["client_message_id"] == "c1"
            assert update["event"]["conversation"]["last_message_preview"] == "yo"

            ws.send_json({"type": "nonsense"})
            assert ws.receive_json()["type"] == "error"

    def test_unauthorized_topics_refused(self, client):
        with pytest.raises(WebSocketDisconnect) as info:
            with client.websocket_connect(f"/ws?topics=conversation:{KEY}", headers=CAROL):
                pass
        assert info.value.code == 4403

        with pytest.raises(WebSocketDisconnect) as info:
            with client.websocket_connect(f"/ws?topics=conversation:{KEY}"):
                pass
        assert info.value.code == 4401
