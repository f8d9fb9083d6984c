"""End-to-end tests for the WebSocket protocol and the HTTP history endpoints.

Every test runs inside one ``TestClient`` context (see ``api_client``), so
all websockets of a test share the app's event loop and services.

Presence frames arrive whenever another identity comes or goes; ``recv``
skips them unless a test asks for them.
"""
import pytest


def recv(ws, skip=("presence",)):
    """Next frame whose event is not in ``skip``."""
    while True:
        frame = ws.receive_json()
        if frame["event"] not in skip:
            return frame


def open_joined(client, identity):
    """Connect and join; returns the entered websocket context."""
    ctx = client.websocket_connect("/ws")
    ws = ctx.__enter__()
    connected = ws.receive_json()
    assert connected["event"] == "connected"
    assert connected["data"]["connectionId"]
    ws.send_json({"event": "join", "data": identity})
    joined = recv(ws)
    assert joined["event"] == "joined"
    return ctx, ws


def send(ws, data, ref=None):
    frame = {"event": "send_message", "data": data}
    if ref:
        frame["ref"] = ref
    ws.send_json(frame)


class TestMessaging:

    def test_online_message_then_offline_history(self, api_client):
        """alice messages bob live, then again after bob disconnects."""
        alice_ctx, alice = open_joined(api_client, "alice")
        bob_ctx, bob = open_joined(api_client, "Bob")

        send(alice, {"sender": "Alice", "receiver": "bob", "body": "hi"})

        to_bob = recv(bob)
        assert to_bob["event"] == "receive_message"
        assert to_bob["data"]["sender"] == "alice"
        assert to_bob["data"]["receiver"] == "bob"
        assert to_bob["data"]["deleted"] is False
        echo = recv(alice)
        assert echo["data"]["id"] == to_bob["data"]["id"]

        bob_ctx.__exit__(None, None, None)

        send(alice, {"sender": "alice", "receiver": "bob", "body": "yo"})
        assert recv(alice)["data"]["body"] == "yo"

        response = api_client.get("/messages/alice/bob")
        assert response.status_code == 200
        history = response.json()
        assert [m["body"] for m in history] == ["hi", "yo"]
        assert history[0]["createdAt"] <= history[1]["createdAt"]

        alice_ctx.__exit__(None, None, None)

    def test_sender_other_tab_sees_message(self, api_client):
        tab1_ctx, tab1 = open_joined(api_client, "alice")
        tab2_ctx, tab2 = open_joined(api_client, "ALICE")
        bob_ctx, bob = open_joined(api_client, "bob")

        send(tab1, {"receiver": "bob", "body": "from tab one"})

        assert recv(bob)["data"]["body"] == "from tab one"
        assert recv(tab1)["data"]["body"] == "from tab one"
        assert recv(tab2)["data"]["body"] == "from tab one"

        for ctx in (bob_ctx, tab2_ctx, tab1_ctx):
            ctx.__exit__(None, None, None)

    def test_typing_is_relayed_but_not_stored(self, api_client):
        alice_ctx, alice = open_joined(api_client, "alice")
        bob_ctx, bob = open_joined(api_client, "bob")

        alice.send_json({"event": "typing", "data": {"from": "alice", "to": "bob"}})
        assert recv(bob) == {"event": "typing", "data": {"from": "alice", "to": "bob"}}

        alice.send_json({"event": "stop_typing", "data": {"to": "bob"}})
        assert recv(bob) == {"event": "stop_typing", "data": {"from": "alice", "to": "bob"}}

        assert api_client.get("/messages/alice/bob").json() == []

        bob_ctx.__exit__(None, None, None)
        alice_ctx.__exit__(None, None, None)

    def test_empty_body_rejected(self, api_client):
        alice_ctx, alice = open_joined(api_client, "alice")

        send(alice, {"receiver": "bob", "body": ""}, ref="draft-1")

        error = recv(alice)
        assert error["event"] == "error"
        assert error["ref"] == "draft-1"
        assert error["data"]["code"] == "validation_error"
        assert error["data"]["data"] == {"receiver": "bob", "body": ""}
        assert api_client.get("/messages/alice/bob").json() == []

        alice_ctx.__exit__(None, None, None)

    def test_send_before_join_rejected(self, api_client):
        with api_client.websocket_connect("/ws") as ws:
            ws.receive_json()
            send(ws, {"receiver": "bob", "body": "hi"})
            error = recv(ws)
            assert error["event"] == "error"
            assert error["data"]["code"] == "not_joined"

    def test_connection_survives_bad_frames(self, api_client):
        alice_ctx, alice = open_joined(api_client, "alice")

        alice.send_text("not json")
        assert recv(alice)["data"]["code"] == "validation_error"
        alice.send_json({"event": "no_such_event"})
        assert recv(alice)["data"]["code"] == "validation_error"

        send(alice, {"receiver": "alice", "body": "still here"})
        assert recv(alice)["data"]["body"] == "still here"

        alice_ctx.__exit__(None, None, None)

    def test_delete_message(self, api_client):
        alice_ctx, alice = open_joined(api_client, "alice")
        bob_ctx, bob = open_joined(api_client, "bob")

        send(alice, {"receiver": "bob", "body": "regret"})
        message_id = recv(bob)["data"]["id"]
        recv(alice)

        alice.send_json({"event": "delete_message", "data": {"id": message_id}})
        assert recv(bob) == {"event": "message_deleted", "data": {"id": message_id}}
        assert recv(alice) == {"event": "message_deleted", "data": {"id": message_id}}

        (stored,) = api_client.get("/messages/bob/alice").json()
        assert stored["deleted"] is True
        assert stored["body"] == ""

        bob_ctx.__exit__(None, None, None)
        alice_ctx.__exit__(None, None, None)


class TestRooms:

    def test_room_message_and_history(self, api_client):
        alice_ctx, alice = open_joined(api_client, "alice")
        carol_ctx, carol = open_joined(api_client, "carol")

        carol.send_json({"event": "join_room", "data": {"roomId": "lobby"}})
        assert recv(carol)["event"] == "join_room"

        send(alice, {"roomId": "lobby", "body": "hello room"})
        received = recv(carol)
        assert received["data"]["roomId"] == "lobby"
        assert received["data"]["sender"] == "alice"

        history = api_client.get("/rooms/lobby/messages").json()
        assert [m["body"] for m in history] == ["hello room"]
        assert api_client.get("/messages/alice/carol").json() == []

        carol_ctx.__exit__(None, None, None)
        alice_ctx.__exit__(None, None, None)


class TestPresence:

    def test_presence_notifications_and_snapshot(self, api_client):
        alice_ctx, alice = open_joined(api_client, "alice")
        bob_ctx, bob = open_joined(api_client, "bob")

        came = recv(alice, skip=())
        assert came == {"event": "presence", "data": {"identity": "bob", "online": True}}
        assert api_client.get("/presence").json() == {"online": ["alice", "bob"]}

        bob_ctx.__exit__(None, None, None)

        went = recv(alice, skip=())
        assert went == {"event": "presence", "data": {"identity": "bob", "online": False}}
        assert api_client.get("/presence").json() == {"online": ["alice"]}

        alice_ctx.__exit__(None, None, None)

    def test_joined_reply_lists_online_identities(self, api_client):
        alice_ctx, _ = open_joined(api_client, "alice")

        with api_client.websocket_connect("/ws") as bob:
            bob.receive_json()
            bob.send_json({"event": "join", "data": {"identity": "Bob"}, "ref": "j1"})
            joined = recv(bob)
            assert joined == {
                "event": "joined",
                "data": {"identity": "bob", "online": ["alice", "bob"]},
                "ref": "j1",
            }

        alice_ctx.__exit__(None, None, None)


class TestHistoryEndpoints:

    @pytest.fixture
    def seeded(self, api_client):
        ctx, ws = open_joined(api_client, "alice")
        for body in ("one", "two", "three"):
            send(ws, {"receiver": "bob", "body": body})
            recv(ws)
        ctx.__exit__(None, None, None)
        return api_client.get("/messages/alice/bob").json()

    def test_symmetric_and_case_insensitive(self, api_client, seeded):
        assert api_client.get("/messages/BOB/Alice").json() == seeded

    def test_since(self, api_client, seeded):
        newest = seeded[-1]["createdAt"]
        assert api_client.get("/messages/alice/bob", params={"since": newest}).json() == []
        everything = api_client.get("/messages/alice/bob", params={"since": seeded[0]["createdAt"] - 1})
        assert everything.json() == seeded

    def test_limit_returns_newest(self, api_client, seeded):
        response = api_client.get("/messages/alice/bob", params={"limit": 2})
        assert [m["body"] for m in response.json()] == ["two", "three"]

    def test_limit_must_be_positive(self, api_client, seeded):
        assert api_client.get("/messages/alice/bob", params={"limit": 0}).status_code == 422

    def test_blank_identity_is_bad_request(self, api_client):
        response = api_client.get("/messages/%20/bob")
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_identity"


class TestDirectory:

    def test_users_lists_directory_with_presence(self, api_client):
        alice_ctx, _ = open_joined(api_client, "ALICE")

        response = api_client.get("/users")

        assert response.status_code == 200
        assert response.json() == [
            {"username": "alice", "online": True},
            {"username": "bob", "online": False},
            {"username": "carol", "online": False},
        ]
        alice_ctx.__exit__(None, None, None)

    def test_health(self, api_client):
        assert api_client.get("/health").json() == {"status": "ok"}
