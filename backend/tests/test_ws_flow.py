"""
WebSocket integration tests for the battle server message contract.
Tests: search lifecycle, bot battles, private rooms, malformed input,
connection replacement, and opponent disconnects.
Uses FastAPI TestClient against a fresh SocketManager per test.
"""
import sys
import os

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect
import main
from main import app
from bot import BotAnswerSimulator
from models import Question
from socket_manager import SocketManager
import config


class StaticProvider:
    def __init__(self, num_questions=2):
        self.questions = [
            Question(text=f"Question {i + 1}?", options=("A", "B", "C", "D"), correct_index=0)
            for i in range(num_questions)
        ]

    async def fetch(self):
        return list(self.questions)


@pytest.fixture(autouse=True)
def manager(monkeypatch):
    sm = SocketManager(
        question_provider=StaticProvider(),
        round_duration=5,
        intermission=0.05,
        bot_factory=lambda: BotAnswerSimulator(round_duration=5, min_delay=0.01, max_delay=0.05),
    )
    monkeypatch.setattr(main, "socket_manager", sm)
    yield sm


@pytest.fixture
def client(manager):
    # Entering the client runs lifespan and keeps every socket on one event loop
    with TestClient(app) as c:
        yield c


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def url(client_id):
    return f"/ws/{client_id}"


def profile(name):
    return {"displayName": name, "avatar": "🙂"}


def recv_until(ws, msg_type, max_messages=50):
    """Receive messages until we get the expected type. Returns that message."""
    for _ in range(max_messages):
        data = ws.receive_json()
        if data.get("type") == msg_type:
            return data
    raise TimeoutError(f"Never received {msg_type} after {max_messages} messages")


def answer(ws, room_id, option_index=0):
    ws.send_json({"type": "answer", "roomId": room_id, "optionIndex": option_index})


# ===========================================================================
# HTTP
# ===========================================================================

class TestRoot:
    def test_root(self, client):
        res = client.get("/")
        assert res.status_code == 200
        assert "running" in res.json()["message"]


# ===========================================================================
# Search lifecycle
# ===========================================================================

class TestSearch:
    def test_search_started(self, client, manager):
        with client.websocket_connect(url("a")) as ws:
            ws.send_json({"type": "join_search", "profile": profile("Alice")})
            assert ws.receive_json()["type"] == "search_started"
            assert manager.queue.waiting_ids() == ["a"]

    def test_cancel_search(self, client, manager):
        with client.websocket_connect(url("a")) as ws:
            ws.send_json({"type": "join_search", "profile": profile("Alice")})
            recv_until(ws, "search_started")
            ws.send_json({"type": "cancel_search"})
            recv_until(ws, "search_cancelled")
            assert len(manager.queue) == 0

    def test_invalid_profile(self, client, manager):
        with client.websocket_connect(url("a")) as ws:
            ws.send_json({"type": "join_search", "profile": {"displayName": "<b></b>"}})
            err = recv_until(ws, "error")
            assert "Display name" in err["message"]
            assert len(manager.queue) == 0

    def test_disconnect_leaves_queue(self, client, manager):
        with client.websocket_connect(url("a")) as ws:
            ws.send_json({"type": "join_search", "profile": profile("Alice")})
            recv_until(ws, "search_started")
        assert len(manager.queue) == 0

    def test_two_searchers_are_matched(self, client, manager):
        with client.websocket_connect(url("a")) as ws_a:
            ws_a.send_json({"type": "join_search", "profile": profile("Alice")})
            recv_until(ws_a, "search_started")
            with client.websocket_connect(url("b")) as ws_b:
                ws_b.send_json({"type": "join_search", "profile": profile("Bob")})
                recv_until(ws_b, "search_confirmed")
                found_b = recv_until(ws_b, "match_found")
                found_a = recv_until(ws_a, "match_found")
                assert found_a["roomId"] == found_b["roomId"]
                names = [p["displayName"] for p in found_a["participants"]]
                assert names == ["Alice", "Bob"]
                q = recv_until(ws_a, "question")
                assert q["roundIndex"] == 0
                assert q["durationMs"] == 5000

    def test_opponent_disconnect_ends_battle(self, client, manager):
        with client.websocket_connect(url("a")) as ws_a:
            ws_a.send_json({"type": "join_search", "profile": profile("Alice")})
            recv_until(ws_a, "search_started")
            with client.websocket_connect(url("b")) as ws_b:
                ws_b.send_json({"type": "join_search", "profile": profile("Bob")})
                recv_until(ws_b, "question")
            end = recv_until(ws_a, "battle_end")
            assert end["reason"] == "opponent_left"
            assert len(manager.registry) == 0


# ===========================================================================
# Bot battles
# ===========================================================================

class TestBotBattle:
    def test_full_bot_battle(self, client, manager):
        with client.websocket_connect(url("a")) as ws:
            ws.send_json({"type": "start_bot_match", "profile": profile("Alice")})
            found = recv_until(ws, "match_found")
            assert found["participants"][1]["id"] == config.BOT_ID
            room_id = found["roomId"]

            for round_index in range(2):
                q = recv_until(ws, "question")
                assert q["roundIndex"] == round_index
                answer(ws, room_id, 0)
                update = recv_until(ws, "score_update")
                assert update["roundIndex"] == round_index
                assert config.BOT_ID in update["scores"]

            end = recv_until(ws, "battle_end")
            assert end["reason"] == "completed"
            assert end["scores"]["a"] == 30
            assert len(manager.registry) == 0

    def test_rematch_against_bot(self, client, manager):
        with client.websocket_connect(url("a")) as ws:
            ws.send_json({"type": "start_bot_match", "profile": profile("Alice")})
            room_id = recv_until(ws, "match_found")["roomId"]
            for _ in range(2):
                recv_until(ws, "question")
                answer(ws, room_id, 1)
            recv_until(ws, "battle_end")

            ws.send_json({"type": "rematch"})
            again = recv_until(ws, "match_found")
            assert again["participants"][1]["isBot"] is True


# ===========================================================================
# Private rooms
# ===========================================================================

class TestPrivateRoom:
    def test_create_and_join(self, client, manager):
        with client.websocket_connect(url("host")) as host:
            host.send_json({"type": "create_private_room", "profile": profile("Host")})
            code = recv_until(host, "room_created")["roomCode"]
            assert len(code) == config.ROOM_CODE_LENGTH

            with client.websocket_connect(url("guest")) as guest:
                guest.send_json({"type": "join_private_room", "roomCode": code, "profile": profile("Guest")})
                found = recv_until(guest, "match_found")
                assert found["roomId"] == code
                assert recv_until(host, "match_found")["roomId"] == code

    def test_join_unknown_room(self, client, manager):
        with client.websocket_connect(url("guest")) as guest:
            guest.send_json({"type": "join_private_room", "roomCode": "ZZZZZZ", "profile": profile("Guest")})
            err = recv_until(guest, "error")
            assert err["message"] == "Room not found"
            assert len(manager.registry) == 0


# ===========================================================================
# Transport hygiene
# ===========================================================================

class TestTransport:
    def test_invalid_json(self, client):
        with client.websocket_connect(url("a")) as ws:
            ws.send_text("{not json")
            err = ws.receive_json()
            assert err == {"type": "error", "message": "Invalid message format"}

    def test_non_object_json(self, client):
        with client.websocket_connect(url("a")) as ws:
            ws.send_text("[1, 2, 3]")
            assert ws.receive_json()["message"] == "Invalid message format"

    def test_message_too_large(self, client):
        with client.websocket_connect(url("a")) as ws:
            ws.send_text("x" * (config.MAX_WS_MESSAGE_SIZE + 1))
            assert ws.receive_json()["message"] == "Message too large"

    def test_rate_limited(self, client):
        with client.websocket_connect(url("a")) as ws:
            for _ in range(config.WS_RATE_LIMIT_PER_SEC + 1):
                ws.send_json({"type": "cancel_search"})
            msgs = [ws.receive_json() for _ in range(config.WS_RATE_LIMIT_PER_SEC + 1)]
            assert {"type": "error", "message": "Too many messages"} in msgs

    def test_bot_id_rejected(self, client):
        with client.websocket_connect(url(config.BOT_ID)) as ws:
            err = ws.receive_json()
            assert err["message"] == "Invalid client id"
            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()

    def test_second_connection_replaces_first(self, client, manager):
        with client.websocket_connect(url("a")) as first:
            first.send_json({"type": "cancel_search"})
            recv_until(first, "search_cancelled")
            with client.websocket_connect(url("a")) as second:
                kicked = recv_until(first, "error")
                assert kicked["message"] == "You connected from another device"
                with pytest.raises(WebSocketDisconnect):
                    first.receive_json()
                second.send_json({"type": "cancel_search"})
                recv_until(second, "search_cancelled")
                assert len(manager.connections) == 1
