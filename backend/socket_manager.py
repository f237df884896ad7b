from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from typing import Dict, List, Optional, Sequence, Set
import asyncio
import json
import time
import logging

import config
from battle_session import BattleSession
from match_queue import MatchQueue, Waiting
from models import BOT_PARTICIPANT, Participant, ParticipantProfile
from question_provider import QuestionProvider, question_provider as default_question_provider
from session_registry import RoomUnavailable, SessionRegistry, normalize_room_code

logger = logging.getLogger(__name__)

MAX_CLIENT_ID_LENGTH = 64

ACTION_SEARCH = "search"
ACTION_BOT = "bot"
ACTION_PRIVATE = "private"


class SocketManager:
    """Routes participant messages to the match queue and session registry."""

    def __init__(self, question_provider: Optional[QuestionProvider] = None,
                 queue_wait: float = config.QUEUE_WAIT_SECONDS,
                 round_duration: float = config.ROUND_DURATION_SECONDS,
                 intermission: float = config.INTERMISSION_SECONDS,
                 bot_factory=None, clock=None):
        self.question_provider = question_provider or default_question_provider
        self.connections: Dict[str, WebSocket] = {}
        # WS rate limiting: client_id -> list of timestamps
        self.msg_timestamps: Dict[str, list] = {}
        self.profiles: Dict[str, ParticipantProfile] = {}
        self.last_action: Dict[str, str] = {}
        self._starting: Set[str] = set()  # paired, waiting for questions
        # Battle setups run off the receive loop so disconnects are seen mid-fetch
        self.setup_tasks: Set[asyncio.Task] = set()
        self.queue = MatchQueue(queue_wait, on_evict=self._notify_no_match)
        self.registry = SessionRegistry(
            self.send_to,
            round_duration=round_duration,
            intermission=intermission,
            bot_factory=bot_factory,
            clock=clock,
        )

    def shutdown(self):
        """Cancel every pending setup, queue timer and battle timer."""
        for task in list(self.setup_tasks):
            task.cancel()
        self.setup_tasks.clear()
        self.queue.clear()
        self.registry.shutdown()
        self._starting.clear()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def connect(self, websocket: WebSocket, client_id: str):
        await websocket.accept()
        if not client_id or len(client_id) > MAX_CLIENT_ID_LENGTH or client_id == config.BOT_ID:
            await websocket.send_json({"type": "error", "message": "Invalid client id"})
            await websocket.close()
            return

        # Kick the old connection and let the new one take over
        old_ws = self.connections.get(client_id)
        if old_ws is not None:
            try:
                await old_ws.send_json({"type": "error", "message": "You connected from another device"})
                await old_ws.close()
            except Exception:
                logger.debug("Old connection for %s already gone", client_id)
        self.connections[client_id] = websocket
        logger.info("Client %s connected", client_id)

        try:
            while True:
                data = await websocket.receive_text()

                # Enforce message size limit
                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await websocket.send_json({"type": "error", "message": "Message too large"})
                    continue

                # Per-client rate limiting
                now = time.time()
                timestamps = self.msg_timestamps.setdefault(client_id, [])
                timestamps[:] = [t for t in timestamps if now - t < 1.0]
                if len(timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
                    await websocket.send_json({"type": "error", "message": "Too many messages"})
                    continue
                timestamps.append(now)

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Malformed JSON from client %s: %s", client_id, data[:100])
                    await websocket.send_json({"type": "error", "message": "Invalid message format"})
                    continue
                if not isinstance(message, dict):
                    await websocket.send_json({"type": "error", "message": "Invalid message format"})
                    continue

                await self.handle_message(client_id, message)
        except WebSocketDisconnect:
            logger.info("Client %s disconnected", client_id)
        except Exception:
            logger.exception("WebSocket error for client %s", client_id)
        finally:
            # A replaced connection must not tear down the new one's state
            if self.connections.get(client_id) is websocket:
                del self.connections[client_id]
                self.msg_timestamps.pop(client_id, None)
                await self.handle_disconnect(client_id)

    async def send_to(self, participant_id: str, message: dict):
        ws = self.connections.get(participant_id)
        if ws is None:
            return
        try:
            await ws.send_json(message)
        except Exception:
            logger.warning("Failed to send %s to %s", message.get("type"), participant_id)

    async def send_error(self, participant_id: str, message: str):
        await self.send_to(participant_id, {"type": "error", "message": message})

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    async def handle_message(self, client_id: str, message: dict):
        msg_type = message.get("type")

        if msg_type == "join_search":
            participant = await self._participant(client_id, message.get("profile"))
            if participant:
                await self.join_search(participant)

        elif msg_type == "cancel_search":
            await self.cancel_search(client_id)

        elif msg_type == "start_bot_match":
            participant = await self._participant(client_id, message.get("profile"))
            if participant:
                await self.start_bot_match(participant)

        elif msg_type == "create_private_room":
            participant = await self._participant(client_id, message.get("profile"))
            if participant:
                await self.create_private_room(participant)

        elif msg_type == "join_private_room":
            participant = await self._participant(client_id, message.get("profile"))
            if participant:
                await self.join_private_room(message.get("roomCode"), participant)

        elif msg_type == "answer":
            room_id = message.get("roomId")
            if isinstance(room_id, str):
                await self.registry.answer(room_id, client_id, message.get("optionIndex"))

        elif msg_type == "rematch":
            await self.rematch(client_id)

        else:
            logger.warning("Unknown message type %r from client %s", msg_type, client_id)

    async def _participant(self, client_id: str, raw_profile) -> Optional[Participant]:
        """Validate a profile payload, remembering it for rematches."""
        try:
            profile = ParticipantProfile.from_wire(raw_profile)
        except (ValidationError, ValueError) as e:
            logger.warning("Invalid profile from client %s: %s", client_id, e)
            await self.send_error(client_id, f"Display name must be 1-{config.MAX_NICKNAME_LENGTH} characters")
            return None
        self.profiles[client_id] = profile
        return Participant.from_profile(client_id, profile)

    def is_busy(self, participant_id: str) -> bool:
        return participant_id in self._starting or self.registry.in_battle(participant_id)

    async def join_search(self, participant: Participant):
        if self.is_busy(participant.id):
            await self.send_error(participant.id, "Already in a battle")
            return
        self.last_action[participant.id] = ACTION_SEARCH
        self.registry.close_private_room(participant.id)

        result = self.queue.join(participant)
        if isinstance(result, Waiting):
            await self.send_to(participant.id, {"type": "search_started"})
            return
        await self.send_to(participant.id, {"type": "search_confirmed"})
        self._launch_battle([result.opponent, participant])

    async def cancel_search(self, participant_id: str):
        if participant_id in self._starting:
            await self.send_error(participant_id, "Battle is already starting")
            return
        self.queue.remove(participant_id)
        self.registry.close_private_room(participant_id)
        await self.send_to(participant_id, {"type": "search_cancelled"})

    async def start_bot_match(self, participant: Participant):
        if self.is_busy(participant.id):
            await self.send_error(participant.id, "Already in a battle")
            return
        self.last_action[participant.id] = ACTION_BOT
        self.queue.remove(participant.id)
        self.registry.close_private_room(participant.id)
        self._launch_battle([participant, BOT_PARTICIPANT])

    async def create_private_room(self, participant: Participant):
        if self.is_busy(participant.id):
            await self.send_error(participant.id, "Already in a battle")
            return
        self.queue.remove(participant.id)
        try:
            room_code = self.registry.open_private_room(participant)
        except RuntimeError:
            logger.error("Could not allocate a private room for %s", participant.id)
            await self.send_error(participant.id, "Could not create room, please try again")
            return
        self.last_action[participant.id] = ACTION_PRIVATE
        await self.send_to(participant.id, {"type": "room_created", "roomCode": room_code})

    async def join_private_room(self, room_code, participant: Participant):
        if self.is_busy(participant.id):
            await self.send_error(participant.id, "Already in a battle")
            return
        if not isinstance(room_code, str) or not room_code.strip():
            await self.send_error(participant.id, "Room not found")
            return
        try:
            host = self.registry.join_private_room(room_code, participant)
        except RoomUnavailable as e:
            await self.send_error(participant.id, e.message)
            return
        self.last_action[participant.id] = ACTION_PRIVATE
        self.queue.remove(participant.id)
        self.registry.close_private_room(participant.id)
        self._launch_battle([host, participant], room_id=normalize_room_code(room_code))

    async def rematch(self, participant_id: str):
        profile = self.profiles.get(participant_id)
        if profile is None:
            await self.send_error(participant_id, "Nothing to rematch")
            return
        participant = Participant.from_profile(participant_id, profile)
        if self.last_action.get(participant_id) == ACTION_BOT:
            await self.start_bot_match(participant)
        else:
            await self.join_search(participant)

    def _launch_battle(self, participants: Sequence[Participant],
                       room_id: Optional[str] = None) -> asyncio.Task:
        """Mark the humans busy and set the battle up in its own task."""
        human_ids: List[str] = [p.id for p in participants if not p.is_bot]
        self._starting.update(human_ids)
        task = asyncio.create_task(self._start_battle(participants, human_ids, room_id))
        self.setup_tasks.add(task)
        task.add_done_callback(self.setup_tasks.discard)
        return task

    async def _start_battle(self, participants: Sequence[Participant], human_ids: List[str],
                            room_id: Optional[str] = None) -> Optional[BattleSession]:
        try:
            questions = await self.question_provider.fetch()
        except asyncio.CancelledError:
            logger.info("Battle setup for %s cancelled", ", ".join(human_ids))
            raise
        except Exception:
            logger.exception("Question fetch failed for %s", ", ".join(human_ids))
            for pid in human_ids:
                await self.send_error(pid, "Could not start battle")
            return None
        finally:
            self._starting.difference_update(human_ids)

        # Someone left while the questions were loading
        gone = [pid for pid in human_ids if pid not in self.connections]
        if gone:
            logger.info("Battle not started, %s disconnected during setup", ", ".join(gone))
            for pid in human_ids:
                if pid not in gone:
                    await self.send_to(pid, {"type": "no_match"})
            return None

        try:
            session = self.registry.create(participants, questions, room_id=room_id)
        except RuntimeError:
            logger.exception("Could not create battle for %s", ", ".join(human_ids))
            for pid in human_ids:
                await self.send_error(pid, "Could not start battle")
            return None

        await session.broadcast({
            "type": "match_found",
            "roomId": session.room_id,
            "participants": [p.to_wire() for p in session.participants],
        })
        await session.start()
        return session

    # ------------------------------------------------------------------
    # Disconnects and timeouts
    # ------------------------------------------------------------------

    async def handle_disconnect(self, participant_id: str):
        self.queue.remove(participant_id)
        self.registry.close_private_room(participant_id)
        await self.registry.abort_participant(participant_id)
        self.profiles.pop(participant_id, None)
        self.last_action.pop(participant_id, None)

    async def _notify_no_match(self, participant: Participant):
        await self.send_to(participant.id, {"type": "no_match"})


socket_manager = SocketManager()
