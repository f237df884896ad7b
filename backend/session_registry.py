import hashlib
import json
import logging
import random
import string
from typing import Callable, Dict, List, Optional, Sequence

import config
from battle_session import BattleSession, SendCallback, REASON_OPPONENT_LEFT
from bot import BotAnswerSimulator
from models import Participant, Question

logger = logging.getLogger(__name__)


class RoomUnavailable(Exception):
    """Raised when a private room cannot be joined."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def normalize_room_code(room_code: str) -> str:
    return room_code.strip().upper()


def public_room_id(first_id: str, second_id: str) -> str:
    """Deterministic room id for a pair of participants, independent of order."""
    # JSON keeps the pair unambiguous when ids contain separators
    key = json.dumps(sorted((first_id, second_id)))
    return "room_" + hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]


class SessionRegistry:
    """Owns every live BattleSession and every pending private room."""

    def __init__(self, send: SendCallback,
                 round_duration: float = config.ROUND_DURATION_SECONDS,
                 intermission: float = config.INTERMISSION_SECONDS,
                 bot_factory: Optional[Callable[[], BotAnswerSimulator]] = None,
                 clock: Optional[Callable[[], int]] = None):
        self.send = send
        self.round_duration = round_duration
        self.intermission = intermission
        self.bot_factory = bot_factory or (lambda: BotAnswerSimulator(round_duration=self.round_duration))
        self.clock = clock
        self._sessions: Dict[str, BattleSession] = {}
        self._private_rooms: Dict[str, Participant] = {}  # room code -> waiting host

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._sessions

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create(self, participants: Sequence[Participant], questions: Sequence[Question],
               room_id: Optional[str] = None) -> BattleSession:
        """Allocate and store a session. Public matches get a pair-derived room id."""
        if room_id is None:
            room_id = public_room_id(participants[0].id, participants[1].id)
        if room_id in self._sessions:
            raise RuntimeError(f"Room {room_id} already has a live battle")

        options = {}
        if self.clock is not None:
            options["clock"] = self.clock
        bot = self.bot_factory() if any(p.is_bot for p in participants) else None
        session = BattleSession(
            room_id, participants, questions, self.send,
            on_end=lambda s: self.destroy(s.room_id),
            round_duration=self.round_duration,
            intermission=self.intermission,
            bot=bot,
            **options,
        )
        self._sessions[room_id] = session
        logger.info("Session %s created: %s vs %s (%d questions)",
                    room_id, participants[0].id, participants[1].id, len(questions))
        return session

    def get(self, room_id: str) -> Optional[BattleSession]:
        return self._sessions.get(room_id)

    def destroy(self, room_id: str) -> bool:
        """Cancel the session's timers and forget it. Safe to call repeatedly."""
        session = self._sessions.pop(room_id, None)
        if session is None:
            return False
        session.close()
        logger.info("Session %s destroyed", room_id)
        return True

    async def answer(self, room_id: str, participant_id: str, option_index) -> bool:
        session = self._sessions.get(room_id)
        if session is None:
            return False
        return await session.answer(participant_id, option_index)

    def sessions_for(self, participant_id: str) -> List[BattleSession]:
        return [s for s in self._sessions.values() if s.has_participant(participant_id)]

    def in_battle(self, participant_id: str) -> bool:
        return any(s.has_participant(participant_id) for s in self._sessions.values())

    async def abort_participant(self, participant_id: str, reason: str = REASON_OPPONENT_LEFT):
        """End every battle the participant is part of, whatever the round phase."""
        for session in self.sessions_for(participant_id):
            logger.info("Aborting session %s: %s left", session.room_id, participant_id)
            await session.end(reason)

    def shutdown(self):
        for room_id in list(self._sessions):
            self.destroy(room_id)
        self._private_rooms.clear()

    # ------------------------------------------------------------------
    # Private rooms
    # ------------------------------------------------------------------

    def generate_room_code(self) -> str:
        """Generate a unique room code, checking for collisions with live and pending rooms."""
        alphabet = string.ascii_uppercase + string.digits
        for _ in range(config.MAX_ROOM_CODE_ATTEMPTS):
            code = ''.join(random.choices(alphabet, k=config.ROOM_CODE_LENGTH))
            if code not in self._sessions and code not in self._private_rooms:
                return code
        raise RuntimeError("Failed to generate unique room code")

    def open_private_room(self, host: Participant) -> str:
        self.close_private_room(host.id)
        code = self.generate_room_code()
        self._private_rooms[code] = host
        logger.info("Private room %s opened by %s", code, host.id)
        return code

    def close_private_room(self, host_id: str) -> Optional[str]:
        """Drop the pending room hosted by ``host_id``, if any."""
        for code, host in list(self._private_rooms.items()):
            if host.id == host_id:
                del self._private_rooms[code]
                logger.info("Private room %s closed", code)
                return code
        return None

    def pending_host(self, room_code: str) -> Optional[Participant]:
        return self._private_rooms.get(normalize_room_code(room_code))

    def join_private_room(self, room_code: str, guest: Participant) -> Participant:
        """Claim a pending room and return its host.

        Raises RoomUnavailable without changing any state when the room does
        not exist, is already playing, or belongs to the guest.
        """
        code = normalize_room_code(room_code)
        if code in self._sessions:
            raise RoomUnavailable("Room is full")
        host = self._private_rooms.get(code)
        if host is None:
            raise RoomUnavailable("Room not found")
        if host.id == guest.id:
            raise RoomUnavailable("Room is full")
        del self._private_rooms[code]
        return host
