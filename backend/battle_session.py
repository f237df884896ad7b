"""Per-match state machine.

PENDING -> ACTIVE_ROUND -> RESOLVING -> INTERMISSION -> ACTIVE_ROUND ... -> ENDED

Every transition checks the current phase before acting, so a timer that
fires late (round timer after early resolution, bot answer after the round
closed, anything after the session ended) is a no-op.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import config
import scoring
from bot import BotAnswerSimulator
from models import Participant, Question, RecordedAnswer

logger = logging.getLogger(__name__)

SendCallback = Callable[[str, dict], Awaitable[None]]
EndCallback = Callable[["BattleSession"], None]

REASON_COMPLETED = "completed"
REASON_OPPONENT_LEFT = "opponent_left"


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class BattleSession:
    PENDING = "PENDING"
    ACTIVE_ROUND = "ACTIVE_ROUND"
    RESOLVING = "RESOLVING"
    INTERMISSION = "INTERMISSION"
    ENDED = "ENDED"

    def __init__(self, room_id: str, participants: Sequence[Participant],
                 questions: Sequence[Question], send: SendCallback,
                 on_end: Optional[EndCallback] = None,
                 round_duration: float = config.ROUND_DURATION_SECONDS,
                 intermission: float = config.INTERMISSION_SECONDS,
                 bot: Optional[BotAnswerSimulator] = None,
                 clock: Callable[[], int] = monotonic_ms):
        if len(participants) != 2:
            raise ValueError("A battle needs exactly two participants")
        if participants[0].id == participants[1].id:
            raise ValueError("A participant cannot battle themselves")
        if not questions:
            raise ValueError("A battle needs at least one question")

        self.room_id = room_id
        self.participants = tuple(participants)
        self.questions = tuple(questions)
        self.send = send
        self.on_end = on_end
        self.round_duration = round_duration
        self.intermission = intermission
        self.clock = clock

        self.bot_participant = next((p for p in self.participants if p.is_bot), None)
        if self.bot_participant and bot is None:
            bot = BotAnswerSimulator(round_duration=round_duration)
        self.bot = bot

        self.scores: Dict[str, int] = {p.id: 0 for p in self.participants}
        self.answers: Dict[str, RecordedAnswer] = {}
        self.phase = self.PENDING
        self.current_round = -1
        self.round_started_at = 0
        self.end_reason: Optional[str] = None

        self.round_timer: Optional[asyncio.Task] = None
        self.advance_timer: Optional[asyncio.Task] = None
        self.bot_timer: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def has_participant(self, participant_id: str) -> bool:
        return participant_id in self.scores

    def human_ids(self) -> List[str]:
        return [p.id for p in self.participants if not p.is_bot]

    @property
    def is_ended(self) -> bool:
        return self.phase == self.ENDED

    async def broadcast(self, message: dict):
        for participant_id in self.human_ids():
            await self.send(participant_id, message)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        if self.phase != self.PENDING:
            return
        await self._start_round(0)

    async def _start_round(self, round_index: int):
        if self.phase not in (self.PENDING, self.INTERMISSION):
            return

        self.current_round = round_index
        self.answers = {}
        self.round_started_at = self.clock()
        self.phase = self.ACTIVE_ROUND

        question = self.questions[round_index]
        self.round_timer = asyncio.create_task(self._round_timeout(round_index))
        if self.bot_participant:
            option_index, think_delay = self.bot.simulate(question)
            self.bot_timer = asyncio.create_task(
                self._bot_answer(round_index, option_index, think_delay)
            )

        logger.info("Room %s round %d/%d started", self.room_id, round_index + 1, len(self.questions))
        await self.broadcast({
            "type": "question",
            "roomId": self.room_id,
            **question.to_wire(),
            "roundIndex": round_index,
            "totalRounds": len(self.questions),
            "durationMs": int(self.round_duration * 1000),
        })

    async def answer(self, participant_id: str, option_index) -> bool:
        """Record a participant's answer for the current round.

        Returns False (and changes nothing) when the answer is not accepted:
        wrong phase, unknown participant, out-of-range option, or a repeat.
        """
        if self.phase != self.ACTIVE_ROUND:
            return False
        if participant_id not in self.scores:
            return False
        question = self.questions[self.current_round]
        if isinstance(option_index, bool) or not isinstance(option_index, int):
            return False
        if not 0 <= option_index < len(question.options):
            return False
        if participant_id in self.answers:
            return False

        self.answers[participant_id] = RecordedAnswer(option_index, self.clock())
        if len(self.answers) == len(self.participants):
            await self._resolve()
        return True

    async def _resolve(self):
        if self.phase != self.ACTIVE_ROUND:
            return
        self.phase = self.RESOLVING
        self._cancel(self.round_timer)
        self._cancel(self.bot_timer)
        self.round_timer = None
        self.bot_timer = None

        question = self.questions[self.current_round]
        round_points = {}
        for p in self.participants:
            points = scoring.score(question, self.answers.get(p.id), self.round_started_at)
            round_points[p.id] = points
            self.scores[p.id] += points

        await self.broadcast({
            "type": "score_update",
            "roomId": self.room_id,
            "roundIndex": self.current_round,
            "correctIndex": question.correct_index,
            "roundPoints": round_points,
            "scores": dict(self.scores),
        })
        # Ended while the update was being delivered
        if self.phase != self.RESOLVING:
            return

        next_round = self.current_round + 1
        if next_round < len(self.questions):
            self.phase = self.INTERMISSION
            self.advance_timer = asyncio.create_task(self._advance_after_intermission(next_round))
        else:
            await self.end(REASON_COMPLETED)

    async def end(self, reason: str = REASON_COMPLETED):
        """Enter the terminal state, notify the room, and release the session."""
        if self.phase == self.ENDED:
            return
        self.close()
        self.end_reason = reason
        logger.info("Room %s ended (%s): %s", self.room_id, reason, self.scores)
        if self.on_end:
            self.on_end(self)
        await self.broadcast({
            "type": "battle_end",
            "roomId": self.room_id,
            "scores": dict(self.scores),
            "reason": reason,
        })

    def close(self):
        """Mark the session ended and cancel every timer it owns."""
        self.phase = self.ENDED
        for task in (self.round_timer, self.advance_timer, self.bot_timer):
            self._cancel(task)
        self.round_timer = None
        self.advance_timer = None
        self.bot_timer = None

    @staticmethod
    def _cancel(task: Optional[asyncio.Task]):
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def _round_timeout(self, round_index: int):
        try:
            await asyncio.sleep(self.round_duration)
        except asyncio.CancelledError:
            return
        if self.current_round != round_index or self.phase != self.ACTIVE_ROUND:
            return
        self.round_timer = None
        logger.info("Room %s round %d timed out with %d answer(s)",
                    self.room_id, round_index + 1, len(self.answers))
        try:
            await self._resolve()
        except Exception:
            logger.exception("Error resolving round %d in room %s", round_index + 1, self.room_id)

    async def _bot_answer(self, round_index: int, option_index: int, think_delay: float):
        try:
            await asyncio.sleep(think_delay)
        except asyncio.CancelledError:
            return
        if self.current_round != round_index or self.phase != self.ACTIVE_ROUND:
            return
        self.bot_timer = None
        try:
            await self.answer(self.bot_participant.id, option_index)
        except Exception:
            logger.exception("Error recording bot answer in room %s", self.room_id)

    async def _advance_after_intermission(self, next_round: int):
        try:
            await asyncio.sleep(self.intermission)
        except asyncio.CancelledError:
            return
        if self.phase != self.INTERMISSION:
            return
        self.advance_timer = None
        try:
            await self._start_round(next_round)
        except Exception:
            logger.exception("Error starting round %d in room %s", next_round + 1, self.room_id)
