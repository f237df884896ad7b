from typing import Optional

import config
from models import Question, RecordedAnswer


def reaction_time_ms(answer: RecordedAnswer, round_started_at: int) -> int:
    return answer.answered_at - round_started_at


def score(question: Question, answer: Optional[RecordedAnswer], round_started_at: int) -> int:
    """Points for one participant in one round.

    No answer or a wrong answer scores 0. A correct answer scores
    SPEED_BONUS_POINTS inside the speed bonus window, BASE_POINTS otherwise.
    """
    if answer is None or answer.option_index != question.correct_index:
        return 0
    if reaction_time_ms(answer, round_started_at) < config.SPEED_BONUS_WINDOW_MS:
        return config.SPEED_BONUS_POINTS
    return config.BASE_POINTS
