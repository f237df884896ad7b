import random
from typing import Optional, Tuple

import config
from models import Question


class BotAnswerSimulator:
    """Picks an answer and a think delay for the simulated opponent."""

    def __init__(self, round_duration: float = config.ROUND_DURATION_SECONDS,
                 min_delay: float = config.BOT_MIN_DELAY_SECONDS,
                 max_delay: float = config.BOT_MAX_DELAY_SECONDS,
                 accuracy: float = config.BOT_ACCURACY,
                 rng: Optional[random.Random] = None):
        self.accuracy = accuracy
        self.rng = rng or random.Random()
        # The bot must always answer before the round timer fires
        ceiling = round_duration * config.BOT_DELAY_CEILING_RATIO
        self.max_delay = min(max_delay, ceiling)
        self.min_delay = min(min_delay, self.max_delay)

    def simulate(self, question: Question) -> Tuple[int, float]:
        """Return (option_index, think_delay_seconds).

        A miss is drawn uniformly over all options, so it can still land
        on the correct one.
        """
        if self.rng.random() < self.accuracy:
            option_index = question.correct_index
        else:
            option_index = self.rng.randrange(len(question.options))
        think_delay = self.rng.uniform(self.min_delay, self.max_delay)
        return option_index, think_delay
