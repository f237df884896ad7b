import asyncio
import html
import json
import logging
import random
from typing import List, Optional

import requests
from pydantic import ValidationError

import config
from models import Question

logger = logging.getLogger(__name__)

FALLBACK_QUESTIONS = [
    Question(
        text="What is the capital of France?",
        options=("Berlin", "Madrid", "Paris", "Rome"),
        correct_index=2,
    ),
    Question(
        text="Which planet is known as the Red Planet?",
        options=("Mars", "Venus", "Jupiter", "Mercury"),
        correct_index=0,
    ),
    Question(
        text="How many continents are there on Earth?",
        options=("Five", "Six", "Seven", "Eight"),
        correct_index=2,
    ),
    Question(
        text="What is the chemical symbol for gold?",
        options=("Ag", "Au", "Gd", "Go"),
        correct_index=1,
    ),
    Question(
        text="Which ocean is the largest?",
        options=("Atlantic", "Indian", "Arctic", "Pacific"),
        correct_index=3,
    ),
    Question(
        text="Who painted the Mona Lisa?",
        options=("Leonardo da Vinci", "Michelangelo", "Raphael", "Donatello"),
        correct_index=0,
    ),
    Question(
        text="What is the boiling point of water at sea level in Celsius?",
        options=("90", "100", "110", "120"),
        correct_index=1,
    ),
    Question(
        text="Which gas do plants absorb from the atmosphere?",
        options=("Oxygen", "Nitrogen", "Carbon dioxide", "Helium"),
        correct_index=2,
    ),
    Question(
        text="How many sides does a hexagon have?",
        options=("Five", "Six", "Seven", "Eight"),
        correct_index=1,
    ),
    Question(
        text="What is the largest mammal?",
        options=("Elephant", "Blue whale", "Giraffe", "Orca"),
        correct_index=1,
    ),
]


class QuestionSourceError(Exception):
    """The remote payload could not be turned into questions."""


def _parse_native(items: list) -> List[Question]:
    questions = []
    for item in items:
        if not isinstance(item, dict):
            continue
        options = item.get("options")
        if not isinstance(options, list) or len(options) != 4:
            continue
        try:
            questions.append(Question(
                text=item.get("text", ""),
                options=tuple(options),
                correct_index=item.get("answer_index", -1),
            ))
        except ValidationError as e:
            logger.warning("Skipping invalid question: %s", e.errors()[0].get("msg"))
    return questions


def _parse_opentdb(results: list, rng: random.Random) -> List[Question]:
    questions = []
    for item in results:
        if not isinstance(item, dict):
            continue
        incorrect = item.get("incorrect_answers")
        correct = item.get("correct_answer")
        if not isinstance(incorrect, list) or len(incorrect) != 3 or not isinstance(correct, str):
            continue
        options = [html.unescape(str(o)) for o in incorrect]
        correct_index = rng.randrange(4)
        options.insert(correct_index, html.unescape(correct))
        try:
            questions.append(Question(
                text=html.unescape(str(item.get("question", ""))),
                options=tuple(options),
                correct_index=correct_index,
            ))
        except ValidationError as e:
            logger.warning("Skipping invalid question: %s", e.errors()[0].get("msg"))
    return questions


def parse_payload(payload, rng: Optional[random.Random] = None) -> List[Question]:
    """Turn a remote payload into questions.

    Accepts ``{"questions": [{"text", "options", "answer_index"}]}`` or the
    Open Trivia DB ``{"response_code": 0, "results": [...]}`` shape.
    """
    if not isinstance(payload, dict):
        raise QuestionSourceError(f"Expected an object, got {type(payload).__name__}")
    if isinstance(payload.get("questions"), list):
        questions = _parse_native(payload["questions"])
    elif isinstance(payload.get("results"), list):
        if payload.get("response_code", 0) != 0:
            raise QuestionSourceError(f"Source returned response_code {payload['response_code']}")
        questions = _parse_opentdb(payload["results"], rng or random.Random())
    else:
        raise QuestionSourceError("Payload has no 'questions' or 'results' list")
    if not questions:
        raise QuestionSourceError("Payload contained no usable questions")
    return questions


class QuestionProvider:
    """Fetches a battle's questions, falling back to a fixed set on any failure."""

    def __init__(self, url: str = config.QUESTION_SOURCE_URL,
                 timeout: float = config.QUESTION_FETCH_TIMEOUT,
                 retries: int = config.QUESTION_FETCH_RETRIES,
                 count: int = config.QUESTIONS_PER_BATTLE):
        self.url = url
        self.timeout = timeout
        self.retries = max(1, retries)
        self.count = count

    def fallback(self) -> List[Question]:
        return list(FALLBACK_QUESTIONS[:max(1, self.count)])

    async def fetch(self) -> List[Question]:
        if not self.url:
            return self.fallback()
        try:
            questions = await asyncio.wait_for(self._fetch_with_retries(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Question source timed out after %.1fs, using fallback questions", self.timeout)
            return self.fallback()
        except Exception:
            logger.exception("Unexpected error fetching questions, using fallback questions")
            return self.fallback()
        if not questions:
            return self.fallback()
        return questions[:self.count]

    async def _fetch_with_retries(self) -> Optional[List[Question]]:
        url = self.url.format(count=self.count)
        for attempt in range(1, self.retries + 1):
            try:
                logger.info("Question fetch attempt %d/%d", attempt, self.retries)
                payload = await asyncio.to_thread(self._request, url)
                questions = parse_payload(payload)
                logger.info("Fetched %d questions from source", len(questions))
                return questions
            except requests.RequestException as e:
                logger.warning("Attempt %d: HTTP error fetching questions: %s", attempt, e)
            except json.JSONDecodeError as e:
                logger.warning("Attempt %d: Question source returned invalid JSON: %s", attempt, e)
            except QuestionSourceError as e:
                logger.warning("Attempt %d: Malformed question payload: %s", attempt, e)
            if attempt < self.retries:
                await asyncio.sleep(0.5 * attempt)
        logger.warning("Question source failed after %d attempts, using fallback questions", self.retries)
        return None

    def _request(self, url: str):
        # Each attempt gets its share of the overall bound so retries can run
        response = requests.get(url, timeout=self.timeout / self.retries)
        response.raise_for_status()
        return response.json()


question_provider = QuestionProvider()
