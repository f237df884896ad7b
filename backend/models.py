import re
from typing import NamedTuple, Tuple

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

import config

MAX_QUESTION_TEXT_LENGTH = 2000
MAX_OPTION_LENGTH = 500


def sanitize_text(text: str) -> str:
    """Strip HTML tags and control characters from user or remote text."""
    text = re.sub(r'<[^>]+>', '', text)
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)
    return text.strip()


class ParticipantProfile(BaseModel):
    """Profile supplied by a client when it asks for a battle."""
    display_name: str
    avatar: str = ""

    @field_validator('display_name')
    @classmethod
    def validate_display_name(cls, v: str) -> str:
        v = sanitize_text(v)
        if not v or len(v) > config.MAX_NICKNAME_LENGTH:
            raise ValueError(f'Display name must be 1-{config.MAX_NICKNAME_LENGTH} characters')
        return v

    @field_validator('avatar', mode='before')
    @classmethod
    def validate_avatar(cls, v) -> str:
        if not isinstance(v, str):
            return ""
        v = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', v)
        return v[:config.MAX_AVATAR_LENGTH]

    @classmethod
    def from_wire(cls, payload) -> "ParticipantProfile":
        if not isinstance(payload, dict):
            raise ValueError("Profile must be an object")
        return cls(
            display_name=payload.get("displayName", ""),
            avatar=payload.get("avatar", ""),
        )


class Participant(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    avatar: str = ""
    is_bot: bool = False

    @classmethod
    def from_profile(cls, participant_id: str, profile: ParticipantProfile) -> "Participant":
        return cls(id=participant_id, display_name=profile.display_name, avatar=profile.avatar)

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "avatar": self.avatar,
            "isBot": self.is_bot,
        }


BOT_PARTICIPANT = Participant(
    id=config.BOT_ID,
    display_name=config.BOT_DISPLAY_NAME,
    avatar=config.BOT_AVATAR,
    is_bot=True,
)


class Question(BaseModel):
    """A four-option question. Immutable once loaded into a session."""
    model_config = ConfigDict(frozen=True)

    text: str
    options: Tuple[str, str, str, str]
    correct_index: int

    @field_validator('text')
    @classmethod
    def validate_text(cls, v: str) -> str:
        v = sanitize_text(v)[:MAX_QUESTION_TEXT_LENGTH]
        if not v:
            raise ValueError('Question text must not be empty')
        return v

    @field_validator('options')
    @classmethod
    def validate_options(cls, v: Tuple[str, str, str, str]) -> Tuple[str, str, str, str]:
        return tuple(sanitize_text(opt)[:MAX_OPTION_LENGTH] for opt in v)

    @model_validator(mode='after')
    def validate_correct_index(self) -> "Question":
        if not 0 <= self.correct_index < len(self.options):
            raise ValueError('Invalid correct_index')
        return self

    def to_wire(self) -> dict:
        """Player-facing view; the answer key never leaves the server."""
        return {"text": self.text, "options": list(self.options)}


class RecordedAnswer(NamedTuple):
    option_index: int
    answered_at: int  # monotonic milliseconds
