from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Literal
from uuid import uuid4

from pydantic import (
    AliasGenerator,
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .invite_code import normalize_invite_code

SubmissionStatus = Literal["pending", "approved", "rejected"]
ReviewDecision = Literal["approved", "rejected"]
ParticipantRole = Literal["organizer", "participant"]

_PSEUDO_RE = re.compile(r"^[A-Za-z0-9_]+$")
_INVITE_CODE_RE = re.compile(r"^[A-Z0-9]+$")


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


def _coerce_int(v: object) -> int:
    # ドキュメントストア由来の欠損・非数値は0扱い
    if v is None or isinstance(v, bool):
        return 0
    try:
        return int(v)
    except (TypeError, ValueError):
        return 0


def _strip_required(v: object, field: str) -> str:
    if not isinstance(v, str):
        raise ValueError(f"{field} must be a string")
    s = v.strip()
    if not s:
        raise ValueError(f"{field} must not be blank")
    return s


def _valid_pseudo(v: object) -> str:
    s = _strip_required(v, "pseudo")
    if not _PSEUDO_RE.match(s):
        raise ValueError("pseudo can only contain letters, numbers and underscores")
    return s


def _strip_optional(v: object) -> str | None:
    if v is None:
        return None
    if not isinstance(v, str):
        raise ValueError("value must be a string")
    return v.strip() or None


class Record(BaseModel):
    """Stored record. Accepts snake_case and the document store's camelCase keys."""

    model_config = ConfigDict(
        alias_generator=AliasGenerator(validation_alias=to_camel),
        populate_by_name=True,
    )


class Trip(Record):
    id: str
    name: str
    description: str = ""
    location: str = ""
    start_date: date | None = None
    end_date: date | None = None
    creator_id: str
    invite_code: str
    created_at: datetime


class Participant(Record):
    id: str
    pseudo: str
    avatar_url: str | None = None
    role: ParticipantRole = "participant"
    joined_at: datetime | None = None
    manual_points_adjustment: int = 0
    last_adjustment_reason: str | None = None
    participant_key: str = ""

    @field_validator("manual_points_adjustment", mode="before")
    @classmethod
    def _coerce_adjustment(cls, v: object) -> int:
        return _coerce_int(v)

    @property
    def is_organizer(self) -> bool:
        return self.role == "organizer"


class Quest(Record):
    id: str
    trip_id: str
    creator_id: str
    creator_pseudo: str
    title: str
    description: str
    points: int
    deadline: datetime | None = None
    created_at: datetime
    is_active: bool = True


class Submission(Record):
    id: str
    trip_id: str
    quest_id: str
    submitter_id: str
    submitter_pseudo: str = ""
    image_url: str = ""
    notes: str = ""
    submitted_at: datetime | None = None
    status: SubmissionStatus = "pending"
    points_awarded: int = 0
    reviewed_at: datetime | None = None
    reviewer_id: str | None = None

    @field_validator("points_awarded", mode="before")
    @classmethod
    def _coerce_points(cls, v: object) -> int:
        return _coerce_int(v)


class LeaderboardEntry(BaseModel):
    user_id: str
    pseudo: str
    avatar_url: str | None
    total_points: int
    rank: int


class CreateTripRequest(BaseModel):
    user_id: str = Field(min_length=1)
    pseudo: str = Field(min_length=3, max_length=20)
    avatar_url: str | None = None
    name: str = Field(min_length=3, max_length=50)
    description: str = Field(default="", max_length=300)
    location: str = Field(default="", max_length=100)
    start_date: date | None = None
    end_date: date | None = None

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, v: object) -> str:
        return _strip_required(v, "name")

    @field_validator("user_id", mode="before")
    @classmethod
    def _strip_user_id(cls, v: object, info: ValidationInfo) -> str:
        return _strip_required(v, info.field_name)

    @field_validator("pseudo", mode="before")
    @classmethod
    def _check_pseudo(cls, v: object) -> str:
        return _valid_pseudo(v)

    @field_validator("description", "location", mode="before")
    @classmethod
    def _strip_text(cls, v: object) -> str:
        return _strip_optional(v) or ""

    @model_validator(mode="after")
    def _check_dates(self) -> "CreateTripRequest":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class CreateTripResponse(BaseModel):
    trip_id: str
    invite_code: str
    participant_id: str
    participant_key: str


class JoinTripRequest(BaseModel):
    user_id: str = Field(min_length=1)
    pseudo: str = Field(min_length=3, max_length=20)
    avatar_url: str | None = None
    invite_code: str = Field(min_length=4, max_length=12)

    @field_validator("user_id", mode="before")
    @classmethod
    def _strip_user_id(cls, v: object, info: ValidationInfo) -> str:
        return _strip_required(v, info.field_name)

    @field_validator("pseudo", mode="before")
    @classmethod
    def _check_pseudo(cls, v: object) -> str:
        return _valid_pseudo(v)

    @field_validator("invite_code", mode="before")
    @classmethod
    def _normalize_code(cls, v: object) -> str:
        if not isinstance(v, str):
            raise ValueError("invite_code must be a string")
        code = normalize_invite_code(v)
        if not _INVITE_CODE_RE.match(code):
            raise ValueError("invite_code must contain only letters and numbers")
        return code


class JoinTripResponse(BaseModel):
    trip_id: str
    trip_name: str
    participant_id: str
    participant_key: str


class UpdateProfileRequest(BaseModel):
    pseudo: str = Field(min_length=3, max_length=20)
    avatar_url: str | None = None

    @field_validator("pseudo", mode="before")
    @classmethod
    def _check_pseudo(cls, v: object) -> str:
        return _valid_pseudo(v)

    @field_validator("avatar_url", mode="before")
    @classmethod
    def _strip_avatar(cls, v: object) -> str | None:
        return _strip_optional(v)


class ParticipantPublic(BaseModel):
    id: str
    pseudo: str
    avatar_url: str | None
    role: ParticipantRole
    joined_at: datetime | None
    manual_points_adjustment: int
    last_adjustment_reason: str | None

    @classmethod
    def from_participant(cls, p: Participant) -> "ParticipantPublic":
        return cls(**p.model_dump(exclude={"participant_key"}))


class AdjustPointsRequest(BaseModel):
    points: int
    reason: str | None = Field(default=None, max_length=200)

    @field_validator("points")
    @classmethod
    def _non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("points must not be zero")
        return v

    @field_validator("reason", mode="before")
    @classmethod
    def _strip_reason(cls, v: object) -> str | None:
        return _strip_optional(v)


class CreateQuestRequest(BaseModel):
    title: str = Field(min_length=5, max_length=100)
    description: str = Field(min_length=10, max_length=500)
    points: int = Field(ge=1)
    deadline: datetime | None = None

    @field_validator("title", "description", mode="before")
    @classmethod
    def _strip(cls, v: object, info: ValidationInfo) -> str:
        return _strip_required(v, info.field_name)

    @field_validator("deadline")
    @classmethod
    def _future_deadline(cls, v: datetime | None) -> datetime | None:
        if v is None:
            return None
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        if v <= datetime.now(timezone.utc):
            raise ValueError("deadline must be in the future")
        return v


class CreateSubmissionRequest(BaseModel):
    image_url: str = Field(min_length=1)
    notes: str = Field(default="", max_length=200)

    @field_validator("image_url", mode="before")
    @classmethod
    def _strip_image_url(cls, v: object) -> str:
        return _strip_required(v, "image_url")

    @field_validator("notes", mode="before")
    @classmethod
    def _strip_notes(cls, v: object) -> str:
        return _strip_optional(v) or ""


class ReviewSubmissionRequest(BaseModel):
    decision: ReviewDecision


class LeaderboardResponse(BaseModel):
    trip_id: str
    trip_name: str
    entries: list[LeaderboardEntry]


class ScoreResponse(BaseModel):
    trip_id: str
    participant_id: str
    total_points: int
