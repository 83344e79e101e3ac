from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class SlotId(str, Enum):
    ENTRANCE = "entrance"
    EXIT = "exit"


class OwnershipState(str, Enum):
    REMOTE_OWNED = "RemoteOwned"
    RELEASING = "Releasing"
    LOCAL_OWNED = "LocalOwned"
    RESTORING = "Restoring"


class EntryStatus(str, Enum):
    EXIT = "Exit"
    LATE_ENTER = "Late-Enter"
    ON_TIME_ENTER = "On-Time-Enter"


class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class Detection(_WireModel):
    label: str = Field(default="", validation_alias=AliasChoices("label", "display_name", "name"))
    box: list[float] = Field(default_factory=list)
    similarity: float | None = None
    matched: bool = False


class AnnotationFrame(_WireModel):
    """One detector snapshot; replaces the previous frame wholesale."""

    detections: list[Detection] = Field(validation_alias=AliasChoices("detections", "results"))
    native_width: int = Field(default=640, validation_alias=AliasChoices("native_width", "ai_width"))
    native_height: int = Field(default=480, validation_alias=AliasChoices("native_height", "ai_height"))

    @classmethod
    def neutral(cls, native_width: int = 640, native_height: int = 480) -> "AnnotationFrame":
        return cls(detections=[], native_width=native_width, native_height=native_height)


class LogEntry(_WireModel):
    id: int = Field(validation_alias=AliasChoices("id", "log_id"))
    subject_id: int | None = None
    person_id: int = Field(validation_alias=AliasChoices("person_id", "user_id"))
    person_label: str = Field(default="", validation_alias=AliasChoices("person_label", "user_name"))
    external_code: str = Field(default="", validation_alias=AliasChoices("external_code", "student_code"))
    action: Literal["enter", "exit"]
    timestamp: datetime
    confidence: float | None = None
    snapshot_ref: str | None = Field(default=None, validation_alias=AliasChoices("snapshot_ref", "snapshot_path"))
    status: Literal["Present", "Late"] | None = Field(
        default=None, validation_alias=AliasChoices("status", "log_status")
    )

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Subject(_WireModel):
    subject_id: int
    subject_name: str
    section: str | None = None
    schedule: str | None = None
    academic_year: str | None = None
    class_start_time: str | None = None

    @property
    def display_name(self) -> str:
        prefix = f"[{self.academic_year}] " if self.academic_year else ""
        suffix = f" (Sec: {self.section})" if self.section else ""
        return f"{prefix}{self.subject_name}{suffix}"

    def late_time(self, default: str) -> str:
        if self.class_start_time:
            return self.class_start_time[:5]
        return default


class DiscoveredDevice(_WireModel):
    src: str
    width: int = 0
    height: int = 0
    readable: bool = False

    @field_validator("src", mode="before")
    @classmethod
    def _coerce_src(cls, value: object) -> str:
        return str(value)


class CameraMapping(_WireModel):
    entrance: str = ""
    exit: str = ""

    @field_validator("entrance", "exit", mode="before")
    @classmethod
    def _coerce_key(cls, value: object) -> str:
        return "" if value is None else str(value)

    def source_for(self, slot_id: SlotId) -> str:
        return getattr(self, slot_id.value)

    def with_source(self, slot_id: SlotId, source_key: str) -> "CameraMapping":
        return self.model_copy(update={slot_id.value: source_key})


@dataclass(frozen=True)
class BoxStyle:
    left: float
    top: float
    width: float
    height: float


@dataclass(frozen=True)
class StudentCount:
    checked: int = 0
    total: int = 0


@dataclass(frozen=True)
class CapturedPhoto:
    filename: str
    content: bytes
    content_type: str = "image/jpeg"
