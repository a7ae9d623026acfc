"""Job records, message variants and targeting rules.

A job's message is one of the ``MessageSpec`` dataclasses below; the ``kind``
tag is what gets persisted next to the fields, and ``message_from_dict``
rebuilds the right class from it.
"""

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import ClassVar, Dict, List, Optional, Tuple, Type

from .utils import from_iso

# Job States
DRAFT = "draft"
PENDING = "pending"
PROCESSING = "processing"
SENT = "sent"
FAILED = "failed"
CANCELLED = "cancelled"

ALL_STATES = (DRAFT, PENDING, PROCESSING, SENT, FAILED, CANCELLED)
TERMINAL_STATES = frozenset({SENT, FAILED, CANCELLED})

RECURRENCE_RULES = ("daily", "weekly", "monthly")
MEDIA_TYPES = ("image", "video", "document")


class GroupcastError(Exception):
    pass


class InvalidMessageError(GroupcastError, ValueError):
    """Message spec cannot be dispatched as-is (e.g. a poll with one option)."""


class DirectoryUnavailable(GroupcastError):
    """The group directory for an instance could not be read."""


class ProviderError(GroupcastError):
    """One provider call failed. ``detail`` ends up in the failure record."""

    def __init__(self, detail: str, status_code: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


def _require(value: str, what: str, kind: str):
    if not value or not str(value).strip():
        raise InvalidMessageError(f"{kind} message requires {what}")


def _require_url(url: str, kind: str):
    _require(url, "a url", kind)
    if not url.startswith(("http://", "https://")):
        # data: URIs and raw base64 must be uploaded before the job is queued
        raise InvalidMessageError(f"{kind} message url must be http(s), got {url[:30]!r}")


# ---------- Message variants ----------
class MessageSpec:
    kind: ClassVar[str] = ""

    def validate(self) -> None:
        raise NotImplementedError

    def chunks(self) -> List["MessageSpec"]:
        return [self]

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["kind"] = self.kind
        return data


@dataclass(frozen=True)
class TextMessage(MessageSpec):
    kind: ClassVar[str] = "text"

    body: str
    split_by_lines: bool = False
    link_preview: bool = False

    def validate(self):
        _require(self.body, "a body", self.kind)

    def chunks(self):
        if not self.split_by_lines:
            return [self]
        lines = [line.rstrip("\r") for line in self.body.split("\n") if line.strip()]
        if not lines:
            return [self]
        return [TextMessage(body=line, link_preview=self.link_preview) for line in lines]


@dataclass(frozen=True)
class MediaMessage(MessageSpec):
    kind: ClassVar[str] = "media"

    url: str
    mimetype: str
    mediatype: str = "image"
    caption: str = ""
    file_name: str = "file"

    def validate(self):
        _require_url(self.url, self.kind)
        _require(self.mimetype, "a mimetype", self.kind)
        if self.mediatype not in MEDIA_TYPES:
            raise InvalidMessageError(
                f"media type must be one of {', '.join(MEDIA_TYPES)}, got {self.mediatype!r}"
            )


@dataclass(frozen=True)
class AudioMessage(MessageSpec):
    kind: ClassVar[str] = "audio"

    url: str

    def validate(self):
        _require_url(self.url, self.kind)


@dataclass(frozen=True)
class PollMessage(MessageSpec):
    kind: ClassVar[str] = "poll"

    question: str
    options: Tuple[str, ...]
    selectable_count: int = 1

    def __post_init__(self):
        object.__setattr__(self, "options", tuple(self.options))

    def validate(self):
        _require(self.question, "a question", self.kind)
        options = [o for o in self.options if o and o.strip()]
        if len(options) < 2:
            raise InvalidMessageError(f"poll needs at least 2 options, got {len(options)}")
        if not 1 <= self.selectable_count <= len(options):
            raise InvalidMessageError(
                f"selectable_count must be between 1 and {len(options)}"
            )

    def to_dict(self):
        data = super().to_dict()
        data["options"] = list(self.options)
        return data


@dataclass(frozen=True)
class PixMessage(MessageSpec):
    kind: ClassVar[str] = "pix"

    key: str
    key_type: str = "cpf"
    amount: float = 0.0

    def validate(self):
        _require(self.key, "a pix key", self.kind)
        if self.amount < 0:
            raise InvalidMessageError("pix amount cannot be negative")


@dataclass(frozen=True)
class ContactMessage(MessageSpec):
    kind: ClassVar[str] = "contact"

    full_name: str
    phone: str

    def validate(self):
        _require(self.full_name, "a full name", self.kind)
        _require(self.phone, "a phone number", self.kind)


@dataclass(frozen=True)
class LocationMessage(MessageSpec):
    kind: ClassVar[str] = "location"

    latitude: float
    longitude: float
    name: str = "Location"
    address: str = ""

    def validate(self):
        if not -90 <= self.latitude <= 90:
            raise InvalidMessageError(f"latitude out of range: {self.latitude}")
        if not -180 <= self.longitude <= 180:
            raise InvalidMessageError(f"longitude out of range: {self.longitude}")


MESSAGE_KINDS: Dict[str, Type[MessageSpec]] = {
    cls.kind: cls
    for cls in (TextMessage, MediaMessage, AudioMessage, PollMessage,
                PixMessage, ContactMessage, LocationMessage)
}


def message_from_dict(data: Dict) -> MessageSpec:
    data = dict(data)
    kind = data.pop("kind", None)
    cls = MESSAGE_KINDS.get(kind)
    if cls is None:
        raise InvalidMessageError(f"Unknown message kind: {kind!r}")
    try:
        return cls(**data)
    except TypeError as e:
        raise InvalidMessageError(f"Malformed {kind} message: {e}")


# ---------- Targeting ----------
@dataclass(frozen=True)
class TargetingRule:
    """Explicit group ids, or a size/name predicate when ``ids`` is empty."""

    ids: Tuple[str, ...] = ()
    min_size: int = 0
    name_contains: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "ids", tuple(self.ids))
        if self.min_size < 0:
            raise ValueError("min_size cannot be negative")

    @property
    def is_explicit(self) -> bool:
        return bool(self.ids)

    @classmethod
    def explicit(cls, ids) -> "TargetingRule":
        return cls(ids=tuple(ids))

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "TargetingRule":
        data = data or {}
        return cls(
            ids=tuple(data.get("ids") or ()),
            min_size=int(data.get("minSize") or 0),
            name_contains=data.get("nameContains") or None,
        )

    def to_dict(self) -> Dict:
        if self.is_explicit:
            return {"ids": list(self.ids)}
        out = {"minSize": self.min_size}
        if self.name_contains:
            out["nameContains"] = self.name_contains
        return out


@dataclass(frozen=True)
class Group:
    id: str
    subject: str = ""
    size: int = 0


# ---------- Jobs ----------
@dataclass
class Job:
    id: Optional[int]
    instance: str
    message: MessageSpec
    targeting: TargetingRule
    due_at: datetime
    status: str = PENDING
    mention_everyone: bool = False
    batch_id: Optional[str] = None
    chunk_index: Optional[int] = None
    total_chunks: Optional[int] = None
    recurrence: Optional[str] = None
    parent_id: Optional[int] = None
    result_summary: Optional[str] = None
    sent_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Job":
        return cls(
            id=row["id"],
            instance=row["instance"],
            message=message_from_dict(json.loads(row["message"])),
            targeting=TargetingRule.from_dict(json.loads(row["targeting"])),
            due_at=from_iso(row["due_at"]),
            status=row["status"],
            mention_everyone=bool(row["mention_everyone"]),
            batch_id=row["batch_id"],
            chunk_index=row["chunk_index"],
            total_chunks=row["total_chunks"],
            recurrence=row["recurrence"],
            parent_id=row["parent_id"],
            result_summary=row["result_summary"],
            sent_at=from_iso(row["sent_at"]),
            claimed_at=from_iso(row["claimed_at"]),
            created_at=from_iso(row["created_at"]),
        )


@dataclass(frozen=True)
class RecipientFailure:
    recipient_id: str
    error: str


@dataclass
class DispatchResult:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    failures: List[RecipientFailure] = field(default_factory=list)

    @property
    def status(self) -> str:
        return SENT if self.failed == 0 else FAILED

    @property
    def summary(self) -> str:
        if self.attempted == 0:
            return "0 recipients"
        if self.failed == 0:
            return f"{self.succeeded}/{self.attempted} sent"
        return f"{self.succeeded}/{self.attempted} sent, {self.failed} failed"
