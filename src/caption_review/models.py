"""Data models for caption review and image ingestion."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class VoteState(Enum):
    """Vote held by the current identity on one caption."""

    UNVOTED = 0
    UPVOTED = 1
    DOWNVOTED = -1

    @classmethod
    def from_value(cls, value: Optional[int]) -> "VoteState":
        """Map a stored vote value (None, -1, 0, 1) to a state."""
        if not value:
            return cls.UNVOTED
        return cls(value)


@dataclass
class SourceCaption:
    """Caption as delivered by the image catalog."""

    id: str
    content: Optional[str] = None


@dataclass
class SourceImage:
    """Image with its captions as delivered by the image catalog."""

    id: str
    url: str
    captions: List[SourceCaption] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceImage":
        """Create from a catalog row."""
        captions = [
            SourceCaption(id=str(c["id"]), content=c.get("content"))
            for c in data.get("captions") or []
            if c
        ]
        return cls(id=str(data["id"]), url=data.get("url", ""), captions=captions)


@dataclass(frozen=True)
class ReviewCard:
    """One reviewable (image, caption) pair."""

    caption_id: str
    content: str
    image_id: str
    image_url: str


@dataclass(frozen=True)
class VoteHistoryEntry:
    """Vote state a card held before a transition, and the cursor position at that time."""

    queue_position: int
    caption_id: str
    previous_state: VoteState


@dataclass
class RemoteVoteRecord:
    """Row of the remote vote table."""

    record_id: str
    caption_id: str
    identity_id: str
    vote_value: int
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the remote column layout."""
        return {
            "id": self.record_id,
            "caption_id": self.caption_id,
            "profile_id": self.identity_id,
            "vote_value": self.vote_value,
            "created_datetime_utc": self.created_at.isoformat() if self.created_at else None,
            "modified_datetime_utc": self.modified_at.isoformat() if self.modified_at else None,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RemoteVoteRecord":
        """Create from a remote row."""
        return cls(
            record_id=str(d["id"]),
            caption_id=str(d.get("caption_id", "")),
            identity_id=str(d.get("profile_id", "")),
            vote_value=int(d.get("vote_value") or 0),
            created_at=_parse_timestamp(d.get("created_datetime_utc")),
            modified_at=_parse_timestamp(d.get("modified_datetime_utc")),
        )


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    # fromisoformat does not accept a trailing Z before 3.11
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class QueueStatus(Enum):
    """Review queue lifecycle."""

    EMPTY = "empty"  # nothing to review
    REVIEWING = "reviewing"
    COMPLETED = "completed"  # all reviewed
    CLOSED = "closed"


@dataclass(frozen=True)
class QueueSnapshot:
    """Immutable view of the review queue handed to the UI."""

    status: QueueStatus
    position: int
    total: int
    card: Optional[ReviewCard]
    vote: VoteState
    can_go_back: bool
    upvoted: int
    downvoted: int
    generation: int

    @property
    def is_terminal(self) -> bool:
        return self.status is not QueueStatus.REVIEWING


class IngestionStage(Enum):
    """Ordered ingestion stages."""

    ACQUIRE_UPLOAD_TARGET = 1
    TRANSFER_BYTES = 2
    REGISTER_ASSET = 3
    GENERATE_CAPTIONS = 4

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", " ")


class JobStatus(Enum):
    """Ingestion job status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class UploadFile:
    """File selected for ingestion."""

    name: str
    content_type: str
    data: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class UploadTarget:
    """Presigned upload location and the URL the object will be served from."""

    upload_url: str
    public_url: str


@dataclass(frozen=True)
class GeneratedCaption:
    """Caption returned by the caption-generation service."""

    content: str
    caption_id: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "GeneratedCaption":
        content = d.get("content") or d.get("text") or ""
        caption_id = d.get("id")
        return cls(content=content, caption_id=str(caption_id) if caption_id is not None else None)


@dataclass(frozen=True)
class StageFailure:
    """Where and why an ingestion job stopped."""

    stage: IngestionStage
    reason: str
    error: Optional[BaseException] = field(default=None, compare=False, repr=False)


@dataclass
class IngestionJob:
    """One upload attempt, advanced stage by stage."""

    file: UploadFile
    job_id: str
    status: JobStatus = JobStatus.PENDING
    current_stage: Optional[IngestionStage] = None
    upload_url: Optional[str] = None
    public_url: Optional[str] = None
    asset_id: Optional[str] = None
    generated_captions: List[GeneratedCaption] = field(default_factory=list)
    failure: Optional[StageFailure] = None
    orphaned_url: Optional[str] = None
    created_at: datetime = None
    finished_at: Optional[datetime] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = utc_now()

    @property
    def is_finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    def snapshot(self) -> "JobSnapshot":
        return JobSnapshot(
            job_id=self.job_id,
            status=self.status,
            stage=self.current_stage,
            asset_id=self.asset_id,
            captions=tuple(self.generated_captions),
            failure=self.failure,
        )


@dataclass(frozen=True)
class JobSnapshot:
    """Immutable view of an ingestion job handed to the UI."""

    job_id: str
    status: JobStatus
    stage: Optional[IngestionStage]
    asset_id: Optional[str]
    captions: tuple
    failure: Optional[StageFailure]

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)
