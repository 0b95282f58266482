"""Caption Review - crowd review of image captions and image ingestion."""

__version__ = "0.1.0"

from .exceptions import (
    AuthenticationError,
    CaptionReviewError,
    NotFoundError,
    StageError,
    TransportError,
    ValidationError,
)
from .models import IngestionStage, JobStatus, QueueStatus, ReviewCard, VoteState
from .pipeline import IngestionPipeline
from .review import ReviewQueueEngine
