"""Utility modules for caption review."""

from .auth import SessionDetails, SessionProvider, StaticSessionProvider
from .image_processor import ACCEPTED_CONTENT_TYPES, ImageProcessor
from .notifier import SnapshotNotifier
