import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from loopcaster import config

logger = logging.getLogger(__name__)

NETWORK_SCHEMES = ('http://', 'https://', 'rtmp://', 'rtmps://', 'rtsp://', 'srt://')


def is_network_source(path: Optional[str]) -> bool:
    return bool(path) and path.lower().startswith(NETWORK_SCHEMES)


@dataclass
class MediaPaths:
    """Confirmed input locations for one encoder run. None means not found."""
    video: Optional[str]
    audio: Optional[str] = None
    playlist: List[Optional[str]] = field(default_factory=list)  # One entry per video_refs item


class MediaStore:
    """Resolves media references to files under the media root."""

    def __init__(self, media_root=None):
        self.media_root = media_root or config.MEDIA_DIR

    def resolve(self, reference: Optional[str]) -> Optional[str]:
        if not reference:
            return None
        if is_network_source(reference):
            return reference
        if os.path.isabs(reference):
            path = reference
        else:
            path = os.path.join(self.media_root, reference)
            # References are relative to the media root; refuse to escape it
            root = os.path.realpath(self.media_root)
            if os.path.commonpath([root, os.path.realpath(path)]) != root:
                logger.warning(f"Media reference outside media root rejected: {reference}")
                return None
        if os.path.isfile(path):
            return path
        return None

    def paths_for(self, stream_config) -> MediaPaths:
        return MediaPaths(
            video=self.resolve(stream_config.video_ref),
            audio=self.resolve(stream_config.audio_ref),
            playlist=[self.resolve(ref) for ref in stream_config.video_refs],
        )
