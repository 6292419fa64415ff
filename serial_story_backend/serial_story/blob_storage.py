import os
import logging

from .errors import NotFoundError, PersistenceError

logger = logging.getLogger(__name__)


def story_key(user_id: str, story_id: str) -> str:
    return f"stories/{user_id}/{story_id}/story.md"


def episode_key(user_id: str, story_id: str, episode_number: int) -> str:
    return f"episodes/{user_id}/{story_id}/{episode_number}/episode.md"


def image_key(user_id: str, story_id: str, episode_number: int, image_index: int) -> str:
    return f"episodes/{user_id}/{story_id}/{episode_number}/images/image-{image_index:03d}.png"


def episode_pdf_key(user_id: str, story_id: str, episode_number: int) -> str:
    return f"episodes/{user_id}/{story_id}/{episode_number}/episode.pdf"


def write_bytes(path: str, data: bytes):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)

def write_text(path: str, text: str):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)


class LocalBlobStore:
    """Generated artifacts on a filesystem root, addressed by slash-separated keys."""

    def __init__(self, root_dir: str):
        self.root_dir = os.path.abspath(root_dir)
        os.makedirs(self.root_dir, exist_ok=True)

    def _path(self, key: str) -> str:
        parts = key.split("/")
        if not key or key.startswith("/") or any(p in ("", ".", "..") for p in parts):
            raise ValueError(f"invalid blob key: {key!r}")
        return os.path.join(self.root_dir, *parts)

    def put_text(self, key: str, text: str) -> str:
        try:
            write_text(self._path(key), text)
        except OSError as e:
            raise PersistenceError(f"Failed to write blob {key}: {e}") from e
        logger.info(f"Stored blob {key} ({len(text)} chars)")
        return key

    def put_bytes(self, key: str, data: bytes) -> str:
        try:
            write_bytes(self._path(key), data)
        except OSError as e:
            raise PersistenceError(f"Failed to write blob {key}: {e}") from e
        logger.info(f"Stored blob {key} ({len(data)} bytes)")
        return key

    def get_text(self, key: str) -> str:
        return self.get_bytes(key).decode("utf-8")

    def get_bytes(self, key: str) -> bytes:
        path = self._path(key)
        if not os.path.exists(path):
            raise NotFoundError(f"Blob not found: {key}", code="BLOB_NOT_FOUND")
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise PersistenceError(f"Failed to read blob {key}: {e}") from e

    def exists(self, key: str) -> bool:
        return os.path.exists(self._path(key))
