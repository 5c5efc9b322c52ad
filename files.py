"""
File access gateway: the read path behind ``GET /api/files/{key...}``.

Order inside one request is fixed: authenticate -> authorize -> fetch -> respond.
The store is never touched for an unauthenticated caller.
"""

import enum
import logging
from typing import Callable, Dict, Iterable, Iterator, NamedTuple, Optional, Sequence, Union
from urllib.parse import unquote

import settings
from auth import Session
from storage import USER_NAMESPACE

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class FileAccessError(enum.Enum):
    UNAUTHENTICATED = (401, "Unauthorized")
    FORBIDDEN = (403, "Forbidden")
    NOT_FOUND = (404, "Not found")
    INTERNAL = (500, "Internal server error")

    @property
    def status_code(self) -> int:
        return self.value[0]

    @property
    def message(self) -> str:
        return self.value[1]


class ServedFile(NamedTuple):
    status: int
    headers: Dict[str, str]
    body: Iterator[bytes]


# ---------- key policy ----------
def decode_key_segments(segments: Iterable[str]) -> str:
    """
    Percent-decode each path segment on its own, then join with "/".

    Decoding the joined string instead would turn an encoded "/" inside
    a segment into a separator before the split.
    """
    return "/".join(unquote(s) for s in segments)


def key_owner(key: str) -> Optional[str]:
    """Owner id encoded in a ``users/{ownerId}/...`` key, or None for other keys."""
    parts = key.split("/")
    if len(parts) >= 2 and parts[0] == USER_NAMESPACE:
        return parts[1]
    return None


def can_access_key(key: str, user_id: str) -> bool:
    # Only the "users" namespace is owner-restricted; other keys pass through.
    owner = key_owner(key)
    return owner is None or owner == user_id


def is_owned_by(key: str, user_id: str) -> bool:
    """Strict form used by write paths: the key must sit under ``users/{user_id}/``."""
    parts = key.split("/")
    return (
        len(parts) >= 3
        and parts[0] == USER_NAMESPACE
        and parts[1] == user_id
        and all(parts[2:])
    )


def cache_headers(content_type: Optional[str], etag: str) -> Dict[str, str]:
    return {
        "Content-Type": content_type or DEFAULT_CONTENT_TYPE,
        "Cache-Control": f"private, max-age={settings.FILE_CACHE_MAX_AGE}",
        "ETag": etag,
    }


# ---------- gateway ----------
def serve_file(
    raw_segments: Sequence[str],
    resolve_session: Callable[[], Optional[Session]],
    store,
) -> Union[ServedFile, FileAccessError]:
    try:
        key = decode_key_segments(raw_segments)

        session = resolve_session()
        if session is None:
            return FileAccessError.UNAUTHENTICATED

        if not key:
            return FileAccessError.NOT_FOUND

        if not can_access_key(key, session.user.id):
            return FileAccessError.FORBIDDEN

        obj = store.get(key)
        if obj is None:
            return FileAccessError.NOT_FOUND

        return ServedFile(
            status=200,
            headers=cache_headers(obj.content_type, obj.etag),
            body=obj.body,
        )
    except Exception:
        logger.exception("[files/serve] error")
        return FileAccessError.INTERNAL
