"""Profiles of the viewer and their contacts: lookup, typed edits, search history."""

from __future__ import annotations

import json
import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

from .backend import Filter
from .events import ENTITY_PROFILES, NormalizedEvent, ProfileUpdated
from .models import Profile, now_ms

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 80
MAX_BIO_LENGTH = 280
DEFAULT_HISTORY_PATH = Path.home() / ".chatsync" / "search_history.json"


class InvalidProfileUpdate(ValueError):
    pass


class ContactLookupError(Exception):
    """Lookup failed; ``str(exc)`` is suitable for showing to the user."""


@dataclass(frozen=True)
class Rename:
    value: str

    def patch(self) -> Dict[str, str]:
        name = self.value.strip()
        if not name:
            raise InvalidProfileUpdate("name must not be empty")
        if len(name) > MAX_NAME_LENGTH:
            raise InvalidProfileUpdate(f"name longer than {MAX_NAME_LENGTH} characters")
        return {"full_name": name}


@dataclass(frozen=True)
class SetBio:
    value: str

    def patch(self) -> Dict[str, str]:
        bio = self.value.strip()
        if len(bio) > MAX_BIO_LENGTH:
            raise InvalidProfileUpdate(f"bio longer than {MAX_BIO_LENGTH} characters")
        return {"bio": bio}


@dataclass(frozen=True)
class SetAvatar:
    url: str

    def patch(self) -> Dict[str, str]:
        if not self.url.strip():
            raise InvalidProfileUpdate("avatar url must not be empty")
        return {"avatar_url": self.url.strip()}


ProfileUpdate = Union[Rename, SetBio, SetAvatar]


class ProfileDirectory:
    """Known profiles keyed by user id."""

    def __init__(self) -> None:
        self._profiles: Dict[str, Profile] = {}

    async def hydrate(self, backend, conversations, viewer_id: str) -> None:
        user_ids = {viewer_id}
        for conversation in conversations.all():
            user_ids.add(conversation.other_user_id(viewer_id))
        rows = await backend.query(ENTITY_PROFILES, Filter().is_in("id", sorted(user_ids)))
        for row in rows:
            self.upsert(Profile.from_row(row))

    def upsert(self, profile: Profile) -> bool:
        if self._profiles.get(profile.user_id) == profile:
            return False
        self._profiles[profile.user_id] = profile
        return True

    def apply(self, event: NormalizedEvent) -> bool:
        if isinstance(event, ProfileUpdated):
            return self.upsert(event.profile)
        return False

    def get(self, user_id: str) -> Optional[Profile]:
        return self._profiles.get(user_id)

    def display_name(self, user_id: str) -> Optional[str]:
        profile = self._profiles.get(user_id)
        if profile is None:
            return None
        return profile.full_name or profile.email


class ProfileEditor:
    """Applies typed profile updates for the viewer; unchanged values are not written."""

    def __init__(self, viewer_id: str, backend, directory: ProfileDirectory, *, avatar_prefix: str = "avatars") -> None:
        self.viewer_id = viewer_id
        self._backend = backend
        self._directory = directory
        self._avatar_prefix = avatar_prefix.strip("/")

    async def apply(self, update: ProfileUpdate) -> bool:
        """Write ``update``; returns ``False`` when it would change nothing.

        Raises ``InvalidProfileUpdate`` for invalid values and lets backend
        errors propagate to the caller.
        """

        patch = update.patch()
        current = self._directory.get(self.viewer_id)
        if current is not None and all(getattr(current, field) == value for field, value in patch.items()):
            return False
        await self._backend.update(ENTITY_PROFILES, self.viewer_id, patch)
        if current is not None:
            self._directory.upsert(Profile.from_row({**_profile_row(current), **patch}))
        return True

    async def upload_avatar(self, filename: str, data: bytes) -> str:
        ext = filename.rsplit(".", 1)[-1] if "." in filename else "bin"
        path = f"{self._avatar_prefix}/{self.viewer_id}-{secrets.token_hex(4)}.{ext}"
        url = await self._backend.upload(path, data)
        await self.apply(SetAvatar(url))
        return url

    async def touch_last_seen(self, *, now_func=now_ms) -> None:
        await self._backend.update(ENTITY_PROFILES, self.viewer_id, {"last_seen": now_func()})


def _profile_row(profile: Profile) -> Dict[str, object]:
    return {
        "id": profile.user_id,
        "full_name": profile.full_name,
        "email": profile.email,
        "bio": profile.bio,
        "avatar_url": profile.avatar_url,
        "last_seen": profile.last_seen_ms,
    }


def normalize_email(email: str) -> str:
    return email.strip().lower()


async def find_contact(backend, viewer_id: str, email: str, *, viewer_email: Optional[str] = None) -> Profile:
    target = normalize_email(email)
    if not target or "@" not in target:
        raise ContactLookupError("Please enter a valid email address.")
    if viewer_email is not None and target == normalize_email(viewer_email):
        raise ContactLookupError("Self-messaging is not enabled.")
    rows = await backend.query(ENTITY_PROFILES, Filter().neq("id", viewer_id).eq("email", target))
    if not rows:
        raise ContactLookupError("User profile not found.")
    return Profile.from_row(rows[0])


class SearchHistory:
    """Most recently searched contact emails, newest first, persisted as JSON."""

    def __init__(self, path: Path | str = DEFAULT_HISTORY_PATH, limit: int = 5) -> None:
        self.path = Path(path).expanduser()
        self.limit = limit
        self._entries: List[str] = self._load()

    def _load(self) -> List[str]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (json.JSONDecodeError, ValueError):
            logger.warning("ignoring unreadable search history at %s", self.path)
            return []
        if not isinstance(data, list):
            return []
        return [entry for entry in data if isinstance(entry, str)][: self.limit]

    def entries(self) -> List[str]:
        return list(self._entries)

    def add(self, email: str) -> List[str]:
        value = normalize_email(email)
        self._entries = [value] + [entry for entry in self._entries if entry != value]
        self._entries = self._entries[: self.limit]
        self._save()
        return self.entries()

    def remove(self, email: str) -> List[str]:
        value = normalize_email(email)
        self._entries = [entry for entry in self._entries if entry != value]
        self._save()
        return self.entries()

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        content = json.dumps(self._entries, indent=2)

        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, self.path)
