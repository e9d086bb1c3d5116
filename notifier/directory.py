"""
Recipient directory.

Looks up staff profiles (role, device tokens, preferences) for the
orchestrator. Profiles are read-only here; the pipeline never writes them.
"""

import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import yaml
from pydantic import ValidationError

from notifier.exceptions import RecipientDataError
from notifier.models import ChannelKind, Recipient, RecipientPreferences, RecipientRole

logger = logging.getLogger(__name__)

ADMIN_ROLES = (RecipientRole.ADMIN, RecipientRole.MANAGER)

# Staff document preference flags -> channel / event category
_CHANNEL_FLAGS = {
    'pushEnabled': ChannelKind.PUSH,
    'realtimeEnabled': ChannelKind.REALTIME,
}
_CATEGORY_FLAGS = {
    'jobAssignments': 'job_assignments',
    'jobUpdates': 'job_updates',
    'jobReminders': 'job_reminders',
    'escalations': 'escalations',
    'bookingUpdates': 'booking_updates',
}


def _token_list(value: Any, field: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(token) for token in value if token is not None]
    raise RecipientDataError(f"'{field}' must be a list of tokens, got {type(value).__name__}")


def recipient_from_document(recipient_id: str, document: Dict[str, Any]) -> Recipient:
    """
    Map a staff document onto a Recipient.

    Accepts both the native shape (``channel_tokens``, ``preferences``) and
    staff documents as stored by the ops app (``fcmTokens``,
    ``realtimeTokens``, ``notificationPreferences.pushEnabled``,
    ``jobAssignments``, ``jobUpdates`` ...).

    Raises:
        RecipientDataError: If the document cannot be interpreted
    """
    if not isinstance(document, dict):
        raise RecipientDataError(f"Recipient {recipient_id}: document must be a mapping")

    try:
        if 'channel_tokens' in document or 'preferences' in document:
            return Recipient(id=recipient_id, **{k: v for k, v in document.items() if k != 'id'})

        channel_tokens = {
            ChannelKind.PUSH: _token_list(document.get('fcmTokens'), 'fcmTokens'),
            ChannelKind.REALTIME: _token_list(document.get('realtimeTokens'), 'realtimeTokens'),
        }

        raw_preferences = document.get('notificationPreferences') or {}
        if not isinstance(raw_preferences, dict):
            raise RecipientDataError(f"Recipient {recipient_id}: notificationPreferences must be a mapping")

        preferences = RecipientPreferences(
            channel_enabled={
                channel: bool(raw_preferences[flag])
                for flag, channel in _CHANNEL_FLAGS.items() if flag in raw_preferences
            },
            event_category_enabled={
                category: bool(raw_preferences[flag])
                for flag, category in _CATEGORY_FLAGS.items() if flag in raw_preferences
            },
        )

        return Recipient(
            id=recipient_id,
            name=document.get('name') or '',
            role=document.get('role') or RecipientRole.STAFF,
            channel_tokens=channel_tokens,
            preferences=preferences,
        )
    except ValidationError as e:
        raise RecipientDataError(f"Recipient {recipient_id}: {e}") from e


class RecipientDirectory(ABC):

    @abstractmethod
    async def get_recipient(self, recipient_id: str) -> Optional[Recipient]:
        """Return the recipient, or None if there is no such profile."""
        pass

    @abstractmethod
    async def get_recipients_by_role(self, roles: Iterable[RecipientRole]) -> List[Recipient]:
        pass


class InMemoryRecipientDirectory(RecipientDirectory):
    """Directory held in memory, optionally loaded from a YAML/JSON file."""

    def __init__(self, recipients: Iterable[Recipient] = ()):
        self._recipients: Dict[str, Recipient] = {}
        for recipient in recipients:
            self.add(recipient)

    def add(self, recipient: Recipient) -> None:
        self._recipients[recipient.id] = recipient

    def remove(self, recipient_id: str) -> None:
        self._recipients.pop(recipient_id, None)

    @classmethod
    def from_documents(cls, documents: Any) -> "InMemoryRecipientDirectory":
        """
        Build from staff documents, keyed by id or as a list with an 'id' field.

        Documents that cannot be mapped are logged and left out.
        """
        if isinstance(documents, dict):
            items = list(documents.items())
        elif isinstance(documents, list):
            items = [(doc.get('id') if isinstance(doc, dict) else None, doc) for doc in documents]
        else:
            raise RecipientDataError("Recipient documents must be a mapping or a list")

        directory = cls()
        for recipient_id, document in items:
            if not recipient_id:
                logger.warning("Skipping recipient document without an id")
                continue
            try:
                directory.add(recipient_from_document(str(recipient_id), document))
            except RecipientDataError as e:
                logger.warning(f"Skipping malformed recipient document: {e}")
        return directory

    @classmethod
    def from_file(cls, path: str) -> "InMemoryRecipientDirectory":
        if not os.path.exists(path):
            raise FileNotFoundError(f"Recipients file not found: {path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        # Allow a top-level 'staff' key, as exported from the ops app
        if isinstance(data, dict) and isinstance(data.get('staff'), (dict, list)):
            data = data['staff']

        directory = cls.from_documents(data)
        logger.info(f"Loaded {len(directory._recipients)} recipients from {path}")
        return directory

    async def get_recipient(self, recipient_id: str) -> Optional[Recipient]:
        return self._recipients.get(recipient_id)

    async def get_recipients_by_role(self, roles: Iterable[RecipientRole]) -> List[Recipient]:
        wanted = {RecipientRole(role) for role in roles}
        return [recipient for recipient in self._recipients.values() if recipient.role in wanted]


class CachedRecipientDirectory(RecipientDirectory):
    """
    Short-lived cache in front of another directory.

    Profiles change rarely but are read for every notification. Misses are
    not cached, so a newly added recipient is visible immediately.
    """

    def __init__(
        self,
        inner: RecipientDirectory,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.inner = inner
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._recipients: Dict[str, Tuple[float, Recipient]] = {}
        self._roles: Dict[frozenset, Tuple[float, List[Recipient]]] = {}

    async def get_recipient(self, recipient_id: str) -> Optional[Recipient]:
        now = self._clock()
        cached = self._recipients.get(recipient_id)
        if cached is not None and now - cached[0] < self.ttl_seconds:
            return cached[1]

        recipient = await self.inner.get_recipient(recipient_id)
        if recipient is not None:
            self._recipients[recipient_id] = (now, recipient)
        else:
            self._recipients.pop(recipient_id, None)
        return recipient

    async def get_recipients_by_role(self, roles: Iterable[RecipientRole]) -> List[Recipient]:
        key = frozenset(RecipientRole(role) for role in roles)
        now = self._clock()
        cached = self._roles.get(key)
        if cached is not None and now - cached[0] < self.ttl_seconds:
            return list(cached[1])

        recipients = await self.inner.get_recipients_by_role(key)
        self._roles[key] = (now, list(recipients))
        for recipient in recipients:
            self._recipients[recipient.id] = (now, recipient)
        return list(recipients)

    def invalidate(self, recipient_id: Optional[str] = None) -> None:
        if recipient_id is None:
            self._recipients.clear()
        else:
            self._recipients.pop(recipient_id, None)
        self._roles.clear()
