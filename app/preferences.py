"""
Operator preferences persisted in the key-value store.

Each staff member keeps their own staff phone number and recording toggle.
The administrator's values are the organisation default, used by anyone
who has not saved their own. Environment settings fill in the rest.
"""

from __future__ import annotations

import json
from typing import Optional

import structlog
from pydantic import ValidationError

from app.config import Settings
from app.database import KeyValueStore
from app.errors import SchemaVersionError
from app.models import Preferences

log = structlog.get_logger(__name__)

PREFERENCES_KEY = "preferences"
_VERSION = 1


def preferences_key(operator: Optional[str] = None) -> str:
    return f"{PREFERENCES_KEY}:{operator}" if operator else PREFERENCES_KEY


class PreferenceStore:
    def __init__(self, store: KeyValueStore, settings: Settings):
        self.store = store
        self.settings = settings

    def defaults(self) -> Preferences:
        return Preferences(
            staff_phone_number=self.settings.staff_phone_number,
            recording_enabled=self.settings.recording_enabled,
        )

    async def _read(self, key: str) -> Optional[Preferences]:
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            envelope = json.loads(raw)
            if envelope.get("schema_version") != _VERSION:
                raise SchemaVersionError(key, envelope.get("schema_version"), _VERSION)
            return Preferences.model_validate(envelope["data"])
        except (json.JSONDecodeError, KeyError, AttributeError, ValidationError) as e:
            raise SchemaVersionError(key, None, _VERSION, "is not a valid preferences record") from e

    async def load(self, operator: Optional[str] = None) -> Preferences:
        """Effective preferences for ``operator`` (or the organisation default)."""
        if operator:
            own = await self._read(preferences_key(operator))
            if own is not None:
                return own
        shared = await self._read(PREFERENCES_KEY)
        return shared if shared is not None else self.defaults()

    async def save(self, prefs: Preferences, operator: Optional[str] = None) -> Preferences:
        payload = {"schema_version": _VERSION, "data": prefs.model_dump()}
        await self.store.set(preferences_key(operator), json.dumps(payload))
        log.info(
            "preferences_saved",
            operator=operator or "default",
            recording_enabled=prefs.recording_enabled,
        )
        return prefs
