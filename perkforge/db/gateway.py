from __future__ import annotations

import json
import logging
from typing import Any, Callable

from pydantic import ValidationError

from perkforge.db.migrations import SCHEMA_VERSION, SchemaMigrationError, migrate_state_document
from perkforge.db.remote import CATALOG_FILENAME, LEGACY_STATE_FILENAME, RemoteSync, profile_filename
from perkforge.db.store import Store
from perkforge.models.catalog import PerkDatabase
from perkforge.models.perks import CharacterState
from perkforge.models.session import RollSession

log = logging.getLogger(__name__)

GLOBAL_KEY = "global"
CATALOG_KEY = "catalog"
PROFILE_PREFIX = "profile:"
CHAT_PREFIX = "chat:"
ACTIVE_PROFILE_META = "active_profile"


def state_to_document(state: CharacterState) -> dict[str, Any]:
    return {"version": SCHEMA_VERSION, "state": state.model_dump(mode="json")}


def state_from_document(document: dict[str, Any]) -> CharacterState:
    migrated = migrate_state_document(document)
    return CharacterState.model_validate(migrated["state"])


class PersistenceGateway:
    def __init__(self, store: Store, remote: RemoteSync | None = None) -> None:
        self.store = store
        self.remote = remote or RemoteSync(None)

    @staticmethod
    def state_keys(conversation_id: str | None, profile: str | None) -> list[str]:
        keys: list[str] = []
        if profile:
            keys.append(f"{PROFILE_PREFIX}{profile}")
        if conversation_id:
            keys.append(f"{CHAT_PREFIX}{conversation_id}")
        keys.append(GLOBAL_KEY)
        return keys

    def load_state(
        self,
        conversation_id: str | None,
        profile: str | None,
        default: Callable[[], CharacterState] = CharacterState,
    ) -> CharacterState:
        for key in self.state_keys(conversation_id, profile):
            document = self.store.get_document(key)
            if document is None:
                continue
            try:
                state = state_from_document(document)
            except (SchemaMigrationError, ValidationError):
                log.warning("state_load_failed key=%s", key, exc_info=True)
                continue
            log.info("state_loaded key=%s perks=%s", key, len(state.acquired_perks))
            return state
        remote_state = self._load_remote_state(profile)
        if remote_state is not None:
            return remote_state
        log.info("state_fresh conversation=%s profile=%s", conversation_id, profile)
        return default()

    def save_state(self, state: CharacterState, conversation_id: str | None, profile: str | None) -> None:
        document = state_to_document(state)
        key = self.state_keys(conversation_id, profile)[0]
        self.store.put_document(key, document)
        if profile:
            self.remote.enqueue(profile_filename(profile), document)

    def _load_remote_state(self, profile: str | None) -> CharacterState | None:
        if not self.remote.enabled:
            return None
        files = self.remote.fetch()
        candidates = []
        if profile:
            candidates.append(profile_filename(profile))
        candidates.append(LEGACY_STATE_FILENAME)
        for filename in candidates:
            raw = files.get(filename)
            if not raw:
                continue
            try:
                state = state_from_document(json.loads(raw))
            except (json.JSONDecodeError, SchemaMigrationError, ValidationError):
                log.warning("remote_state_invalid file=%s", filename, exc_info=True)
                continue
            log.info("state_loaded_remote file=%s", filename)
            return state
        return None

    # ---------- profiles ----------
    def list_profiles(self) -> list[str]:
        return [key[len(PROFILE_PREFIX) :] for key in self.store.list_document_keys(PROFILE_PREFIX)]

    def profile_exists(self, profile: str) -> bool:
        return self.store.has_document(f"{PROFILE_PREFIX}{profile}")

    def get_active_profile(self) -> str | None:
        value = self.store.get_meta(ACTIVE_PROFILE_META)
        return str(value) if value else None

    def set_active_profile(self, profile: str | None) -> None:
        self.store.set_meta(ACTIVE_PROFILE_META, profile)

    # ---------- catalog ----------
    def load_catalog(self) -> PerkDatabase | None:
        document = self.store.get_document(CATALOG_KEY)
        if document is None and self.remote.enabled:
            raw = self.remote.fetch().get(CATALOG_FILENAME)
            if raw:
                try:
                    document = json.loads(raw)
                except json.JSONDecodeError:
                    log.warning("remote_catalog_invalid", exc_info=True)
        if document is None:
            return None
        try:
            return PerkDatabase.model_validate(document)
        except ValidationError:
            log.warning("catalog_load_failed", exc_info=True)
            return None

    def save_catalog(self, database: PerkDatabase) -> None:
        document = database.model_dump(mode="json")
        self.store.put_document(CATALOG_KEY, document)
        self.remote.enqueue(CATALOG_FILENAME, document)

    # ---------- session-scoped values ----------
    @staticmethod
    def _scope(conversation_id: str | None) -> str:
        return f"{CHAT_PREFIX}{conversation_id or GLOBAL_KEY}"

    def load_roll_session(self, conversation_id: str | None) -> RollSession:
        raw = self.store.get_session_value(self._scope(conversation_id), "roll_session")
        if not isinstance(raw, dict):
            return RollSession()
        try:
            return RollSession.model_validate(raw)
        except ValidationError:
            log.warning("roll_session_invalid conversation=%s", conversation_id, exc_info=True)
            return RollSession()

    def save_roll_session(self, conversation_id: str | None, session: RollSession) -> None:
        scope = self._scope(conversation_id)
        if session.is_idle:
            self.store.delete_session_value(scope, "roll_session")
            return
        self.store.set_session_value(scope, "roll_session", session.model_dump(mode="json"))

    def get_last_sequence(self, conversation_id: str | None) -> int | None:
        value = self.store.get_session_value(self._scope(conversation_id), "last_sequence")
        return int(value) if isinstance(value, int) else None

    def set_last_sequence(self, conversation_id: str | None, sequence: int) -> None:
        self.store.set_session_value(self._scope(conversation_id), "last_sequence", sequence)
