from __future__ import annotations

import json
import logging
import re
import threading
from typing import Any, Callable

import requests

from perkforge.config import Settings

log = logging.getLogger(__name__)

CATALOG_FILENAME = "forge_perk_database.json"
PROFILE_FILE_PREFIX = "forge_profile_"
PROFILE_FILE_SUFFIX = ".json"
LEGACY_STATE_FILENAME = "celestial_forge_state.json"


class RemoteStoreError(RuntimeError):
    pass


def sanitize_profile_name(name: str) -> str:
    cleaned = re.sub(r"[^a-z0-9_-]+", "_", name.strip().lower()).strip("_")
    return cleaned or "default"


def profile_filename(profile: str) -> str:
    return f"{PROFILE_FILE_PREFIX}{sanitize_profile_name(profile)}{PROFILE_FILE_SUFFIX}"


class GistDocumentStore:
    """One remote gist treated as a mutable multi-file document."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _url(self) -> str:
        if not self.settings.gist_id:
            raise RemoteStoreError("gist_id_missing")
        return f"{self.settings.gist_api_url}/gists/{self.settings.gist_id}"

    def _headers(self) -> dict[str, str]:
        token = self.settings.github_token
        if not token:
            raise RemoteStoreError("github_token_missing")
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "Content-Type": "application/json",
        }

    def read_files(self) -> dict[str, str]:
        try:
            response = requests.get(self._url(), headers=self._headers(), timeout=self.settings.remote_timeout)
        except requests.RequestException as exc:
            raise RemoteStoreError(f"gist_fetch_failed {exc}") from exc
        if response.status_code != 200:
            raise RemoteStoreError(f"gist_http_{response.status_code}")
        files = response.json().get("files") or {}
        contents: dict[str, str] = {}
        for name, meta in files.items():
            if isinstance(meta, dict) and isinstance(meta.get("content"), str):
                contents[name] = meta["content"]
        return contents

    def patch_files(self, files: dict[str, str]) -> None:
        body = {"files": {name: {"content": content} for name, content in files.items()}}
        try:
            response = requests.patch(
                self._url(),
                headers=self._headers(),
                data=json.dumps(body),
                timeout=self.settings.remote_timeout,
            )
        except requests.RequestException as exc:
            raise RemoteStoreError(f"gist_patch_failed {exc}") from exc
        if response.status_code not in {200, 201}:
            raise RemoteStoreError(f"gist_http_{response.status_code}")


class RemoteSync:
    """Coalescing queue of whole-file patches pushed after local writes."""

    def __init__(
        self,
        client: GistDocumentStore | Any | None,
        scheduler: Callable[[Callable[[], None]], None] | None = None,
    ) -> None:
        self.client = client
        self.scheduler = scheduler
        self.last_error: str | None = None
        self._pending: dict[str, str] = {}
        self._scheduled = False
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.client is not None

    @property
    def pending_files(self) -> list[str]:
        with self._lock:
            return sorted(self._pending)

    def enqueue(self, filename: str, document: dict[str, Any]) -> None:
        if self.client is None:
            return
        content = json.dumps(document, indent=2, sort_keys=True)
        with self._lock:
            self._pending[filename] = content
            schedule = self.scheduler is not None and not self._scheduled
            self._scheduled = self._scheduled or schedule
        if schedule:
            self.scheduler(self._scheduled_flush)

    def _scheduled_flush(self) -> None:
        with self._lock:
            self._scheduled = False
        self.flush()

    def flush(self) -> bool:
        if self.client is None:
            return True
        with self._lock:
            batch = dict(self._pending)
            self._pending.clear()
        if not batch:
            return True
        try:
            self.client.patch_files(batch)
        except Exception as exc:
            log.warning("remote_sync_failed files=%s", sorted(batch), exc_info=True)
            self.last_error = str(exc)
            with self._lock:
                for name, content in batch.items():
                    self._pending.setdefault(name, content)
            return False
        self.last_error = None
        log.info("remote_sync_ok files=%s", sorted(batch))
        return True

    def fetch(self) -> dict[str, str]:
        if self.client is None:
            return {}
        try:
            files = self.client.read_files()
        except Exception as exc:
            log.warning("remote_fetch_failed", exc_info=True)
            self.last_error = str(exc)
            return {}
        self.last_error = None
        return files
