from __future__ import annotations

import logging

from perkforge.config import Settings, configure_logging
from perkforge.db.remote import GistDocumentStore, RemoteSync
from perkforge.db.store import Store
from perkforge.discord_bot import run_discord_bot
from perkforge.engine.session import ForgeSession
from perkforge.llm.client import LLMClient


def build_session(settings: Settings) -> ForgeSession:
    store = Store(settings.db_path)
    remote = RemoteSync(GistDocumentStore(settings) if settings.remote_enabled else None)
    return ForgeSession(settings, store, remote=remote, llm=LLMClient(settings, store=store))


def main() -> None:
    settings = Settings()
    configure_logging(settings.dev_mode)
    logging.getLogger(__name__).info("app_start %s", settings.redacted())
    session = build_session(settings)
    run_discord_bot(session, settings)


if __name__ == "__main__":
    main()
