from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from perkforge.commands import CommandHandler
from perkforge.config import Settings
from perkforge.db.store import Store
from perkforge.engine.session import ForgeSession
from perkforge.llm.client import LLMClient


def run() -> None:
    settings = Settings(db_path=":memory:", llm_json_backend="stub", cp_per_response=50)
    store = Store(settings.db_path)
    session = ForgeSession(
        settings,
        store,
        llm=LLMClient(settings, store=store),
        conversation_id="smoke",
        background=lambda fn: fn(),
    )
    commands = CommandHandler(session)

    for seq in range(1, 4):
        session.on_ai_message("The hammer rings out.", seq)
    assert session.tracker.state.total_points == 150
    assert commands.handle("!forge add Iron Skin | 100 | SCALING | Skin like forged iron.").ok
    assert session.on_ai_message("**Iron Skin** gains 15 XP from the bout.", 4).report.xp_applied
    assert session.tracker.state.find_perk("Iron Skin").scaling.level == 2

    assert commands.handle("!forge create magic | 2").ok
    outcome = session.on_ai_message(
        "**[Runic Anvil]** (150 CP) [SCALING]\n\nAn anvil that etches runes into anything struck upon it.",
        5,
    )
    assert outcome.generation is not None and outcome.generation.ok
    assert commands.handle("!forge acquire").ok
    assert session.tracker.state.banked_perks or session.tracker.state.find_perk("Runic Anvil")
    assert "```forge" in session.render_checkpoint()
    assert commands.handle("!forge status").ok
    print("smoke_test_passed")


if __name__ == "__main__":
    run()
