import tempfile
from pathlib import Path

from promptcraft.agents.chat_session import ChatSessionController
from promptcraft.infrastructure.storage.quota_store import AnonymousQuotaStore
from promptcraft.prompts import PERSONA_VERSION, load_system_prompt


def test_load_system_prompt_falls_back_to_en():
    persona = load_system_prompt("en")
    assert "PromptCraft" in persona
    assert load_system_prompt("xx") == persona


def test_controller_tags_default_persona_version():
    with tempfile.TemporaryDirectory() as d:
        quota = AnonymousQuotaStore(path=Path(d) / "local_state.json")
        assert ChatSessionController(generator=None, quota=quota).persona_version == PERSONA_VERSION
        custom = ChatSessionController(generator=None, quota=quota, persona="be brief")
        assert custom.persona_version == "custom"
