"""
Tests for the entity database and lorebook entries in app/lorebook_manager.py
"""

import json
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _entity(name, entity_type="person", confidence=0.9, context=None):
    return {"name": name, "type": entity_type, "confidence": confidence, "context": context or []}


@pytest.fixture
def manager(temp_db, config):
    from app.lorebook_manager import LorebookManager
    return LorebookManager(config=config)


class TestProcessEntity:
    """Tests for entity creation and updates."""

    def test_low_confidence_is_not_created(self, manager):
        assert manager.process_entity(_entity("Elara", confidence=0.5), chat_id="chat1") is False
        assert manager.get_entity("Elara", "chat1") is None

    def test_creates_entity_and_entry(self, manager):
        """A confident new entity gets a record and a lorebook entry."""
        assert manager.process_entity(_entity("Elara"), "Elara smiled.", {"id": 7}, "chat1") is True

        entity = manager.get_entity("Elara", "chat1")
        assert entity["mentions"] == 1
        assert entity["lorebook_entry"] == "Elara - person"
        assert entity["source_message"] == "7"

        entry = manager.get_lorebook("chat1")["entries"]["entity_elara"]
        assert entry["title"] == "Elara - person"
        assert entry["content"].startswith("Elara is a person")
        assert "0.90 confidence" in entry["content"]
        assert entry["metadata"]["source"] == "auto_lorebook"

    def test_update_averages_confidence(self, manager):
        manager.process_entity(_entity("Elara", confidence=0.9), chat_id="chat1")
        manager.process_entity(_entity("Elara", confidence=0.7), chat_id="chat1")

        entity = manager.get_entity("Elara", "chat1")
        assert entity["mentions"] == 2
        assert entity["confidence"] == pytest.approx(0.8)

    def test_update_adds_new_context_to_entry(self, manager):
        context = [{"type": "description", "text": "is the keeper of Elara's secrets", "confidence": 0.8}]
        manager.process_entity(_entity("Elara"), chat_id="chat1")
        manager.process_entity(_entity("Elara", context=context), chat_id="chat1")

        entry = manager.get_lorebook("chat1")["entries"]["entity_elara"]
        assert "keeper of Elara's secrets" in entry["content"]

    def test_entry_refreshes_on_confidence_jump(self, manager):
        """Without new context the entry is rewritten only when the mention beats the new average by 0.1."""
        manager.process_entity(_entity("Elara", confidence=0.8), chat_id="chat1")
        manager.process_entity(_entity("Elara", confidence=0.8), chat_id="chat1")

        entry = manager.get_lorebook("chat1")["entries"]["entity_elara"]
        assert manager.get_entity("Elara", "chat1")["mentions"] == 2
        assert entry["metadata"]["mentions"] == 1

        manager.process_entity(_entity("Elara", confidence=1.0), chat_id="chat1")

        entry = manager.get_lorebook("chat1")["entries"]["entity_elara"]
        assert entry["metadata"]["mentions"] == 3
        assert entry["metadata"]["confidence"] == pytest.approx(2.6 / 3)

    def test_entity_limit(self, temp_db, config):
        from app.lorebook_manager import LorebookManager
        config["entities"]["max_auto_entries"] = 1
        manager = LorebookManager(config=config)

        assert manager.process_entity(_entity("Elara"), chat_id="chat1") is True
        assert manager.process_entity(_entity("Kael"), chat_id="chat1") is False

    def test_entity_type_in_content_uses_spaces(self, manager):
        manager.process_entity(_entity("K'thar", entity_type="fantasy_apostrophe"), chat_id="chat1")
        entries = manager.get_lorebook("chat1")["entries"]
        content = next(iter(entries.values()))["content"]
        assert content.startswith("K'thar is a fantasy apostrophe")

    def test_content_is_truncated(self, temp_db, config):
        from app.lorebook_manager import LorebookManager
        config["entities"]["entity_entry_length"] = 40
        manager = LorebookManager(config=config)

        content = manager.generate_entity_entry_content(
            {"name": "Elara", "type": "person", "confidence": 0.9, "contexts": []}
        )
        assert len(content) == 40
        assert content.endswith("...")


class TestKeywords:
    """Tests for entry trigger keywords."""

    def test_person_with_full_name(self, manager):
        keywords = manager.generate_entity_keywords({"name": "Elara Moonwhisper", "type": "person"})
        assert keywords == ["Elara Moonwhisper", "Elara", "Moonwhisper", "elara moonwhisper"]

    def test_place_with_full_name(self, manager):
        keywords = manager.generate_entity_keywords({"name": "Silver Wood", "type": "place"})
        assert keywords == ["Silver Wood", "Wood", "silver wood"]


class TestScanning:
    """Tests for scanning chat messages."""

    def test_scan_message_creates_entities(self, manager):
        message = {"id": 1, "content": "Elara said she would travel to Silverwood."}
        assert manager.scan_message(message, "chat1") > 0
        assert manager.get_entity("Elara", "chat1") is not None

    def test_rescan_is_skipped(self, manager):
        message = {"id": 1, "content": "Elara said she would travel to Silverwood."}
        manager.scan_messages([message], "chat1")
        mentions = manager.get_entity("Elara", "chat1")["mentions"]

        assert manager.scan_messages([message], "chat1") == 0
        assert manager.get_entity("Elara", "chat1")["mentions"] == mentions

    def test_disabled_scanning(self, temp_db, config):
        from app.lorebook_manager import LorebookManager
        config["entities"]["enabled"] = False
        manager = LorebookManager(config=config)
        assert manager.scan_message({"content": "Elara said she would go."}, "chat1") == 0


class TestMaintenance:
    """Tests for delete, statistics and merging."""

    def test_delete_removes_entry(self, manager):
        manager.process_entity(_entity("Elara"), chat_id="chat1")
        assert manager.delete_entity("Elara", "chat1") is True
        assert "entity_elara" not in manager.get_lorebook("chat1")["entries"]
        assert manager.delete_entity("Elara", "chat1") is False

    def test_statistics(self, manager):
        manager.process_entity(_entity("Elara", confidence=0.9), chat_id="chat1")
        manager.process_entity(_entity("Silverwood", "place", confidence=0.8), chat_id="chat1")

        stats = manager.get_entity_statistics("chat1")
        assert stats["total"] == 2
        assert stats["by_type"] == {"person": 1, "place": 1}
        assert stats["average_confidence"] == pytest.approx(0.85)
        assert stats["recently_active"] == 2

    def test_merge_folds_longer_names(self, manager):
        manager.process_entity(_entity("Elara"), chat_id="chat1")
        manager.process_entity(_entity("Elara"), chat_id="chat1")
        manager.process_entity(_entity("Elara Moonwhisper"), chat_id="chat1")

        merges = manager.merge_duplicate_entities("chat1")

        assert merges == [{"primary": "Elara", "merged": ["Elara Moonwhisper"], "mentions": 3}]
        assert manager.get_entity("Elara Moonwhisper", "chat1") is None
        assert manager.get_entity("Elara", "chat1")["mentions"] == 3


class TestCoreMemories:
    """Tests for the Core Memories entry."""

    def test_core_memories_accumulate(self, manager):
        assert manager.add_core_memory("Elara swore an oath.", "chat1", "2024-01-01 10:00")
        assert manager.add_core_memory("The tower fell.", "chat1", "2024-01-02 10:00")

        entry = manager.get_lorebook("chat1")["entries"]["core_memories"]
        assert entry["title"] == "Core Memories"
        assert entry["content"].splitlines() == [
            "A collection of the most significant moments in the story.",
            "- 2024-01-01 10:00: Elara swore an oath.",
            "- 2024-01-02 10:00: The tower fell.",
        ]

    def test_blank_core_memory_rejected(self, manager):
        assert manager.add_core_memory("   ", "chat1") is False

    def test_same_memory_recorded_once(self, manager):
        manager.add_core_memory("Elara swore an oath.", "chat1", "2024-01-01 10:00")
        assert manager.add_core_memory("Elara swore an oath.", "chat1", "2024-01-03 10:00")

        content = manager.get_lorebook("chat1")["entries"]["core_memories"]["content"]
        assert content.count("Elara swore an oath.") == 1
        assert "2024-01-03" not in content

    def test_replaced_memory_is_dropped(self, manager):
        """A rewritten memory takes the place of the one it replaces."""
        manager.add_core_memory("Elara swore an oath.", "chat1", "2024-01-01 10:00")
        manager.add_core_memory("The tower fell.", "chat1", "2024-01-02 10:00")
        manager.add_core_memory("Elara broke her oath.", "chat1", "2024-01-03 10:00",
                                replaces="Elara swore an oath.")

        entry = manager.get_lorebook("chat1")["entries"]["core_memories"]
        assert entry["content"].splitlines()[1:] == [
            "- 2024-01-02 10:00: The tower fell.",
            "- 2024-01-03 10:00: Elara broke her oath.",
        ]

    def test_remove_core_memory(self, manager):
        manager.add_core_memory("Elara swore an oath.", "chat1", "2024-01-01 10:00")
        manager.add_core_memory("The tower fell.", "chat1", "2024-01-02 10:00")

        assert manager.remove_core_memory("Elara swore an oath.", "chat1") is True
        assert manager.remove_core_memory("Elara swore an oath.", "chat1") is False

        content = manager.get_lorebook("chat1")["entries"]["core_memories"]["content"]
        assert content.splitlines() == [
            "A collection of the most significant moments in the story.",
            "- 2024-01-02 10:00: The tower fell.",
        ]

    def test_remove_without_entry(self, manager):
        assert manager.remove_core_memory("Nothing here.", "chat1") is False


class TestInitialGeneration:
    """Tests for seeding a lorebook from a character card."""

    CHARACTER = {"name": "Elara", "description": "A ranger of the northern woods."}

    def test_parse_fenced_response(self):
        from app.lorebook_manager import parse_lorebook_response
        payload = {"entries": [
            {"title": "Silverwood", "keywords": "forest, woods", "description": "An old forest."},
            {"title": "", "keywords": [], "description": "dropped"},
        ]}
        entries = parse_lorebook_response(f"Sure!\n```json\n{json.dumps(payload)}\n```")

        assert entries == [{"title": "Silverwood", "keywords": ["forest", "woods"], "description": "An old forest."}]

    def test_parse_garbage(self):
        from app.lorebook_manager import parse_lorebook_response
        assert parse_lorebook_response("no json here") == []
        assert parse_lorebook_response("{not: valid}") == []

    @pytest.mark.asyncio
    async def test_generation_stores_entries(self, temp_db, config, scripted_llm):
        from app.lorebook_manager import LorebookManager
        reply = json.dumps({"entries": [
            {"title": "Silverwood", "keywords": ["Silverwood"], "description": "An old forest."},
            {"title": "The Oath", "keywords": ["oath"], "description": "A ranger's vow."},
        ]})
        llm = scripted_llm(reply)
        manager = LorebookManager(generate=llm, config=config)

        result = await manager.generate_initial_lorebook(self.CHARACTER, "chat1")

        assert result["success"] is True
        assert result["created"] == 2
        assert result["fallback"] is False
        assert "Elara" in llm.calls[0]["user"]
        entries = manager.get_lorebook("chat1")["entries"]
        assert set(entries) == {"gen_silverwood", "gen_the_oath"}

    @pytest.mark.asyncio
    async def test_generation_falls_back(self, temp_db, config, scripted_llm):
        from app.lorebook_manager import LorebookManager
        manager = LorebookManager(generate=scripted_llm(Exception("API Error: offline")), config=config)

        result = await manager.generate_initial_lorebook(self.CHARACTER, "chat1")

        assert result["fallback"] is True
        assert result["entries"][0]["title"] == "Elara - Background"
        assert result["entries"][0]["description"] == "A ranger of the northern woods."
