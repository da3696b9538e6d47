"""
Automatic lorebook maintenance.

Entities found in chat messages are kept in a per-chat entity database and
mirrored as lorebook (world info) entries. The manager also keeps the
"Core Memories" entry and can seed a chat's lorebook from a character card
with the LLM.
"""

import hashlib
import json
import re
import time
from datetime import datetime
from typing import Dict, List, Any, Optional, Callable, Awaitable

from app.cache import LRUCache
from app.config_loader import CONFIG
from app.database import (
    db_get_entity, db_save_entity, db_delete_entity, db_get_entities, db_count_entities,
    db_get_or_create_lorebook, db_get_lorebook, db_save_lorebook_entry,
    db_find_lorebook_entry, db_delete_lorebook_entry,
)
from app.entity_extractor import extract_entities, clamp_confidence

CORE_MEMORIES_TITLE = "Core Memories"
CORE_MEMORIES_UID = "core_memories"
CORE_MEMORIES_KEYS = ["core_memories", "pivotal_events", "key_moments"]
CORE_MEMORIES_HEADER = "A collection of the most significant moments in the story."

RECENT_ACTIVITY_SECONDS = 24 * 60 * 60

LOREBOOK_GENERATION_SYSTEM = "You are an expert worldbuilding assistant. Reply with JSON only."

LOREBOOK_GENERATION_PROMPT = """Based on the following character information, create a comprehensive set of lorebook entries that would enhance roleplay sessions.

Character Information:
Name: {name}
Description: {description}
Personality: {personality}
Scenario: {scenario}
First Message: {first_mes}

Generate {min_entries}-{max_entries} lorebook entries covering:
1. Important people (friends, family, rivals, mentors)
2. Significant locations (hometown, workplace, hangouts, districts, regions)
3. Key items or objects (weapons, heirlooms, technology, artifacts)
4. Important concepts or lore elements (organizations, customs, phenomena)
5. Background events or history (conflicts, discoveries, traditions)

For each entry, provide:
- A clear, evocative title.
- Trigger keywords (3-5 relevant keywords including names).
- A detailed description (2-4 sentences) with rich, specific details.

Format your response as a single JSON object with a root key "entries", which is an array of entry objects. Each object must have "title", "keywords" (an array of strings) and "description" fields.

Example:
{{
  "entries": [
    {{
      "title": "The Crimson Blade",
      "keywords": ["Crimson Blade", "magic sword", "heirloom"],
      "description": "An ancient sword passed down through the character's family. It glows with a faint red light in the presence of danger."
    }}
  ]
}}"""

LLMGenerate = Callable[[str, str, int], Awaitable[str]]


def lorebook_name_for_chat(chat_id: str) -> str:
    return f"lorekeeper_{chat_id}"


def _entity_uid(name: str) -> str:
    return "entity_" + re.sub(r"\W+", "_", name.lower()).strip("_")


def _slugify(title: str) -> str:
    return re.sub(r"\W+", "_", title.lower()).strip("_") or "entry"


def _is_core_memory_line(line: str, text: str) -> bool:
    """Core memory lines read "- {timestamp}: {text}"."""
    return line.startswith("- ") and line.endswith(f": {text}")


def parse_lorebook_response(response: str) -> List[Dict[str, Any]]:
    """
    Parse the model's JSON reply into entries.

    Accepts a ```json fenced block or the outermost {...} object. Entries
    without a title or description are dropped; string keywords are split on
    commas. Returns [] when nothing parses.
    """
    if not response:
        return []

    fenced = re.search(r"```json\s*([\s\S]*?)\s*```", response)
    if fenced:
        json_string = fenced.group(1)
    else:
        first_brace = response.find('{')
        last_brace = response.rfind('}')
        if first_brace == -1 or last_brace <= first_brace:
            return []
        json_string = response[first_brace:last_brace + 1]

    try:
        parsed = json.loads(json_string.strip())
    except json.JSONDecodeError as e:
        print(f"[LOREBOOK] Could not parse generation response: {e}")
        return []

    if not isinstance(parsed, dict) or not isinstance(parsed.get("entries"), list):
        return []

    entries = []
    for raw in parsed["entries"]:
        if not isinstance(raw, dict):
            continue
        title = str(raw.get("title", "")).strip()
        description = str(raw.get("description", "")).strip()
        if not title or not description:
            continue
        keywords = raw.get("keywords", [])
        if isinstance(keywords, str):
            keywords = [k.strip() for k in keywords.split(',')]
        keywords = [str(k).strip() for k in keywords if str(k).strip()] or [title]
        entries.append({"title": title, "keywords": keywords, "description": description})

    return entries


def create_fallback_entries(character: Dict[str, Any]) -> List[Dict[str, Any]]:
    name = character.get("name") or "Unknown"
    return [{
        "title": f"{name} - Background",
        "keywords": [name],
        "description": character.get("description") or "No detailed background available."
    }]


class LorebookManager:
    """Entity database plus the lorebook entries that mirror it."""

    def __init__(self, generate: Optional[LLMGenerate] = None, config: Optional[Dict[str, Any]] = None):
        self.generate = generate
        self.config = config or CONFIG
        self.entity_config = self.config["entities"]
        # (chat_id, message hash) pairs already scanned
        self.scan_history = LRUCache(max_size=5000)

    # ------------------------------------------------------------------
    # Lorebook plumbing
    # ------------------------------------------------------------------

    def _lorebook_id(self, chat_id: str) -> Optional[int]:
        return db_get_or_create_lorebook(lorebook_name_for_chat(chat_id), chat_id)

    def get_lorebook(self, chat_id: str) -> Optional[Dict[str, Any]]:
        return db_get_lorebook(lorebook_name_for_chat(chat_id))

    # ------------------------------------------------------------------
    # Entity entries
    # ------------------------------------------------------------------

    def generate_entity_entry_content(self, entity: Dict[str, Any]) -> str:
        content = f"{entity['name']} is a {entity['type'].replace('_', ' ')}"

        context_texts = [
            ctx["text"] for ctx in entity.get("contexts", [])
            if ctx.get("text") and len(ctx["text"]) > 3
        ][:3]
        if context_texts:
            content += ". " + ". ".join(context_texts)

        content += f" (Discovered from roleplay conversation with {entity['confidence']:.2f} confidence)"

        max_length = self.entity_config["entity_entry_length"]
        if len(content) > max_length:
            content = content[:max_length - 3] + "..."
        return content

    def generate_entity_keywords(self, entity: Dict[str, Any]) -> List[str]:
        name = entity["name"]
        keywords = [name]

        if ' ' in name:
            if entity["type"] == "person":
                keywords.extend(name.split())
            keywords.append(name.split()[-1])

        keywords.append(name.lower())

        # dict.fromkeys keeps first-seen order
        return list(dict.fromkeys(keywords))

    def _save_entity_entry(self, chat_id: str, entity: Dict[str, Any]) -> bool:
        lorebook_id = self._lorebook_id(chat_id)
        if lorebook_id is None:
            return False
        entry = {
            "uid": _entity_uid(entity["name"]),
            "title": entity["lorebook_entry"],
            "key": self.generate_entity_keywords(entity),
            "content": self.generate_entity_entry_content(entity),
            "comment": f"Auto-discovered {entity['type']}",
            "selective": True,
            "metadata": {
                "entity_type": entity["type"],
                "confidence": entity["confidence"],
                "mentions": entity["mentions"],
                "source": "auto_lorebook"
            }
        }
        return db_save_lorebook_entry(lorebook_id, entry)

    # ------------------------------------------------------------------
    # Entity processing
    # ------------------------------------------------------------------

    def process_entity(self, entity: Dict[str, Any], source_text: str = "",
                       source_message: Optional[Dict[str, Any]] = None,
                       chat_id: str = "global") -> bool:
        """
        Create or update the stored entity for an extracted candidate.

        Returns:
            True if an entity was created or updated.
        """
        existing = db_get_entity(chat_id, entity["name"])
        if existing:
            return self._update_existing_entity(chat_id, existing, entity)

        if entity["confidence"] < self.entity_config["creation_threshold"]:
            return False

        if db_count_entities(chat_id) >= self.entity_config["max_auto_entries"]:
            print(f"[ENTITY] Entity limit reached for {chat_id}, skipping {entity['name']}")
            return False

        now = time.time()
        source_id = None
        if source_message:
            source_id = source_message.get("id")
            source_id = str(source_id) if source_id is not None else source_message.get("content", "")[:200]

        record = {
            "name": entity["name"],
            "type": entity["type"],
            "confidence": clamp_confidence(entity["confidence"]),
            "contexts": list(entity.get("context", []))[-self.entity_config["max_contexts"]:],
            "mentions": 1,
            "created": now,
            "last_seen": now,
            "lorebook_entry": f"{entity['name']} - {entity['type']}",
            "source_message": source_id,
        }

        if not db_save_entity(chat_id, record):
            return False

        self._save_entity_entry(chat_id, record)
        print(f"[ENTITY] New {record['type']}: {record['name']} ({record['confidence']:.2f})")
        return True

    def _update_existing_entity(self, chat_id: str, existing: Dict[str, Any], entity: Dict[str, Any]) -> bool:
        mentions = existing.get("mentions", 0) + 1
        existing["mentions"] = mentions
        existing["confidence"] = clamp_confidence(
            (existing["confidence"] * (mentions - 1) + entity["confidence"]) / mentions
        )

        contexts = existing.get("contexts", [])
        known_texts = {ctx.get("text") for ctx in contexts}
        added_context = False
        for ctx in entity.get("context", []):
            if ctx.get("text") not in known_texts:
                contexts.append(ctx)
                known_texts.add(ctx.get("text"))
                added_context = True
        existing["contexts"] = contexts[-self.entity_config["max_contexts"]:]
        existing["last_seen"] = time.time()

        if not db_save_entity(chat_id, existing):
            return False

        if added_context or entity["confidence"] > existing["confidence"] + 0.1:
            self._save_entity_entry(chat_id, existing)

        return True

    @staticmethod
    def _message_hash(message: Dict[str, Any]) -> str:
        raw = f"{message.get('content', '')}_{message.get('id', '')}"
        return hashlib.md5(raw.encode('utf-8')).hexdigest()

    def scan_message(self, message: Dict[str, Any], chat_id: str = "global") -> int:
        """Extract and process entities from a single message."""
        if not self.entity_config["enabled"]:
            return 0

        content = message.get("content") if message else None
        if not content:
            return 0

        processed = 0
        for entity in extract_entities(content):
            if self.process_entity(entity, content, message, chat_id):
                processed += 1
        return processed

    def scan_messages(self, messages: List[Dict[str, Any]], chat_id: str = "global") -> int:
        """Scan a batch, skipping messages already scanned for this chat."""
        processed = 0
        for message in messages:
            history_key = (chat_id, self._message_hash(message))
            if history_key in self.scan_history:
                continue
            processed += self.scan_message(message, chat_id)
            self.scan_history.put(history_key, True)

        if processed:
            print(f"[ENTITY] Processed {processed} entity mentions in {chat_id}")
        return processed

    # ------------------------------------------------------------------
    # Lookup and maintenance
    # ------------------------------------------------------------------

    def get_entity(self, name: str, chat_id: str = "global") -> Optional[Dict[str, Any]]:
        return db_get_entity(chat_id, name)

    def list_entities(self, chat_id: str = "global", entity_type: Optional[str] = None,
                      min_confidence: Optional[float] = None) -> List[Dict[str, Any]]:
        return db_get_entities(chat_id, entity_type, min_confidence)

    def delete_entity(self, name: str, chat_id: str = "global") -> bool:
        if not db_delete_entity(chat_id, name):
            return False
        lorebook_id = self._lorebook_id(chat_id)
        if lorebook_id is not None:
            db_delete_lorebook_entry(lorebook_id, _entity_uid(name))
        return True

    def get_entity_statistics(self, chat_id: str = "global") -> Dict[str, Any]:
        entities = db_get_entities(chat_id)
        now = time.time()

        by_type: Dict[str, int] = {}
        for entity in entities:
            by_type[entity["type"]] = by_type.get(entity["type"], 0) + 1

        total = len(entities)
        return {
            "total": total,
            "by_type": by_type,
            "average_confidence": sum(e["confidence"] for e in entities) / total if total else 0.0,
            "total_mentions": sum(e["mentions"] for e in entities),
            "recently_active": sum(
                1 for e in entities if e["last_seen"] and now - e["last_seen"] < RECENT_ACTIVITY_SECONDS
            ),
        }

    def merge_duplicate_entities(self, chat_id: str = "global") -> List[Dict[str, Any]]:
        """
        Fold longer names into the shortest name they contain.

        "Elara Moonwhisper" merges into "Elara". Mentions are summed, contexts
        are deduplicated by text and confidence becomes the mention-weighted
        average.
        """
        entities = sorted(db_get_entities(chat_id), key=lambda e: len(e["name"]))
        processed = set()
        merges = []

        for i, primary in enumerate(entities):
            primary_key = primary["name"].lower()
            if primary_key in processed:
                continue

            duplicates = [
                other for other in entities[i + 1:]
                if other["name"].lower() not in processed
                and other["name"].lower() != primary_key
                and primary_key in other["name"].lower()
            ]
            if not duplicates:
                continue

            group = [primary] + duplicates
            total_mentions = sum(e["mentions"] for e in group)
            weighted = sum(e["confidence"] * e["mentions"] for e in group)

            contexts = []
            seen_texts = set()
            for member in group:
                for ctx in member.get("contexts", []):
                    if ctx.get("text") not in seen_texts:
                        seen_texts.add(ctx.get("text"))
                        contexts.append(ctx)

            primary["mentions"] = total_mentions
            primary["confidence"] = clamp_confidence(weighted / total_mentions if total_mentions else primary["confidence"])
            primary["contexts"] = contexts[-self.entity_config["max_contexts"]:]
            primary["last_seen"] = max(e["last_seen"] or 0 for e in group)

            db_save_entity(chat_id, primary)
            self._save_entity_entry(chat_id, primary)

            for duplicate in duplicates:
                self.delete_entity(duplicate["name"], chat_id)
                processed.add(duplicate["name"].lower())
            processed.add(primary_key)

            merges.append({
                "primary": primary["name"],
                "merged": [d["name"] for d in duplicates],
                "mentions": total_mentions,
            })
            print(f"[ENTITY] Merged {', '.join(d['name'] for d in duplicates)} into {primary['name']}")

        return merges

    # ------------------------------------------------------------------
    # Core memories
    # ------------------------------------------------------------------

    def _core_memories_entry(self, chat_id: str, create: bool = True):
        lorebook_id = self._lorebook_id(chat_id)
        if lorebook_id is None:
            return None, None
        entry = db_find_lorebook_entry(lorebook_id, CORE_MEMORIES_TITLE)
        if entry is None and create:
            entry = {
                "uid": CORE_MEMORIES_UID,
                "title": CORE_MEMORIES_TITLE,
                "key": list(CORE_MEMORIES_KEYS),
                "content": CORE_MEMORIES_HEADER,
                "comment": "Pivotal moments collected from summaries",
                "constant": False,
                "selective": True,
                "order": 1,
            }
        return lorebook_id, entry

    def add_core_memory(self, text: str, chat_id: str = "global", timestamp: Optional[str] = None,
                        replaces: Optional[str] = None) -> bool:
        """
        Append a pivotal moment to the chat's Core Memories entry.

        A memory already in the entry is not added twice. When replaces is
        given, that older memory's line is dropped first.
        """
        if not text or not text.strip():
            return False
        text = text.strip()

        lorebook_id, entry = self._core_memories_entry(chat_id)
        if lorebook_id is None:
            return False

        lines = entry["content"].split("\n")
        if replaces and replaces.strip() != text:
            lines = [line for line in lines if not _is_core_memory_line(line, replaces.strip())]
        if not any(_is_core_memory_line(line, text) for line in lines):
            timestamp = timestamp or datetime.now().strftime("%Y-%m-%d %H:%M")
            lines.append(f"- {timestamp}: {text}")

        content = "\n".join(lines)
        if content == entry["content"]:
            return True
        entry["content"] = content
        saved = db_save_lorebook_entry(lorebook_id, entry)
        if saved:
            print(f"[LOREBOOK] Core memory recorded for {chat_id}")
        return saved

    def remove_core_memory(self, text: str, chat_id: str = "global") -> bool:
        """Drop a memory's line from the Core Memories entry. Returns True when one was removed."""
        if not text or not text.strip():
            return False

        lorebook_id, entry = self._core_memories_entry(chat_id, create=False)
        if entry is None:
            return False

        lines = entry["content"].split("\n")
        kept = [line for line in lines if not _is_core_memory_line(line, text.strip())]
        if len(kept) == len(lines):
            return False

        entry["content"] = "\n".join(kept)
        removed = db_save_lorebook_entry(lorebook_id, entry)
        if removed:
            print(f"[LOREBOOK] Core memory withdrawn for {chat_id}")
        return removed

    # ------------------------------------------------------------------
    # Initial generation
    # ------------------------------------------------------------------

    def build_generation_prompt(self, character: Dict[str, Any]) -> str:
        lorebook_config = self.config["lorebook"]
        return LOREBOOK_GENERATION_PROMPT.format(
            name=character.get("name") or "Unknown",
            description=character.get("description") or "No description",
            personality=character.get("personality") or "No personality defined",
            scenario=character.get("scenario") or "No scenario defined",
            first_mes=character.get("first_mes") or "No first message",
            min_entries=lorebook_config["min_entries"],
            max_entries=lorebook_config["max_entries"],
        )

    async def generate_initial_lorebook(self, character: Dict[str, Any], chat_id: str) -> Dict[str, Any]:
        """
        Seed a chat's lorebook from a character card.

        Falls back to a single background entry when the LLM is unavailable
        or its reply cannot be parsed.
        """
        entries: List[Dict[str, Any]] = []
        used_fallback = False

        if self.generate is not None:
            try:
                response = await self.generate(
                    LOREBOOK_GENERATION_SYSTEM, self.build_generation_prompt(character), 2048
                )
                entries = parse_lorebook_response(response)
            except Exception as e:
                print(f"[LOREBOOK] Generation failed: {e}")

        if not entries:
            print("[LOREBOOK] No entries parsed, using fallback")
            entries = create_fallback_entries(character)
            used_fallback = True

        lorebook_id = self._lorebook_id(chat_id)
        if lorebook_id is None:
            return {"success": False, "created": 0, "entries": [], "fallback": used_fallback}

        created = 0
        for order, entry in enumerate(entries):
            stored = {
                "uid": f"gen_{_slugify(entry['title'])}",
                "title": entry["title"],
                "key": entry["keywords"],
                "content": entry["description"],
                "comment": entry["title"],
                "order": 100 + order,
                "metadata": {"source": "initial_generation"},
            }
            if db_save_lorebook_entry(lorebook_id, stored):
                created += 1

        print(f"[LOREBOOK] Created {created}/{len(entries)} entries for {chat_id}")
        return {"success": created > 0, "created": created, "entries": entries, "fallback": used_fallback}
