"""
Message summarization for long roleplay chats.

Messages are summarized in pairs as the chat grows. Each summary is cleaned,
quality-scored and checked for core-memory status before it is stored.
Stored summaries replace the raw messages once they fall outside the
running memory window (see context_interceptor) and feed the short/long-term
memory injection blocks.
"""

import hashlib
import re
import time
from typing import Dict, List, Any, Optional, Callable, Awaitable

from app.cache import LRUCache
from app.config_loader import CONFIG
from app.database import db_get_summaries, db_get_summary, db_save_summary
from app.memory_quality import (
    calculate_summary_quality, detect_core_memory_from_frequency,
    NgramFrequencyTracker, CORE_CONFIDENCE_THRESHOLD,
)

SUMMARY_TEMPLATES = {
    "conversation": "Summarize the following conversation section, focusing on key topics, decisions, and important information:",
    "narrative": "Provide a concise summary of this narrative section, highlighting main events and character actions:",
    "dialogue": "Summarize this dialogue section, capturing the main points and emotional context:",
    "description": "Condense this descriptive text while preserving important details:",
    "action": "Summarize this action sequence, focusing on outcomes and consequences:"
}

DEFAULT_PROMPT = """You are a summarization assistant. Summarize the given fictional narrative in a single, very short and concise statement of fact.

- Response must be in past tense
- Include character names when possible
- Maximum 200 characters
- Your response must ONLY contain the summary
- If this is a pivotal, extremely important moment, wrap your summary in <CORE_MEMORY> tags

Messages to summarize:
{{messages}}

Summary:"""

SUMMARY_SYSTEM_PROMPT = "You write short factual summaries of roleplay messages."

# Checked in this order; first hit wins
GROUP_TYPE_PATTERNS = [
    ("action", re.compile(r"\b(moves|walks|runs|attacks|casts|performs|does|action)\b")),
    ("dialogue", re.compile(r"[\"']|says?|tells?|asks?|replies?|responds?")),
    ("description", re.compile(r"\b(looks?|appears?|seems?|describes?|detailed?|beautiful)\b")),
    ("narrative", re.compile(r"\b(then|next|after|before|during|while|when)\b")),
]

IMPORTANT_KEYWORDS = re.compile(
    r"\b(important|critical|urgent|remember|note|decision|plan|goal|objective|key)\b", re.IGNORECASE
)

ARTIFACT_PREFIX = re.compile(r"^(Here's a summary|Summary:|In summary)", re.IGNORECASE)
CORE_MEMORY_TAG = re.compile(r"</?CORE_MEMORY>")
MIN_SUMMARY_LENGTH = 20
MAX_MESSAGE_CHARS = 1000

LLMGenerate = Callable[[str, str, int], Awaitable[str]]


def _content(message: Dict[str, Any]) -> str:
    return message.get("content") or message.get("mes") or ""


def message_hash(message: Dict[str, Any]) -> str:
    """Stable hash of a message's content and id for change detection."""
    raw = f"{_content(message)}_{message.get('id', '')}"
    return hashlib.md5(raw.encode('utf-8')).hexdigest()


def group_hash(messages: List[Dict[str, Any]]) -> str:
    combined = "".join(message_hash(m) for m in messages)
    return "summary_" + hashlib.md5(combined.encode('utf-8')).hexdigest()


def group_messages(messages: List[Dict[str, Any]], max_group_length: int = 2000,
                   min_group_size: int = 3) -> List[List[Dict[str, Any]]]:
    """
    Split messages into consecutive groups bounded by total character length.

    A group is closed only once it holds min_group_size messages, so a
    group can exceed max_group_length. A short trailing group joins the
    previous one, or is dropped when it is the only group.
    """
    groups: List[List[Dict[str, Any]]] = []
    current: List[Dict[str, Any]] = []
    current_length = 0

    for message in messages:
        length = len(_content(message))
        if current_length + length > max_group_length and len(current) >= min_group_size:
            groups.append(current)
            current = [message]
            current_length = length
        else:
            current.append(message)
            current_length += length

    if len(current) >= min_group_size:
        groups.append(current)
    elif groups and current:
        groups[-1].extend(current)

    return groups


def detect_group_type(messages: List[Dict[str, Any]]) -> str:
    combined = " ".join(_content(m).lower() for m in messages)
    for group_type, pattern in GROUP_TYPE_PATTERNS:
        if pattern.search(combined):
            return group_type
    return "conversation"


def format_messages_for_summarization(messages: List[Dict[str, Any]]) -> str:
    lines = []
    for index, message in enumerate(messages, start=1):
        role = "User" if message.get("role") == "user" else (message.get("name") or "Assistant")
        lines.append(f"[{index}] {role}: {_content(message)[:MAX_MESSAGE_CHARS]}")
    return "\n\n".join(lines)


def is_important(message: Dict[str, Any]) -> bool:
    content = _content(message)
    return (
        bool(IMPORTANT_KEYWORDS.search(content))
        or len(content) > 500
        or message.get("role") == "system"
    )


def calculate_priority(messages: List[Dict[str, Any]], now: Optional[float] = None) -> float:
    """Larger, more recent and more important groups are summarized first."""
    if not messages:
        return 0.0

    now = now if now is not None else time.time()
    priority = len(messages) * 10.0

    timestamps = [m["timestamp"] for m in messages if m.get("timestamp") is not None]
    if timestamps:
        avg_age_hours = sum(now - ts for ts in timestamps) / len(timestamps) / 3600
        priority += max(0.0, 100 - avg_age_hours)

    priority += sum(20 for m in messages if is_important(m))
    return priority


def clean_summary(raw: str, messages: List[Dict[str, Any]], max_length: int = 200) -> Optional[Dict[str, Any]]:
    """
    Strip model artifacts and enforce length bounds.

    Returns:
        {'text', 'tagged_core', 'metadata'} or None when the summary is too short.
    """
    if not raw or not isinstance(raw, str):
        return None

    text = ARTIFACT_PREFIX.sub("", raw.strip())
    text = re.sub(r"^[^\w<]*", "", text).strip()

    tagged_core = bool(re.search(r"<CORE_MEMORY>", text))
    text = CORE_MEMORY_TAG.sub("", text).strip()
    text = re.sub(r"^[^\w]*", "", text).strip()

    if len(text) < MIN_SUMMARY_LENGTH:
        print(f"[SUMMARY] Summary too short ({len(text)} chars), skipping")
        return None

    if len(text) > max_length:
        text = text[:max_length - 3] + "..."

    original_length = sum(len(_content(m)) for m in messages)
    return {
        "text": text,
        "tagged_core": tagged_core,
        "metadata": {
            "message_count": len(messages),
            "original_length": original_length,
            "summary_length": len(text),
            "compression_ratio": len(text) / max(1, original_length),
            "created": time.time()
        }
    }


class MessageSummarizer:
    def __init__(self, generate: Optional[LLMGenerate] = None,
                 lorebook_manager=None,
                 frequency_tracker: Optional[NgramFrequencyTracker] = None,
                 config: Optional[Dict[str, Any]] = None):
        self.generate = generate
        self.lorebook_manager = lorebook_manager
        self.frequency_tracker = frequency_tracker
        self.config = (config or CONFIG)["summarization"]
        self.summary_cache = LRUCache(max_size=500)
        # (chat_id, message hash) pairs already counted by the frequency tracker
        self.observed_messages = LRUCache(max_size=5000)

    def create_prompt(self, messages: List[Dict[str, Any]], group_type: str) -> str:
        template = self.config.get("prompt") or DEFAULT_PROMPT
        if self.config["enable_type_detection"] and group_type in SUMMARY_TEMPLATES:
            template = f"{SUMMARY_TEMPLATES[group_type]}\n\n{template}"
        return template.replace("{{messages}}", format_messages_for_summarization(messages))

    def detect_type(self, messages: List[Dict[str, Any]]) -> str:
        if not self.config["enable_type_detection"]:
            return "conversation"
        return detect_group_type(messages)

    async def summarize_group(self, messages: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """
        Summarize one group of messages.

        Returns None on any failure; the caller then keeps the raw messages
        in context.
        """
        if not messages or self.generate is None:
            return None

        cache_key = group_hash(messages)
        cached = self.summary_cache.get(cache_key)
        if cached is not None:
            return cached

        group_type = self.detect_type(messages)
        prompt = self.create_prompt(messages, group_type)

        try:
            raw = await self.generate(SUMMARY_SYSTEM_PROMPT, prompt, 120)
        except Exception as e:
            print(f"[SUMMARY] Summary generation failed: {e}")
            return None

        cleaned = clean_summary(raw, messages, self.config["max_length"])
        if cleaned is None:
            return None

        frequency = {"is_core": False, "confidence": 0.0, "phrases": []}
        if self.config["enable_frequency_core_memory"]:
            frequency = detect_core_memory_from_frequency(cleaned["text"], self.frequency_tracker)

        frequency_core = frequency["is_core"] and frequency["confidence"] > CORE_CONFIDENCE_THRESHOLD
        if cleaned["tagged_core"]:
            detection_method = "ai_tag"
        elif frequency_core:
            detection_method = "frequency_analysis"
        else:
            detection_method = "none"

        summary = {
            "text": cleaned["text"],
            "type": group_type,
            "is_core_memory": cleaned["tagged_core"] or frequency_core,
            "detection_method": detection_method,
            "quality": calculate_summary_quality(cleaned["text"]),
            "metadata": cleaned["metadata"],
        }
        if frequency_core:
            summary["metadata"]["frequency_phrases"] = frequency["phrases"]

        self.summary_cache.put(cache_key, summary)
        return summary

    async def summarize_in_groups(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Group arbitrary messages and summarize each group, highest priority first."""
        groups = group_messages(messages, self.config["max_group_length"], self.config["min_group_size"])
        ordered = sorted(groups, key=calculate_priority, reverse=True)

        results = []
        for group in ordered:
            summary = await self.summarize_group(group)
            results.append({
                "message_count": len(group),
                "priority": calculate_priority(group),
                "summary": summary,
                # None summary means the raw text stays in context
                "fallback_text": None if summary else "\n".join(_content(m) for m in group),
            })
        return results

    def observe_messages(self, chat_id: str, messages: List[Dict[str, Any]]) -> int:
        """
        Feed messages to the frequency tracker, each one only once per chat.

        Clients repost the whole chat on every turn, so n-gram counts would
        otherwise grow with the number of calls.
        """
        observed = 0
        for message in messages:
            key = (chat_id, message_hash(message))
            if key in self.observed_messages:
                continue
            self.frequency_tracker.observe(_content(message))
            self.observed_messages.put(key, True)
            observed += 1
        return observed

    @staticmethod
    def summary_targets(message_count: int) -> List[range]:
        """
        Message spans summarized together.

        The opening message stands alone; after that messages pair up as
        (1, 2), (3, 4), ... and an unpaired trailing message waits.
        """
        spans = [range(0, 1)] if message_count > 0 else []
        spans.extend(range(i - 1, i + 1) for i in range(2, message_count, 2))
        return spans

    async def summarize_messages(self, chat_id: str, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Summarize every completed span that has no up-to-date summary.

        A span's summary is stored at its last index and lists the indices it
        covers. A span whose content hash changed since it was summarized is
        summarized again.
        """
        if not self.config["enabled"]:
            return {"summarized": 0, "skipped": 0, "failed": 0, "core_memories": 0}

        if self.frequency_tracker is not None:
            self.observe_messages(chat_id, messages)

        summarized = skipped = failed = core_memories = 0

        for span in self.summary_targets(len(messages)):
            index = span[-1]
            group = [messages[i] for i in span]
            span_hash = group_hash(group)

            existing = db_get_summary(chat_id, index)
            if existing and existing.get("message_hash") == span_hash:
                skipped += 1
                continue

            summary = await self.summarize_group(group)
            if summary is None:
                failed += 1
                continue

            record = dict(summary)
            record["message_hash"] = span_hash
            record["remembered"] = summary["is_core_memory"] or bool(existing and existing.get("remembered"))
            record["metadata"] = dict(
                summary["metadata"],
                quality=summary["quality"]["quality"],
                covers=list(span),
            )

            if not db_save_summary(chat_id, index, record):
                failed += 1
                continue

            summarized += 1
            previous_core = existing["text"] if existing and existing.get("is_core_memory") else None
            if summary["is_core_memory"] and self.config["enable_core_memories"]:
                core_memories += 1
                if self.lorebook_manager is not None:
                    self.lorebook_manager.add_core_memory(summary["text"], chat_id, replaces=previous_core)
            elif previous_core and self.lorebook_manager is not None:
                self.lorebook_manager.remove_core_memory(previous_core, chat_id)

        print(f"[SUMMARY] {chat_id}: {summarized} new, {skipped} unchanged, {failed} failed")
        return {
            "summarized": summarized,
            "skipped": skipped,
            "failed": failed,
            "core_memories": core_memories,
        }

    def build_memory_injection(self, chat_id: str) -> Dict[str, str]:
        """Short-term (recent) and long-term (remembered) memory blocks."""
        short_term = []
        long_term = []
        for summary in db_get_summaries(chat_id):
            line = f"• {summary['text']}"
            if summary["remembered"]:
                long_term.append(line)
            else:
                short_term.append(line)

        count = self.config["short_term_count"]
        short_block = ""
        if short_term:
            short_block = "[Recent Events]:\n" + "\n".join(short_term[-count:]) + "\n"

        long_block = ""
        if long_term:
            long_block = "[Important Memories]:\n" + "\n".join(long_term) + "\n"

        return {"short_term": short_block, "long_term": long_block}
