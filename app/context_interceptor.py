"""
Rewrites the outgoing prompt context before it reaches the model.

Relevant archived messages are injected near the top, and messages that
fell out of the running window are replaced by their summaries.
"""

import copy
from typing import Dict, List, Any, Optional, Tuple

from app.config_loader import CONFIG
from app.database import db_get_summaries
from app.summarizer import group_hash

INJECTION_NAME = "Lorekeeper"


def _content(message: Dict[str, Any]) -> str:
    return message.get("content") or message.get("mes") or ""


def _system_message(content: str) -> Dict[str, Any]:
    return {"role": "system", "name": INJECTION_NAME, "content": content}


class ContextInterceptor:
    def __init__(self, query_system, vector_store, config: Optional[Dict[str, Any]] = None):
        self.query_system = query_system
        self.vector_store = vector_store
        config = config or CONFIG
        self.vector_config = config["vectors"]
        self.summary_config = config["summarization"]

    async def build_semantic_injection(self, messages: List[Dict[str, Any]],
                                       chat_id: str) -> Optional[Tuple[Dict[str, Any], int]]:
        query = " ".join(_content(m) for m in messages[-3:])
        if not query.strip():
            return None

        hits = await self.query_system.search_advanced(
            query, limit=self.vector_config["search_limit"], chat_id=chat_id
        )
        if not hits:
            return None

        lines = [
            f"- A past memory (relevance: {round(hit['score'] * 100)}%): {hit['vector']['content']}"
            for hit in hits
        ]
        return _system_message(
            "[Lorekeeper found relevant past messages to consider]:\n" + "\n".join(lines)
        ), len(hits)

    def plan_window(self, messages: List[Dict[str, Any]], chat_id: str):
        """
        Work out which old messages a summary can replace.

        A summary replaces every message it covers, only when all of them
        are older than the running window and still hash to what was
        summarized. Edited or shifted messages stay visible until they are
        summarized again.

        Returns:
            (hidden indices, summary texts in message order)
        """
        window_start = max(0, len(messages) - self.summary_config["running_memory_size"])
        hidden = set()
        texts = []
        for summary in db_get_summaries(chat_id):
            covers = summary["metadata"].get("covers") or [summary["message_index"]]
            if not all(0 <= i < window_start for i in covers):
                continue
            if summary.get("message_hash") != group_hash([messages[i] for i in covers]):
                continue
            hidden.update(covers)
            texts.append(summary["text"])
        return hidden, texts

    def archive_hidden(self, messages: List[Dict[str, Any]], hidden, chat_id: str,
                       character: Optional[str]) -> int:
        archived = 0
        for index in sorted(hidden):
            message = messages[index]
            if not _content(message):
                continue
            record = {
                "id": index,
                "content": _content(message),
                "role": message.get("role") or ("user" if message.get("is_user") else "assistant"),
                "timestamp": message.get("timestamp"),
                "name": message.get("name"),
            }
            if self.vector_store.process_message(record, chat_id, character=character) is not None:
                archived += 1
        if archived:
            print(f"[INTERCEPT] Archived {archived} hidden messages to vector storage")
        return archived

    async def intercept_messages(self, messages: List[Dict[str, Any]], chat_id: str,
                                 character: Optional[str] = None) -> Dict[str, Any]:
        """
        Build the context actually sent to the model.

        Returns:
            {'messages', 'hidden_count', 'injected_memories', 'archived'}
        """
        result = [copy.deepcopy(m) for m in messages]
        injected = 0
        hidden = set()
        archived = 0

        if self.vector_config["enabled"] and result:
            injection = await self.build_semantic_injection(result, chat_id)
            if injection is not None:
                message, injected = injection
                result.insert(1, message)

        if self.summary_config["enabled"] and messages:
            hidden, texts = self.plan_window(messages, chat_id)
            if texts:
                visible = [copy.deepcopy(m) for i, m in enumerate(messages) if i not in hidden]
                # The block stands in for the earliest messages when the opening one is hidden
                position = 0 if 0 in hidden else 1
                if injected:
                    visible.insert(position, result[1])
                summary_block = "\n".join(f"- {text}" for text in texts)
                visible.insert(position, _system_message(f"[Summary of {len(texts)} earlier events]:\n{summary_block}"))
                result = visible
                if self.vector_config["enabled"]:
                    archived = self.archive_hidden(messages, hidden, chat_id, character)

        if injected or hidden:
            print(f"[INTERCEPT] {chat_id}: {injected} memories injected, {len(hidden)} messages hidden")

        return {
            "messages": result,
            "hidden_count": len(hidden),
            "injected_memories": injected,
            "archived": archived,
        }
