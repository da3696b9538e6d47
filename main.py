# Lorekeeper: long-term memory service for roleplay chats
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import httpx
import logging
import time
from typing import Dict, List, Optional, Any, Literal
from pydantic import BaseModel

from app.config_loader import CONFIG

logging.basicConfig(
    level=getattr(logging, str(CONFIG["server"]["log_level"]).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

from app.database import (
    init_db, init_vec_table, close_connection, verify_database_health, vec_available,
    db_get_summaries, db_set_summary_remembered,
)
from app.embeddings import EmbeddingEngine
from app.entity_extractor import extract_entities
from app.lorebook_manager import LorebookManager
from app.memory_quality import NgramFrequencyTracker, calculate_summary_quality
from app.summarizer import MessageSummarizer
from app.rerank_service import RerankService
from app.vector_store import VectorStore
from app.query_system import AdvancedQuerySystem
from app.context_interceptor import ContextInterceptor

app = FastAPI(title="Lorekeeper")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CONFIG["server"]["cors_origins"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# LLM access (KoboldCpp-compatible generate endpoint)
async def call_llm_helper(system_prompt: str, user_prompt: str, max_tokens: int = 500):
    kobold = CONFIG["kobold"]
    async with httpx.AsyncClient() as client:
        try:
            payload = {
                "prompt": f"### System: {system_prompt}\n### User: {user_prompt}\n### Assistant:",
                "max_length": max_tokens,
                "temperature": kobold["temperature"],
                "stop_sequence": ["###", "<|im_end|>", "\n\n\n", "User:", "Assistant:"]
            }
            res = await client.post(
                f"{kobold['url']}/api/v1/generate",
                json=payload,
                timeout=kobold["timeout"]
            )
            res.raise_for_status()
            data = res.json()
            if "results" in data and len(data["results"]) > 0:
                return data["results"][0]["text"].strip()
            print(f"[LLM] Unexpected response structure: {data}")
            raise Exception("Unexpected response from LLM")
        except Exception as e:
            logger.error(f"[LLM] Call failed: {e}")
            raise Exception(f"API Error: {str(e)}")


# Shared services
embedding_engine = EmbeddingEngine(CONFIG["embeddings"]["model_name"], CONFIG["embeddings"]["dimensions"])
rerank_service = RerankService()
vector_store = VectorStore(embedding_engine, rerank_service)
query_system = AdvancedQuerySystem(vector_store, embedding_engine)
frequency_tracker = NgramFrequencyTracker()
lorebook_manager = LorebookManager(generate=call_llm_helper)
summarizer = MessageSummarizer(
    generate=call_llm_helper,
    lorebook_manager=lorebook_manager,
    frequency_tracker=frequency_tracker,
)
context_interceptor = ContextInterceptor(query_system, vector_store)


# Service Status Tracking
class ServiceStatus(BaseModel):
    status: Literal["connected", "disconnected", "testing"]
    details: str = ""
    latency_ms: int = 0


# Models
class ChatMessage(BaseModel):
    role: str = "user"
    content: str = ""
    id: Optional[Any] = None
    name: Optional[str] = None
    timestamp: Optional[float] = None


class TextRequest(BaseModel):
    text: str


class ScanRequest(BaseModel):
    chat_id: str = "global"
    messages: List[ChatMessage]


class MergeRequest(BaseModel):
    chat_id: str = "global"


class LorebookGenerateRequest(BaseModel):
    chat_id: str
    character: Dict[str, Any]


class CoreMemoryRequest(BaseModel):
    chat_id: str
    text: str
    timestamp: Optional[str] = None


class SummarizeRequest(BaseModel):
    chat_id: str
    messages: List[ChatMessage]


class GroupSummarizeRequest(BaseModel):
    messages: List[ChatMessage]


class RememberRequest(BaseModel):
    remembered: bool = True


class InterceptRequest(BaseModel):
    chat_id: str
    messages: List[ChatMessage]
    character: Optional[str] = None


class VectorArchiveRequest(BaseModel):
    chat_id: str
    messages: List[ChatMessage]
    task_id: Optional[str] = None
    character: Optional[str] = None


class VectorSearchRequest(BaseModel):
    query: str
    limit: int = 10
    chat_id: Optional[str] = None
    task_id: Optional[str] = None
    collection_id: Optional[str] = None
    threshold: Optional[float] = None
    use_reranking: bool = True
    hybrid_alpha: Optional[float] = None


class SearchRequest(BaseModel):
    query: str
    chat_id: Optional[str] = None
    character: Optional[str] = None
    limit: int = 10
    algorithms: Optional[List[str]] = None
    fusion_method: Optional[str] = None


class AdvancedSearchRequest(BaseModel):
    query: str
    limit: int = 10
    chat_id: Optional[str] = None
    threshold: float = 0.1
    time_range: Optional[float] = None
    use_reranking: bool = True


class RerankConfigRequest(BaseModel):
    hybrid_alpha: Optional[float] = None
    enabled: Optional[bool] = None


def _messages(messages: List[ChatMessage]) -> List[Dict[str, Any]]:
    return [m.model_dump() for m in messages]


def _public_vector(result: Dict[str, Any]) -> Dict[str, Any]:
    """Search result without the raw embedding array."""
    vector = {k: v for k, v in result["vector"].items() if k != "embedding"}
    return dict(result, vector=vector)


# FastAPI startup and shutdown handlers
@app.on_event("startup")
async def startup_event():
    """Initialize resources when FastAPI app starts"""
    init_db()
    if not verify_database_health():
        logger.warning("Database health check failed - app may not function correctly")

    if init_vec_table():
        print("[DB] sqlite-vec table ready")
    else:
        print("[DB] sqlite-vec unavailable, vector search will scan stored embeddings")

    print("Loading embedding model...")
    if embedding_engine.load_model():
        print("Embedding model loaded successfully")
    else:
        print("Warning: Failed to load embedding model - vector features may be unavailable")


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up resources when the FastAPI app shuts down"""
    embedding_engine.unload_model()
    close_connection()


# Health Check Endpoints
@app.get("/api/health")
async def health():
    db_ok = verify_database_health()
    return {
        "status": "ok" if db_ok else "degraded",
        "database": db_ok,
        "sqlite_vec": vec_available(),
        "embedding_model": embedding_engine.is_ready(),
        "vectors": vector_store.get_statistics()["total_vectors"],
    }


@app.get("/api/health/kobold", response_model=ServiceStatus)
async def check_kobold_health():
    """Check KoboldCpp connection status"""
    start_time = time.time()
    try:
        async with httpx.AsyncClient(timeout=2.0) as client:
            response = await client.get(f"{CONFIG['kobold']['url']}/api/v1/info")
            response.raise_for_status()
            latency = int((time.time() - start_time) * 1000)
            return ServiceStatus(status="connected", details="KoboldCpp API responding", latency_ms=latency)
    except httpx.TimeoutException:
        return ServiceStatus(status="disconnected", details="Connection timeout (2s)")
    except httpx.HTTPError as e:
        return ServiceStatus(status="disconnected", details=str(e))


# Entities
@app.post("/api/entities/extract")
async def extract_entities_endpoint(req: TextRequest):
    """Run extraction only; nothing is stored."""
    return {"entities": extract_entities(req.text)}


@app.post("/api/entities/scan")
async def scan_entities(req: ScanRequest):
    processed = lorebook_manager.scan_messages(_messages(req.messages), req.chat_id)
    return {"success": True, "processed": processed}


@app.get("/api/entities")
async def list_entities(chat_id: str = "global", type: Optional[str] = None,
                        min_confidence: Optional[float] = None):
    return lorebook_manager.list_entities(chat_id, type, min_confidence)


@app.get("/api/entities/stats")
async def entity_stats(chat_id: str = "global"):
    return lorebook_manager.get_entity_statistics(chat_id)


@app.post("/api/entities/merge")
async def merge_entities(req: MergeRequest):
    merges = lorebook_manager.merge_duplicate_entities(req.chat_id)
    return {"success": True, "merges": merges}


@app.get("/api/entities/{name}")
async def get_entity(name: str, chat_id: str = "global"):
    entity = lorebook_manager.get_entity(name, chat_id)
    if entity is None:
        return JSONResponse({"success": False, "error": "Entity not found"}, status_code=404)
    return entity


@app.delete("/api/entities/{name}")
async def delete_entity(name: str, chat_id: str = "global"):
    if not lorebook_manager.delete_entity(name, chat_id):
        return JSONResponse({"success": False, "error": "Entity not found"}, status_code=404)
    return {"success": True}


# Lorebook
@app.post("/api/lorebook/generate")
async def generate_lorebook(req: LorebookGenerateRequest):
    return await lorebook_manager.generate_initial_lorebook(req.character, req.chat_id)


@app.post("/api/lorebook/core-memory")
async def add_core_memory(req: CoreMemoryRequest):
    if not req.text.strip():
        return JSONResponse({"success": False, "error": "Core memory text is empty"}, status_code=400)
    return {"success": lorebook_manager.add_core_memory(req.text, req.chat_id, req.timestamp)}


@app.get("/api/lorebook/{chat_id}")
async def get_lorebook(chat_id: str):
    lorebook = lorebook_manager.get_lorebook(chat_id)
    if lorebook is None:
        return {"name": None, "chat_id": chat_id, "entries": {}}
    return lorebook


# Summaries and memory
@app.post("/api/summarize")
async def summarize(req: SummarizeRequest):
    stats = await summarizer.summarize_messages(req.chat_id, _messages(req.messages))
    return dict(stats, success=stats["failed"] == 0)


@app.post("/api/summarize/group")
async def summarize_group(req: GroupSummarizeRequest):
    return {"groups": await summarizer.summarize_in_groups(_messages(req.messages))}


@app.get("/api/summaries/{chat_id}")
async def get_summaries(chat_id: str):
    return db_get_summaries(chat_id)


@app.post("/api/summaries/{chat_id}/{index}/remember")
async def remember_summary(chat_id: str, index: int, req: RememberRequest):
    if not db_set_summary_remembered(chat_id, index, req.remembered):
        return JSONResponse({"success": False, "error": "Summary not found"}, status_code=404)
    return {"success": True, "remembered": req.remembered}


@app.get("/api/memory/{chat_id}/injection")
async def memory_injection(chat_id: str):
    return summarizer.build_memory_injection(chat_id)


@app.post("/api/summary/quality")
async def summary_quality(req: TextRequest):
    return calculate_summary_quality(req.text)


# Context interception
@app.post("/api/context/intercept")
async def intercept_context(req: InterceptRequest):
    return await context_interceptor.intercept_messages(_messages(req.messages), req.chat_id, req.character)


# Vectors
@app.post("/api/vectors")
async def archive_vectors(req: VectorArchiveRequest):
    ids = vector_store.process_messages(_messages(req.messages), req.chat_id, req.task_id, req.character)
    return {"success": True, "stored": len(ids), "ids": ids}


@app.post("/api/vectors/search")
async def search_vectors(req: VectorSearchRequest):
    results = await vector_store.search_vectors(
        req.query,
        limit=req.limit,
        chat_id=req.chat_id,
        task_id=req.task_id,
        collection_id=req.collection_id,
        threshold=req.threshold,
        use_reranking=req.use_reranking,
        hybrid_alpha=req.hybrid_alpha,
    )
    return {"results": [_public_vector(r) for r in results]}


@app.get("/api/vectors/stats")
async def vector_stats():
    return vector_store.get_statistics()


@app.delete("/api/vectors/collections/{collection_id}")
async def delete_collection(collection_id: str):
    return {"success": True, "deleted": vector_store.delete_collection(collection_id)}


@app.delete("/api/vectors")
async def clear_vectors():
    return {"success": vector_store.clear_all_vectors()}


@app.get("/api/vectors/{chat_id}")
async def vectors_for_chat(chat_id: str, limit: int = 100):
    return vector_store.get_vectors_for_chat(chat_id, limit)


@app.get("/api/vectors/{chat_id}/collections")
async def collections_for_chat(chat_id: str):
    return vector_store.get_collections_for_chat(chat_id)


# Search
@app.post("/api/search")
async def search(req: SearchRequest):
    try:
        results = await query_system.search(
            req.query,
            chat_id=req.chat_id,
            character=req.character,
            limit=req.limit,
            algorithms=req.algorithms,
            fusion_method=req.fusion_method,
        )
    except ValueError as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=400)
    return {"results": [_public_vector(r) for r in results]}


@app.post("/api/search/advanced")
async def search_advanced(req: AdvancedSearchRequest):
    results = await query_system.search_advanced(
        req.query,
        limit=req.limit,
        chat_id=req.chat_id,
        threshold=req.threshold,
        time_range=req.time_range,
        use_reranking=req.use_reranking,
    )
    return {"results": [_public_vector(r) for r in results]}


@app.post("/api/rerank/config")
async def configure_rerank(req: RerankConfigRequest):
    try:
        if req.hybrid_alpha is not None:
            rerank_service.set_hybrid_alpha(req.hybrid_alpha)
    except ValueError as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=400)
    if req.enabled is not None:
        rerank_service.set_enabled(req.enabled)
    return {"success": True, "enabled": rerank_service.enabled, "hybrid_alpha": rerank_service.hybrid_alpha}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=CONFIG["server"]["host"], port=CONFIG["server"]["port"])
