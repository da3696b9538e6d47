"""
Sentence-transformer embedding engine used for vector archiving and search.
"""

import gc
import threading
from typing import List, Optional

import numpy as np
import torch
from sentence_transformers import SentenceTransformer


class EmbeddingEngine:
    def __init__(self, model_name: str = "all-mpnet-base-v2", dimensions: int = 768):
        self.model = None
        self.model_name = model_name
        self.dimensions = dimensions
        self.lock = threading.RLock()
        self.is_loading = False
        self.device = None
        self.gpu_memory_limit = None

    def _detect_device(self):
        """Pick cuda when enough free GPU memory is left, else cpu."""
        if self.device is not None:
            return self.device

        if torch.cuda.is_available():
            gpu_memory = torch.cuda.get_device_properties(0).total_memory
            reserved_memory = torch.cuda.memory_reserved(0)
            # Reserve 20% for other operations
            available_memory = (gpu_memory - reserved_memory) * 0.8

            # all-mpnet-base-v2 needs roughly 400MB
            if available_memory > 500 * 1024 * 1024:
                self.device = "cuda"
                self.gpu_memory_limit = available_memory
                print(f"[EMBED] Using GPU with {available_memory / 1024 / 1024:.1f}MB available memory")
            else:
                self.device = "cpu"
                print(f"[EMBED] GPU memory insufficient ({available_memory / 1024 / 1024:.1f}MB), using CPU")
        else:
            self.device = "cpu"
            print("[EMBED] CUDA not available, using CPU")

        return self.device

    def load_model(self) -> bool:
        """Load the sentence transformer model once; concurrent callers get False while loading."""
        with self.lock:
            if self.model is not None:
                return True
            if self.is_loading:
                return False
            self.is_loading = True

        try:
            print(f"[EMBED] Loading embedding model {self.model_name}...")
            device = self._detect_device()
            model = SentenceTransformer(self.model_name, device=device)
            with self.lock:
                self.model = model
            print(f"[EMBED] Model loaded on {getattr(model, 'device', device)}")
            return True
        except Exception as e:
            print(f"[EMBED] Failed to load embedding model: {e}")
            return False
        finally:
            with self.lock:
                self.is_loading = False

    def unload_model(self):
        """Drop the model and release cached GPU memory."""
        with self.lock:
            if self.model is not None:
                print("[EMBED] Unloading embedding model...")
                self.model = None
                gc.collect()
                if torch.cuda.is_available():
                    torch.cuda.empty_cache()

    def is_ready(self) -> bool:
        return self.model is not None

    def encode(self, texts: List[str]) -> Optional[np.ndarray]:
        """
        Embed a batch of texts.

        Returns:
            float32 array of shape (len(texts), dimensions), or None when the
            model cannot be loaded.
        """
        if not texts:
            return np.zeros((0, self.dimensions), dtype=np.float32)

        if not self.load_model():
            return None

        try:
            embeddings = self.model.encode(texts, convert_to_numpy=True, show_progress_bar=False)
            return np.asarray(embeddings, dtype=np.float32)
        except Exception as e:
            print(f"[EMBED] Failed to generate embeddings: {e}")
            return None

    def encode_one(self, text: str) -> Optional[np.ndarray]:
        embeddings = self.encode([text])
        if embeddings is None or len(embeddings) == 0:
            return None
        return embeddings[0]
