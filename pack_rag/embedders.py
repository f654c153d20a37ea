"""
Model backends: embedding + completion behind one interface.

Two variants, chosen once from settings:
- RemoteEmbedder: Ollama HTTP API (requests)
- OnDeviceEmbedder: sentence-transformers for embeddings, a transformers
  causal LM for completion

Backends are caller-owned handles: create once, reuse across questions,
close() explicitly (or use them as context managers).
"""
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional

import numpy as np
import requests

from .cache import EmbeddingCache
from .errors import CompletionError, EmbedError
from .schemas import CompletionParams

logger = logging.getLogger(__name__)


class ModelBackend(ABC):
    """Embedding and text-completion capability."""

    embed_model_id: str = ""

    def __init__(self, cache: Optional[EmbeddingCache] = None):
        self.cache = cache

    @abstractmethod
    def _embed(self, text: str) -> List[float]:
        pass

    @abstractmethod
    def complete(self, prompt: str, params: CompletionParams) -> str:
        """
        Generate an answer for a fully rendered prompt.

        Args:
            prompt: Prompt text
            params: Generation parameters

        Returns:
            Raw generated text
        """
        pass

    def embed(self, text: str) -> np.ndarray:
        """Embed text into a float32 vector (cached when a cache is set)."""
        if self.cache is not None:
            cached = self.cache.get_vector(self.embed_model_id, text)
            if cached is not None:
                return cached

        vec = np.asarray(self._embed(text), dtype=np.float32)
        if self.cache is not None:
            self.cache.put_vector(self.embed_model_id, text, vec)
        return vec

    def close(self):
        if self.cache is not None:
            self.cache.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class RemoteEmbedder(ModelBackend):
    """Ollama HTTP backend."""

    def __init__(
        self,
        host: str,
        embed_model: str,
        chat_model: str,
        timeout_s: int = 120,
        cache: Optional[EmbeddingCache] = None,
    ):
        """
        Initialize the Ollama backend.

        Args:
            host: Ollama base URL, e.g. http://localhost:11434
            embed_model: Embedding model name (must match the pack dim)
            chat_model: Completion model name
            timeout_s: Request timeout
            cache: Optional embedding cache
        """
        super().__init__(cache)
        self.host = host.rstrip("/")
        self.embed_model_id = embed_model
        self.chat_model = chat_model
        self.timeout_s = timeout_s

    @classmethod
    def from_settings(cls, settings, cache: Optional[EmbeddingCache] = None) -> "RemoteEmbedder":
        return cls(
            host=settings.OLLAMA_HOST,
            embed_model=settings.OLLAMA_EMBED_MODEL,
            chat_model=settings.OLLAMA_CHAT_MODEL,
            timeout_s=settings.REQUEST_TIMEOUT_S,
            cache=cache,
        )

    def _post(self, path: str, payload: dict, error_cls) -> dict:
        url = f"{self.host}{path}"
        try:
            response = requests.post(url, json=payload, timeout=self.timeout_s)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            raise error_cls(f"Ollama request failed: {e}", {"url": url}) from e
        except ValueError as e:
            raise error_cls(f"Ollama returned invalid JSON: {e}", {"url": url}) from e

    def _embed(self, text: str) -> List[float]:
        data = self._post(
            "/api/embeddings",
            {"model": self.embed_model_id, "prompt": text},
            EmbedError,
        )
        vec = data.get("embedding") if isinstance(data, dict) else None
        if not isinstance(vec, list) or not vec:
            raise EmbedError("Ollama returned no embedding", {"model": self.embed_model_id})
        return [float(x) for x in vec]

    def complete(self, prompt: str, params: CompletionParams) -> str:
        payload = {
            "model": self.chat_model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": params.temperature,
                "top_p": params.top_p,
                "top_k": params.top_k,
                "repeat_penalty": params.penalty_repeat,
                "num_predict": params.n_predict,
            },
        }
        data = self._post("/api/generate", payload, CompletionError)
        text = data.get("response") if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise CompletionError("Ollama returned no response text", {"model": self.chat_model})
        return text


def _resolve_device(device: str) -> str:
    if device != "auto":
        return device
    import torch
    return "cuda" if torch.cuda.is_available() else "cpu"


class OnDeviceEmbedder(ModelBackend):
    """Local models loaded lazily on first use."""

    def __init__(
        self,
        embed_model: str,
        chat_model: str,
        device: str = "auto",
        cache: Optional[EmbeddingCache] = None,
    ):
        """
        Initialize the local backend (no model is loaded yet).

        Args:
            embed_model: SentenceTransformer model id
            chat_model: HuggingFace causal LM id
            device: "auto", "cpu" or "cuda"
            cache: Optional embedding cache
        """
        super().__init__(cache)
        self.embed_model_id = embed_model
        self.chat_model_id = chat_model
        self.device = device
        self._lock = threading.Lock()
        self._embed_model: Any = None
        self._tokenizer: Any = None
        self._chat_model: Any = None

    @classmethod
    def from_settings(cls, settings, cache: Optional[EmbeddingCache] = None) -> "OnDeviceEmbedder":
        return cls(
            embed_model=settings.LOCAL_EMBED_MODEL,
            chat_model=settings.LOCAL_CHAT_MODEL,
            device=settings.LOCAL_DEVICE,
            cache=cache,
        )

    def _once(self, attr: str, load: Callable[[], None]):
        if getattr(self, attr) is None:
            with self._lock:
                if getattr(self, attr) is None:
                    load()
        return getattr(self, attr)

    def _load_embed_model(self):
        from sentence_transformers import SentenceTransformer

        self.device = _resolve_device(self.device)
        logger.info(f"Loading embedding model: {self.embed_model_id} on {self.device}")
        self._embed_model = SentenceTransformer(self.embed_model_id, device=self.device)

    def _load_chat_model(self):
        from transformers import AutoModelForCausalLM, AutoTokenizer

        self.device = _resolve_device(self.device)
        logger.info(f"Loading chat model: {self.chat_model_id} on {self.device}")
        self._tokenizer = AutoTokenizer.from_pretrained(self.chat_model_id)
        self._chat_model = AutoModelForCausalLM.from_pretrained(self.chat_model_id).to(self.device).eval()

    def _embed(self, text: str) -> List[float]:
        model = self._once("_embed_model", self._load_embed_model)
        try:
            vec = model.encode([text], convert_to_numpy=True)[0]
        except RuntimeError as e:
            raise EmbedError(f"Local embedding failed: {e}", {"model": self.embed_model_id}) from e
        return vec.astype(np.float32).tolist()

    def complete(self, prompt: str, params: CompletionParams) -> str:
        import torch

        model = self._once("_chat_model", self._load_chat_model)
        tokenizer = self._tokenizer
        inputs = tokenizer(prompt, return_tensors="pt").to(self.device)
        do_sample = params.temperature > 0
        generate_kwargs = {
            "max_new_tokens": params.n_predict,
            "do_sample": do_sample,
            "repetition_penalty": params.penalty_repeat,
            "pad_token_id": tokenizer.pad_token_id or tokenizer.eos_token_id,
        }
        if do_sample:
            generate_kwargs.update(
                temperature=params.temperature,
                top_p=params.top_p,
                top_k=params.top_k,
            )
        try:
            with torch.no_grad():
                output = model.generate(**inputs, **generate_kwargs)
        except RuntimeError as e:
            raise CompletionError(f"Local generation failed: {e}", {"model": self.chat_model_id}) from e

        new_tokens = output[0][inputs["input_ids"].shape[1]:]
        return tokenizer.decode(new_tokens, skip_special_tokens=True)

    def close(self):
        with self._lock:
            self._embed_model = None
            self._tokenizer = None
            self._chat_model = None
        super().close()


def get_embedder(settings, cache: Optional[EmbeddingCache] = None) -> ModelBackend:
    """
    Select the model backend once from settings.

    Args:
        settings: Configuration settings
        cache: Optional embedding cache

    Returns:
        ModelBackend instance
    """
    backend = (settings.MODEL_BACKEND or "").lower()
    if backend == "remote":
        return RemoteEmbedder.from_settings(settings, cache)
    if backend == "local":
        return OnDeviceEmbedder.from_settings(settings, cache)
    raise ValueError(f"Unknown MODEL_BACKEND={settings.MODEL_BACKEND}. Valid options: remote, local")
