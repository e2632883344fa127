# /webrag/chunk_index.py
"""
Builds an in-memory nearest-neighbour index over chunks of fetched web pages
and answers top-k cosine-similarity queries against it.
"""
from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Sequence

import numpy as np
from langchain_community.document_loaders import WebBaseLoader
from langchain_huggingface import HuggingFaceEmbeddings
from langchain_text_splitters import RecursiveCharacterTextSplitter

from .config import (
    CHUNK_OVERLAP,
    CHUNK_SIZE,
    EMBEDDING_MODEL_NAME,
    FETCH_TIMEOUT_S,
    get_model_kwargs,
)
from .exceptions import IndexBuildError
from .observability import get_logger

logger = get_logger(__name__)

DOCUMENT_SEPARATOR = "\n\n"
_EMBEDDING_MODEL = None
_EMBEDDING_LOCK = threading.Lock()


@dataclass(frozen=True)
class DocumentChunk:
    text: str
    source_url: str


def get_embeddings():
    global _EMBEDDING_MODEL
    if _EMBEDDING_MODEL is None:
        # Builds for different URL sets may reach here from several executor threads at once.
        with _EMBEDDING_LOCK:
            if _EMBEDDING_MODEL is None:
                _EMBEDDING_MODEL = HuggingFaceEmbeddings(
                    model_name=EMBEDDING_MODEL_NAME,
                    model_kwargs=get_model_kwargs(),
                )
    return _EMBEDDING_MODEL


def fetch_document_text(url: str) -> str:
    """Downloads a page and returns its visible text."""
    loader = WebBaseLoader(
        web_path=url,
        requests_kwargs={"timeout": FETCH_TIMEOUT_S},
        raise_for_status=True,
    )
    docs = loader.load()
    return DOCUMENT_SEPARATOR.join(doc.page_content for doc in docs)


def split_text(text: str) -> list[str]:
    splitter = RecursiveCharacterTextSplitter(chunk_size=CHUNK_SIZE, chunk_overlap=CHUNK_OVERLAP)
    return splitter.split_text(text)


def _attribute_chunks(chunk_texts: Sequence[str], full_text: str, spans: Sequence[tuple[int, str]]) -> list[DocumentChunk]:
    """Maps each chunk back to the source whose span contains the chunk's start offset."""
    chunks: list[DocumentChunk] = []
    cursor = 0
    for text in chunk_texts:
        pos = full_text.find(text, cursor)
        if pos < 0:
            pos = full_text.find(text)
        if pos >= 0:
            # Overlapping chunks start before the previous chunk ends.
            cursor = pos + 1
        source = spans[0][1] if spans else ""
        for start, url in spans:
            if pos >= start:
                source = url
            else:
                break
        chunks.append(DocumentChunk(text=text, source_url=source))
    return chunks


def _normalize_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    return matrix / norms


class ChunkIndex:
    """Immutable chunk/vector store answering cosine top-k queries."""

    def __init__(self, urls: Sequence[str], chunks: Sequence[DocumentChunk], vectors: Any, embeddings: Any):
        self._urls = tuple(urls)
        self._chunks = tuple(chunks)
        matrix = np.asarray(vectors, dtype=np.float32)
        if matrix.size == 0:
            matrix = matrix.reshape(len(self._chunks), 0)
        elif matrix.ndim != 2:
            matrix = matrix.reshape(len(self._chunks), -1)
        if matrix.shape[0] != len(self._chunks):
            raise ValueError(
                f"vector count ({matrix.shape[0]}) does not match chunk count ({len(self._chunks)})"
            )
        self._matrix = _normalize_rows(matrix) if len(self._chunks) else matrix
        self._matrix.setflags(write=False)
        self._embeddings = embeddings

    @property
    def urls(self) -> tuple[str, ...]:
        return self._urls

    @property
    def chunks(self) -> tuple[DocumentChunk, ...]:
        return self._chunks

    def __len__(self) -> int:
        return len(self._chunks)

    @classmethod
    def build(
        cls,
        urls: Sequence[str],
        *,
        fetcher: Callable[[str], str] = fetch_document_text,
        splitter: Callable[[str], list[str]] = split_text,
        embeddings: Any = None,
    ) -> "ChunkIndex":
        """
        Fetches every URL, concatenates the texts, splits them into overlapping
        chunks and embeds each chunk. Any fetch or embedding failure is fatal.
        """
        url_list = list(urls)
        if not url_list:
            raise IndexBuildError("Cannot build an index without source URLs.")

        build_start = time.perf_counter()
        texts: list[str] = []
        for url in url_list:
            try:
                texts.append(fetcher(url))
            except Exception as exc:
                logger.error("document_fetch_failed", url=url, error=str(exc))
                raise IndexBuildError(f"Failed to fetch document: {url} ({exc})", url=url) from exc
        fetch_ms = (time.perf_counter() - build_start) * 1000.0

        spans: list[tuple[int, str]] = []
        offset = 0
        for url, text in zip(url_list, texts):
            spans.append((offset, url))
            offset += len(text) + len(DOCUMENT_SEPARATOR)
        full_text = DOCUMENT_SEPARATOR.join(texts)

        chunk_texts = [chunk for chunk in splitter(full_text) if chunk.strip()]
        chunks = _attribute_chunks(chunk_texts, full_text, spans)

        model = embeddings if embeddings is not None else get_embeddings()
        embed_start = time.perf_counter()
        if chunks:
            try:
                vectors = model.embed_documents([chunk.text for chunk in chunks])
            except Exception as exc:
                logger.error("chunk_embedding_failed", chunks=len(chunks), error=str(exc))
                raise IndexBuildError(f"Failed to embed document chunks ({exc})") from exc
        else:
            vectors = np.zeros((0, 0), dtype=np.float32)
        embed_ms = (time.perf_counter() - embed_start) * 1000.0

        logger.info(
            "chunk_index_built",
            urls=len(url_list),
            chunks=len(chunks),
            characters=len(full_text),
            fetch_ms=round(fetch_ms, 2),
            embed_ms=round(embed_ms, 2),
        )
        return cls(url_list, chunks, vectors, model)

    def search(self, query: str, k: int) -> list[DocumentChunk]:
        """Top-k chunks by descending cosine similarity; ties keep chunk order."""
        if k <= 0 or not self._chunks:
            return []
        query_vec = np.asarray(self._embeddings.embed_query(query), dtype=np.float32).reshape(-1)
        norm = float(np.linalg.norm(query_vec))
        if norm > 0.0:
            query_vec = query_vec / norm
        scores = self._matrix @ query_vec
        order = np.argsort(-scores, kind="stable")[: min(int(k), len(self._chunks))]
        return [self._chunks[int(i)] for i in order]

    async def asearch(self, query: str, k: int) -> list[DocumentChunk]:
        return await asyncio.to_thread(self.search, query, k)
