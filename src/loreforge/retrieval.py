"""
Canon retrieval aggregator.
Fans a query out to the lexical and vector canon indexes concurrently and
concatenates their results: lexical snippets first, then vector chunks.
"""
from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from langchain_core.documents import Document
from langchain_core.retrievers import BaseRetriever
from pydantic import ConfigDict

from .canon import DEFAULT_SNIPPET_WINDOW, search_canon
from .config import LoreforgeConfig
from .embeddings import EmbeddingIndex, search_index
from .models import CanonIndex
from .observability import get_logger

logger = get_logger(__name__)


class HybridCanonRetriever(BaseRetriever):
    """Runs lexical and vector canon search side by side without deduplication."""

    canon_index: CanonIndex = CanonIndex()
    embedding_index: EmbeddingIndex | None = None
    embeddings: Any = None
    lexical_k: int = 2
    vector_k: int = 1
    snippet_window: int = DEFAULT_SNIPPET_WINDOW
    use_lexical: bool = True
    execution_mode: str = "thread"  # thread | serial
    max_workers: int = 2
    model_config = ConfigDict(arbitrary_types_allowed=True)

    @classmethod
    def from_config(
        cls,
        config: LoreforgeConfig,
        canon_index: CanonIndex,
        embedding_index: EmbeddingIndex | None = None,
        embeddings: Any = None,
    ) -> "HybridCanonRetriever":
        return cls(
            canon_index=canon_index,
            embedding_index=embedding_index,
            embeddings=embeddings,
            lexical_k=config.lexical_top_k,
            vector_k=config.vector_top_k,
            snippet_window=config.snippet_window,
            use_lexical=config.canon_dynamic,
            max_workers=config.retrieval_max_workers,
        )

    def _lexical_docs(self, query: str) -> list[Document]:
        if not self.use_lexical:
            return []
        snippets = search_canon(self.canon_index, query, self.lexical_k, window=self.snippet_window)
        return [Document(page_content=snippet, metadata={"retriever": "lexical"}) for snippet in snippets]

    def _vector_docs(self, query: str) -> list[Document]:
        chunks = search_index(self.embedding_index, query, self.embeddings, self.vector_k)
        return [
            Document(
                page_content=chunk.text,
                metadata={
                    "retriever": "vector",
                    "chunk_id": chunk.id,
                    "source": chunk.source,
                    "offset": chunk.offset,
                },
            )
            for chunk in chunks
        ]

    def _get_relevant_documents(self, query: str, *, run_manager=None) -> list[Document]:
        if not query:
            return []
        if str(self.execution_mode or "thread").lower() == "thread":
            # Both indexes are read-only during search, so no locking is needed.
            with ThreadPoolExecutor(max_workers=max(1, int(self.max_workers))) as pool:
                future_lexical = pool.submit(self._lexical_docs, query)
                future_vector = pool.submit(self._vector_docs, query)
                lexical_docs = future_lexical.result()
                vector_docs = future_vector.result()
        else:
            lexical_docs = self._lexical_docs(query)
            vector_docs = self._vector_docs(query)
        logger.info("canon_retrieved", lexical=len(lexical_docs), vector=len(vector_docs))
        return [*lexical_docs, *vector_docs]

    async def _aget_relevant_documents(self, query: str, *, run_manager=None) -> list[Document]:
        if not query:
            return []
        loop = asyncio.get_running_loop()
        lexical_future = loop.run_in_executor(None, self._lexical_docs, query)
        vector_future = loop.run_in_executor(None, self._vector_docs, query)
        lexical_docs, vector_docs = await asyncio.gather(lexical_future, vector_future)
        logger.info("canon_retrieved", lexical=len(lexical_docs), vector=len(vector_docs))
        return [*lexical_docs, *vector_docs]

    def retrieve_snippets(self, query: str) -> list[str]:
        return [doc.page_content for doc in self.invoke(query)]


def retrieve_snippets(
    query: str,
    canon_index: CanonIndex,
    embedding_index: EmbeddingIndex | None = None,
    embeddings: Any = None,
    *,
    lexical_k: int = 2,
    vector_k: int = 1,
) -> list[str]:
    """Convenience wrapper: lexical snippets followed by vector chunk texts."""
    retriever = HybridCanonRetriever(
        canon_index=canon_index,
        embedding_index=embedding_index,
        embeddings=embeddings,
        lexical_k=lexical_k,
        vector_k=vector_k,
    )
    return retriever.retrieve_snippets(query)
