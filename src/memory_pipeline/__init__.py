"""
Memory Pipeline - asynchronous ingestion and embedding of content.

Content submitted into a space is fetched, split into overlapping chunks and
embedded by the external provider configured for the space. Work is
distributed over a worker pool through atomic, leased claims in a
relational store.

Modules:
- contracts: Data models (Embedder, Space, Memory, MemoryChunk)
- chunking: Fixed-window byte chunker
- registry: Embedder lookup and registration
- providers: OpenAI, vLLM and TEI embedding clients
- storage: SQLite and SQL Server stores, vector writer
- pipeline: Coordinator, retry policy, status aggregation, memory service
"""

__version__ = "0.1.0"
