# =============================================================================
# Services Package: External Collaborators of the Reasoning Core
# =============================================================================
#   - llm.py: Multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#     with token streaming and the optional web search tool
#   - embedder.py: OpenAI embedding generation (batch processing)
#   - vectorstore.py: Pluggable vector store protocol (pgvector, Chroma)
#   - retrieval.py: Expert-scoped similarity retrieval over a vector store
#   - experts.py: Expert persona and active decision tree lookup
#   - audit.py: Fire-and-forget audit log sink
#   - chunker.py: Knowledge document chunking for ingestion
# =============================================================================
