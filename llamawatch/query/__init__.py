"""RAG query service: retrieval, prompt construction and the HTTP API."""
