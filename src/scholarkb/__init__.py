"""scholarkb — scholarly knowledge base with hybrid retrieval."""
