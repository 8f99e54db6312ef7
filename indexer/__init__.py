"""Storage, embeddings, language models and retrieval for Pathfinder."""
