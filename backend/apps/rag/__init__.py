"""
RAG (Retrieval Augmented Generation) app.

Provides:
- Packaged index loading, caching and vector search
- Section-row retrieval for incrementally indexed documents
- Grounded answers and tender briefs with citations
"""
