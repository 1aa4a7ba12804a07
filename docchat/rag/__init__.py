"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Loading PDFs, images (OCR) and web pages
- Document chunking with overlap
- FAISS vector storage keyed by chunk ID
- Per-user semantic retrieval
- Prompt assembly and the LLM call
"""
