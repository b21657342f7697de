"""
Retrieval layer of the answering workflow.

This package covers everything needed to turn uploaded documents into
searchable vectors and to fetch the most relevant chunks for a query. It
includes a document loader, text cleaning and chunking utilities, embedding
model wrappers, vector index backends, and the retriever interface.

Submodules
----------
document_loader
    Extracts text from plain text, Markdown, PDF and DOCX sources.
document_preprocessor
    Cleaning routines applied prior to chunking.
text_splitter
    Sentence-window and section-aware chunking of documents.
embedder
    Embedding model wrappers.
similarity
    Cosine similarity helpers.
types
    Embedder and retriever protocols, retrieval filters.
vector_store
    Vector index implementations.
retriever
    Vector and hybrid retrievers.
retriever_factory
    Registry for retriever implementations.
"""
