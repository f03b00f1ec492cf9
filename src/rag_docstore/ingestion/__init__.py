"""
Ingestion: chunking and embedding of document content.

Turns the raw text of a document into ordered, position-tagged chunks and
the vectors stored for them.
"""
