# Topic Metadata - embeddings and AI summaries for curriculum topics
"""
Topic Metadata walks the curriculum topic catalog, generates a semantic
embedding and a short AI-written summary for every topic that lacks one,
and upserts the results into the topic metadata table.
"""

__version__ = "0.1.0"
