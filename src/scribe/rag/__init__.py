"""Scribe retrieval: provider clients and the dense retriever."""
