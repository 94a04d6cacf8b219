"""Scribe: retrieval-augmented drafting pipeline for thesis writing."""
