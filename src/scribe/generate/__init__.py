"""Scribe generation: prompt assembly, streaming and one-shot drafting."""
