"""Packaged prompt templates (``pkg:scholar_rag.prompts:default.json``)."""
