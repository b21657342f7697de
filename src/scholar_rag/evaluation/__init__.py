"""scholar_rag.evaluation

Quality scoring of generated answers.

Modules
-------
self_evaluator
    Model-backed answer evaluation with a heuristic fallback.
"""
