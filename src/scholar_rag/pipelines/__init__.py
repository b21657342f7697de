"""scholar_rag.pipelines

Orchestration of the answering workflow and document ingestion.

The workflow components hold no per-request state beyond their injected
collaborators, so a single instance can serve concurrent requests.

Modules
-------
workflow_state
    Workflow stages, state record and the pure transition function.
rag_workflow
    Self-refining retrieval-augmented answering loop.
ingestion
    Document ingestion, listing, update and deletion.
"""
