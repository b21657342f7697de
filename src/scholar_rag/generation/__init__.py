"""scholar_rag.generation

Language model wrappers, prompt templates and answer generation.

Modules
-------
llm_interface
    Completion model wrappers and factory.
prompt_builder
    Named Jinja2 prompt templates.
answer_generator
    Mode-aware answer generation from retrieved context.
"""
