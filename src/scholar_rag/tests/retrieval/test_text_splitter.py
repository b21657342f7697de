from scholar_rag.retrieval.document_preprocessor import clean_text
from scholar_rag.retrieval.text_splitter import (
    SentenceWindowSplitter,
    chunk_document_text,
    semantic_sections,
    split_sentences,
)

FIVE_SENTENCES = "Alpha is one. Beta is two. Gamma is three. Delta is four. Epsilon is five."


def test_split_sentences_keeps_terminators_and_trailing_text():
    sentences = split_sentences("What is a cell? It is a unit! And more text")

    assert sentences == ["What is a cell?", "It is a unit!", "And more text"]


def test_sentence_windows_carry_trailing_sentence_as_overlap():
    """
    With a 30 character budget each chunk holds two short sentences and the
    next chunk starts with the last sentence of the previous one, unless the
    seed plus the incoming sentence would overflow the budget.
    """
    splitter = SentenceWindowSplitter(chunk_size=30, chunk_overlap=20, overlap_sentences=1)

    spans = splitter.split(FIVE_SENTENCES, title="Greek letters")

    assert [s.text for s in spans] == [
        "Alpha is one. Beta is two.",
        "Beta is two. Gamma is three.",
        "Gamma is three. Delta is four.",
        "Epsilon is five.",
    ]
    for span in spans:
        assert len(span.text) <= 30
    assert [s.index for s in spans] == [0, 1, 2, 3]
    assert spans[1].sentence_start == 1
    assert spans[1].sentence_end == 3
    assert spans[1].metadata["document_title"] == "Greek letters"
    assert spans[1].metadata["char_count"] == len(spans[1].text)


def test_oversized_sentence_is_emitted_whole():
    long_sentence = "This single sentence is far longer than the configured limit."
    splitter = SentenceWindowSplitter(chunk_size=20, chunk_overlap=10, overlap_sentences=2)

    spans = splitter.split(f"{long_sentence} Short.")

    assert spans[0].text == long_sentence
    assert len(spans[0].text) > 20
    assert spans[1].text == "Short."


def test_empty_text_yields_no_chunks():
    splitter = SentenceWindowSplitter()

    assert splitter.split("") == []
    assert splitter.split("   \n\t ") == []
    assert chunk_document_text("", document_id="doc-1") == []


def test_chunking_is_idempotent():
    first = chunk_document_text(FIVE_SENTENCES, document_id="doc-1", title="T", chunk_size=30, chunk_overlap=20)
    second = chunk_document_text(FIVE_SENTENCES, document_id="doc-1", title="T", chunk_size=30, chunk_overlap=20)

    assert [(c.id, c.text, c.chunk_index, c.metadata) for c in first] == [
        (c.id, c.text, c.chunk_index, c.metadata) for c in second
    ]


def test_chunks_are_linked_to_neighbours():
    chunks = chunk_document_text(FIVE_SENTENCES, document_id="doc-1", chunk_size=30, chunk_overlap=20)

    assert chunks[0].prev_id is None
    assert chunks[-1].next_id is None
    for left, right in zip(chunks, chunks[1:]):
        assert left.next_id == right.id
        assert right.prev_id == left.id
    assert all(c.parent_id == "doc-1" for c in chunks)


def test_zero_overlap_produces_disjoint_chunks():
    splitter = SentenceWindowSplitter(chunk_size=30, chunk_overlap=0)

    spans = splitter.split(FIVE_SENTENCES)

    covered = [i for s in spans for i in range(s.sentence_start, s.sentence_end)]
    assert covered == list(range(5))


def test_semantic_sections_split_on_blank_lines_and_headings():
    text = (
        "# Cells\n"
        "Cells are the basic unit of life and every organism is made of them.\n\n"
        "# Energy\n"
        "Mitochondria release energy from glucose through cellular respiration.\n\n"
        "Short."
    )

    spans = semantic_sections(text, title="Biology")

    assert len(spans) == 2
    assert spans[0].text.startswith("# Cells Cells are")
    assert spans[1].text.startswith("# Energy Mitochondria")
    assert all(s.metadata["type"] == "semantic_section" for s in spans)
    assert [s.index for s in spans] == [0, 1]


def test_clean_text_normalises_whitespace_page_markers_and_dot_leaders():
    raw = "Chapter 1\n\n  Introduction.......... 3\nPage 12\nCells   divide."

    assert clean_text(raw) == "Chapter 1 Introduction. 3 Cells divide."
    assert clean_text("") == ""
    assert clean_text("  \n ") == ""
