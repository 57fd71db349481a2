from knowledge_service.services.chunking import chunk_text


def test_chunk_text_empty_input_returns_nothing():
    assert chunk_text("") == []


def test_chunk_text_short_text_is_single_chunk():
    chunks = chunk_text("Only a short note about the roadmap.")

    assert len(chunks) == 1
    assert chunks[0].text == "Only a short note about the roadmap."
    assert chunks[0].char_start == 0
    assert chunks[0].chunk_index == 0


def test_chunk_text_respects_max_size_and_overlap():
    text = " ".join(f"Sentence {i} covers the migration plan for the billing system." for i in range(60))

    chunks = chunk_text(text)

    assert len(chunks) >= 2
    assert all(len(chunk.text) <= 1200 for chunk in chunks)
    assert [chunk.chunk_index for chunk in chunks] == list(range(len(chunks)))
    for previous, current in zip(chunks, chunks[1:]):
        assert previous.char_end - current.char_start == 150


def test_chunk_text_prefers_paragraph_breaks():
    first = "A" * 900
    text = f"{first}\n\n" + "b " * 400

    chunks = chunk_text(text)

    assert chunks[0].char_end == len(first) + 2
    assert chunks[0].text == first


def test_chunk_text_falls_back_to_hard_cut_without_breaks():
    chunks = chunk_text("x" * 3000)

    assert all(len(chunk.text) <= 1200 for chunk in chunks)
    assert chunks[0].char_end == 1000
    assert chunks[-1].char_end == 3000


def test_chunk_text_token_estimate_is_quarter_of_length():
    chunk = chunk_text("abcdefghij")[0]

    assert chunk.token_estimate == 3
