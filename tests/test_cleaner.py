"""Test page text cleaning."""
from ingestion.cleaner import clean_page_text, split_paragraphs


def test_normalizes_line_endings():
    assert clean_page_text("one\r\ntwo\rthree") == "one\ntwo\nthree"


def test_collapses_blank_lines():
    assert clean_page_text("one\n\n\n\n\ntwo") == "one\n\ntwo"


def test_collapses_spaces_and_tabs():
    assert clean_page_text("one  \t  two") == "one two"


def test_strips_control_characters():
    assert clean_page_text("bell\x07 and\x00 nul\x7f") == "bell and nul"


def test_keeps_accented_text():
    assert clean_page_text("  Não há ninguém aqui.  ") == "Não há ninguém aqui."


def test_split_paragraphs():
    text = "First paragraph.\n\nSecond one\nstill second.\n\n\n\nThird."

    assert split_paragraphs(text) == ["First paragraph.", "Second one\nstill second.", "Third."]


def test_split_paragraphs_drops_blank():
    assert split_paragraphs("\n\n  \n\n") == []
