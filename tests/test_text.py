from chatvault.pipeline.text import (
    clean_text_with_positions,
    extract_longest_printable,
    is_archive_token,
    normalize_message_text,
    truncate_for_log,
)


def test_normalize_strips_placeholders_and_keeps_newlines():
    assert normalize_message_text("\ufffc Quick\nmessage\ufffd") == "Quick\nmessage"


def test_normalize_folds_line_separators_and_controls():
    assert normalize_message_text("one\u2028two\u2029three\x07") == "one\ntwo\nthree"


def test_normalize_collapses_horizontal_space():
    assert normalize_message_text("  spaced \t\t out  ") == "spaced out"


def test_normalize_composes_unicode():
    assert normalize_message_text("Cafe\u0301") == "Caf\u00e9"


def test_replacement_only_text_is_no_text():
    assert normalize_message_text("\ufffc\ufffd \ufffc") is None
    assert normalize_message_text("") is None
    assert normalize_message_text(None) is None


def test_positions_follow_removed_characters():
    cleaned = clean_text_with_positions("\ufffcLook here")
    assert cleaned.text == "Look here"
    assert cleaned.remap(1, 4) == (0, 4)
    assert cleaned.remap(0, 1) == (0, 0)


def test_remap_clamps_out_of_range_spans():
    cleaned = clean_text_with_positions("short")
    assert cleaned.remap(3, 50) == (3, 2)
    assert cleaned.remap(40, 5) == (5, 0)


def test_extract_longest_printable_drops_prefix_artifacts():
    data = b"\x00+=" + b"Hello World!" + b"\x00"
    assert extract_longest_printable(data) == "Hello World!"


def test_extract_longest_printable_skips_archive_vocabulary():
    data = b"\x04\x0bstreamtyped\x81\xe8\x03\x84\x01@\x84\x84\x84\x19NSMutableAttributedString\x00hi there\x86"
    assert extract_longest_printable(data) == "hi there"


def test_extract_longest_printable_returns_none_without_text():
    assert extract_longest_printable(b"\x00\x01\x02\xff") is None
    assert extract_longest_printable(b"\x00+= \x00") is None


def test_archive_tokens():
    assert is_archive_token("NSAttributedString")
    assert is_archive_token("__kIMMessagePartAttributeName")
    assert is_archive_token("$null")
    assert not is_archive_token("Nice one")


def test_truncate_for_log():
    assert truncate_for_log("a" * 10, 20) == "a" * 10
    assert truncate_for_log("word " * 40, 12) == "word word w\u2026"
    assert truncate_for_log(None) is None
