"""
test_filenames.py
~~~~~~~~~~~~~~~~~
Natural ordering, base keys and entry validation for frame filenames,
plus Hypothesis properties of the comparator.
"""
from __future__ import annotations

from hypothesis import given
from hypothesis import strategies as st

from subocr.services.filenames import (
    base_key,
    compare,
    natural_sorted,
    tokenize,
    validate_processable_entry,
)


# ─── Strategies ──────────────────────────────────────────────────────────────

filenames = st.builds(
    lambda stem, ext: stem + ext,
    st.text(alphabet=st.sampled_from("0123456789ab.-_"), min_size=1, max_size=8),
    st.sampled_from([".png", ".jpg", ".JPEG", ""]),
)


class TestTokenize:

    def test_digit_runs_become_integers(self):
        assert tokenize("Frame12b3.PNG") == ["frame", 12, "b", 3]

    def test_extension_is_stripped(self):
        assert tokenize("2.1.png") == [2, ".", 1]


class TestCompare:

    def test_numbers_compare_by_value(self):
        assert compare("2.png", "10.png") == -1
        assert compare("10.png", "2.png") == 1

    def test_shorter_sequence_sorts_first(self):
        assert compare("2.png", "2.1.png") == -1

    def test_number_before_text_at_same_position(self):
        assert compare("5.png", "a.png") == -1
        assert compare("a.png", "5.png") == 1

    def test_case_and_extension_ignored(self):
        assert compare("7.PNG", "7.jpg") == 0

    def test_natural_order(self):
        names = ["10.png", "2.1.png", "intro.png", "1.png", "2.png", "2-1.png"]
        assert natural_sorted(names) == ["1.png", "2.png", "2-1.png", "2.1.png", "10.png", "intro.png"]

    @given(filenames)
    def test_reflexive(self, name):
        assert compare(name, name) == 0

    @given(filenames, filenames)
    def test_antisymmetric(self, a, b):
        assert compare(a, b) == -compare(b, a)

    @given(st.lists(filenames, min_size=2, max_size=8))
    def test_sorted_output_is_monotonic(self, names):
        ordered = natural_sorted(names)
        for left, right in zip(ordered, ordered[1:]):
            assert compare(left, right) <= 0


class TestBaseKey:

    def test_variants_share_primary_key(self):
        assert base_key("5.1.png") == base_key("5-2.png") == base_key("05.png") == "5"

    def test_no_leading_digits_keeps_stem(self):
        assert base_key("intro.png") == "intro"

    def test_directory_is_ignored(self):
        assert base_key("scene/012.jpg") == "12"


class TestValidateProcessableEntry:

    def test_rejects_platform_metadata(self):
        assert validate_processable_entry("__MACOSX/5.png") is None
        assert validate_processable_entry("._5.png") is None
        assert validate_processable_entry("frames/._5.png") is None

    def test_rejects_names_without_leading_digit(self):
        assert validate_processable_entry("abc.png") is None

    def test_rejects_other_extensions(self):
        assert validate_processable_entry("5.txt") is None
        assert validate_processable_entry("5.gif") is None

    def test_primary_frame_is_archived(self):
        entry = validate_processable_entry("5.png")
        assert entry is not None
        assert entry.base_name == "5"
        assert entry.original_name == "5.png"
        assert entry.include_in_final_archive is True

    def test_variant_frames_are_not_archived(self):
        decimal = validate_processable_entry("5.1.png")
        hyphen = validate_processable_entry("frames/12-1.JPG")
        assert decimal.base_name == "5" and decimal.include_in_final_archive is False
        assert hyphen.base_name == "12" and hyphen.include_in_final_archive is False
        assert hyphen.original_name == "12-1.JPG"
