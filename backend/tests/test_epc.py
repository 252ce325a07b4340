"""Tests for EPC normalisation and the WD01 conversion."""

import pytest

from factories import make_wd01
from models import TagType
from services.epc import (
    box_id_from_epc,
    candidate_epcs,
    canonical_epc,
    convert_wd01_to_uhf_epc,
    convocation_from_epc,
    is_box_epc,
    is_graduate_epc,
    is_valid_epc,
    is_wd01_format,
    normalize_epc,
    tag_type_from_epc,
    uhf_epc_to_reversed_hex,
)


class TestWd01Conversion:
    """Test cases for WD01 TID to UHF EPC conversion."""

    @pytest.mark.parametrize(
        "uhf_epc",
        ["E28011606000020D6A8F1234", "0102030405060708090A0B0C", "000000000000000000000000"],
    )
    def test_round_trip(self, uhf_epc: str) -> None:
        """Converting a synthesised WD01 read returns the original EPC."""
        wd01 = make_wd01(uhf_epc)
        assert len(wd01) == 32
        assert wd01.endswith("0030")
        assert convert_wd01_to_uhf_epc(wd01) == uhf_epc

    def test_known_value(self) -> None:
        assert convert_wd01_to_uhf_epc("AABB0C0B0A090807060504030201" + "0030") == "0102030405060708090A0B0C"

    def test_lowercase_input(self) -> None:
        wd01 = make_wd01("E28011606000020D6A8F1234").lower()
        assert convert_wd01_to_uhf_epc(wd01) == "E28011606000020D6A8F1234"

    def test_reversed_hex_swaps_bytes(self) -> None:
        assert uhf_epc_to_reversed_hex("0102A0") == "A00201"


class TestWd01Detection:
    """Test cases for WD01 format detection."""

    def test_detects_wd01(self) -> None:
        assert is_wd01_format(make_wd01("E28011606000020D6A8F1234")) is True

    def test_suffix_is_case_insensitive(self) -> None:
        assert is_wd01_format("a" * 28 + "0030") is True

    def test_rejects_24_chars_even_with_suffix(self) -> None:
        assert is_wd01_format("E2801160600002000000" + "0030") is False

    def test_rejects_wrong_suffix(self) -> None:
        assert is_wd01_format("A" * 28 + "3000") is False

    def test_rejects_non_hex(self) -> None:
        assert is_wd01_format("G" * 28 + "0030") is False

    def test_rejects_empty(self) -> None:
        assert is_wd01_format("") is False


class TestCandidates:
    """Test cases for the lookup fallback chain."""

    def test_plain_epc_only_tries_itself(self) -> None:
        assert candidate_epcs(" e28011606000020d6a8f1234 ") == ["E28011606000020D6A8F1234"]

    def test_long_hex_read_is_truncated(self) -> None:
        read = "E28011606000020D6A8F1234" + "ABCD"
        assert candidate_epcs(read) == [read, "E28011606000020D6A8F1234"]

    def test_wd01_read_is_converted_last(self) -> None:
        wd01 = make_wd01("E28011606000020D6A8F1234")
        candidates = candidate_epcs(wd01)
        assert candidates[0] == wd01
        assert candidates[-1] == "E28011606000020D6A8F1234"

    def test_non_hex_is_not_truncated(self) -> None:
        assert candidate_epcs("120AEC1001-EXTRA-CHARACTERS-HERE") == ["120AEC1001-EXTRA-CHARACTERS-HERE"]

    def test_empty_read(self) -> None:
        assert candidate_epcs("   ") == []

    def test_canonical_epc_converts_wd01(self) -> None:
        assert canonical_epc(make_wd01("E28011606000020D6A8F1234")) == "E28011606000020D6A8F1234"
        assert canonical_epc("box-07") == "BOX-07"


class TestEpcHelpers:
    """Test cases for tag type recognition."""

    def test_normalize(self) -> None:
        assert normalize_epc("  box-1 ") == "BOX-1"
        assert normalize_epc("") == ""

    def test_graduate_pattern(self) -> None:
        assert is_graduate_epc("120AEC1001") is True
        assert is_graduate_epc("45wec12") is True
        assert is_graduate_epc("AEC1001") is False
        assert is_graduate_epc("120XYZ1001") is False

    def test_box_prefix(self) -> None:
        assert is_box_epc("box-07") is True
        assert is_box_epc("07-BOX") is False
        assert box_id_from_epc("BOX-07") == "07"
        assert box_id_from_epc("120AEC1001") is None

    def test_type_detection(self) -> None:
        assert tag_type_from_epc("120AEC1001") == TagType.GRADUATE
        assert tag_type_from_epc("BOX-07") == TagType.BOX
        assert tag_type_from_epc("E28011606000020D6A8F1234") is None

    def test_convocation_from_graduate_epc(self) -> None:
        assert convocation_from_epc("120aec1001") == "120AEC1001"
        assert convocation_from_epc("BOX-07") is None

    def test_valid_epc(self) -> None:
        assert is_valid_epc("120AEC1001") is True
        assert is_valid_epc("BOX-1") is True
        assert is_valid_epc("E28011606000020D6A8F1234") is False
