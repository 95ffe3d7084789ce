import pytest

from messages import MissingSpec
from missing_values import MissingKind, classify, to_number


def test_discrete_numeric_matches_number_and_string():
    spec = MissingSpec(discrete=[-99])
    for raw in (-99, "-99", -99.0, " -99 "):
        cv = classify(raw, spec, "NUMERIC")
        assert cv.missing_kind is MissingKind.USER_DEFINED
        assert cv.is_missing
        assert cv.representative == -99


def test_empty_string_is_system_missing_for_numeric_and_date():
    spec = MissingSpec(discrete=[""])
    assert classify("", spec, "NUMERIC").missing_kind is MissingKind.SYSTEM
    assert classify("", None, "DATE").missing_kind is MissingKind.SYSTEM


def test_empty_string_is_valid_for_string():
    cv = classify("", None, "STRING")
    assert cv.missing_kind is MissingKind.NONE
    assert not cv.is_missing


def test_none_is_system_missing_for_every_type():
    for var_type in ("NUMERIC", "DATE", "STRING"):
        assert classify(None, None, var_type).missing_kind is MissingKind.SYSTEM


def test_discrete_string_members_compare_as_text():
    spec = MissingSpec(discrete=["NA", "refused"])
    assert classify("NA", spec, "STRING").missing_kind is MissingKind.USER_DEFINED
    assert classify("na", spec, "STRING").missing_kind is MissingKind.NONE
    # Non-numeric member on a numeric variable falls back to string equality.
    assert classify("refused", spec, "NUMERIC").representative == "refused"


def test_first_matching_discrete_member_is_representative():
    spec = MissingSpec(discrete=["9", 9.0])
    cv = classify(9, spec, "NUMERIC")
    assert cv.representative == "9"


def test_range_is_inclusive_and_keeps_raw_value():
    spec = MissingSpec(range={"min": 90, "max": 99})
    for raw in (90, 95.5, "99"):
        cv = classify(raw, spec, "NUMERIC")
        assert cv.missing_kind is MissingKind.USER_DEFINED
        assert cv.representative == raw
    assert classify(89.999, spec, "NUMERIC").missing_kind is MissingKind.NONE
    assert classify(100, spec, "NUMERIC").missing_kind is MissingKind.NONE


def test_range_ignores_unparseable_values():
    spec = MissingSpec(range={"min": 0, "max": 10})
    assert classify("abc", spec, "NUMERIC").missing_kind is MissingKind.NONE


def test_range_only_applies_to_numeric():
    spec = MissingSpec(range={"min": 0, "max": 10})
    assert classify("5", spec, "STRING").missing_kind is MissingKind.NONE
    assert classify("05-05-2020", spec, "DATE").missing_kind is MissingKind.NONE


def test_discrete_checked_before_range():
    spec = MissingSpec(discrete=[-1], range={"min": -9, "max": -5})
    assert classify(-1, spec, "NUMERIC").representative == -1
    assert classify(-7, spec, "NUMERIC").representative == -7
    assert classify(0, spec, "NUMERIC").missing_kind is MissingKind.NONE


def test_inverted_range_is_rejected():
    with pytest.raises(ValueError):
        MissingSpec(range={"min": 10, "max": 1})


@pytest.mark.parametrize("raw,expected", [
    (3, 3.0),
    (" 2.5 ", 2.5),
    ("1e3", 1000.0),
    ("", None),
    ("   ", None),
    ("abc", None),
    ("nan", None),
    ("inf", None),
    (float("-inf"), None),
    (True, None),
    (None, None),
])
def test_to_number(raw, expected):
    assert to_number(raw) == expected
