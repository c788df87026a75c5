import pytest

from flipforge.pipeline.phases import (
    FINAL_PHASE,
    FIRST_PHASE,
    PHASES,
    get_phase_name,
    next_phase,
    validate_phase_number,
)
from flipforge.utils.errors import InvalidPhaseError


def test_phase_registry_order():
    assert [p.number for p in PHASES] == [1, 2, 3, 4]
    assert FIRST_PHASE == 1
    assert FINAL_PHASE == 4


@pytest.mark.parametrize("number, name", [
    (1, "Product Analysis"),
    (2, "Market Research"),
    (3, "SEO Analysis"),
    (4, "Listing Generation"),
])
def test_get_phase_name(number, name):
    assert get_phase_name(number) == name


@pytest.mark.parametrize("value", [0, 5, -1, 2.0, "2", None, True])
def test_validate_phase_number_rejects(value):
    with pytest.raises(InvalidPhaseError):
        validate_phase_number(value)


def test_invalid_phase_error_details():
    with pytest.raises(InvalidPhaseError) as exc:
        get_phase_name(7)
    assert exc.value.error_type == "invalid_phase"
    assert "7" in exc.value.message


def test_next_phase():
    assert next_phase(1) == 2
    assert next_phase(3) == 4
    assert next_phase(4) is None
