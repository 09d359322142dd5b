from dataclasses import FrozenInstanceError

import pytest

from routine_api.result import Result


def test_ok_holds_value_only():
    result: Result[int, str] = Result.ok(42)

    assert result.is_ok
    assert not result.is_err
    assert result.value == 42
    with pytest.raises(ValueError, match="Called error on Result.ok"):
        _ = result.error


def test_err_holds_error_only():
    result: Result[int, str] = Result.err("division_by_zero")

    assert result.is_err
    assert not result.is_ok
    assert result.error == "division_by_zero"
    with pytest.raises(ValueError, match="Called value on Result.err"):
        _ = result.value


def test_none_is_a_valid_success_value():
    result: Result[None, str] = Result.ok(None)
    assert result.is_ok
    assert result.value is None


def test_both_or_neither_side_is_refused():
    with pytest.raises(ValueError):
        Result()
    with pytest.raises(ValueError):
        Result(_value=1, _error="boom")


def test_result_is_frozen():
    result: Result[str, str] = Result.ok("value")
    with pytest.raises(FrozenInstanceError):
        result._value = "changed"  # type: ignore[misc]
