from relay.services.result import Result


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success("SM123")
        assert result.ok is True
        assert result.value == "SM123"
        assert result.error is None

    def test_success_without_value(self):
        result = Result.success()
        assert result.ok is True
        assert result.value is None


class TestResultFailure:
    def test_failure_creates_not_ok_result(self):
        result = Result.failure("Slot already booked", "slot_taken")
        assert result.ok is False
        assert result.error == "Slot already booked"
        assert result.error_code == "slot_taken"
        assert result.value is None

    def test_failure_default_code(self):
        result = Result.failure("Error message")
        assert result.error_code == "unknown"

    def test_is_error_matches_code(self):
        result = Result.failure("Agent at capacity", "capacity_exceeded")
        assert result.is_error("capacity_exceeded") is True
        assert result.is_error("not_claimable") is False

    def test_success_is_never_an_error(self):
        assert Result.success(1).is_error("unknown") is False


class TestResultUnwrapOr:
    def test_unwrap_or_returns_value_on_success(self):
        assert Result.success("actual value").unwrap_or("default") == "actual value"

    def test_unwrap_or_returns_default_on_failure(self):
        assert Result.failure("Error", "code").unwrap_or("default") == "default"
