from replyflow.services.result import Result


class TestResult:
    def test_success(self):
        result = Result.success({"id": 1})

        assert result.ok is True
        assert result.value == {"id": 1}
        assert result.error is None
        assert bool(result) is True

    def test_failure_carries_code_and_details(self):
        result = Result.failure("rejected", "channel_error", status_code=400)

        assert result.ok is False
        assert result.error == "rejected"
        assert result.error_code == "channel_error"
        assert result.details == {"status_code": 400}
        assert bool(result) is False

    def test_failure_default_code(self):
        assert Result.failure("boom").error_code == "unknown"

    def test_unwrap_or(self):
        assert Result.success(5).unwrap_or(0) == 5
        assert Result.failure("x").unwrap_or(0) == 0
