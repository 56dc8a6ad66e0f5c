"""
Engine exception to HTTP error mapping.
"""

from autoforge.errors import (
    AbortError,
    AlreadyRunningError,
    ExecutionNotRegisteredError,
    FeatureNotFoundError,
    InvalidStatusError,
)
from server.exceptions import ErrorCode, classify_engine_error, create_error_response


class TestClassifyEngineError:
    def test_loop_already_running(self):
        assert classify_engine_error(AlreadyRunningError()) == (409, ErrorCode.CONFLICT, None)

    def test_feature_already_running(self):
        assert classify_engine_error(AlreadyRunningError("f1")) == (
            409, ErrorCode.CONFLICT, {"feature_id": "f1"},
        )

    def test_not_found(self):
        assert classify_engine_error(FeatureNotFoundError("f1"))[:2] == (404, ErrorCode.NOT_FOUND)
        assert classify_engine_error(ExecutionNotRegisteredError("f1"))[:2] == (404, ErrorCode.NOT_FOUND)

    def test_invalid_status(self):
        assert classify_engine_error(InvalidStatusError("done")) == (
            422, ErrorCode.VALIDATION_ERROR, {"status": "done"},
        )

    def test_unexpected_engine_error(self):
        status_code, error_code, details = classify_engine_error(AbortError())

        assert status_code == 500
        assert error_code == ErrorCode.INTERNAL_ERROR
        assert details == {"type": "AbortError"}


def test_error_body_omits_missing_details():
    assert create_error_response("NOT_FOUND", "gone") == {"error_code": "NOT_FOUND", "message": "gone"}
