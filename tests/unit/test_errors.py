"""Error taxonomy."""

import pydantic
import pytest

from moments.achievements.errors import (
    AchievementError,
    ConflictError,
    NotFoundError,
    PrerequisiteNotMetError,
    TransientStorageError,
    ValidationError,
)


class _Model(pydantic.BaseModel):
    target: int = pydantic.Field(gt=0)


class TestErrors:
    def test_default_codes(self):
        assert ValidationError("x").code == "VALIDATION_ERROR"
        assert NotFoundError("Template", "t1").code == "NOT_FOUND"
        assert ConflictError("x").code == "CONFLICT"
        assert TransientStorageError("x").code == "STORAGE_UNAVAILABLE"
        assert PrerequisiteNotMetError("t1", ["t0"]).code == "PREREQUISITES_NOT_MET"

    def test_retryable_flags(self):
        assert ConflictError("x").retryable is True
        assert TransientStorageError("x").retryable is True
        assert ValidationError("x").retryable is False
        assert ConflictError("x", retryable=False).retryable is False

    def test_code_override_is_per_instance(self):
        err = ConflictError("x", code="ALREADY_ACHIEVED")
        assert err.code == "ALREADY_ACHIEVED"
        assert ConflictError("y").code == "CONFLICT"

    def test_to_dict(self):
        err = NotFoundError("Template", "t1")
        assert err.to_dict() == {
            "code": "NOT_FOUND",
            "message": "Template t1 not found.",
            "retryable": False,
            "details": {"kind": "Template", "key": "t1"},
        }
        assert "details" not in AchievementError("plain").to_dict()

    def test_from_pydantic(self):
        with pytest.raises(pydantic.ValidationError) as exc_info:
            _Model(target=0)
        err = ValidationError.from_pydantic(exc_info.value, "Bad input.")
        assert err.message == "Bad input."
        assert err.details["errors"][0]["field"] == "target"
        assert err.details["errors"][0]["type"] == "greater_than"

    def test_hierarchy(self):
        for err in (ValidationError("x"), ConflictError("x"), TransientStorageError("x")):
            assert isinstance(err, AchievementError)
