import pytest

from jpel.files import FileRecord
from jpel.models import FileUpload, InputField
from jpel.validation import FieldValidator


def field(**kwargs):
    kwargs.setdefault("name", "value")
    return InputField(**kwargs)


def test_required_field_rejects_empty_values():
    required = field(required=True, label="Full name")
    for empty in (None, "", "   ", []):
        assert FieldValidator.validate_field(required, empty) == ["Full name is required"]
    assert FieldValidator.validate_field(field(), None) == []


def test_text_pattern_and_length():
    email = field(pattern=r"[^@]+@[^@]+", pattern_description="Enter a valid email")
    assert FieldValidator.validate_field(email, "ada@example.com") == []
    assert FieldValidator.validate_field(email, "nope") == ["Enter a valid email"]

    short = field(min=3, max=5)
    assert FieldValidator.validate_field(short, "ab") == ["value must be at least 3 characters"]
    assert FieldValidator.validate_field(short, "abcdef") == ["value must be at most 5 characters"]


def test_number_bounds_and_coercion():
    age = field(type="number", min=18, max=99)
    assert FieldValidator.validate_field(age, "42") == []
    assert FieldValidator.coerce(age, "42") == 42
    assert FieldValidator.coerce(age, "4.5") == 4.5
    assert FieldValidator.validate_field(age, 12) == ["value must be at least 18"]
    assert FieldValidator.validate_field(age, "abc") == ["value must be a number"]
    assert FieldValidator.validate_field(age, True) == ["value must be a number"]


def test_boolean_coercion():
    flag = field(type="boolean")
    assert FieldValidator.coerce(flag, "yes") is True
    assert FieldValidator.coerce(flag, "0") is False
    assert FieldValidator.validate_field(flag, "maybe") == ["value must be true or false"]


def test_select_options():
    color = field(type="select", options=["red", {"value": "blue", "label": "Blue"}])
    assert FieldValidator.validate_field(color, "blue") == []
    assert FieldValidator.validate_field(color, "green") == ["value must be one of: red, blue"]


def test_date_values():
    due = field(type="date")
    assert FieldValidator.validate_field(due, "2024-05-01") == []
    assert FieldValidator.validate_field(due, "yesterday") == ["value must be a valid date"]


def test_validate_uses_current_values_for_missing_keys():
    fields = [
        field(name="name", required=True),
        field(name="age", type="number", default_value=30),
        field(name="city", required=True),
    ]

    result = FieldValidator.validate(fields, {"name": "Ada"}, current={"city": "Oslo"})

    assert result.valid
    assert result.values == {"name": "Ada", "age": 30, "city": "Oslo"}


def test_validate_collects_errors_per_field():
    fields = [field(name="name", required=True), field(name="age", type="number")]

    result = FieldValidator.validate(fields, {"age": "old"})

    assert not result.valid
    assert result.errors == {"name": ["name is required"], "age": ["age must be a number"]}


@pytest.mark.parametrize("value", ["file-123", "abc"])
def test_file_fields_take_ids(value):
    assert FieldValidator.validate_field(field(type="file"), value) == []


@pytest.mark.parametrize("value", ["nan", "NaN", "Infinity", "-inf", "1e400", float("nan"), float("inf")])
def test_number_rejects_non_finite_values(value):
    bounded = field(type="number", min=0, max=10)
    assert FieldValidator.validate_field(bounded, value) == ["value must be a number"]

    result = FieldValidator.validate([bounded], {"value": value})
    assert not result.valid
    assert "value" not in result.values


def test_unusable_pattern_is_reported_not_raised():
    code = field(pattern="[a-")
    assert FieldValidator.validate_field(code, "x") == ["value has an unusable pattern: [a-"]


def test_upload_slot_limits():
    slot = FileUpload(name="photos", allowed_types=["image/*"], max_bytes=100, max_count=1)

    def record(filename, content_type, size):
        return FileRecord(
            instance_id="i", activity_id="a", variable_name="photos",
            filename=filename, content_type=content_type, size=size,
        )

    assert FieldValidator.check_uploads(slot, []) == []
    assert FieldValidator.check_uploads(slot, [record("a.jpg", "image/jpeg", 50)]) == []
    assert FieldValidator.check_uploads(
        slot, [record("a.jpg", "image/jpeg", 50), record("b.txt", "text/plain", 500)]
    ) == [
        "photos accepts at most 1 file(s)",
        "b.txt is not an allowed type (image/*)",
        "b.txt is larger than 100 bytes",
    ]
    assert FileUpload(name="any").accepts("text/plain", "notes.txt")
    assert FileUpload(name="docs", allowed_types=[".PDF"]).accepts("application/octet-stream", "x.pdf")
