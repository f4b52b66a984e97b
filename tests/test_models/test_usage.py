"""Tests for usage normalization."""

from turnstream.models.usage import Usage, normalize_usage


class TestNormalizeUsage:
    def test_full_record(self):
        usage = normalize_usage({"input_tokens": 10, "cached_input_tokens": 4, "output_tokens": 7})
        assert usage == Usage(input_tokens=10, cached_input_tokens=4, output_tokens=7)

    def test_numeric_strings_are_coerced(self):
        usage = normalize_usage({"input_tokens": "12", "output_tokens": "3"})
        assert usage == Usage(input_tokens=12, cached_input_tokens=0, output_tokens=3)

    def test_missing_fields_default_to_zero(self):
        usage = normalize_usage({"output_tokens": 5})
        assert usage == Usage(input_tokens=0, cached_input_tokens=0, output_tokens=5)

    def test_no_token_fields_is_none(self):
        assert normalize_usage({"type": "usage"}) is None

    def test_non_numeric_values_ignored(self):
        assert normalize_usage({"input_tokens": "lots", "output_tokens": None}) is None

    def test_bools_are_not_numbers(self):
        assert normalize_usage({"input_tokens": True}) is None

    def test_non_dict_is_none(self):
        assert normalize_usage(None) is None
        assert normalize_usage([1, 2, 3]) is None
        assert normalize_usage("12") is None


class TestUsageDict:
    def test_from_dict(self):
        assert Usage.from_dict({"input_tokens": 1}) == Usage(input_tokens=1)
        assert Usage.from_dict(None) is None
