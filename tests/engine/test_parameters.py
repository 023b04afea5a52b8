"""
Tests for typed job parameters, instance identity and CLI parsing.
"""

from datetime import date, datetime

import pytest

from cardbatch_engine.domain.parameters import (
    JobParameters,
    ParameterSpec,
    ParameterType,
    parse_cli_parameters,
    validate_parameters,
)
from cardbatch_kernel.exceptions import InvalidJobParametersError


class TestJobParameters:
    def test_key_is_independent_of_insertion_order(self):
        a = JobParameters({"processing_date": date(2024, 1, 15), "run": 1})
        b = JobParameters({"run": 1, "processing_date": date(2024, 1, 15)})
        assert a.job_key == b.job_key
        assert a == b

    def test_type_is_part_of_identity(self):
        assert JobParameters({"run": 1}).job_key != JobParameters({"run": "1"}).job_key

    def test_json_round_trip(self):
        params = JobParameters({"processing_date": date(2024, 1, 15), "run": 2, "f": "x"})
        assert JobParameters.from_json(params.to_json()) == params

    @pytest.mark.parametrize(
        "value", [True, 1.5, None, datetime(2024, 1, 15, 10, 0), ["a"]],
    )
    def test_unsupported_types_rejected(self, value):
        with pytest.raises(InvalidJobParametersError):
            JobParameters({"bad": value})

    def test_is_read_only(self):
        params = JobParameters({"a": "x"})
        with pytest.raises(TypeError):
            params["a"] = "y"


class TestValidate:
    SPECS = (
        ParameterSpec("processing_date", ParameterType.DATE),
        ParameterSpec("input_file", ParameterType.STRING),
        ParameterSpec("run", ParameterType.INT, required=False),
    )

    def test_valid(self):
        validate_parameters(
            "daily_posting",
            JobParameters({"processing_date": date(2024, 1, 15), "input_file": "x"}),
            self.SPECS,
        )

    def test_reports_every_problem(self):
        with pytest.raises(InvalidJobParametersError) as exc_info:
            validate_parameters(
                "daily_posting",
                JobParameters({"processing_date": "2024-01-15", "run": "2"}),
                self.SPECS,
            )
        assert len(exc_info.value.errors) == 3

    def test_undeclared_parameters_allowed(self):
        validate_parameters(
            "daily_posting",
            JobParameters(
                {"processing_date": date(2024, 1, 15), "input_file": "x", "note": "rerun"}
            ),
            self.SPECS,
        )


class TestCliParsing:
    def test_typed_tokens(self):
        params = parse_cli_parameters(
            ["processing_date(date)=2024-01-15", "run(int)=2", "input_file=/data/in.txt"]
        )
        assert params["processing_date"] == date(2024, 1, 15)
        assert params["run"] == 2
        assert params["input_file"] == "/data/in.txt"

    def test_bad_token(self):
        with pytest.raises(InvalidJobParametersError):
            parse_cli_parameters(["no-equals-sign"])

    def test_bad_typed_value(self):
        with pytest.raises(InvalidJobParametersError):
            parse_cli_parameters(["processing_date(date)=2024-02-30"])

    def test_unknown_type(self):
        with pytest.raises(InvalidJobParametersError):
            parse_cli_parameters(["flag(bool)=true"])
