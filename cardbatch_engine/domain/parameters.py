"""
Typed job parameters and their normalization.

A JobInstance is identified by job name plus the normalized parameter set.
Normalization sorts keys and tags every value with its type, so ``"1"``
(string) and ``1`` (int) identify different instances and the same logical
parameters always hash to the same ``job_key``.

Supported value types: ``str``, ``int`` and ``date``.  Booleans, floats,
datetimes, ``None`` and nested values are rejected.
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any

from cardbatch_kernel.exceptions import InvalidJobParametersError
from cardbatch_kernel.utils.hashing import hash_payload

ParameterValue = str | int | date


class ParameterType(str, Enum):
    STRING = "string"
    INT = "int"
    DATE = "date"

    @classmethod
    def of(cls, value: Any) -> ParameterType:
        if isinstance(value, bool):
            raise TypeError("bool")
        if isinstance(value, str):
            return cls.STRING
        if isinstance(value, int):
            return cls.INT
        if isinstance(value, date) and not isinstance(value, datetime):
            return cls.DATE
        raise TypeError(type(value).__name__)

    def parse(self, text: str) -> ParameterValue:
        if self == ParameterType.INT:
            return int(text)
        if self == ParameterType.DATE:
            return date.fromisoformat(text)
        return text


class JobParameters(Mapping[str, ParameterValue]):
    """Immutable, validated map of launch parameters."""

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, Any] | None = None, job_name: str = "?"):
        errors: list[str] = []
        checked: dict[str, ParameterValue] = {}
        for name, value in (values or {}).items():
            if not isinstance(name, str) or not name:
                errors.append(f"invalid parameter name {name!r}")
                continue
            try:
                ParameterType.of(value)
            except TypeError as exc:
                errors.append(f"{name}: unsupported type {exc}")
                continue
            checked[name] = value
        if errors:
            raise InvalidJobParametersError(job_name, errors)
        self._values = dict(sorted(checked.items()))

    def __getitem__(self, name: str) -> ParameterValue:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, JobParameters):
            return NotImplemented
        return self.normalized() == other.normalized()

    def __hash__(self) -> int:
        return hash(self.job_key)

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}={v!r}" for k, v in self._values.items())
        return f"JobParameters({inner})"

    def normalized(self) -> dict[str, dict[str, str]]:
        """Sorted ``{name: {"type": ..., "value": ...}}`` with values as text."""
        return {
            name: {
                "type": ParameterType.of(value).value,
                "value": value.isoformat() if isinstance(value, date) else str(value),
            }
            for name, value in self._values.items()
        }

    @property
    def job_key(self) -> str:
        return hash_payload(self.normalized())

    def to_json(self) -> dict[str, dict[str, str]]:
        return self.normalized()

    @classmethod
    def from_json(cls, data: Mapping[str, Mapping[str, str]]) -> JobParameters:
        return cls(
            {
                name: ParameterType(entry["type"]).parse(entry["value"])
                for name, entry in data.items()
            }
        )


_CLI_PARAM_RE = re.compile(r"^(?P<name>[A-Za-z_][A-Za-z0-9_.]*)(?:\((?P<type>\w+)\))?=(?P<value>.*)$")


def parse_cli_parameters(tokens: list[str], job_name: str = "?") -> JobParameters:
    """
    Parse ``name(type)=value`` tokens (type defaults to string).

        processing_date(date)=2024-01-15  run(int)=2  input_file=/data/dalytran.txt
    """
    values: dict[str, ParameterValue] = {}
    errors: list[str] = []
    for token in tokens:
        match = _CLI_PARAM_RE.match(token)
        if match is None:
            errors.append(f"cannot parse {token!r}; expected name(type)=value")
            continue
        type_name = match.group("type") or ParameterType.STRING.value
        try:
            param_type = ParameterType(type_name)
            values[match.group("name")] = param_type.parse(match.group("value"))
        except ValueError:
            errors.append(f"{match.group('name')}: invalid {type_name} value")
    if errors:
        raise InvalidJobParametersError(job_name, errors)
    return JobParameters(values, job_name)


@dataclass(frozen=True)
class ParameterSpec:
    """Declared parameter of a job definition."""

    name: str
    param_type: ParameterType
    required: bool = True


def validate_parameters(
    job_name: str,
    params: JobParameters,
    specs: tuple[ParameterSpec, ...],
) -> None:
    """
    Check required presence and declared types.

    Undeclared parameters are allowed; they become part of the instance
    identity like any other parameter.

    Raises:
        InvalidJobParametersError: listing every problem found.
    """
    errors: list[str] = []
    for spec in specs:
        if spec.name not in params:
            if spec.required:
                errors.append(f"{spec.name} ({spec.param_type.value}) is required")
            continue
        actual = ParameterType.of(params[spec.name])
        if actual != spec.param_type:
            errors.append(
                f"{spec.name} must be {spec.param_type.value}, got {actual.value}"
            )
    if errors:
        raise InvalidJobParametersError(job_name, errors)
