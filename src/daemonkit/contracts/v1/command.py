from __future__ import annotations

from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, NoReturn, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from ...errors import (
    EmptyCommandNameError,
    InvalidParameterIndexError,
    OptionRequirementError,
    UnexpectedOptionError,
)


OptionMap = Dict[str, Optional[str]]


class OptionRef:
    """A lookup result for one option of one command.

    The reference is truthy iff the option is present. `value` is None both
    when the option is absent and when it was given without `=value`; use
    `is_present` to tell the two apart.
    """

    __slots__ = ("_command", "_name", "_present", "_value")

    def __init__(self, command: "Command", name: str, *, present: bool = False, value: Optional[str] = None) -> None:
        self._command = command
        self._name = name
        self._present = present
        self._value = value if present else None

    def __bool__(self) -> bool:
        return self._present

    def __repr__(self) -> str:
        if not self._present:
            return f"OptionRef(--{self._name}, absent)"
        return f"OptionRef(--{self._name}, value={self._value!r})"

    @property
    def command(self) -> "Command":
        return self._command

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_present(self) -> bool:
        return self._present

    @property
    def value(self) -> Optional[str]:
        return self._value

    def present_without_value(self) -> bool:
        """Return presence; a present option must not carry a value."""
        if self._present and self._value is not None:
            self._fail("requires no value")
        return self._present

    def present_with_value(self) -> bool:
        """Return presence; a present option must carry a value."""
        if self._present and self._value is None:
            self._fail("requires a value")
        return self._present

    def mandatory_value(self) -> Optional[str]:
        if not self._present:
            self._fail("is mandatory")
        return self._value

    def mandatory_not_null(self) -> str:
        value = self.mandatory_value()
        if value is None:
            self._fail("requires a value")
        return value

    def mandatory_not_empty(self) -> str:
        value = self.mandatory_not_null()
        if not value:
            self._fail("requires a non-empty value")
        return value

    def _fail(self, requirement: str) -> NoReturn:
        raise OptionRequirementError(self._name, requirement)


class Command(BaseModel):
    """One parsed unit of the argument stream: name, options and parameters."""

    name: str
    # Stored as a read-only view.
    options: Mapping[str, Optional[str]] = Field(default_factory=dict, validate_default=True)
    parameters: Tuple[str, ...] = ()

    model_config = ConfigDict(extra="forbid", frozen=True)

    def __init__(
        self,
        name: str,
        options: Optional[Mapping[str, Optional[str]]] = None,
        parameters: Iterable[str] = (),
        **data: Any,
    ) -> None:
        if not name:
            raise EmptyCommandNameError()
        super().__init__(name=name, options=dict(options or {}), parameters=tuple(parameters), **data)

    @field_validator("name")
    @classmethod
    def _name_not_empty(cls, v: str) -> str:
        if not v:
            raise EmptyCommandNameError()
        return v

    @field_validator("options")
    @classmethod
    def _freeze_options(cls, v: Mapping[str, Optional[str]]) -> Mapping[str, Optional[str]]:
        return MappingProxyType(dict(v))

    @field_serializer("options")
    def _dump_options(self, v: Mapping[str, Optional[str]]) -> OptionMap:
        return dict(v)

    def __hash__(self) -> int:
        return hash((self.name, frozenset(self.options.items()), self.parameters))

    def __getitem__(self, key: Union[str, int]) -> Any:
        if isinstance(key, str):
            return self.option(key)
        return self.parameter(key)

    def option(self, name: str) -> OptionRef:
        if name in self.options:
            return OptionRef(self, name, present=True, value=self.options[name])
        return OptionRef(self, name)

    def option_refs(self, *names: str) -> Tuple[OptionRef, ...]:
        return tuple(self.option(n) for n in names)

    def options_strict(self, *names: str) -> Tuple[OptionRef, ...]:
        """Like option_refs(), but reject any option of this command not listed in `names`."""
        allowed = set(names)
        for key in sorted(self.options):
            if key not in allowed:
                raise UnexpectedOptionError(key)
        return self.option_refs(*names)

    def parameter(self, index: int) -> str:
        if not 0 <= index < len(self.parameters):
            raise InvalidParameterIndexError(index)
        return self.parameters[index]
