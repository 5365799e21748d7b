"""
Configurable operations: named policy objects with declared argument schemas.

Promotion conditions and actions, shipping checkers and calculators, tax
strategies and payment method handlers are all ConfigurableOperationDef
values. Each is registered by code in an OperationRegistry and resolved at
the point of use; the arguments stored alongside a reference entity are
validated against the definition's schema with a generated pydantic model.
"""

import inspect
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from functools import cached_property
from typing import Any, Annotated, Callable, Generic, Iterable, Mapping, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from orderflow.core.errors import ConfigurationError
from orderflow.core.logging import get_logger

logger = get_logger(__name__)


class ConfigArgType(str, Enum):
    """Supported argument types for configurable operations."""

    STRING = "string"
    INT = "int"
    BOOLEAN = "boolean"
    MONEY = "money"
    PERCENTAGE = "percentage"
    ID_LIST = "id_list"


_PYTHON_TYPES: dict[ConfigArgType, Any] = {
    ConfigArgType.STRING: str,
    ConfigArgType.INT: int,
    ConfigArgType.BOOLEAN: bool,
    ConfigArgType.MONEY: Annotated[int, Field(ge=0)],
    ConfigArgType.PERCENTAGE: Annotated[Decimal, Field(ge=0, le=100)],
    ConfigArgType.ID_LIST: list[str],
}

_REQUIRED = object()


@dataclass(frozen=True)
class ConfigArg:
    """Declaration of a single operation argument."""

    type: ConfigArgType
    default: Any = _REQUIRED
    description: str = ""

    @property
    def required(self) -> bool:
        return self.default is _REQUIRED


class ConfiguredOperation(BaseModel):
    """Reference to a registered operation plus the argument values to run it with."""

    model_config = ConfigDict(frozen=True)

    code: str
    args: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True, eq=False)
class ConfigurableOperationDef:
    """
    Base data for every configurable operation.

    Attributes:
        code: Unique code the operation is registered and resolved by
        description: Human-readable description
        args: Declared argument schema
    """

    code: str
    description: str = ""
    args: Mapping[str, ConfigArg] = field(default_factory=dict)

    @cached_property
    def args_model(self) -> type[BaseModel]:
        fields: dict[str, Any] = {}
        for name, arg in self.args.items():
            python_type = _PYTHON_TYPES[arg.type]
            fields[name] = (python_type, ... if arg.required else arg.default)
        return create_model(
            f"{self.code.replace('-', '_')}_args",
            __config__=ConfigDict(extra="forbid"),
            **fields,
        )

    def validate_args(self, values: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
        """
        Validate argument values against the declared schema.

        Raises:
            ConfigurationError: If values are missing, unknown or mistyped
        """
        try:
            return self.args_model.model_validate(dict(values or {})).model_dump()
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid arguments for operation \"{self.code}\"",
                operation=self.code,
                errors=[
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                ],
            ) from e


D = TypeVar("D", bound=ConfigurableOperationDef)


class OperationRegistry(Generic[D]):
    """Lookup table of operation definitions of one kind, keyed by code."""

    def __init__(self, kind: str, definitions: Iterable[D] = ()):
        self.kind = kind
        self._definitions: dict[str, D] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: D) -> None:
        if definition.code in self._definitions:
            raise ConfigurationError(
                f"Duplicate {self.kind} code \"{definition.code}\"",
                kind=self.kind,
                code=definition.code,
            )
        self._definitions[definition.code] = definition

    def get(self, code: str) -> Optional[D]:
        return self._definitions.get(code)

    def resolve(self, code: str) -> D:
        definition = self._definitions.get(code)
        if definition is None:
            raise ConfigurationError(
                f"No {self.kind} with the code \"{code}\" is configured",
                kind=self.kind,
                code=code,
                available=self.codes(),
            )
        return definition

    def bind(self, configured: ConfiguredOperation) -> tuple[D, dict[str, Any]]:
        """Resolve a configured operation and validate its argument values."""
        definition = self.resolve(configured.code)
        return definition, definition.validate_args(configured.args)

    def codes(self) -> list[str]:
        return list(self._definitions)

    def __contains__(self, code: object) -> bool:
        return code in self._definitions

    def __iter__(self):
        return iter(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)


async def call_operation(fn: Callable[..., Any], *args: Any) -> Any:
    """Invoke an operation callable, awaiting the result if it is awaitable."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result
