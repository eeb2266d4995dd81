# gatekeeper/models/schema_models.py
"""
Declarative field rules for endpoint input schemas.

A schema is an ordered mapping of field name -> FieldRule. Rules are a tagged
union on ``type`` so that bounds only exist where they make sense (length
bounds on strings and emails, numeric bounds on numbers). Rules are frozen:
they are defined once per endpoint at startup.
"""

import re
from typing import Annotated, Any, Dict, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from gatekeeper.core.exceptions import ConfigurationError


class _RuleBase(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    name: Optional[str] = None
    required: bool = False
    allowed_values: Optional[Tuple[Any, ...]] = Field(default=None, alias="allowedValues")

    @model_validator(mode="after")
    def _check_allowed_values(self):
        if self.allowed_values is not None and len(self.allowed_values) == 0:
            raise ValueError("allowedValues must not be empty when present")
        return self


class _LengthBounded(_RuleBase):
    min_length: Optional[int] = Field(default=None, alias="minLength", ge=0)
    max_length: Optional[int] = Field(default=None, alias="maxLength", ge=0)

    @model_validator(mode="after")
    def _check_length_bounds(self):
        if (
            self.min_length is not None
            and self.max_length is not None
            and self.min_length > self.max_length
        ):
            raise ValueError("minLength must be <= maxLength")
        return self


class StringRule(_LengthBounded):
    type: Literal["string"] = "string"
    pattern: Optional[str] = None
    sanitize: bool = False

    @field_validator("pattern")
    @classmethod
    def _check_pattern(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            try:
                re.compile(value)
            except re.error as e:
                raise ValueError(f"pattern is not a valid regular expression: {e}") from e
        return value


class EmailRule(_LengthBounded):
    type: Literal["email"] = "email"


class NumberRule(_RuleBase):
    type: Literal["number"] = "number"
    min: Optional[float] = None
    max: Optional[float] = None

    @model_validator(mode="after")
    def _check_range(self):
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("min must be <= max")
        return self


class BooleanRule(_RuleBase):
    type: Literal["boolean"] = "boolean"


FieldRule = Annotated[
    Union[StringRule, NumberRule, BooleanRule, EmailRule],
    Field(discriminator="type"),
]

Schema = Mapping[str, FieldRule]

_field_rule_adapter = TypeAdapter(FieldRule)


def parse_field_rule(name: str, rule: Union[BaseModel, Mapping[str, Any]]) -> FieldRule:
    """Build a single rule from a rule instance or its literal dict form."""
    if isinstance(rule, (StringRule, NumberRule, BooleanRule, EmailRule)):
        if rule.name is not None and rule.name != name:
            raise ConfigurationError(
                f"Rule name '{rule.name}' does not match schema key '{name}'",
                component="schema",
            )
        return rule if rule.name == name else rule.model_copy(update={"name": name})

    if not isinstance(rule, Mapping):
        raise ConfigurationError(
            f"Rule for field '{name}' must be a mapping or FieldRule",
            component="schema",
        )

    try:
        return _field_rule_adapter.validate_python({**rule, "name": name})
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid rule for field '{name}'",
            component="schema",
            details={"errors": e.errors(include_url=False)},
        ) from e


def parse_schema(definition: Mapping[str, Any]) -> Dict[str, FieldRule]:
    """
    Build a schema from its literal form.

    Accepts a mapping of field name to either a rule instance or a dict such as
    ``{"required": True, "type": "string", "minLength": 8}``. Declaration
    order is preserved.

    Raises:
        ConfigurationError: If any rule is malformed or violates its invariants
    """
    return {name: parse_field_rule(name, rule) for name, rule in definition.items()}
