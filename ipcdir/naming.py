from __future__ import annotations

"""Application naming keys used to index the directory.

A naming key identifies an application process (and optionally one of its
entities) by name and instance strings:

    process_name/process_instance/entity_name/entity_instance

Trailing empty parts are dropped in the string form.
"""

from dataclasses import dataclass
from typing import Any


class InvalidKeyError(ValueError):
    """Raised when a naming key is malformed."""


@dataclass(frozen=True)
class NamingKey:
    process_name: str
    process_instance: str = ""
    entity_name: str = ""
    entity_instance: str = ""

    def validate(self) -> None:
        """Raise InvalidKeyError if the key is malformed."""
        for field_name in ("process_name", "process_instance", "entity_name", "entity_instance"):
            value = getattr(self, field_name)
            if not isinstance(value, str):
                raise InvalidKeyError(f"{field_name} must be a string, got {type(value).__name__}")
            if value != value.strip():
                raise InvalidKeyError(f"{field_name} has surrounding whitespace: {value!r}")
            if "/" in value:
                raise InvalidKeyError(f"{field_name} must not contain '/': {value!r}")

        if not self.process_name:
            raise InvalidKeyError("process_name is required")
        if self.entity_instance and not self.entity_name:
            raise InvalidKeyError("entity_instance requires entity_name")

    def to_dict(self) -> dict[str, str]:
        out = {"process_name": self.process_name}
        if self.process_instance:
            out["process_instance"] = self.process_instance
        if self.entity_name:
            out["entity_name"] = self.entity_name
        if self.entity_instance:
            out["entity_instance"] = self.entity_instance
        return out

    @classmethod
    def from_dict(cls, data: Any) -> "NamingKey":
        if not isinstance(data, dict):
            raise InvalidKeyError("naming key must be an object")
        key = cls(
            process_name=data.get("process_name", ""),
            process_instance=data.get("process_instance", ""),
            entity_name=data.get("entity_name", ""),
            entity_instance=data.get("entity_instance", ""),
        )
        key.validate()
        return key

    @classmethod
    def parse(cls, text: str) -> "NamingKey":
        """Parse the slash-separated form produced by str()."""
        if not isinstance(text, str):
            raise InvalidKeyError("naming key must be a string")
        parts = text.split("/")
        if len(parts) > 4:
            raise InvalidKeyError(f"too many components in naming key: {text!r}")
        parts += [""] * (4 - len(parts))
        key = cls(*parts)
        key.validate()
        return key

    def __str__(self) -> str:
        parts = [self.process_name, self.process_instance, self.entity_name, self.entity_instance]
        while len(parts) > 1 and not parts[-1]:
            parts.pop()
        return "/".join(parts)


def is_valid_key(key: Any) -> bool:
    if not isinstance(key, NamingKey):
        return False
    try:
        key.validate()
    except InvalidKeyError:
        return False
    return True
