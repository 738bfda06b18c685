"""Resource addresses.

An address identifies one resource node: ``type.name`` for a plain block,
``type.name[0]`` for a ``count`` instance and ``type.name["key"]`` for a
``forEach`` instance.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from functools import total_ordering

_ADDRESS_PATTERN = re.compile(
    r'^(?P<type>[a-z][a-z0-9_]*)\.(?P<name>[A-Za-z_][A-Za-z0-9_-]*)'
    r'(?:\[(?P<index>\d+|"(?:[^"\\]|\\.)*")\])?$'
)


class AddressError(ValueError):
    """Raised when an address string is malformed."""

    pass


@total_ordering
@dataclass(frozen=True)
class ResourceAddress:
    """Unique address of a resource node."""

    type: str
    name: str
    index: int | str | None = None

    def __str__(self) -> str:
        if self.index is None:
            return f"{self.type}.{self.name}"
        if isinstance(self.index, int):
            return f"{self.type}.{self.name}[{self.index}]"
        return f"{self.type}.{self.name}[{json.dumps(self.index)}]"

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ResourceAddress):
            return NotImplemented
        return str(self) < str(other)

    @property
    def base(self) -> ResourceAddress:
        """The block address without instance key."""
        return ResourceAddress(self.type, self.name)

    @property
    def is_instance(self) -> bool:
        return self.index is not None

    def instance(self, index: int | str) -> ResourceAddress:
        return ResourceAddress(self.type, self.name, index)

    @classmethod
    def parse(cls, text: str) -> ResourceAddress:
        """Parse ``type.name``, ``type.name[3]`` or ``type.name["key"]``.

        Raises:
            AddressError: If the text is not a valid address.
        """
        match = _ADDRESS_PATTERN.match(text.strip())
        if match is None:
            raise AddressError(f"Invalid resource address: {text!r}")

        raw_index = match.group("index")
        index: int | str | None
        if raw_index is None:
            index = None
        elif raw_index.startswith('"'):
            index = json.loads(raw_index)
        else:
            index = int(raw_index)

        return cls(match.group("type"), match.group("name"), index)
