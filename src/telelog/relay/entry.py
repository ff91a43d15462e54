"""Journal entry model and canonical field names."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType

# Syslog severities at or below this are flushed immediately
CRITICAL_PRIORITY = 2

TIMESTAMP_FORMAT = "%b %d %H:%M:%S"


class Field(Enum):
    """Canonical names for the entry attributes rules can match on.

    Values are the journald field names, so the same identifier works for
    in-process rules and for native match push-down.
    """

    PRIORITY = "PRIORITY"
    TIMESTAMP = "TIMESTAMP"
    IDENTIFIER = "SYSLOG_IDENTIFIER"
    MESSAGE = "MESSAGE"


_ALIASES = {
    "PRIORITY": Field.PRIORITY,
    "TIMESTAMP": Field.TIMESTAMP,
    "IDENTIFIER": Field.IDENTIFIER,
    "SYSLOG_IDENTIFIER": Field.IDENTIFIER,
    "MESSAGE": Field.MESSAGE,
}


class FieldNotFoundError(KeyError):
    """Raised when a rule names a field the entry does not carry."""

    pass


def canonical_field(name: str) -> Field | str:
    """Normalize a configured field name.

    Returns a Field member for the built-in attributes, otherwise the
    upper-cased journald name to look up in ``Entry.fields``.
    """
    key = name.strip().upper()
    return _ALIASES.get(key, key)


def native_field(name: str) -> str:
    """Journald field name for a configured field name."""
    canonical = canonical_field(name)
    if isinstance(canonical, Field):
        return canonical.value
    return canonical


@dataclass(frozen=True)
class Entry:
    """One normalized journal record."""

    priority: int
    timestamp: datetime
    identifier: str
    message: str
    fields: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def is_critical(self) -> bool:
        return self.priority <= CRITICAL_PRIORITY

    def get_field(self, name: Field | str) -> str:
        """Resolve a canonical field to the text rules match against.

        Raises:
            FieldNotFoundError: if the field is not present on this entry
        """
        if name is Field.PRIORITY:
            return str(self.priority)
        if name is Field.TIMESTAMP:
            return self.timestamp.strftime(TIMESTAMP_FORMAT)
        if name is Field.IDENTIFIER:
            return self.identifier
        if name is Field.MESSAGE:
            return self.message
        try:
            return self.fields[name]
        except KeyError:
            raise FieldNotFoundError(name) from None


# Severity marker shown at the start of each line, indexed by priority
SEVERITY_MARKERS = (
    "☢️",  # emerg
    "‼️",  # alert
    "🟣",  # crit
    "⭕️",  # err
    "🟡",  # warning
    "🔵",  # notice
    "⚫️",  # info
    "⚪️",  # debug
)


def severity_marker(priority: int) -> str:
    if 0 <= priority < len(SEVERITY_MARKERS):
        return SEVERITY_MARKERS[priority]
    return SEVERITY_MARKERS[-1]
