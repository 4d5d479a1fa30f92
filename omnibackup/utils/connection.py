"""
Parser for ``key=value;key=value`` connection strings.

Keys are case-insensitive and may contain spaces (``Integrated Security``
and ``integratedsecurity`` are the same key). Values are trimmed; a key
without ``=`` maps to None.
"""

from typing import Dict, Optional


class ConnectionString:
    """Read-only, case-insensitive view of a connection string."""

    def __init__(self, raw: Optional[str]):
        self.raw = raw or ''
        self._values: Dict[str, Optional[str]] = {}

        for pair in self.raw.split(';'):
            key, sep, value = pair.partition('=')
            key = key.strip().lower().replace(' ', '')
            if not key:
                continue
            self._values[key] = value.strip() if sep else None

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """
        Get a string value.

        Args:
            key: Key name (any case)
            default: Returned when the key is missing

        Returns:
            Value, None for a key without value, or default
        """
        key = key.lower().replace(' ', '')
        if key not in self._values:
            return default
        return self._values[key]

    def get_int(self, key: str, default: int = 0) -> int:
        """Get an integer value; missing or unparsable values yield default."""
        value = self.get(key)
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        """Get a boolean value (true/yes/1/sspi are truthy)."""
        value = self.get(key)
        if value is None:
            return default
        return value.lower() in ('true', 'yes', '1', 'sspi')

    def __contains__(self, key: str) -> bool:
        return key.lower().replace(' ', '') in self._values

    def __len__(self):
        return len(self._values)

    def keys(self):
        return self._values.keys()
