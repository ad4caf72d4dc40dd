"""
Attribute change detection for the upsert engine.

Decides whether an incoming snapshot differs from the stored current
version. Comparison is an explicit loop over the tracked attribute set,
so adding an attribute to the set is a deliberate configuration change.

Invariants:
    - Every tracked attribute is compared; untracked ones are ignored
    - A missing key and a None value are both "absent"
    - Absent on both sides is equal; absent on one side is a change
    - Values are compared with ==, no normalization or fuzzy matching
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

_ABSENT = object()


def _value(attributes: Mapping[str, Any], name: str) -> Any:
    value = attributes.get(name)
    return _ABSENT if value is None else value


class ChangeDetector:
    """Compares stored and incoming attribute maps.

    Attributes:
        tracked_attributes: Attribute names to compare, or None to compare
            the union of both sides' keys

    Example:
        >>> detector = ChangeDetector(("name", "city"))
        >>> detector.has_changed({"name": "John"}, {"name": "Jon"})
        True
        >>> detector.has_changed({"name": "John", "city": None}, {"name": "John"})
        False
    """

    def __init__(self, tracked_attributes: Iterable[str] | None = None) -> None:
        self._tracked = tuple(tracked_attributes) if tracked_attributes is not None else None
        if self._tracked is not None and len(set(self._tracked)) != len(self._tracked):
            raise ValueError(f"Duplicate tracked attributes: {self._tracked}")

    @property
    def tracked_attributes(self) -> tuple[str, ...] | None:
        return self._tracked

    def _names(self, stored: Mapping[str, Any], incoming: Mapping[str, Any]) -> list[str]:
        if self._tracked is not None:
            return list(self._tracked)
        names = list(stored)
        names.extend(name for name in incoming if name not in stored)
        return names

    def changed_attributes(
        self,
        stored: Mapping[str, Any],
        incoming: Mapping[str, Any],
    ) -> list[str]:
        """Names of tracked attributes whose values differ.

        Args:
            stored: Attributes of the current version
            incoming: Attributes of the snapshot

        Returns:
            Differing attribute names, in tracked order (stored order first
            when no tracked set is configured)
        """
        changed = []
        for name in self._names(stored, incoming):
            old = _value(stored, name)
            new = _value(incoming, name)
            if old is _ABSENT or new is _ABSENT:
                if old is not new:
                    changed.append(name)
            elif old != new:
                changed.append(name)
        return changed

    def has_changed(self, stored: Mapping[str, Any], incoming: Mapping[str, Any]) -> bool:
        """Whether any tracked attribute differs."""
        return bool(self.changed_attributes(stored, incoming))
