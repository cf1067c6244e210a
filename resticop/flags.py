"""Flags passed to the restic binary."""

from __future__ import annotations

from typing import Mapping, Sequence


class Flags(dict[str, list[str]]):
    """Maps a flag to its values; turns them into command-line arguments."""

    def add_flag(self, key: str, *args: str) -> None:
        """Append values to ``key``, adding the flag if it is not present yet."""
        self[key] = [*self.get(key, []), *args]

    def apply_to_command(self, command: str, *args: str) -> list[str]:
        """Return ``[command, flags..., args...]`` ready to pass to restic."""
        result = [command] if command else []
        for flag, values in self.items():
            result.extend(_expand(flag, values))
        result.extend(args)
        return result


def _expand(flag: str, values: Sequence[str] | None) -> list[str]:
    if not values:
        return [flag]
    expanded: list[str] = []
    for value in values:
        expanded.extend((flag, value))
    return expanded


def combine(first: Mapping[str, Sequence[str]], second: Mapping[str, Sequence[str]]) -> Flags:
    """Return new Flags holding the flags of both, values of shared keys joined."""
    combined = Flags({key: list(values) for key, values in first.items()})
    for key, values in second.items():
        combined[key] = [*combined.get(key, []), *values]
    return combined