from __future__ import annotations

from dataclasses import dataclass, field

NO_CHANGES = "No changes detected."


@dataclass(slots=True)
class LineChanges:
    removed: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)


def compute_line_changes(previous: str, current: str) -> LineChanges:
    """Trim the unchanged prefix and suffix and report what is left on each side.

    This is a boundary trim, not an LCS diff: one edit in the middle of the
    text reports every line between the first and last difference.
    """
    previous_lines = previous.split("\n")
    current_lines = current.split("\n")

    start = 0
    max_start = min(len(previous_lines), len(current_lines))
    while start < max_start and previous_lines[start] == current_lines[start]:
        start += 1

    previous_end = len(previous_lines)
    current_end = len(current_lines)
    while (
        previous_end > start
        and current_end > start
        and previous_lines[previous_end - 1] == current_lines[current_end - 1]
    ):
        previous_end -= 1
        current_end -= 1

    return LineChanges(
        removed=previous_lines[start:previous_end],
        added=current_lines[start:current_end],
    )


def build_line_diff(previous: str, current: str) -> str:
    if previous == current:
        return NO_CHANGES

    changes = compute_line_changes(previous, current)
    return "\n".join(
        [
            "Diff summary (line context):",
            "- Removed lines:",
            "\n".join(changes.removed) if changes.removed else "(none)",
            "+ Added lines:",
            "\n".join(changes.added) if changes.added else "(none)",
        ]
    )
