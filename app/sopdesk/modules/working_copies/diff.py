"""
Line-level diff used for the reviewer's change preview.

Greedy two-cursor alignment, not a minimal edit script. It never feeds merge
logic, only presentation. Pure and deterministic.
"""

from __future__ import annotations

from dataclasses import dataclass

ADDED = "added"
REMOVED = "removed"
UNCHANGED = "unchanged"


@dataclass(frozen=True)
class DiffLine:
    type: str
    text: str
    # 1-based line number in the side the text came from (original for removed/unchanged).
    line_number: int

    def to_dict(self) -> dict:
        return {"type": self.type, "text": self.text, "line_number": self.line_number}


@dataclass(frozen=True)
class DiffSummary:
    added: int
    removed: int
    unchanged: int

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed)

    def to_dict(self) -> dict:
        return {
            "added": self.added,
            "removed": self.removed,
            "unchanged": self.unchanged,
            "has_changes": self.has_changes,
        }


def split_lines(text: str | None) -> list[str]:
    if not text:
        return []
    return text.split("\n")


def _last_positions(lines: list[str]) -> dict[str, int]:
    last: dict[str, int] = {}
    for idx, line in enumerate(lines):
        last[line] = idx
    return last


def diff(original: str | None, modified: str | None) -> list[DiffLine]:
    """
    Align `original` and `modified` line by line.

    At each step: equal lines are unchanged; an original line that never occurs
    again in the rest of `modified` is removed; a modified line that never occurs
    again in the rest of `original` is added; otherwise the pair is treated as a
    one-line edit (removed then added). Leftover lines on either side are
    removed/added.
    """
    old = split_lines(original)
    new = split_lines(modified)
    # "occurs at or after cursor k" == last occurrence index >= k
    old_last = _last_positions(old)
    new_last = _last_positions(new)

    out: list[DiffLine] = []
    i = j = 0
    while i < len(old) and j < len(new):
        a, b = old[i], new[j]
        if a == b:
            out.append(DiffLine(UNCHANGED, a, i + 1))
            i += 1
            j += 1
        elif new_last.get(a, -1) < j:
            out.append(DiffLine(REMOVED, a, i + 1))
            i += 1
        elif old_last.get(b, -1) < i:
            out.append(DiffLine(ADDED, b, j + 1))
            j += 1
        else:
            out.append(DiffLine(REMOVED, a, i + 1))
            out.append(DiffLine(ADDED, b, j + 1))
            i += 1
            j += 1

    for k in range(i, len(old)):
        out.append(DiffLine(REMOVED, old[k], k + 1))
    for k in range(j, len(new)):
        out.append(DiffLine(ADDED, new[k], k + 1))
    return out


def summarize(lines: list[DiffLine]) -> DiffSummary:
    added = removed = unchanged = 0
    for line in lines:
        if line.type == ADDED:
            added += 1
        elif line.type == REMOVED:
            removed += 1
        else:
            unchanged += 1
    return DiffSummary(added=added, removed=removed, unchanged=unchanged)
