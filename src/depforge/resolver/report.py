"""Turn a failed derivation into an ordered, human-readable explanation."""
from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from .incompatibility import ConflictCause, Incompatibility


class FailureReport:
    """Walks the derivation graph of the terminal incompatibility.

    Each line explains one derived incompatibility in terms of its two
    causes. Incompatibilities referenced more than once get a line number
    so later lines can point back at them instead of repeating the chain.
    """

    def __init__(self, root: Incompatibility):
        self.root = root
        self._derivations: Dict[int, int] = {}
        self._lines: List[Tuple[str, Optional[int]]] = []
        self._line_numbers: Dict[int, int] = {}
        self._count_derivations(root)

    def _count_derivations(self, incompatibility: Incompatibility) -> None:
        key = id(incompatibility)
        if key in self._derivations:
            self._derivations[key] += 1
            return
        self._derivations[key] = 1
        cause = incompatibility.cause
        if isinstance(cause, ConflictCause):
            self._count_derivations(cause.conflict)
            self._count_derivations(cause.other)

    def lines(self) -> List[str]:
        if not isinstance(self.root.cause, ConflictCause):
            return [f"Because {self.root}, version solving failed."]
        self._visit(self.root)
        return [f"({number}) {text}" if number is not None else text for text, number in self._lines]

    def _write(self, incompatibility: Incompatibility, message: str, numbered: bool) -> None:
        if numbered:
            number = len(self._line_numbers) + 1
            self._line_numbers[id(incompatibility)] = number
            self._lines.append((message, number))
        else:
            self._lines.append((message, None))

    def _line(self, incompatibility: Incompatibility) -> Optional[int]:
        return self._line_numbers.get(id(incompatibility))

    def _visit(self, incompatibility: Incompatibility, conclusion: bool = False) -> None:
        numbered = conclusion or self._derivations[id(incompatibility)] > 1
        conjunction = "So," if conclusion or incompatibility is self.root else "And"
        text = str(incompatibility)
        cause: ConflictCause = incompatibility.cause
        conflict, other = cause.conflict, cause.other

        if conflict.is_derived and other.is_derived:
            conflict_line, other_line = self._line(conflict), self._line(other)
            if conflict_line is not None and other_line is not None:
                self._write(
                    incompatibility,
                    f"Because {conflict.and_to_string(other, conflict_line, other_line)}, {text}.",
                    numbered,
                )
            elif conflict_line is not None or other_line is not None:
                with_line, without_line = (conflict, other) if conflict_line is not None else (other, conflict)
                self._visit(without_line)
                self._write(
                    incompatibility,
                    f"{conjunction} because {with_line} ({self._line(with_line)}), {text}.",
                    numbered,
                )
            else:
                single_conflict = self._is_single_line(conflict)
                single_other = self._is_single_line(other)
                if single_conflict or single_other:
                    first, second = (conflict, other) if single_other else (other, conflict)
                    self._visit(first)
                    self._visit(second)
                    self._write(incompatibility, f"Thus, {text}.", numbered)
                else:
                    self._visit(conflict, conclusion=True)
                    self._visit(other)
                    self._write(
                        incompatibility,
                        f"{conjunction} because {conflict} ({self._line(conflict)}), {text}.",
                        numbered,
                    )
        elif conflict.is_derived or other.is_derived:
            derived, external = (conflict, other) if conflict.is_derived else (other, conflict)
            derived_line = self._line(derived)
            if derived_line is not None:
                self._write(
                    incompatibility,
                    f"Because {external.and_to_string(derived, None, derived_line)}, {text}.",
                    numbered,
                )
            elif self._is_collapsible(derived):
                inner: ConflictCause = derived.cause
                collapsed_derived, collapsed_external = (
                    (inner.conflict, inner.other) if inner.conflict.is_derived else (inner.other, inner.conflict)
                )
                self._visit(collapsed_derived)
                self._write(
                    incompatibility,
                    f"{conjunction} because {collapsed_external.and_to_string(external)}, {text}.",
                    numbered,
                )
            else:
                self._visit(derived)
                self._write(incompatibility, f"{conjunction} because {external}, {text}.", numbered)
        else:
            self._write(incompatibility, f"Because {conflict.and_to_string(other)}, {text}.", numbered)

    @staticmethod
    def _is_single_line(incompatibility: Incompatibility) -> bool:
        cause: ConflictCause = incompatibility.cause
        return not cause.conflict.is_derived and not cause.other.is_derived

    def _is_collapsible(self, incompatibility: Incompatibility) -> bool:
        if self._derivations[id(incompatibility)] > 1:
            return False
        cause: ConflictCause = incompatibility.cause
        if cause.conflict.is_derived == cause.other.is_derived:
            return False
        complex_cause = cause.conflict if cause.conflict.is_derived else cause.other
        return id(complex_cause) not in self._line_numbers


def explain(incompatibility: Incompatibility) -> List[str]:
    """Explanation lines for a terminal incompatibility, in reading order."""
    return FailureReport(incompatibility).lines()
