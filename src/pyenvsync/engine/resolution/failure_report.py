from __future__ import annotations

from collections import Counter

from pyenvsync.engine.resolution.incompatibility import Incompatibility


class FailureReport:
    """
    Renders the derivation of a root incompatibility as numbered prose.

    Only the incompatibilities on the derivation path are shown, never every
    rejected candidate. A derived incompatibility that is referred to more
    than once gets a line number so later lines can cite it.
    """

    def __init__(self, root: Incompatibility):
        self._root = root
        self._derivations: Counter[int] = Counter()
        self._lines: list[tuple[str, int | None]] = []
        self._line_numbers: dict[int, int] = {}
        self._count_derivations(root)

    def _count_derivations(self, incompat: Incompatibility) -> None:
        key = id(incompat)
        if key in self._derivations:
            self._derivations[key] += 1
            return
        self._derivations[key] = 1
        if incompat.is_derived:
            self._count_derivations(incompat.left)
            self._count_derivations(incompat.right)

    def write(self) -> str:
        if not self._root.is_derived:
            return f"Because {self._root}, version solving failed."

        self._visit(self._root)
        width = max((len(str(n)) for _, n in self._lines if n is not None), default=0)
        out: list[str] = []
        for message, number in self._lines:
            if not message:
                out.append("")
            elif number is not None:
                out.append(f"({number}) ".rjust(width + 3) + message)
            elif width:
                out.append(" " * (width + 3) + message)
            else:
                out.append(message)
        return "\n".join(out)

    def _write(self, incompat: Incompatibility, message: str, numbered: bool) -> None:
        if numbered:
            number = len(self._line_numbers) + 1
            self._line_numbers[id(incompat)] = number
            self._lines.append((message, number))
        else:
            self._lines.append((message, None))

    def _line(self, incompat: Incompatibility) -> int | None:
        return self._line_numbers.get(id(incompat))

    def _visit(self, incompat: Incompatibility, conclusion: bool = False) -> None:
        numbered = conclusion or self._derivations[id(incompat)] > 1
        conjunction = "So," if conclusion or incompat is self._root else "And"
        text = "version solving failed" if incompat is self._root else str(incompat)
        left, right = incompat.left, incompat.right

        if left.is_derived and right.is_derived:
            left_line, right_line = self._line(left), self._line(right)
            if left_line is not None and right_line is not None:
                self._write(incompat, f"Because {left.and_to_string(right, left_line, right_line)}, {text}.", numbered)
            elif left_line is not None or right_line is not None:
                with_line, without_line = (left, right) if left_line is not None else (right, left)
                self._visit(without_line)
                self._write(
                    incompat,
                    f"{conjunction} because {with_line} ({self._line(with_line)}), {text}.",
                    numbered)
            else:
                single_left = self._is_single_line(left)
                single_right = self._is_single_line(right)
                if single_left or single_right:
                    first, second = (left, right) if single_right else (right, left)
                    self._visit(first)
                    self._visit(second)
                    self._write(incompat, f"Thus, {text}.", numbered)
                else:
                    self._visit(left, conclusion=True)
                    self._lines.append(("", None))
                    self._visit(right)
                    self._write(
                        incompat,
                        f"{conjunction} because {left} ({self._line(left)}), {text}.",
                        numbered)
        elif left.is_derived or right.is_derived:
            derived, external = (left, right) if left.is_derived else (right, left)
            derived_line = self._line(derived)
            if derived_line is not None:
                self._write(
                    incompat,
                    f"Because {external.and_to_string(derived, None, derived_line)}, {text}.",
                    numbered)
            elif self._is_collapsible(derived):
                inner_derived, inner_external = (
                    (derived.left, derived.right) if derived.left.is_derived else (derived.right, derived.left))
                self._visit(inner_derived)
                self._write(
                    incompat,
                    f"{conjunction} because {inner_external.and_to_string(external)}, {text}.",
                    numbered)
            else:
                self._visit(derived)
                self._write(incompat, f"{conjunction} because {external}, {text}.", numbered)
        else:
            self._write(incompat, f"Because {left.and_to_string(right)}, {text}.", numbered)

    def _is_collapsible(self, incompat: Incompatibility) -> bool:
        if self._derivations[id(incompat)] > 1:
            return False
        left, right = incompat.left, incompat.right
        if left.is_derived == right.is_derived:
            return False
        inner = left if left.is_derived else right
        return self._line(inner) is None

    @staticmethod
    def _is_single_line(incompat: Incompatibility) -> bool:
        return not incompat.left.is_derived and not incompat.right.is_derived


def explain(incompat: Incompatibility) -> str:
    return FailureReport(incompat).write()
