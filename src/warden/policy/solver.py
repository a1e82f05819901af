"""Satisfiability checking of permission constraints.

The translation from constraints to formulas is a pure function of the
constraint; string interning and variable declarations live in a builder
created per call. The SAT backend is pluggable, Z3 is the default.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import z3

from warden.errors import UsageError
from warden.policy.constraint import Comparison, Constraint, Logical, Value, Variable, simplify

logger = logging.getLogger(__name__)

BIT_WIDTH = 32


@runtime_checkable
class SatBackend(Protocol):
    """Decides whether a (folded) constraint has a satisfying assignment."""

    def is_satisfiable(self, constraint: Constraint) -> bool: ...


class _FormulaBuilder:
    def __init__(self, width: int):
        self.width = width
        self.strings: list[str] = []
        self.variables: dict[str, z3.ExprRef] = {}

    def build(self, constraint: Constraint) -> z3.ExprRef:
        if isinstance(constraint, Value):
            if constraint.type == "boolean":
                return z3.BoolVal(bool(constraint.value))
            return z3.BitVecVal(self._encode(constraint), self.width)
        if isinstance(constraint, Variable):
            return self._variable(constraint)
        if isinstance(constraint, Comparison):
            return self._comparison(constraint)
        if isinstance(constraint, Logical):
            children = [self.build(c) for c in constraint.children]
            if constraint.kind == "and":
                return z3.And(*children) if children else z3.BoolVal(True)
            if constraint.kind == "or":
                return z3.Or(*children) if children else z3.BoolVal(False)
            if len(children) != 1:
                raise UsageError('"not" constraint must have exactly one child')
            return z3.Not(children[0])
        raise UsageError(f"Unsupported constraint format: {constraint!r}")

    def _encode(self, value: Value) -> int:
        if value.type == "string":
            if value.value not in self.strings:
                self.strings.append(value.value)
            return self.strings.index(value.value)
        return int(value.value)

    def _variable(self, variable: Variable) -> z3.ExprRef:
        key = f"{variable.type}:{variable.name}"
        if key not in self.variables:
            if variable.type == "boolean":
                self.variables[key] = z3.Bool(variable.name)
            else:
                self.variables[key] = z3.BitVec(variable.name, self.width)
        return self.variables[key]

    def _comparison(self, constraint: Comparison) -> z3.ExprRef:
        left, right = constraint.left, constraint.right
        if left.type != right.type:
            raise UsageError(f"Type mismatch in {constraint.kind} constraint: {left}, {right}")
        lhs = self.build(left)
        rhs = self.build(right)

        if constraint.kind in ("eq", "ne"):
            # boolean equality is equivalence, number/string equality is bit-vector equality
            same = lhs == rhs
            return same if constraint.kind == "eq" else z3.Not(same)
        if left.type == "boolean":
            raise UsageError(f"Can't apply '{constraint.kind}' to boolean operands")
        if left.type == "string":
            raise UsageError(f"Can't apply '{constraint.kind}' to string operands")
        if constraint.kind == "gt":
            return z3.UGT(lhs, rhs)
        if constraint.kind == "gte":
            return z3.UGE(lhs, rhs)
        if constraint.kind == "lt":
            return z3.ULT(lhs, rhs)
        if constraint.kind == "lte":
            return z3.ULE(lhs, rhs)
        raise UsageError(f"Unsupported comparison '{constraint.kind}'")


class Z3Backend:
    """SAT backend built on the Z3 solver."""

    def __init__(self, width: int = BIT_WIDTH):
        self.width = width

    def is_satisfiable(self, constraint: Constraint) -> bool:
        builder = _FormulaBuilder(self.width)
        formula = builder.build(constraint)
        solver = z3.Solver()
        solver.add(formula)
        result = solver.check()
        if result == z3.sat:
            logger.debug("Constraint satisfiable: %s", solver.model())
        else:
            logger.debug("Constraint unsatisfiable (%s)", result)
        return result == z3.sat


class ConstraintSolver:
    """Checks whether a constraint can be satisfied by some assignment of its variables."""

    def __init__(self, backend: SatBackend | None = None):
        self.backend = backend or Z3Backend()

    def solve(self, constraint: Constraint) -> bool:
        folded = simplify(constraint)
        if isinstance(folded, Value) and folded.type == "boolean":
            return bool(folded.value)
        return self.backend.is_satisfiable(folded)
