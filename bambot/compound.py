# Copyright 2024 The HuggingFace Inc. team. All rights reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Compound (coupled) joint movements.

A compound movement moves one primary joint and derives deltas for
dependent joints from small arithmetic formulas, e.g.

    primary < 100 ? -1.9 * deltaPrimary : 0.4 * deltaPrimary

Formula text is parsed once, at profile load time, into an expression tree
and checked against the variables the formula is allowed to use. Nothing
is ever handed to `eval`.
"""

import logging
import math
import operator
import re
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import ConfigurationError, FormulaError

logger = logging.getLogger(__name__)

PRIMARY_VARIABLES = frozenset({"primary", "dependent"})
DEPENDENT_VARIABLES = frozenset({"primary", "dependent", "deltaPrimary"})

_CONSTANTS = {"PI": math.pi, "E": math.e}

_FUNCTIONS: Dict[str, Tuple[Callable[..., float], int]] = {
    "sin": (math.sin, 1),
    "cos": (math.cos, 1),
    "tan": (math.tan, 1),
    "abs": (abs, 1),
    "sqrt": (math.sqrt, 1),
    "sign": (lambda x: (x > 0) - (x < 0), 1),
    "min": (min, 2),
    "max": (max, 2),
}

_BINARY_OPS: Dict[str, Callable[[float, float], float]] = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
    "%": math.fmod,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

_TOKEN_RE = re.compile(
    r"\s*(?:"
    r"(?P<num>\d+\.?\d*(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?)"
    r"|(?P<name>[A-Za-z_][A-Za-z_0-9]*(?:\.[A-Za-z_][A-Za-z_0-9]*)?)"
    r"|(?P<op>===|!==|==|!=|<=|>=|&&|\|\||[-+*/%<>!?:(),])"
    r")"
)


# Expression tree


@dataclass(frozen=True)
class Number:
    value: float

    def evaluate(self, env: Mapping[str, float]) -> float:
        return self.value


@dataclass(frozen=True)
class Variable:
    name: str

    def evaluate(self, env: Mapping[str, float]) -> float:
        return env[self.name]


@dataclass(frozen=True)
class Unary:
    op: str
    operand: "Node"

    def evaluate(self, env: Mapping[str, float]) -> float:
        value = self.operand.evaluate(env)
        if self.op == "-":
            return -value
        if self.op == "!":
            return float(not value)
        return value


@dataclass(frozen=True)
class Binary:
    op: str
    left: "Node"
    right: "Node"

    def evaluate(self, env: Mapping[str, float]) -> float:
        if self.op == "&&":
            left = self.left.evaluate(env)
            return self.right.evaluate(env) if left else left
        if self.op == "||":
            left = self.left.evaluate(env)
            return left if left else self.right.evaluate(env)
        return float(_BINARY_OPS[self.op](self.left.evaluate(env), self.right.evaluate(env)))


@dataclass(frozen=True)
class Conditional:
    test: "Node"
    then: "Node"
    otherwise: "Node"

    def evaluate(self, env: Mapping[str, float]) -> float:
        return self.then.evaluate(env) if self.test.evaluate(env) else self.otherwise.evaluate(env)


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple["Node", ...]

    def evaluate(self, env: Mapping[str, float]) -> float:
        fn, _ = _FUNCTIONS[self.name]
        return float(fn(*(arg.evaluate(env) for arg in self.args)))


Node = Union[Number, Variable, Unary, Binary, Conditional, Call]


class _Parser:
    """Recursive descent over the JavaScript-like formula syntax used in robot profiles."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = self._tokenize(text)
        self.pos = 0

    def _tokenize(self, text: str) -> List[Tuple[str, str]]:
        tokens = []
        pos = 0
        text = text.rstrip()
        while pos < len(text):
            match = _TOKEN_RE.match(text, pos)
            if match is None or match.end() == pos:
                raise FormulaError(text, f"Unexpected character {text[pos:].strip()[:1]!r}")
            kind = match.lastgroup
            value = match.group(kind)
            # JavaScript strict comparisons mean the same thing on numbers
            if value == "===":
                value = "=="
            elif value == "!==":
                value = "!="
            tokens.append((kind, value))
            pos = match.end()
        return tokens

    def _peek(self) -> Optional[str]:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos][1]
        return None

    def _next(self) -> Tuple[str, str]:
        if self.pos >= len(self.tokens):
            raise FormulaError(self.text, "Unexpected end of expression")
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def _expect(self, value: str) -> None:
        kind, got = self._next()
        if got != value:
            raise FormulaError(self.text, f"Expected {value!r} but found {got!r}")

    def parse(self) -> Node:
        if not self.tokens:
            raise FormulaError(self.text, "Empty expression")
        node = self._conditional()
        if self.pos != len(self.tokens):
            raise FormulaError(self.text, f"Unexpected token {self._peek()!r}")
        return node

    def _conditional(self) -> Node:
        test = self._or()
        if self._peek() == "?":
            self._next()
            then = self._conditional()
            self._expect(":")
            otherwise = self._conditional()
            return Conditional(test, then, otherwise)
        return test

    def _or(self) -> Node:
        node = self._and()
        while self._peek() == "||":
            self._next()
            node = Binary("||", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._comparison()
        while self._peek() == "&&":
            self._next()
            node = Binary("&&", node, self._comparison())
        return node

    def _comparison(self) -> Node:
        node = self._additive()
        while self._peek() in ("<", "<=", ">", ">=", "==", "!="):
            op = self._next()[1]
            node = Binary(op, node, self._additive())
        return node

    def _additive(self) -> Node:
        node = self._multiplicative()
        while self._peek() in ("+", "-"):
            op = self._next()[1]
            node = Binary(op, node, self._multiplicative())
        return node

    def _multiplicative(self) -> Node:
        node = self._unary()
        while self._peek() in ("*", "/", "%"):
            op = self._next()[1]
            node = Binary(op, node, self._unary())
        return node

    def _unary(self) -> Node:
        if self._peek() in ("-", "+", "!"):
            op = self._next()[1]
            return Unary(op, self._unary())
        return self._atom()

    def _atom(self) -> Node:
        kind, value = self._next()
        if kind == "num":
            return Number(float(value))
        if value == "(":
            node = self._conditional()
            self._expect(")")
            return node
        if kind == "name":
            name = value[len("Math."):] if value.startswith("Math.") else value
            if "." in name:
                raise FormulaError(self.text, f"Unknown name {value!r}")
            if self._peek() == "(":
                return self._call(name, value)
            if name in _CONSTANTS and (value.startswith("Math.") or name == "PI"):
                return Number(_CONSTANTS[name])
            return Variable(name)
        raise FormulaError(self.text, f"Unexpected token {value!r}")

    def _call(self, name: str, raw: str) -> Node:
        if name not in _FUNCTIONS:
            raise FormulaError(self.text, f"Unknown function {raw!r}")
        self._expect("(")
        args = []
        if self._peek() != ")":
            args.append(self._conditional())
            while self._peek() == ",":
                self._next()
                args.append(self._conditional())
        self._expect(")")
        arity = _FUNCTIONS[name][1]
        if len(args) != arity:
            raise FormulaError(self.text, f"{raw} takes {arity} argument(s), got {len(args)}")
        return Call(name, tuple(args))


def _free_variables(node: Node) -> FrozenSet[str]:
    if isinstance(node, Variable):
        return frozenset({node.name})
    if isinstance(node, Unary):
        return _free_variables(node.operand)
    if isinstance(node, Binary):
        return _free_variables(node.left) | _free_variables(node.right)
    if isinstance(node, Conditional):
        return _free_variables(node.test) | _free_variables(node.then) | _free_variables(node.otherwise)
    if isinstance(node, Call):
        names = frozenset()
        for arg in node.args:
            names |= _free_variables(arg)
        return names
    return frozenset()


class Formula:
    """
    A compiled compound formula.

    Built either from expression text or from a plain Python callable
    taking `(primary, dependent, delta_primary)`.
    """

    def __init__(self, source: str, tree: Optional[Node] = None, fn: Optional[Callable[..., float]] = None):
        self.source = source
        self._tree = tree
        self._fn = fn

    @classmethod
    def compile(cls, text: str, allowed: FrozenSet[str] = DEPENDENT_VARIABLES) -> "Formula":
        tree = _Parser(text).parse()
        unknown = _free_variables(tree) - allowed
        if unknown:
            raise FormulaError(text, f"Unknown variable(s) {', '.join(sorted(unknown))}")
        return cls(text, tree=tree)

    @classmethod
    def from_callable(cls, fn: Callable[..., float]) -> "Formula":
        return cls(getattr(fn, "__name__", repr(fn)), fn=fn)

    @classmethod
    def coerce(cls, value, allowed: FrozenSet[str] = DEPENDENT_VARIABLES) -> "Formula":
        if isinstance(value, Formula):
            return value
        if callable(value):
            return cls.from_callable(value)
        if isinstance(value, (int, float)):
            return cls(str(value), tree=Number(float(value)))
        if isinstance(value, str):
            return cls.compile(value, allowed)
        raise ConfigurationError(f"Unsupported formula value {value!r}")

    def __call__(self, primary: float, dependent: float = 0.0, delta_primary: float = 0.0) -> float:
        if self._fn is not None:
            try:
                return float(self._fn(primary, dependent, delta_primary))
            except (ArithmeticError, ValueError):
                raise
            except Exception as e:
                raise FormulaError(self.source, f"Callable raised {type(e).__name__}: {e}") from e
        env = {"primary": primary, "dependent": dependent, "deltaPrimary": delta_primary}
        return float(self._tree.evaluate(env))

    def __repr__(self) -> str:
        return f"Formula({self.source!r})"


@dataclass(frozen=True)
class CompoundDependent:
    joint: int
    formula: Formula


@dataclass(frozen=True)
class CompoundMovement:
    name: str
    keys: Tuple[str, ...]
    primary_joint: int
    dependents: Tuple[CompoundDependent, ...]
    primary_formula: Optional[Formula] = None

    @property
    def always_on(self) -> bool:
        """Movements without trigger keys model a fixed mechanical linkage."""
        return not self.keys


def compile_movement(config) -> CompoundMovement:
    """Compile a `CompoundMovementConfig` into a `CompoundMovement`."""
    primary_formula = None
    if config.primary_formula is not None:
        primary_formula = Formula.coerce(config.primary_formula, PRIMARY_VARIABLES)
    dependents = tuple(
        CompoundDependent(joint=dep.joint, formula=Formula.coerce(dep.formula, DEPENDENT_VARIABLES))
        for dep in config.dependents
    )
    return CompoundMovement(
        name=config.name,
        keys=tuple(config.keys),
        primary_joint=config.primary_joint,
        dependents=dependents,
        primary_formula=primary_formula,
    )


class CompoundMotionResolver:
    """
    Turns a primary joint delta into primary + dependent deltas.

    `resolve` reads only the angles it is handed, so repeated calls with the
    same inputs give the same outputs.
    """

    def __init__(self, movements: Sequence[CompoundMovement] = ()):
        self.movements: Tuple[CompoundMovement, ...] = tuple(movements)
        self._validate()
        self._by_name = {m.name: m for m in self.movements}

    def _validate(self) -> None:
        names = set()
        primaries = {m.primary_joint for m in self.movements}
        for movement in self.movements:
            if movement.name in names:
                raise ConfigurationError(f"Duplicate compound movement name {movement.name!r}")
            names.add(movement.name)
            seen = set()
            for dependent in movement.dependents:
                if dependent.joint == movement.primary_joint:
                    raise ConfigurationError(
                        f"Compound movement {movement.name!r} lists its primary joint as a dependent"
                    )
                if dependent.joint in seen:
                    raise ConfigurationError(
                        f"Compound movement {movement.name!r} lists joint {dependent.joint} twice"
                    )
                # A dependent that is also some movement's primary could chain into a cycle
                if dependent.joint in primaries:
                    raise ConfigurationError(
                        f"Compound movement {movement.name!r}: dependent joint {dependent.joint} "
                        f"is the primary joint of another compound movement"
                    )
                seen.add(dependent.joint)

    def validate_joints(self, registry) -> None:
        """Check every referenced joint exists and is position-controlled."""
        for movement in self.movements:
            for servo_id in (movement.primary_joint, *(d.joint for d in movement.dependents)):
                joint = registry.get(servo_id)
                if joint is None:
                    raise ConfigurationError(
                        f"Compound movement {movement.name!r} references unknown servo id {servo_id}"
                    )
                if joint.is_continuous:
                    raise ConfigurationError(
                        f"Compound movement {movement.name!r} references continuous joint {joint.name!r}"
                    )

    def get(self, name: str) -> Optional[CompoundMovement]:
        return self._by_name.get(name)

    def movement_for_key(self, key: str) -> Optional[CompoundMovement]:
        for movement in self.movements:
            if key in movement.keys:
                return movement
        return None

    def _matching(self, primary_servo_id: int, movement: Optional[str]) -> List[CompoundMovement]:
        if movement is not None:
            found = self._by_name.get(movement)
            if found is None or found.primary_joint != primary_servo_id:
                return []
            return [found]
        return [m for m in self.movements if m.always_on and m.primary_joint == primary_servo_id]

    def resolve(
        self,
        primary_servo_id: int,
        primary_delta: float,
        angles: Mapping[int, float],
        movement: Optional[str] = None,
    ) -> List[Tuple[int, float]]:
        """
        Return `[(servo_id, delta), ...]`, primary first.

        `angles` must be the joint angles from before this tick's update.
        With `movement` set, only that movement is applied; otherwise the
        always-on linkages whose primary matches. A primary with no matching
        movement gets its own delta back unchanged. A dependent formula that
        fails to evaluate contributes no delta.
        """
        matches = self._matching(primary_servo_id, movement)
        if not matches:
            return [(primary_servo_id, primary_delta)]

        primary_angle = angles.get(primary_servo_id, 0.0)
        total_primary = 0.0
        dependent_deltas: Dict[int, float] = {}
        for compound in matches:
            first_dependent = compound.dependents[0].joint if compound.dependents else None
            sign = 1.0
            if compound.primary_formula is not None:
                try:
                    sign = compound.primary_formula(
                        primary_angle, angles.get(first_dependent, 0.0), 0.0
                    )
                except (ArithmeticError, ValueError) as e:
                    logger.debug(f"Primary formula of {compound.name!r} failed: {e}")
                    continue
                if not math.isfinite(sign):
                    logger.debug(f"Primary formula of {compound.name!r} is not finite")
                    continue
            delta_primary = primary_delta * sign
            total_primary += delta_primary
            for dependent in compound.dependents:
                try:
                    delta = dependent.formula(
                        primary_angle, angles.get(dependent.joint, 0.0), delta_primary
                    )
                except (ArithmeticError, ValueError) as e:
                    logger.debug(f"Formula for joint {dependent.joint} of {compound.name!r} failed: {e}")
                    continue
                if not math.isfinite(delta):
                    logger.debug(f"Formula for joint {dependent.joint} of {compound.name!r} is not finite")
                    continue
                dependent_deltas[dependent.joint] = dependent_deltas.get(dependent.joint, 0.0) + delta

        return [(primary_servo_id, total_primary), *dependent_deltas.items()]
