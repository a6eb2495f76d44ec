"""
Condition language for template ``{{#if ...}}`` blocks.

Supported forms:
    redis_password                  key presence -> truthiness of the value
    params.redis_port == 6379       comparison with ==, !=, >, <
    os != 'centos'

Operands are parsed once into a closed set of tagged values (ParamRef,
StringLiteral, NumberLiteral, BoolLiteral) before comparing. Anything that
does not parse evaluates to False; evaluation never raises.
"""

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple, Union

from nrinstall.core.logging_config import logger


@dataclass(frozen=True)
class ParamRef:
    key: str


@dataclass(frozen=True)
class StringLiteral:
    value: str


@dataclass(frozen=True)
class NumberLiteral:
    value: float


@dataclass(frozen=True)
class BoolLiteral:
    value: bool


Operand = Union[ParamRef, StringLiteral, NumberLiteral, BoolLiteral]


@dataclass(frozen=True)
class Truthy:
    operand: Operand


@dataclass(frozen=True)
class Comparison:
    left: Operand
    operator: str
    right: Operand


Condition = Union[Truthy, Comparison]

OPERATORS = ("==", "!=", ">", "<")

_TOKEN = re.compile(
    r"\s*(?:"
    r"(?P<string>'[^']*'|\"[^\"]*\")"
    r"|(?P<op>==|!=|>|<)"
    r"|(?P<atom>[^\s'\"=!<>]+)"
    r")"
)
_NUMBER = re.compile(r"^-?\d+(\.\d+)?$")
_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")
_MISSING = object()


def _tokenize(text: str) -> Optional[List[Tuple[str, str]]]:
    tokens = []
    position = 0
    text = text.rstrip()
    while position < len(text):
        match = _TOKEN.match(text, position)
        if not match or match.end() == position:
            return None
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        position = match.end()
    return tokens


def parse_operand(kind: str, text: str) -> Optional[Operand]:
    """Classify one token; None if it is not a valid operand"""
    if kind == "string":
        return StringLiteral(text[1:-1])
    if kind != "atom":
        return None
    if text.startswith("params."):
        key = text[len("params."):]
        return ParamRef(key) if _KEY.match(key) else None
    if _NUMBER.match(text):
        return NumberLiteral(float(text))
    if text in ("true", "false"):
        return BoolLiteral(text == "true")
    if _KEY.match(text):
        return ParamRef(text)
    return None


@lru_cache(maxsize=256)
def parse_condition(text: str) -> Optional[Condition]:
    """Parse a condition string, None if unparseable"""
    tokens = _tokenize(text or "")
    if not tokens:
        return None

    if len(tokens) == 1:
        operand = parse_operand(*tokens[0])
        return Truthy(operand) if operand is not None else None

    if len(tokens) == 3 and tokens[1][0] == "op":
        left = parse_operand(*tokens[0])
        right = parse_operand(*tokens[2])
        if left is None or right is None:
            return None
        return Comparison(left, tokens[1][1], right)

    return None


def is_truthy(value: Any) -> bool:
    """Python truthiness, except the string "false" (any case) is false"""
    if isinstance(value, str):
        return bool(value) and value.strip().lower() != "false"
    return bool(value)


def _resolve(operand: Operand, params: Dict[str, Any]) -> Any:
    if isinstance(operand, ParamRef):
        return params.get(operand.key, _MISSING)
    return operand.value


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and _NUMBER.match(value.strip()):
        return float(value)
    return None


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


def _equals(left: Operand, left_value: Any, right: Operand, right_value: Any) -> bool:
    if isinstance(left, NumberLiteral) or isinstance(right, NumberLiteral):
        a, b = _as_number(left_value), _as_number(right_value)
        return a is not None and a == b
    if isinstance(left, BoolLiteral) or isinstance(right, BoolLiteral):
        a, b = _as_bool(left_value), _as_bool(right_value)
        return a is not None and a == b
    if isinstance(left_value, str) or isinstance(right_value, str):
        return str(left_value) == str(right_value)
    return left_value == right_value


def _compare(condition: Comparison, params: Dict[str, Any]) -> bool:
    left_value = _resolve(condition.left, params)
    right_value = _resolve(condition.right, params)

    if condition.operator in ("==", "!="):
        if left_value is _MISSING or right_value is _MISSING:
            equal = False
        else:
            equal = _equals(condition.left, left_value, condition.right, right_value)
        return equal if condition.operator == "==" else not equal

    a, b = _as_number(left_value), _as_number(right_value)
    if a is None or b is None:
        return False
    return a > b if condition.operator == ">" else a < b


def evaluate_condition(text: str, params: Dict[str, Any]) -> bool:
    """
    Evaluate a condition against the parameter set.

    A condition that is exactly a parameter key is that value's truthiness.
    Unknown or unparseable conditions are False.
    """
    try:
        key = (text or "").strip()
        if key in params:
            return is_truthy(params[key])

        condition = parse_condition(key)
        if condition is None:
            logger.debug(f"[Conditions] Unparseable condition '{text}', evaluating to false")
            return False

        if isinstance(condition, Truthy):
            value = _resolve(condition.operand, params)
            return value is not _MISSING and is_truthy(value)

        return _compare(condition, params)

    except Exception as e:
        logger.debug(f"[Conditions] Condition '{text}' failed to evaluate: {e}")
        return False
