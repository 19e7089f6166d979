"""Pure methods callable on strings, arrays and numbers.

Methods are looked up by the receiver's constraint and name. When the
receiver and every argument are known they run at compile time; otherwise
the evaluator emits a residual method call carrying the declared result
constraint.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable

from depstage.core.constraint import (
    ANY,
    IS_ARRAY,
    IS_BOOL,
    IS_NUMBER,
    IS_STRING,
    Constraint,
    NeverConstraint,
    array_of,
    format_literal,
    implies,
    narrow,
)
from depstage.eval.value import NULL, Value, VArray, VBool, VNumber, VString, values_equal


@dataclass(frozen=True)
class MethodDef:
    name: str
    receiver: Constraint
    params: tuple[Constraint, ...]
    result: Constraint
    impl: Callable[[Value, list[Value]], Value]
    required: int | None = None

    @property
    def min_args(self) -> int:
        return len(self.params) if self.required is None else self.required


def _int(value: Value) -> int:
    assert isinstance(value, VNumber)
    if math.isnan(value.value):
        return 0
    return int(value.value)


def _str(value: Value) -> str:
    assert isinstance(value, VString)
    return value.value


def _arg(args: list[Value], index: int) -> Value | None:
    return args[index] if index < len(args) else None


def _js_index(index: int, length: int) -> int:
    if index < 0:
        return max(length + index, 0)
    return min(index, length)


def _slice_bounds(args: list[Value], length: int) -> tuple[int, int]:
    start = _js_index(_int(args[0]), length) if args else 0
    end_arg = _arg(args, 1)
    end = _js_index(_int(end_arg), length) if end_arg is not None else length
    return start, end


def _substring(receiver: Value, args: list[Value]) -> Value:
    text = _str(receiver)
    start = min(max(_int(args[0]), 0), len(text))
    end_arg = _arg(args, 1)
    end = min(max(_int(end_arg), 0), len(text)) if end_arg is not None else len(text)
    if start > end:
        start, end = end, start
    return VString(text[start:end])


def _char_at(receiver: Value, args: list[Value]) -> Value:
    text = _str(receiver)
    index = _int(args[0]) if args else 0
    return VString(text[index] if 0 <= index < len(text) else "")


def _char_code_at(receiver: Value, args: list[Value]) -> Value:
    text = _str(receiver)
    index = _int(args[0]) if args else 0
    return VNumber(ord(text[index]) if 0 <= index < len(text) else math.nan)


def _split(receiver: Value, args: list[Value]) -> Value:
    text = _str(receiver)
    separator = _str(args[0])
    parts = list(text) if separator == "" else text.split(separator)
    return VArray(tuple(VString(p) for p in parts))


def _pad(receiver: Value, args: list[Value], at_start: bool) -> Value:
    text = _str(receiver)
    width = _int(args[0])
    fill_arg = _arg(args, 1)
    fill = _str(fill_arg) if fill_arg is not None else " "
    missing = width - len(text)
    if missing <= 0 or not fill:
        return VString(text)
    padding = (fill * (missing // len(fill) + 1))[:missing]
    return VString(padding + text if at_start else text + padding)


def _index_of(receiver: Value, args: list[Value]) -> Value:
    assert isinstance(receiver, VArray)
    for i, element in enumerate(receiver.elements):
        if values_equal(element, args[0]):
            return VNumber(i)
    return VNumber(-1)


def _join(receiver: Value, args: list[Value]) -> Value:
    assert isinstance(receiver, VArray)
    separator = _str(args[0]) if args else ","
    rendered = []
    for element in receiver.elements:
        match element:
            case VString(text):
                rendered.append(text)
            case _ if element == NULL:
                rendered.append("")
            case _:
                rendered.append(str(element))
    return VString(separator.join(rendered))


def _array_slice(receiver: Value, args: list[Value]) -> Value:
    assert isinstance(receiver, VArray)
    start, end = _slice_bounds(args, len(receiver.elements))
    return VArray(receiver.elements[start:end])


def _array_concat(receiver: Value, args: list[Value]) -> Value:
    assert isinstance(receiver, VArray)
    elements = list(receiver.elements)
    for arg in args:
        if isinstance(arg, VArray):
            elements.extend(arg.elements)
        else:
            elements.append(arg)
    return VArray(tuple(elements))


def _to_fixed(receiver: Value, args: list[Value]) -> Value:
    assert isinstance(receiver, VNumber)
    digits = _int(args[0]) if args else 0
    return VString(f"{receiver.value:.{digits}f}")


STRING_METHODS: dict[str, MethodDef] = {
    m.name: m
    for m in [
        MethodDef("startsWith", IS_STRING, (IS_STRING,), IS_BOOL, lambda r, a: VBool(_str(r).startswith(_str(a[0])))),
        MethodDef("endsWith", IS_STRING, (IS_STRING,), IS_BOOL, lambda r, a: VBool(_str(r).endswith(_str(a[0])))),
        MethodDef("includes", IS_STRING, (IS_STRING,), IS_BOOL, lambda r, a: VBool(_str(a[0]) in _str(r))),
        MethodDef("indexOf", IS_STRING, (IS_STRING,), IS_NUMBER, lambda r, a: VNumber(_str(r).find(_str(a[0])))),
        MethodDef("lastIndexOf", IS_STRING, (IS_STRING,), IS_NUMBER, lambda r, a: VNumber(_str(r).rfind(_str(a[0])))),
        MethodDef("toUpperCase", IS_STRING, (), IS_STRING, lambda r, a: VString(_str(r).upper())),
        MethodDef("toLowerCase", IS_STRING, (), IS_STRING, lambda r, a: VString(_str(r).lower())),
        MethodDef("trim", IS_STRING, (), IS_STRING, lambda r, a: VString(_str(r).strip())),
        MethodDef(
            "slice",
            IS_STRING,
            (IS_NUMBER, IS_NUMBER),
            IS_STRING,
            lambda r, a: VString(_str(r)[slice(*_slice_bounds(a, len(_str(r))))]),
            required=0,
        ),
        MethodDef("substring", IS_STRING, (IS_NUMBER, IS_NUMBER), IS_STRING, _substring, required=1),
        MethodDef("charAt", IS_STRING, (IS_NUMBER,), IS_STRING, _char_at),
        MethodDef("charCodeAt", IS_STRING, (IS_NUMBER,), IS_NUMBER, _char_code_at),
        MethodDef("split", IS_STRING, (IS_STRING,), array_of(IS_STRING), _split),
        MethodDef("repeat", IS_STRING, (IS_NUMBER,), IS_STRING, lambda r, a: VString(_str(r) * max(_int(a[0]), 0))),
        MethodDef(
            "padStart", IS_STRING, (IS_NUMBER, IS_STRING), IS_STRING, lambda r, a: _pad(r, a, True), required=1
        ),
        MethodDef("padEnd", IS_STRING, (IS_NUMBER, IS_STRING), IS_STRING, lambda r, a: _pad(r, a, False), required=1),
        MethodDef(
            "replace",
            IS_STRING,
            (IS_STRING, IS_STRING),
            IS_STRING,
            lambda r, a: VString(_str(r).replace(_str(a[0]), _str(a[1]), 1)),
        ),
        MethodDef(
            "replaceAll",
            IS_STRING,
            (IS_STRING, IS_STRING),
            IS_STRING,
            lambda r, a: VString(_str(r).replace(_str(a[0]), _str(a[1]))),
        ),
        MethodDef("concat", IS_STRING, (IS_STRING,), IS_STRING, lambda r, a: VString(_str(r) + _str(a[0]))),
    ]
}

ARRAY_METHODS: dict[str, MethodDef] = {
    m.name: m
    for m in [
        MethodDef(
            "includes",
            IS_ARRAY,
            (ANY,),
            IS_BOOL,
            lambda r, a: VBool(any(values_equal(e, a[0]) for e in r.elements)),  # type: ignore[union-attr]
        ),
        MethodDef("indexOf", IS_ARRAY, (ANY,), IS_NUMBER, _index_of),
        MethodDef("join", IS_ARRAY, (IS_STRING,), IS_STRING, _join, required=0),
        MethodDef("slice", IS_ARRAY, (IS_NUMBER, IS_NUMBER), IS_ARRAY, _array_slice, required=0),
        MethodDef(
            "reverse",
            IS_ARRAY,
            (),
            IS_ARRAY,
            lambda r, a: VArray(tuple(reversed(r.elements))),  # type: ignore[union-attr]
        ),
        MethodDef("concat", IS_ARRAY, (IS_ARRAY,), IS_ARRAY, _array_concat),
    ]
}

NUMBER_METHODS: dict[str, MethodDef] = {
    m.name: m
    for m in [
        MethodDef("toString", IS_NUMBER, (), IS_STRING, lambda r, a: VString(format_literal(r.value))),  # type: ignore[union-attr]
        MethodDef("toFixed", IS_NUMBER, (IS_NUMBER,), IS_STRING, _to_fixed, required=0),
    ]
}

_REGISTRIES = (STRING_METHODS, ARRAY_METHODS, NUMBER_METHODS)


def lookup_methods(receiver: Constraint, name: str) -> list[MethodDef]:
    """Methods called ``name`` that a receiver constraint may dispatch to.

    A receiver whose kind is known selects at most one method. A receiver
    of unknown kind gets every method it could still be, and the caller
    takes the union of their results.
    """
    candidates = [registry[name] for registry in _REGISTRIES if name in registry]
    for method in candidates:
        if implies(receiver, method.receiver):
            return [method]
    return [m for m in candidates if not isinstance(narrow(receiver, m.receiver), NeverConstraint)]


def method_names(receiver: Constraint) -> list[str]:
    """Names of all methods available on a receiver constraint."""
    names: list[str] = []
    for registry in _REGISTRIES:
        for name, method in registry.items():
            if implies(receiver, method.receiver) and name not in names:
                names.append(name)
    return names
