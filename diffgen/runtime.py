"""Diff contract dispatch for diffgen-generated modules.

Generated code imports this module as ``_diff`` and routes every field-level
operation through :func:`diff`, :func:`apply` and :func:`identity`.  Classes
produced by the generator carry their own implementation, installed by
:func:`implements`.  Every other type needs a leaf contract registered with
:func:`register` before it is diffed:

    register(int, diff=lambda a, b: b - a, apply=lambda v, d: v + d, identity=lambda: 0)

``apply`` always returns the updated value.  Generated classes mutate
themselves and return ``self``; immutable leaves return a new value, which
the enclosing generated code stores back into its field.
"""

from __future__ import annotations

import dataclasses
import typing
from typing import Any, Callable, Dict, Optional

IMPL_ATTRIBUTE = "__diff_impl__"
CONTRACT = ("Repr", "diff", "apply", "identity")


class DiffError(TypeError):
    pass


@dataclasses.dataclass(frozen=True)
class Leaf:
    repr_type: Any
    diff: Callable[[Any, Any], Any]
    apply: Callable[[Any, Any], Any]
    identity: Callable[[], Any]


_LEAVES: Dict[type, Leaf] = {}


def register(
    tp: type,
    *,
    diff: Callable[[Any, Any], Any],
    apply: Callable[[Any, Any], Any],
    identity: Callable[[], Any],
    repr_type: Any = None,
) -> None:
    """Register the Diff contract of a leaf type; ``repr_type`` defaults to ``tp``."""
    _LEAVES[tp] = Leaf(
        repr_type=tp if repr_type is None else repr_type,
        diff=diff,
        apply=apply,
        identity=identity,
    )


def unregister(tp: type) -> None:
    _LEAVES.pop(tp, None)


def _describe(tp: Any) -> str:
    return getattr(tp, "__qualname__", None) or repr(tp)


def _unwrap(tp: Any) -> Any:
    if typing.get_origin(tp) is typing.Annotated:
        return typing.get_args(tp)[0]
    return tp


def is_generated(tp: Any) -> bool:
    return isinstance(tp, type) and getattr(tp, IMPL_ATTRIBUTE, None) is not None


def lookup(tp: Any) -> Leaf:
    """Find the leaf contract for ``tp``, following its MRO and generic origin."""
    origin = typing.get_origin(tp) or tp
    for klass in getattr(origin, "__mro__", (origin,)):
        leaf = _LEAVES.get(klass)
        if leaf is not None:
            return leaf
    raise DiffError(f"no diff contract registered for {_describe(tp)}")


def repr_type(tp: Any) -> Any:
    tp = _unwrap(tp)
    if is_generated(tp):
        return tp.Repr
    return lookup(tp).repr_type


# Generated contracts are reached through the impl class, since instance
# fields may be named ``diff`` or ``apply``.


def diff(a: Any, b: Any) -> Any:
    if is_generated(type(a)):
        return getattr(type(a), IMPL_ATTRIBUTE).diff(a, b)
    return lookup(type(a)).diff(a, b)


def apply(value: Any, delta: Any) -> Any:
    if is_generated(type(value)):
        return getattr(type(value), IMPL_ATTRIBUTE).apply(value, delta)
    return lookup(type(value)).apply(value, delta)


def identity(tp: Any) -> Any:
    tp = _unwrap(tp)
    if is_generated(tp):
        return tp.identity()
    return lookup(tp).identity()


class Repr:
    """``Repr[T]`` resolves to the representation type of ``T``."""

    def __class_getitem__(cls, tp: Any) -> Any:
        return repr_type(tp)


def implements(target: type) -> Callable[[type], type]:
    """Install the contract defined on the decorated class onto ``target``."""

    def install(impl: type) -> type:
        for name in CONTRACT:
            setattr(target, name, impl.__dict__[name])
        setattr(target, IMPL_ATTRIBUTE, impl)
        return impl

    return install


class Positional(list):
    """Mutable record whose fields are addressed by position.

    The subscript of the base fixes the field types and the arity checked
    on construction::

        class Pair(Positional[int, int]):
            pass

        Pair(1, 2)[0] == 1
    """

    __arity__: Optional[int] = None

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        for base in cls.__dict__.get("__orig_bases__", ()):
            if typing.get_origin(base) is Positional:
                cls.__arity__ = len(typing.get_args(base))

    def __init__(self, *items: Any) -> None:
        arity = type(self).__arity__
        if arity is not None and len(items) != arity:
            raise TypeError(
                f"{type(self).__name__} takes {arity} positional fields but {len(items)} were given"
            )
        super().__init__(items)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({', '.join(repr(item) for item in self)})"

    def __eq__(self, other: object) -> bool:
        return type(other) is type(self) and list.__eq__(self, other)

    def __ne__(self, other: object) -> bool:
        return not self.__eq__(other)

    __hash__ = None  # type: ignore[assignment]
