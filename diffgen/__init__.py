"""Runtime support for modules produced by ``tools/diff_gen.py``."""

from diffgen.runtime import (
    DiffError,
    Leaf,
    Positional,
    Repr,
    apply,
    diff,
    identity,
    implements,
    register,
    repr_type,
    unregister,
)

__version__ = "0.1.0"
__all__ = [
    "DiffError", "Leaf", "Positional", "Repr",
    "apply", "diff", "identity", "implements",
    "register", "repr_type", "unregister",
]
