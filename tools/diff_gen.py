#!/usr/bin/env python3
"""diffgen difference-type generator.

Input:  Python source containing @diff tagged classes.
Output: transformed Python source where each tagged class is followed by its
        generated difference class and Diff contract implementation.
"""

from __future__ import annotations

import argparse
import ast
import dataclasses
import hashlib
import pathlib
import re
import sys
from typing import Dict, List, Sequence, Set, Tuple

GENERATOR_VERSION = "0.1.0"
FORMAT_VERSION = "1"
MARKER = "diff"
DEFAULT_SUFFIX = "Diff"
VALID_DIRECTIVES = ("attr", "name")
RUNTIME_MODULE = "diffgen.runtime"
RUNTIME_ALIAS = "_diff"
POSITIONAL_BASE = "Positional"
ENUM_BASES = frozenset({"Enum", "IntEnum", "StrEnum", "Flag", "IntFlag", "ReprEnum"})
SKIPPED_ANNOTATIONS = frozenset({"ClassVar", "InitVar"})
FIELDLESS_BASES = frozenset({"object", "Generic"})
DIGEST_PATTERN = re.compile(r"^# digest: ([0-9a-f]{64})$", re.MULTILINE)

SHAPE_NAMED = "named"
SHAPE_UNNAMED = "unnamed"
SHAPE_UNIT = "unit"


class ParseError(RuntimeError):
    def __init__(self, message: str, line: int, col: int) -> None:
        super().__init__(message)
        self.line = line
        self.col = col

    @classmethod
    def at(cls, message: str, node: ast.AST) -> "ParseError":
        return cls(message, getattr(node, "lineno", 1), getattr(node, "col_offset", 0) + 1)


class ConfigError(ParseError):
    pass


class UnsupportedShapeError(ParseError):
    pass


@dataclasses.dataclass
class Field:
    type_name: str
    name: str = ""  # empty for positional fields
    index: int = 0


@dataclasses.dataclass
class StructConfig:
    name: str | None = None
    attrs: List[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class Directive:
    name: str
    node: ast.Call


@dataclasses.dataclass
class StructBlock:
    name: str
    shape: str  # named | unnamed | unit
    end: int
    config: StructConfig
    fields: List[Field] = dataclasses.field(default_factory=list)
    marker_lines: List[Tuple[int, int]] = dataclasses.field(default_factory=list)

    @property
    def diff_name(self) -> str:
        return self.config.name or f"{self.name}{DEFAULT_SUFFIX}"

    @property
    def impl_name(self) -> str:
        return f"_{self.diff_name}Impl"

    def generated_names(self) -> List[str]:
        if self.shape == SHAPE_UNIT:
            return [self.impl_name]
        return [self.diff_name, self.impl_name]


def fail(path: pathlib.Path, error: ParseError) -> None:
    print(f"{path}:{error.line}:{error.col}: error: {error}", file=sys.stderr)


def normalize_type(type_name: str) -> str:
    return " ".join(type_name.strip().split())


def dotted_tail(node: ast.expr) -> str:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return node.attr
    return ""


def base_name(node: ast.expr) -> str:
    if isinstance(node, ast.Subscript):
        return dotted_tail(node.value)
    return dotted_tail(node)


def source_of(text: str, node: ast.AST) -> str:
    segment = ast.get_source_segment(text, node)
    if segment is None:
        raise ParseError.at("internal error: expression has no source segment", node)
    return segment


def is_marker(node: ast.expr) -> bool:
    target = node.func if isinstance(node, ast.Call) else node
    return isinstance(target, ast.Name) and target.id == MARKER


# --- annotation parser ---


def parse_directive(marker: ast.Call) -> Directive:
    if marker.keywords:
        raise ParseError.at(
            f"expected a directive inside {MARKER}(...), found a keyword argument",
            marker.keywords[0],
        )
    if not marker.args:
        raise ParseError.at(f"expected a directive such as 'attr(...)' inside {MARKER}(...)", marker)
    if len(marker.args) > 1:
        raise ParseError.at(
            f"{MARKER}(...) takes a single directive, got {len(marker.args)}",
            marker.args[1],
        )

    node = marker.args[0]
    if isinstance(node, ast.Name):
        raise ParseError.at(f"expected '(' after directive name '{node.id}'", node)
    if not isinstance(node, ast.Call) or not isinstance(node.func, ast.Name):
        raise ParseError.at("expected a directive of the form 'name(...)'", node)
    return Directive(name=node.func.id, node=node)


def parse_attr_list(text: str, directive: Directive) -> List[str]:
    call = directive.node
    if call.keywords:
        raise ParseError.at("attr(...) expects decorator expressions, not keyword arguments", call.keywords[0])

    attrs: List[str] = []
    for arg in call.args:
        if isinstance(arg, ast.Starred):
            raise ParseError.at("attr(...) does not accept starred expressions", arg)
        attrs.append(source_of(text, arg))
    return attrs


def parse_name_override(directive: Directive) -> str:
    call = directive.node
    if call.keywords or len(call.args) != 1 or not isinstance(call.args[0], ast.Name):
        raise ParseError.at("name(...) expects a single identifier", call)
    return call.args[0].id


def parse_struct_config(text: str, markers: Sequence[ast.expr]) -> StructConfig:
    config = StructConfig()
    for marker in markers:
        if not isinstance(marker, ast.Call):
            continue
        directive = parse_directive(marker)
        if directive.name == "attr":
            config.attrs = parse_attr_list(text, directive)
        elif directive.name == "name":
            config.name = parse_name_override(directive)
        else:
            possible = ", ".join(f"'{name}'" for name in VALID_DIRECTIVES)
            raise ConfigError.at(
                f"unexpected name for {MARKER} directive '{directive.name}'; possible names: {possible}",
                directive.node,
            )
    return config


# --- shape classifier ---


def is_skipped_annotation(node: ast.expr) -> bool:
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        head = node.value.split("[", 1)[0].strip()
        return head.rsplit(".", 1)[-1] in SKIPPED_ANNOTATIONS
    return base_name(node) in SKIPPED_ANNOTATIONS


def is_field(stmt: ast.stmt) -> bool:
    return (
        isinstance(stmt, ast.AnnAssign)
        and isinstance(stmt.target, ast.Name)
        and not is_skipped_annotation(stmt.annotation)
    )


def positional_base(node: ast.ClassDef) -> ast.expr | None:
    for base in node.bases:
        if base_name(base) == POSITIONAL_BASE:
            return base
    return None


def classify_shape(node: ast.ClassDef) -> str:
    for base in node.bases:
        tail = base_name(base)
        if tail in ENUM_BASES:
            raise UnsupportedShapeError.at(
                f"not implemented: diff generation for enum-shaped class '{node.name}'",
                base,
            )
        if tail not in FIELDLESS_BASES and tail != POSITIONAL_BASE:
            raise UnsupportedShapeError.at(
                f"not implemented: '{node.name}' inherits from '{ast.unparse(base)}'; inherited fields are not diffed",
                base,
            )

    named = [stmt for stmt in node.body if is_field(stmt)]
    positional = positional_base(node)
    if positional is not None:
        if not isinstance(positional, ast.Subscript):
            raise ParseError.at(
                f"'{POSITIONAL_BASE}' base of '{node.name}' needs field types, e.g. {POSITIONAL_BASE}[int, int]",
                positional,
            )
        if named:
            raise ParseError.at(f"positional class '{node.name}' cannot declare named fields", named[0])
        return SHAPE_UNNAMED
    if named:
        return SHAPE_NAMED
    return SHAPE_UNIT


def type_text(text: str, node: ast.expr) -> str:
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        return normalize_type(node.value)
    return normalize_type(source_of(text, node))


def parse_fields(text: str, node: ast.ClassDef, shape: str) -> List[Field]:
    if shape == SHAPE_UNIT:
        return []

    if shape == SHAPE_UNNAMED:
        base = positional_base(node)
        if not isinstance(base, ast.Subscript):
            return []
        items = base.slice.elts if isinstance(base.slice, ast.Tuple) else [base.slice]
        return [Field(type_name=type_text(text, item), index=i) for i, item in enumerate(items)]

    fields: List[Field] = []
    seen: Set[str] = set()
    for stmt in node.body:
        if not isinstance(stmt, ast.AnnAssign) or not isinstance(stmt.target, ast.Name):
            continue
        if is_skipped_annotation(stmt.annotation):
            continue
        name = stmt.target.id
        if name.startswith("__") and not name.endswith("__"):
            raise ParseError.at(f"name-mangled field '{name}' is not supported", stmt)
        if name in seen:
            raise ParseError.at(f"duplicate field '{name}' in '{node.name}'", stmt)
        seen.add(name)
        fields.append(Field(type_name=type_text(text, stmt.annotation), name=name, index=len(fields)))
    return fields


# --- discovery ---


def marker_span(lines: Sequence[str], node: ast.expr) -> Tuple[int, int]:
    first = lines[node.lineno - 1].encode("utf-8")
    if first[: node.col_offset].decode("utf-8").strip() != "@":
        raise ParseError.at(f"@{MARKER} must start on its own line", node)

    last = lines[node.end_lineno - 1].encode("utf-8")
    trailing = last[node.end_col_offset :].decode("utf-8").strip()
    if trailing and not trailing.startswith("#"):
        raise ParseError.at(f"@{MARKER} must end its line", node)
    return node.lineno, node.end_lineno


def defined_names(tree: ast.Module) -> Set[str]:
    names: Set[str] = set()
    for node in tree.body:
        if isinstance(node, (ast.ClassDef, ast.FunctionDef, ast.AsyncFunctionDef)):
            names.add(node.name)
        elif isinstance(node, ast.Assign):
            names.update(t.id for t in node.targets if isinstance(t, ast.Name))
        elif isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name):
            names.add(node.target.id)
        elif isinstance(node, (ast.Import, ast.ImportFrom)):
            names.update((alias.asname or alias.name).split(".", 1)[0] for alias in node.names)
    return names


def find_tagged_classes(tree: ast.Module) -> List[ast.ClassDef]:
    tagged: List[ast.ClassDef] = []
    for node in ast.walk(tree):
        if not isinstance(node, (ast.ClassDef, ast.FunctionDef, ast.AsyncFunctionDef)):
            continue
        if not any(is_marker(d) for d in node.decorator_list):
            continue
        if not isinstance(node, ast.ClassDef):
            raise ParseError.at(f"@{MARKER} can only tag classes; '{node.name}' is a function", node)
        if not any(node is top for top in tree.body):
            raise ParseError.at(
                f"only module-level classes can be tagged with @{MARKER}; '{node.name}' is nested",
                node,
            )
        tagged.append(node)
    return sorted(tagged, key=lambda n: n.lineno)


def parse_tagged_struct(text: str, lines: Sequence[str], node: ast.ClassDef) -> StructBlock:
    markers = [d for d in node.decorator_list if is_marker(d)]
    config = parse_struct_config(text, markers)
    shape = classify_shape(node)
    return StructBlock(
        name=node.name,
        shape=shape,
        end=node.end_lineno,
        config=config,
        fields=parse_fields(text, node, shape),
        marker_lines=[marker_span(lines, m) for m in markers],
    )


def parse_all_structs(text: str) -> Tuple[ast.Module, List[StructBlock]]:
    try:
        tree = ast.parse(text)
    except SyntaxError as e:
        raise ParseError(f"invalid Python syntax: {e.msg}", e.lineno or 1, e.offset or 1) from e

    lines = text.splitlines(keepends=True)
    taken = defined_names(tree)
    generated: Set[str] = set()
    blocks: List[StructBlock] = []

    for node in find_tagged_classes(tree):
        block = parse_tagged_struct(text, lines, node)
        for name in block.generated_names():
            if name in taken or name in generated:
                raise ConfigError.at(
                    f"generated name '{name}' for '{block.name}' collides with an existing definition",
                    node,
                )
            generated.add(name)
        blocks.append(block)

    return tree, blocks


# --- synthesizers ---


def repr_annotation(field: Field) -> str:
    return repr(f"{RUNTIME_ALIAS}.Repr[{field.type_name}]")


def render_decorators(attrs: Sequence[str]) -> List[str]:
    # multi-line expressions lose their enclosing attr(...) parentheses
    return [f"@({attr})" if "\n" in attr else f"@{attr}" for attr in attrs]


def render_return_call(callee: str, args: Sequence[str]) -> List[str]:
    if not args:
        return [f"        return {callee}()"]
    lines = [f"        return {callee}("]
    lines.extend(f"            {arg}," for arg in args)
    lines.append("        )")
    return lines


def render_impl_head(name: str, impl_name: str, repr_type: str) -> List[str]:
    return [
        f"@{RUNTIME_ALIAS}.implements({name})",
        f"class {impl_name}:",
        f"    Repr = {repr_type}",
        "",
    ]


def render_named(attrs: Sequence[str], name: str, diff_name: str, impl_name: str, fields: Sequence[Field]) -> str:
    lines = render_decorators(attrs)
    lines.append("@dataclasses.dataclass")
    lines.append(f"class {diff_name}:")
    for field in fields:
        lines.append(f"    {field.name}: {repr_annotation(field)}")
    lines.append("")
    lines.append("")

    lines.extend(render_impl_head(name, impl_name, diff_name))
    lines.append("    def diff(self, other):")
    lines.extend(
        render_return_call(
            diff_name,
            [f"{f.name}={RUNTIME_ALIAS}.diff(self.{f.name}, other.{f.name})" for f in fields],
        )
    )
    lines.append("")
    lines.append("    def apply(self, delta):")
    for f in fields:
        lines.append(f"        self.{f.name} = {RUNTIME_ALIAS}.apply(self.{f.name}, delta.{f.name})")
    lines.append("        return self")
    lines.append("")
    lines.append("    @classmethod")
    lines.append("    def identity(cls):")
    lines.append("        value = cls.__new__(cls)")
    for f in fields:
        lines.append(f"        value.{f.name} = {RUNTIME_ALIAS}.identity({f.type_name})")
    lines.append("        return value")

    return "\n".join(lines)


def render_unnamed(attrs: Sequence[str], name: str, diff_name: str, impl_name: str, fields: Sequence[Field]) -> str:
    lines = render_decorators(attrs)
    field_types = ", ".join(repr_annotation(f) for f in fields) or "()"
    lines.append(f"class {diff_name}({RUNTIME_ALIAS}.{POSITIONAL_BASE}[{field_types}]):")
    lines.append("    pass")
    lines.append("")
    lines.append("")

    lines.extend(render_impl_head(name, impl_name, diff_name))
    lines.append("    def diff(self, other):")
    lines.extend(
        render_return_call(
            diff_name,
            [f"{RUNTIME_ALIAS}.diff(self[{f.index}], other[{f.index}])" for f in fields],
        )
    )
    lines.append("")
    lines.append("    def apply(self, delta):")
    for f in fields:
        lines.append(f"        self[{f.index}] = {RUNTIME_ALIAS}.apply(self[{f.index}], delta[{f.index}])")
    lines.append("        return self")
    lines.append("")
    lines.append("    @classmethod")
    lines.append("    def identity(cls):")
    lines.extend(render_return_call("cls", [f"{RUNTIME_ALIAS}.identity({f.type_name})" for f in fields]))

    return "\n".join(lines)


def render_unit(name: str, impl_name: str) -> str:
    lines = render_impl_head(name, impl_name, "type(None)")
    lines.append("    def diff(self, other):")
    lines.append("        return None")
    lines.append("")
    lines.append("    def apply(self, delta):")
    lines.append("        return self")
    lines.append("")
    lines.append("    @classmethod")
    lines.append("    def identity(cls):")
    lines.append("        return cls()")
    return "\n".join(lines)


def render_block(block: StructBlock) -> str:
    if block.shape == SHAPE_NAMED:
        return render_named(block.config.attrs, block.name, block.diff_name, block.impl_name, block.fields)
    if block.shape == SHAPE_UNNAMED:
        return render_unnamed(block.config.attrs, block.name, block.diff_name, block.impl_name, block.fields)
    if block.shape == SHAPE_UNIT:
        return render_unit(block.name, block.impl_name)
    raise UnsupportedShapeError(f"not implemented: shape '{block.shape}' of '{block.name}'", block.end, 1)


# --- emission ---


def has_import(tree: ast.Module, module: str, asname: str | None) -> bool:
    for node in tree.body:
        if isinstance(node, ast.Import):
            if any(alias.name == module and alias.asname == asname for alias in node.names):
                return True
    return False


def import_insertion_line(tree: ast.Module) -> int:
    line = 0
    for index, node in enumerate(tree.body):
        is_docstring = (
            index == 0
            and isinstance(node, ast.Expr)
            and isinstance(node.value, ast.Constant)
            and isinstance(node.value.value, str)
        )
        is_future = isinstance(node, ast.ImportFrom) and node.module == "__future__"
        if not (is_docstring or is_future):
            break
        line = node.end_lineno
    return line


def required_imports(tree: ast.Module, blocks: Sequence[StructBlock]) -> List[str]:
    imports: List[str] = []
    if not blocks:
        return imports
    if any(b.shape == SHAPE_NAMED for b in blocks) and not has_import(tree, "dataclasses", None):
        imports.append("import dataclasses\n")
    if not has_import(tree, RUNTIME_MODULE, RUNTIME_ALIAS):
        imports.append(f"import {RUNTIME_MODULE} as {RUNTIME_ALIAS}\n")
    return imports


def apply_substitutions(source: str, tree: ast.Module, blocks: Sequence[StructBlock]) -> str:
    lines = source.splitlines(keepends=True)
    removed: Set[int] = set()
    for block in blocks:
        for first, last in block.marker_lines:
            removed.update(range(first, last + 1))
    fragments: Dict[int, str] = {block.end: render_block(block) for block in blocks}

    imports = "".join(required_imports(tree, blocks))
    insert_at = import_insertion_line(tree)

    pieces: List[str] = []
    if imports and insert_at == 0:
        pieces.append(imports + "\n")

    for number, line in enumerate(lines, start=1):
        if number in removed:
            continue
        pieces.append(line)
        if (number == insert_at and imports) or number in fragments:
            if not line.endswith("\n"):
                pieces.append("\n")
        if number == insert_at and imports:
            pieces.append("\n" + imports)
        if number in fragments:
            pieces.append("\n\n" + fragments[number] + "\n")

    return "".join(pieces)


def compute_file_digest(source_bytes: bytes) -> str:
    h = hashlib.sha256()
    h.update(GENERATOR_VERSION.encode("utf-8"))
    h.update(b"\x00")
    h.update(FORMAT_VERSION.encode("utf-8"))
    h.update(b"\x00")
    h.update(source_bytes)
    return h.hexdigest()


def render_file(source_path: pathlib.Path, source_text: str, source_bytes: bytes) -> str:
    tree, blocks = parse_all_structs(source_text)
    transformed = apply_substitutions(source_text, tree, blocks)
    digest = compute_file_digest(source_bytes)
    source_label = str(source_path)
    try:
        source_label = str(source_path.resolve().relative_to(pathlib.Path.cwd().resolve()))
    except ValueError:
        source_label = str(source_path.resolve())

    meta = (
        "# diffgen-generated\n"
        f"# source: {source_label}\n"
        f"# generator_version: {GENERATOR_VERSION}\n"
        f"# format_version: {FORMAT_VERSION}\n"
        f"# digest: {digest}\n\n"
    )
    return meta + transformed


def extract_existing_digest(text: str) -> str | None:
    m = DIGEST_PATTERN.search(text)
    if not m:
        return None
    return m.group(1)


def run(args: argparse.Namespace) -> int:
    in_path = pathlib.Path(args.input)
    out_path = pathlib.Path(args.output)

    if not in_path.exists():
        print(f"error: input file does not exist: {in_path}", file=sys.stderr)
        return 1

    source_bytes = in_path.read_bytes()
    source_text = source_bytes.decode("utf-8")

    try:
        rendered = render_file(in_path, source_text, source_bytes)
    except ParseError as e:
        fail(in_path, e)
        return 1

    if args.check:
        if not out_path.exists():
            print(f"{out_path} is missing (run generator)", file=sys.stderr)
            return 1
        existing = out_path.read_text(encoding="utf-8")
        if existing != rendered:
            print(f"{out_path} is out of date (run generator)", file=sys.stderr)
            return 1
        print(f"up-to-date: {out_path}")
        return 0

    if out_path.exists():
        existing = out_path.read_text(encoding="utf-8")
        old_digest = extract_existing_digest(existing)
        new_digest = extract_existing_digest(rendered)
        if old_digest and new_digest and old_digest == new_digest:
            print(f"unchanged: {out_path}")
            return 0
        if existing == rendered:
            print(f"unchanged: {out_path}")
            return 0

    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(rendered, encoding="utf-8")
    print(f"generated: {out_path}")
    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate Diff implementations from .py.diff sources")
    parser.add_argument("--in", dest="input", required=True, help="Input .py.diff file")
    parser.add_argument("--out", dest="output", required=True, help="Output generated module")
    parser.add_argument("--check", action="store_true", help="Check output is up to date")
    return parser


if __name__ == "__main__":
    raise SystemExit(run(build_arg_parser().parse_args()))
