"""Database view registration generator for Python Protocol interfaces.

Expands every `@db_view` Protocol class in a module into the class itself,
a hidden single-method interface it now requires, and a blanket
implementation that registers the view on the runtime's `Database`.

Usage:
    python dbview.py models.py --output-dir build/
    python dbview.py models.py --check
"""

import argparse
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from collections.abc import Iterable, Mapping
from typing import NamedTuple

import libcst as cst
from libcst.helpers import get_full_name_for_node
from libcst.metadata import CodeRange, PositionProvider

DEFAULT_RUNTIME_MODULE = "salsa"
DEFAULT_DIRECTIVE = "db_view"


# ===--- Expansion config contracts ---=== #


@dataclass(frozen=True)
class ExpandConfig:
    runtime_module: str = DEFAULT_RUNTIME_MODULE
    directive: str = DEFAULT_DIRECTIVE


@dataclass(frozen=True)
class RunConfig:
    inputs: tuple[Path, ...]
    output_dir: Path | None
    check: bool
    expand: ExpandConfig = field(default_factory=ExpandConfig)


VALID_ERROR_CODES = {
    "PATH_NOT_FOUND",
    "NOT_A_PYTHON_FILE",
    "INVALID_MODULE_NAME",
    "INVALID_DIRECTIVE_NAME",
    "CONFLICT_CHECK_OUTPUT",
    "MISSING_OUTPUT",
    "DUPLICATE_OUTPUT_NAME",
}
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def validate_module_name(name: str) -> str:
    if name and all(_IDENTIFIER_RE.match(part) for part in name.split(".")):
        return name
    raise ConfigError(
        "INVALID_MODULE_NAME",
        f"Invalid runtime module name: {name!r}",
        "Pass a dotted Python module path, for example --runtime-module salsa.",
    )


def validate_directive_name(name: str) -> str:
    if _IDENTIFIER_RE.match(name):
        return name
    raise ConfigError(
        "INVALID_DIRECTIVE_NAME",
        f"Invalid directive name: {name!r}",
        "The directive is matched by its final dotted segment, e.g. db_view.",
    )


def validate_input_path(path: Path) -> Path:
    if not path.exists():
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"Input file does not exist: {path}",
            "Provide an existing Python source file.",
        )
    if path.suffix != ".py":
        raise ConfigError(
            "NOT_A_PYTHON_FILE",
            f"Input is not a Python source file: {path}",
            "Only .py files can be expanded.",
        )
    return path


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Expand @db_view Protocol declarations into view registrations"
    )

    parser.add_argument("inputs", type=Path, nargs="+")
    parser.add_argument("--output-dir", type=Path, default=None)
    parser.add_argument("--check", action="store_true", default=False)
    parser.add_argument("--runtime-module", type=str, default=DEFAULT_RUNTIME_MODULE)
    parser.add_argument("--directive", type=str, default=DEFAULT_DIRECTIVE)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(args: argparse.Namespace) -> RunConfig:
    if args.check and args.output_dir is not None:
        raise ConfigError(
            "CONFLICT_CHECK_OUTPUT",
            "--check cannot be combined with --output-dir.",
            "Use --check to only report diagnostics, or --output-dir to write.",
        )
    if not args.check and args.output_dir is None:
        raise ConfigError(
            "MISSING_OUTPUT",
            "No output selected.",
            "Pass --output-dir DIR to write expanded modules, or --check.",
        )

    expand = ExpandConfig(
        runtime_module=validate_module_name(args.runtime_module),
        directive=validate_directive_name(args.directive),
    )
    inputs = tuple(validate_input_path(Path(path)) for path in args.inputs)

    if args.output_dir is not None:
        seen: set[str] = set()
        for path in inputs:
            if path.name in seen:
                raise ConfigError(
                    "DUPLICATE_OUTPUT_NAME",
                    f"Two inputs would be written to the same file: {path.name}",
                    "Expand same-named modules in separate runs.",
                )
            seen.add(path.name)

    return RunConfig(
        inputs=inputs,
        output_dir=args.output_dir,
        check=bool(args.check),
        expand=expand,
    )


def build_config(argv: list[str] | None = None) -> RunConfig:
    return validate_config(parse_args(argv))


# ===--- Diagnostics ---=== #


class Span(NamedTuple):
    line: int
    column: int

    def __str__(self) -> str:
        return f"{self.line}:{self.column}"


VALID_EXPANSION_ERROR_KINDS = {"ARGUMENT_ERROR", "SYNTAX_ERROR"}


class ExpansionError(Exception):
    def __init__(self, kind: str, message: str, span: Span):
        if kind not in VALID_EXPANSION_ERROR_KINDS:
            raise ValueError(f"Unknown expansion error kind: {kind}")
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.span = span


@dataclass(frozen=True)
class Diagnostic:
    """A failed expansion, substituted for the declaration it came from.

    Attributes:
        kind: One of VALID_EXPANSION_ERROR_KINDS.
        message: Human-readable description of the failure.
        filename: File the offending declaration lives in.
        span: Location of the offending input, 1-based line and column.
    """

    kind: str
    message: str
    filename: str
    span: Span

    def statement(self) -> cst.BaseStatement:
        """Return the `raise SyntaxError(...)` statement that replaces the
        failed declaration. Importing the expanded module reports the error at
        the original location."""
        location = f"({self.filename!r}, {self.span.line}, {self.span.column}, None)"
        return cst.parse_statement(f"raise SyntaxError({self.message!r}, {location})\n")

    @property
    def code(self) -> str:
        return cst.Module(body=[self.statement()]).code


def format_diagnostic(diagnostic: Diagnostic) -> str:
    return (
        f"{diagnostic.filename}:{diagnostic.span}: "
        f"error[{diagnostic.kind}]: {diagnostic.message}"
    )


# ===--- Name synthesis ---=== #

# A module-level name cannot be checked against every other module the user
# imports, so the hidden names carry fixed dunder affixes instead.
HIDDEN_INTERFACE_PREFIX = "__SalsaAddView"
HIDDEN_METHOD_PREFIX = "__salsa_add_view_"
HIDDEN_NAME_SUFFIX = "__"

_WORD_SEPARATOR_RE = re.compile(r"[\W_]+")


def _split_words(chunk: str) -> list[str]:
    words: list[str] = []
    start = 0
    mode = None
    for i, c in enumerate(chunk[:-1]):
        nxt = chunk[i + 1]
        if c.islower():
            next_mode = "lower"
        elif c.isupper():
            next_mode = "upper"
        else:
            next_mode = mode

        if next_mode == "lower" and nxt.isupper():
            words.append(chunk[start : i + 1])
            start = i + 1
            mode = None
        elif mode == "upper" and c.isupper() and nxt.islower():
            words.append(chunk[start:i])
            start = i
            mode = None
        else:
            mode = next_mode
    words.append(chunk[start:])
    return [word for word in words if word]


def to_snake_case(name: str) -> str:
    words: list[str] = []
    for chunk in _WORD_SEPARATOR_RE.split(name):
        if chunk:
            words.extend(_split_words(chunk))
    return "_".join(word.lower() for word in words)


def derive_hidden_interface_name(user_name: str) -> str:
    return f"{HIDDEN_INTERFACE_PREFIX}{user_name}{HIDDEN_NAME_SUFFIX}"


def derive_hidden_method_name(user_name: str) -> str:
    return f"{HIDDEN_METHOD_PREFIX}{to_snake_case(user_name)}{HIDDEN_NAME_SUFFIX}"


class DerivedNames(NamedTuple):
    hidden_interface_name: str
    hidden_method_name: str


def derive_names(user_name: str) -> DerivedNames:
    return DerivedNames(
        derive_hidden_interface_name(user_name),
        derive_hidden_method_name(user_name),
    )


# ===--- Hygiene ---=== #


class _IdentifierCollector(cst.CSTVisitor):
    def __init__(self) -> None:
        self.names: set[str] = set()

    def visit_Name(self, node: cst.Name) -> None:
        self.names.add(node.value)


def collect_identifiers(node: cst.CSTNode) -> frozenset[str]:
    collector = _IdentifierCollector()
    node.visit(collector)
    return frozenset(collector.names)


class HygieneContext:
    """Fresh local names for one expansion.

    A symbolic name resolves to itself unless that identifier is already
    visible at the call site (or was handed out for another symbol), in which
    case underscores are appended until it is free. The first answer for each
    symbol is memoised, so generated code that mentions a local twice always
    agrees with itself.
    """

    def __init__(self, reserved: Iterable[str] = ()):
        self._reserved = frozenset(reserved)
        self._generated: dict[str, str] = {}

    @classmethod
    def from_node(
        cls, node: cst.CSTNode, extra: Iterable[str] = ()
    ) -> "HygieneContext":
        return cls(collect_identifiers(node) | frozenset(extra))

    def fresh(self, symbolic: str) -> str:
        if symbolic in self._generated:
            return self._generated[symbolic]
        taken = self._reserved | set(self._generated.values())
        candidate = symbolic
        while candidate in taken:
            candidate += "_"
        self._generated[symbolic] = candidate
        return candidate


# ===--- Declarations ---=== #


class Visibility(Enum):
    PUBLIC = "public"
    PRIVATE = "private"


def visibility_of(name: str) -> Visibility:
    return Visibility.PRIVATE if name.startswith("_") else Visibility.PUBLIC


_CODE = cst.Module(body=[])


def code_of(node: cst.CSTNode) -> str:
    return _CODE.code_for_node(node)


def _protocol_marker(expr: cst.BaseExpression) -> cst.BaseExpression | None:
    target = expr.value if isinstance(expr, cst.Subscript) else expr
    name = get_full_name_for_node(target)
    if name == "Protocol" or (name is not None and name.endswith(".Protocol")):
        return target
    return None


class InterfaceDeclaration:
    def __init__(self, node: cst.ClassDef, marker_index: int):
        self.node = node
        self.name = node.name.value
        self.visibility = visibility_of(self.name)
        self.bases = list(node.bases)
        self.marker_index = marker_index

    @property
    def requirements(self) -> list[str]:
        return [
            code_of(base.value)
            for i, base in enumerate(self.bases)
            if i != self.marker_index
        ]

    @property
    def protocol_marker(self) -> cst.BaseExpression:
        marker = _protocol_marker(self.bases[self.marker_index].value)
        assert marker is not None
        return marker

    @property
    def body(self) -> cst.BaseSuite:
        return self.node.body

    def append_requirement(self, name: str) -> None:
        requirement_indices = [
            i for i in range(len(self.bases)) if i != self.marker_index
        ]
        insert_at = requirement_indices[-1] + 1 if requirement_indices else 0
        self.bases.insert(insert_at, cst.Arg(value=cst.Name(name)))
        if insert_at <= self.marker_index:
            self.marker_index += 1

    def to_class_def(self) -> cst.ClassDef:
        return self.node.with_changes(bases=self.bases)


@dataclass(frozen=True)
class HiddenInterface:
    name: str
    method_name: str
    visibility: Visibility
    node: cst.ClassDef
    implementation_detail: bool = True

    @property
    def method_names(self) -> tuple[str, ...]:
        return tuple(
            stmt.name.value
            for stmt in self.node.body.body
            if isinstance(stmt, cst.FunctionDef)
        )


@dataclass(frozen=True)
class BlanketImplementation:
    interface_name: str
    method_name: str
    view_of: str
    runtime_module: str
    local_names: dict[str, str]
    node: cst.ClassDef
    cleanup: cst.BaseStatement


# ===--- Transformation pipeline ---=== #


@dataclass(frozen=True)
class Invocation:
    """One use of the directive, as handed over by the host driver.

    Attributes:
        args: Argument text between the directive's parentheses, "" if none.
        item: Source of the decorated declaration, without the directive.
        filename: File the declaration lives in, used in diagnostics.
        args_span: Location of the directive arguments.
        item_span: Location of the first line of `item`.
        visible_names: Identifiers visible at the call site. Generated locals
            never reuse one of these.
    """

    args: str
    item: str
    filename: str = "<input>"
    args_span: Span = Span(1, 1)
    item_span: Span = Span(1, 1)
    visible_names: frozenset[str] = frozenset()


def _describe_statement(stmt: cst.BaseStatement) -> str:
    if isinstance(stmt, cst.FunctionDef):
        return f"function `{stmt.name.value}`"
    if isinstance(stmt, cst.ClassDef):
        return f"class `{stmt.name.value}` without a Protocol base"
    return "a statement"


def parse_declaration(
    invocation: Invocation, directive: str = DEFAULT_DIRECTIVE
) -> InterfaceDeclaration:
    """Parse the decorated item into an InterfaceDeclaration.

    The item must be exactly one class statement with `Protocol` (bare,
    dotted or subscripted) among its bases.

    Raises:
        ExpansionError: SYNTAX_ERROR when the item does not parse, or parses
            to anything other than a single Protocol class.
    """
    origin = invocation.item_span
    try:
        module = cst.parse_module(invocation.item)
    except cst.ParserSyntaxError as err:
        column = err.raw_column + 1
        if err.raw_line == 1:
            column += origin.column - 1
        raise ExpansionError(
            "SYNTAX_ERROR",
            f"`@{directive}` expects a Protocol class declaration: {err.message}",
            Span(origin.line + err.raw_line - 1, column),
        ) from err

    if len(module.body) != 1:
        found = "nothing" if not module.body else f"{len(module.body)} statements"
        raise ExpansionError(
            "SYNTAX_ERROR",
            f"`@{directive}` expects a single Protocol class declaration, found {found}",
            origin,
        )

    stmt = module.body[0]
    if isinstance(stmt, cst.ClassDef):
        for i, base in enumerate(stmt.bases):
            if base.keyword is None and _protocol_marker(base.value) is not None:
                return InterfaceDeclaration(stmt, marker_index=i)

    raise ExpansionError(
        "SYNTAX_ERROR",
        f"`@{directive}` expects a Protocol class declaration, "
        f"found {_describe_statement(stmt)}",
        origin,
    )


def validate_arguments(
    invocation: Invocation, directive: str = DEFAULT_DIRECTIVE
) -> None:
    if invocation.args.strip():
        raise ExpansionError(
            "ARGUMENT_ERROR",
            f"`@{directive}` takes no arguments, got `{invocation.args.strip()}`",
            invocation.args_span,
        )


def add_supertrait(declaration: InterfaceDeclaration, names: DerivedNames) -> None:
    declaration.append_requirement(names.hidden_interface_name)


HIDDEN_INTERFACE_TEMPLATE = '''\
class {interface}({protocol}):
    """Internal interface generated by the `db_view` directive that registers
    this database view interface with the database.

    Nothing to see here.
    """

    def {method}(self) -> None: ...
'''


def build_hidden_interface(
    declaration: InterfaceDeclaration, names: DerivedNames
) -> HiddenInterface:
    source = HIDDEN_INTERFACE_TEMPLATE.format(
        interface=names.hidden_interface_name,
        protocol=code_of(declaration.protocol_marker),
        method=names.hidden_method_name,
    )
    node = cst.parse_statement(source)
    assert isinstance(node, cst.ClassDef)
    return HiddenInterface(
        name=names.hidden_interface_name,
        method_name=names.hidden_method_name,
        visibility=declaration.visibility,
        node=node,
    )


BLANKET_IMPLEMENTATION_TEMPLATE = '''\
class {holder}:
    """Blanket implementation generated by the `db_view` directive: every
    database registers {user} as one of its views.

    Nothing to see here.
    """

    from {runtime} import Database as {Database}
    from typing import TypeVar

    {DB} = TypeVar("{DB}", bound={Database})

    def {method}(self: {DB}) -> None:
        {views} = self.views_of_self()
        {views}.add({user}, lambda t: t, lambda t: t)

    {Database}.{method} = {method}
'''


def build_blanket_implementation(
    declaration: InterfaceDeclaration,
    names: DerivedNames,
    hygiene: HygieneContext,
    runtime_module: str = DEFAULT_RUNTIME_MODULE,
) -> BlanketImplementation:
    local_names = {
        "DB": hygiene.fresh("DB"),
        "Database": hygiene.fresh("Database"),
        "views": hygiene.fresh("views"),
        "_": hygiene.fresh("_"),
    }
    source = BLANKET_IMPLEMENTATION_TEMPLATE.format(
        holder=local_names["_"],
        runtime=runtime_module,
        method=names.hidden_method_name,
        user=declaration.name,
        **local_names,
    )
    node = cst.parse_statement(source)
    assert isinstance(node, cst.ClassDef)
    return BlanketImplementation(
        interface_name=names.hidden_interface_name,
        method_name=names.hidden_method_name,
        view_of=declaration.name,
        runtime_module=runtime_module,
        local_names=local_names,
        node=node,
        cleanup=cst.parse_statement(f"del {local_names['_']}\n"),
    )


# ===--- Emitter ---=== #


def _blank_lines(count: int) -> list[cst.EmptyLine]:
    return [cst.EmptyLine() for _ in range(count)]


@dataclass(frozen=True)
class Expansion:
    """Successful expansion of one declaration.

    `declarations` keeps the logical order: the augmented declaration, then
    the hidden interface, then the blanket implementation. `statements()`
    yields them in definition order instead, with the hidden interface first,
    since class bases are evaluated when the class statement runs.
    """

    interface: InterfaceDeclaration
    hidden: HiddenInterface
    blanket: BlanketImplementation

    @property
    def declarations(self) -> tuple[cst.ClassDef, cst.ClassDef, cst.ClassDef]:
        return (self.interface.to_class_def(), self.hidden.node, self.blanket.node)

    def statements(
        self, leading_lines: Iterable[cst.EmptyLine] = ()
    ) -> tuple[cst.BaseStatement, ...]:
        """Return the statements ready to be spliced into a module.

        The three declarations are followed by a `del` of the blanket
        implementation's holder class, which leaves no binding behind.

        Blank lines from `leading_lines` stay in front of the whole fragment;
        comment lines move down to the augmented declaration they describe.
        """
        leading_lines = list(leading_lines)
        blanks = [line for line in leading_lines if line.comment is None]
        comments = [line for line in leading_lines if line.comment is not None]
        augmented, hidden, blanket = self.declarations
        return (
            hidden.with_changes(leading_lines=blanks),
            augmented.with_changes(leading_lines=_blank_lines(2) + comments),
            blanket.with_changes(leading_lines=_blank_lines(2)),
            self.blanket.cleanup,
        )

    @property
    def code(self) -> str:
        return cst.Module(body=list(self.statements())).code


def emit(
    declaration: InterfaceDeclaration,
    hidden: HiddenInterface,
    blanket: BlanketImplementation,
) -> Expansion:
    return Expansion(interface=declaration, hidden=hidden, blanket=blanket)


def expand_db_view(
    invocation: Invocation, config: ExpandConfig | None = None
) -> Expansion | Diagnostic:
    """Run the whole pipeline for one directive invocation.

    Stages run strictly in order: validate -> parse -> derive names ->
    mutate -> build artifacts -> emit. A failure in validate or parse skips
    every later stage and comes back as a Diagnostic, never as an exception.

    Args:
        invocation: Directive arguments and decorated item from the driver.
        config: Runtime module and directive name. Defaults to ExpandConfig().

    Returns:
        Expansion with exactly three declarations, or exactly one Diagnostic.
    """
    config = config or ExpandConfig()
    try:
        validate_arguments(invocation, config.directive)
        declaration = parse_declaration(invocation, config.directive)
    except ExpansionError as err:
        return Diagnostic(
            kind=err.kind,
            message=err.message,
            filename=invocation.filename,
            span=err.span,
        )

    names = derive_names(declaration.name)
    hygiene = HygieneContext.from_node(
        declaration.node, extra=invocation.visible_names
    )

    add_supertrait(declaration, names)
    hidden = build_hidden_interface(declaration, names)
    blanket = build_blanket_implementation(
        declaration, names, hygiene, config.runtime_module
    )
    return emit(declaration, hidden, blanket)


# ===--- Module driver ---=== #


@dataclass(frozen=True)
class ModuleExpansion:
    """Result of expanding every directive in one module.

    Attributes:
        code: Expanded module source. Equal to the input when nothing was
            expanded and nothing failed.
        expanded: Names of the interfaces that expanded successfully, in
            source order.
        diagnostics: One Diagnostic per failed directive, in source order.
    """

    code: str
    expanded: tuple[str, ...]
    diagnostics: tuple[Diagnostic, ...]


def find_directive(
    node: cst.ClassDef | cst.FunctionDef, directive: str = DEFAULT_DIRECTIVE
) -> cst.Decorator | None:
    for decorator in node.decorators:
        expr = decorator.decorator
        target = expr.func if isinstance(expr, cst.Call) else expr
        name = get_full_name_for_node(target)
        if name == directive or (name is not None and name.endswith("." + directive)):
            return decorator
    return None


def directive_arguments(decorator: cst.Decorator) -> str:
    expr = decorator.decorator
    if not isinstance(expr, cst.Call):
        return ""
    return ", ".join(
        code_of(arg.with_changes(comma=cst.MaybeSentinel.DEFAULT)).strip()
        for arg in expr.args
    )


def _span(positions: Mapping[cst.CSTNode, CodeRange], node: cst.CSTNode) -> Span:
    start = positions[node].start
    return Span(start.line, start.column + 1)


def build_invocation(
    module: cst.Module,
    stmt: cst.ClassDef | cst.FunctionDef,
    decorator: cst.Decorator,
    positions: Mapping[cst.CSTNode, CodeRange],
    filename: str,
    visible_names: frozenset[str],
) -> Invocation:
    remaining = [d for d in stmt.decorators if d is not decorator]
    item = module.code_for_node(stmt.with_changes(decorators=remaining, leading_lines=[]))

    expr = decorator.decorator
    if isinstance(expr, cst.Call) and expr.args:
        args_span = _span(positions, expr.args[0])
    else:
        args_span = _span(positions, expr)

    # Module-level statements always start at column 1.
    first = remaining[0] if remaining else stmt.name
    item_span = Span(_span(positions, first).line, 1)

    return Invocation(
        args=directive_arguments(decorator),
        item=item,
        filename=filename,
        args_span=args_span,
        item_span=item_span,
        visible_names=visible_names,
    )


def _string_elements(value: cst.BaseExpression) -> list[cst.SimpleString] | None:
    if not isinstance(value, (cst.List, cst.Tuple)):
        return None
    strings = [element.value for element in value.elements]
    if not all(isinstance(s, cst.SimpleString) for s in strings):
        return None
    return strings


def _append_string_element(
    value: cst.List | cst.Tuple, name: str, quote: str
) -> cst.List | cst.Tuple:
    elements = list(value.elements)
    new_element = cst.Element(value=cst.SimpleString(f"{quote}{name}{quote}"))
    if elements and isinstance(elements[-1].comma, cst.Comma):
        # Keep a trailing comma trailing, and reuse the separator layout.
        last = elements[-1]
        separator = (
            elements[-2].comma
            if len(elements) > 1 and isinstance(elements[-2].comma, cst.Comma)
            else cst.Comma(whitespace_after=cst.SimpleWhitespace(" "))
        )
        elements[-1] = last.with_changes(comma=separator)
        new_element = new_element.with_changes(comma=last.comma)
    elements.append(new_element)
    return value.with_changes(elements=elements)


def propagate_exports(module: cst.Module, exports: dict[str, str]) -> cst.Module:
    """Append hidden interface names to a literal `__all__`.

    `exports` maps a public interface name to its hidden interface name. A
    hidden name is added only when its interface is listed in `__all__` and
    the hidden name is not there yet. Non-literal `__all__` values are left
    alone.
    """
    if not exports:
        return module

    body = list(module.body)
    for index, stmt in enumerate(body):
        if not isinstance(stmt, cst.SimpleStatementLine):
            continue
        small = list(stmt.body)
        for small_index, node in enumerate(small):
            if not isinstance(node, cst.Assign) or len(node.targets) != 1:
                continue
            target = node.targets[0].target
            if not (isinstance(target, cst.Name) and target.value == "__all__"):
                continue
            strings = _string_elements(node.value)
            if strings is None:
                continue
            listed = [s.evaluated_value for s in strings]
            quote = strings[0].quote if strings else '"'
            value = node.value
            for interface, hidden in exports.items():
                if interface in listed and hidden not in listed:
                    value = _append_string_element(value, hidden, quote)
                    listed.append(hidden)
            small[small_index] = node.with_changes(value=value)
        body[index] = stmt.with_changes(body=small)
    return module.with_changes(body=body)


def expand_module(
    source: str, config: ExpandConfig | None = None, filename: str = "<input>"
) -> ModuleExpansion:
    """Expand every module-level directive in a Python source string.

    Each decorated class or function is replaced by its fragment: the three
    expansion statements, or the diagnostic's `raise` statement. Every other
    statement is copied through unchanged. A failure in one declaration does
    not stop the others from expanding.

    Args:
        source: Module source text.
        config: Runtime module and directive name. Defaults to ExpandConfig().
        filename: Name reported in diagnostics.

    Returns:
        ModuleExpansion with the new source, expanded names and diagnostics.
    """
    config = config or ExpandConfig()
    try:
        parsed = cst.parse_module(source)
    except cst.ParserSyntaxError as err:
        diagnostic = Diagnostic(
            kind="SYNTAX_ERROR",
            message=err.message,
            filename=filename,
            span=Span(err.raw_line, err.raw_column + 1),
        )
        return ModuleExpansion(code=source, expanded=(), diagnostics=(diagnostic,))

    wrapper = cst.MetadataWrapper(parsed)
    module = wrapper.module
    positions = wrapper.resolve(PositionProvider)
    visible_names = collect_identifiers(module)

    body: list[cst.BaseStatement] = []
    expanded: list[str] = []
    diagnostics: list[Diagnostic] = []
    exports: dict[str, str] = {}

    for stmt in module.body:
        decorator = (
            find_directive(stmt, config.directive)
            if isinstance(stmt, (cst.ClassDef, cst.FunctionDef))
            else None
        )
        if decorator is None:
            body.append(stmt)
            continue

        invocation = build_invocation(
            module, stmt, decorator, positions, filename, visible_names
        )
        fragment = expand_db_view(invocation, config)
        if isinstance(fragment, Diagnostic):
            diagnostics.append(fragment)
            body.append(fragment.statement().with_changes(leading_lines=stmt.leading_lines))
            continue

        expanded.append(fragment.interface.name)
        body.extend(fragment.statements(stmt.leading_lines))
        if fragment.hidden.visibility is Visibility.PUBLIC:
            exports[fragment.interface.name] = fragment.hidden.name

    if not expanded and not diagnostics:
        return ModuleExpansion(code=source, expanded=(), diagnostics=())

    result = propagate_exports(module.with_changes(body=body), exports)
    return ModuleExpansion(
        code=result.code,
        expanded=tuple(expanded),
        diagnostics=tuple(diagnostics),
    )


# ===--- Writer ---=== #


@dataclass(frozen=True)
class FileWriteResult:
    """Result of writing one expanded module.

    Attributes:
        filename: Filename written, e.g. "models.py".
        path: Absolute path of the written file.
        line_count: Number of newline characters in the written content.
        byte_count: Number of bytes written (UTF-8 encoded).
    """

    filename: str
    path: Path
    line_count: int
    byte_count: int


def write_module(output_dir: Path, filename: str, code: str) -> FileWriteResult:
    """Write one expanded module to disk.

    Creates output_dir (and any missing parents) before writing. OSError
    propagates unchanged.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    file_path = output_dir / filename
    file_path.write_text(code, encoding="utf-8")
    resolved = file_path.resolve()
    return FileWriteResult(
        filename=filename,
        path=resolved,
        line_count=code.count("\n"),
        byte_count=len(resolved.read_bytes()),
    )


# ===--- Run summary ---=== #


@dataclass(frozen=True)
class FileExpansionResult:
    """Per-input outcome, one row of the summary report.

    Attributes:
        source: Input path as given on the command line.
        expanded: Interface names expanded in this file.
        diagnostics: Diagnostics raised in this file.
        written: Write result, or None under --check.
    """

    source: Path
    expanded: tuple[str, ...]
    diagnostics: tuple[Diagnostic, ...]
    written: FileWriteResult | None


@dataclass(frozen=True)
class RunSummary:
    runtime_module: str
    directive: str
    output_label: str
    files: tuple[FileExpansionResult, ...]

    @property
    def expanded_count(self) -> int:
        return sum(len(f.expanded) for f in self.files)

    @property
    def diagnostic_count(self) -> int:
        return sum(len(f.diagnostics) for f in self.files)


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


def format_run_summary(summary: RunSummary) -> str:
    """Render a RunSummary for the console, with exactly one trailing newline."""
    lines: list[str] = []
    lines.append("db_view expansion complete:")
    lines.append("")
    lines.append(f"  Runtime:    {summary.runtime_module}")
    lines.append(f"  Directive:  @{summary.directive}")
    lines.append(f"  Output:     {summary.output_label}")
    lines.append("")
    lines.append("  Files:")
    for result in summary.files:
        counts = (
            f"{_plural(len(result.expanded), 'declaration')} expanded, "
            f"{_plural(len(result.diagnostics), 'diagnostic')}"
        )
        lines.append(f"    {result.source.name:<28} {counts}")
    lines.append("")
    lines.append(
        f"  Total: {_plural(summary.expanded_count, 'declaration')} expanded, "
        f"{_plural(summary.diagnostic_count, 'diagnostic')} "
        f"across {_plural(len(summary.files), 'file')}"
    )
    lines.append("")
    return "\n".join(lines)


def print_run_summary(summary: RunSummary) -> None:
    print(format_run_summary(summary), end="")


def run_expand(config: RunConfig) -> RunSummary:
    """Expand every input file and write or check the results.

    Raises:
        OSError: Input not readable or output write failure.
        UnicodeDecodeError: Input is not valid UTF-8.
    """
    results: list[FileExpansionResult] = []
    for path in config.inputs:
        print(f"Expanding: {path}")
        source = path.read_text(encoding="utf-8")
        expansion = expand_module(source, config.expand, filename=str(path))
        for diagnostic in expansion.diagnostics:
            print(f"  {format_diagnostic(diagnostic)}")
        print(
            f"  Expanded: {_plural(len(expansion.expanded), 'declaration')}, "
            f"{_plural(len(expansion.diagnostics), 'diagnostic')}"
        )

        written = None
        if not config.check and config.output_dir is not None:
            written = write_module(config.output_dir, path.name, expansion.code)
            print(f"  Written: {written.line_count} lines to {written.path}")

        results.append(
            FileExpansionResult(
                source=path,
                expanded=expansion.expanded,
                diagnostics=expansion.diagnostics,
                written=written,
            )
        )

    summary = RunSummary(
        runtime_module=config.expand.runtime_module,
        directive=config.expand.directive,
        output_label="check only" if config.check else str(config.output_dir),
        files=tuple(results),
    )
    print_run_summary(summary)
    return summary


# ===--- Main ---=== #


def main():
    try:
        config = build_config()
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    try:
        summary = run_expand(config)
    except (OSError, UnicodeDecodeError) as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err
    except ValueError as err:
        print(f"Internal error: {err}")
        raise SystemExit(1) from err

    if summary.diagnostic_count:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
