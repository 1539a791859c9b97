"""AST parser utility for JavaScript/TypeScript using tree-sitter."""

from pathlib import PurePosixPath
from typing import Any

import tree_sitter_javascript as tsjs
import tree_sitter_typescript as tsts
from tree_sitter import Language, Parser, Tree

from patchloop.models.schemas import ImportBinding, ModuleSymbols

# Initialize language objects
JS_LANGUAGE = Language(tsjs.language())
TS_LANGUAGE = Language(tsts.language_typescript())
TSX_LANGUAGE = Language(tsts.language_tsx())

LANG_MAP: dict[str, Language] = {
    "javascript": JS_LANGUAGE,
    "typescript": TS_LANGUAGE,
    "tsx": TSX_LANGUAGE,
}

EXTENSION_MAP: dict[str, str] = {
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".tsx": "tsx",
}

# Declaration node types whose "name" field introduces a binding
NAMED_DECLARATIONS = frozenset({
    "function_declaration",
    "generator_function_declaration",
    "class_declaration",
    "abstract_class_declaration",
    "interface_declaration",
    "type_alias_declaration",
    "enum_declaration",
    "function_signature",
    "module",
    "internal_module",
})


def get_language_for_file(file_path: str) -> str:
    """Map file extension to tree-sitter language name.

    Args:
        file_path: Path to the file

    Returns:
        Language name ("javascript", "typescript", "tsx")

    Raises:
        ValueError: If file extension is not supported
    """
    ext = PurePosixPath(file_path).suffix
    if ext not in EXTENSION_MAP:
        raise ValueError(f"Unsupported file extension: {ext}")
    return EXTENSION_MAP[ext]


def is_supported_file(file_path: str) -> bool:
    return PurePosixPath(file_path).suffix in EXTENSION_MAP


def get_parser(language: str) -> Parser:
    """Return a tree-sitter Parser for the given language name.

    Args:
        language: Language name ("javascript", "typescript", "tsx")

    Returns:
        Configured Parser instance
    """
    if language not in LANG_MAP:
        raise ValueError(f"Unsupported language: {language}")
    parser = Parser()
    parser.language = LANG_MAP[language]
    return parser


def parse_content(file_path: str, content: str) -> Tree:
    """Parse in-memory source for file_path's language.

    Raises:
        ValueError: If the file extension is not supported.
    """
    parser = get_parser(get_language_for_file(file_path))
    return parser.parse(content.encode("utf-8"))


def _text(node: Any) -> str:
    return node.text.decode("utf-8") if node is not None and node.text else ""


def _string_value(node: Any) -> str:
    return _text(node).strip("'\"`")


def _line(node: Any) -> int:
    return node.start_point[0] + 1


def extract_import_bindings(tree: Tree) -> list[ImportBinding]:
    """Extract named, default and namespace import bindings with their source.

    Side-effect imports (import "./x") bind nothing and are not returned.
    """
    bindings: list[ImportBinding] = []

    for stmt in tree.root_node.children:
        if stmt.type != "import_statement":
            continue
        source = _string_value(stmt.child_by_field_name("source"))
        for clause in stmt.children:
            if clause.type != "import_clause":
                continue
            for part in clause.children:
                if part.type == "identifier":
                    bindings.append(ImportBinding(
                        source=source,
                        imported="default",
                        local=_text(part),
                        kind="default",
                        line=_line(part),
                    ))
                elif part.type == "namespace_import":
                    for child in part.children:
                        if child.type == "identifier":
                            bindings.append(ImportBinding(
                                source=source,
                                imported="*",
                                local=_text(child),
                                kind="namespace",
                                line=_line(child),
                            ))
                elif part.type == "named_imports":
                    for spec in part.children:
                        if spec.type != "import_specifier":
                            continue
                        name_node = spec.child_by_field_name("name")
                        alias_node = spec.child_by_field_name("alias")
                        imported = _string_value(name_node)
                        bindings.append(ImportBinding(
                            source=source,
                            imported=imported,
                            local=_text(alias_node) if alias_node is not None else imported,
                            kind="named",
                            line=_line(spec),
                        ))

    return bindings


def extract_imports(tree: Tree) -> list[str]:
    """Extract module specifiers from import statements and re-exports.

    Args:
        tree: Parsed tree-sitter Tree

    Returns:
        List of import path strings, in source order
    """
    imports = []
    for stmt in tree.root_node.children:
        if stmt.type not in ("import_statement", "export_statement"):
            continue
        source_node = stmt.child_by_field_name("source")
        if source_node is not None:
            imports.append(_string_value(source_node))
    return imports


def _declared_names(declaration: Any) -> list[str]:
    """Names introduced by an exported declaration node."""
    if declaration.type in ("lexical_declaration", "variable_declaration"):
        names = []
        for child in declaration.named_children:
            if child.type == "variable_declarator":
                name_node = child.child_by_field_name("name")
                if name_node is not None and name_node.type == "identifier":
                    names.append(_text(name_node))
                elif name_node is not None:
                    # Destructured export: export const { a, b } = obj
                    names.extend(_pattern_names(name_node))
        return names
    if declaration.type == "ambient_declaration":
        names = []
        for child in declaration.named_children:
            names.extend(_declared_names(child))
        return names
    name_node = declaration.child_by_field_name("name")
    if name_node is not None:
        return [_text(name_node)]
    return []


def _pattern_names(pattern: Any) -> list[str]:
    names = []
    if pattern.type in ("identifier", "shorthand_property_identifier_pattern"):
        return [_text(pattern)]
    for child in pattern.named_children:
        if child.type == "pair_pattern":
            value = child.child_by_field_name("value")
            if value is not None:
                names.extend(_pattern_names(value))
        else:
            names.extend(_pattern_names(child))
    return names


def extract_exports(tree: Tree) -> list[str]:
    """Extract export names from export statements.

    "default" is included when the module has a default export. "*" is
    included for bare star re-exports, whose names cannot be known locally.

    Args:
        tree: Parsed tree-sitter Tree

    Returns:
        List of exported symbol names, deduplicated in source order
    """
    exports: list[str] = []

    for stmt in tree.root_node.children:
        if stmt.type != "export_statement":
            continue

        is_default = any(child.type == "default" for child in stmt.children)
        if is_default:
            exports.append("default")
            continue

        declaration = stmt.child_by_field_name("declaration")
        if declaration is not None:
            exports.extend(_declared_names(declaration))
            continue

        for child in stmt.children:
            if child.type == "export_clause":
                for spec in child.named_children:
                    if spec.type != "export_specifier":
                        continue
                    alias_node = spec.child_by_field_name("alias")
                    name_node = spec.child_by_field_name("name")
                    exported = alias_node if alias_node is not None else name_node
                    if exported is not None:
                        exports.append(_string_value(exported))
            elif child.type == "namespace_export":
                for part in child.named_children:
                    if part.type in ("identifier", "string"):
                        exports.append(_string_value(part))
            elif child.type == "*" and not any(
                c.type == "namespace_export" for c in stmt.children
            ):
                exports.append("*")

    seen: set[str] = set()
    unique: list[str] = []
    for name in exports:
        if name and name not in seen:
            seen.add(name)
            unique.append(name)
    return unique


def collect_identifier_counts(tree: Tree) -> dict[str, int]:
    """Count identifier occurrences outside import statements.

    Type identifiers and JSX tag names are included so that type-only and
    component usages count as references.
    """
    counts: dict[str, int] = {}
    stack = [tree.root_node]
    while stack:
        node = stack.pop()
        if node.type == "import_statement":
            continue
        if node.type in ("identifier", "type_identifier", "shorthand_property_identifier"):
            name = _text(node)
            if name:
                counts[name] = counts.get(name, 0) + 1
        stack.extend(node.children)
    return counts


def collect_declared_names(tree: Tree) -> set[str]:
    """Collect names bound anywhere in the module.

    Covers declarations, declarator patterns, parameters, catch clauses,
    type parameters and import bindings.
    """
    declared: set[str] = set()
    stack = [tree.root_node]
    while stack:
        node = stack.pop()
        if node.type in NAMED_DECLARATIONS or node.type in ("method_definition", "class"):
            name_node = node.child_by_field_name("name")
            if name_node is not None:
                declared.add(_text(name_node))
        elif node.type == "variable_declarator":
            name_node = node.child_by_field_name("name")
            if name_node is not None:
                declared.update(_pattern_names(name_node))
        elif node.type in ("required_parameter", "optional_parameter"):
            pattern = node.child_by_field_name("pattern")
            if pattern is not None:
                declared.update(_pattern_names(pattern))
        elif node.type == "formal_parameters":
            for param in node.named_children:
                if param.type in ("identifier", "object_pattern", "array_pattern"):
                    declared.update(_pattern_names(param))
                elif param.type == "assignment_pattern":
                    left = param.child_by_field_name("left")
                    if left is not None:
                        declared.update(_pattern_names(left))
        elif node.type == "arrow_function":
            param = node.child_by_field_name("parameter")
            if param is not None:
                declared.add(_text(param))
        elif node.type == "catch_clause":
            param = node.child_by_field_name("parameter")
            if param is not None:
                declared.update(_pattern_names(param))
        elif node.type == "type_parameter":
            name_node = node.child_by_field_name("name")
            if name_node is not None:
                declared.add(_text(name_node))
        stack.extend(node.children)

    for binding in extract_import_bindings(tree):
        declared.add(binding.local)
    return declared


def extract_module_symbols(file_path: str, content: str) -> ModuleSymbols:
    """Parse content and return its imports and exports.

    Unsupported extensions yield an empty ModuleSymbols rather than raising,
    so mixed file sets can be analysed without pre-filtering.
    """
    if not is_supported_file(file_path):
        return ModuleSymbols(file_path=file_path)
    tree = parse_content(file_path, content)
    symbols = ModuleSymbols(
        file_path=file_path,
        imports=extract_import_bindings(tree),
        import_sources=extract_imports(tree),
        exports=extract_exports(tree),
    )
    if tree.root_node.has_error:
        symbols.parse_error = "source contains syntax errors"
    return symbols
