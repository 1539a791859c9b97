"""Dependency graph analyzer: relative-import graph, cycles and structure anomalies."""

import logging
import posixpath

from patchloop.models.report_models import Anomaly
from patchloop.models.schemas import FileEntry, ModuleSymbols
from patchloop.utils.ast_parser import extract_module_symbols

logger = logging.getLogger(__name__)

MAX_FILE_LINES = 700
RESOLVE_SUFFIXES = ("", ".ts", ".tsx", ".js", ".jsx", "/index.ts", "/index.tsx", "/index.js")


def normalize_path(file_path: str) -> str:
    """Return file_path with POSIX separators and no redundant segments."""
    return posixpath.normpath(file_path.replace("\\", "/"))


def resolve_import(specifier: str, importer: str, known_files: set[str] | dict) -> str | None:
    """Resolve a relative import specifier to a file in known_files.

    Package and alias imports are never resolved.

    Args:
        specifier: Module specifier as written, e.g. "./utils".
        importer: Normalized path of the importing file.
        known_files: Normalized paths in the file set.

    Returns:
        The matching path, or None.
    """
    if not specifier.startswith("."):
        return None
    base = posixpath.normpath(posixpath.join(posixpath.dirname(importer), specifier))
    for suffix in RESOLVE_SUFFIXES:
        candidate = base + suffix
        if candidate in known_files:
            return candidate
    return None


class DependencyGraph:
    """Directed graph of file -> files it imports, restricted to the file set."""

    def __init__(
        self,
        files: list[FileEntry],
        symbols: dict[str, ModuleSymbols] | None = None,
    ) -> None:
        """Build the graph.

        Args:
            files: The file set. Paths are normalized to POSIX form.
            symbols: Pre-extracted symbols keyed by normalized path; files
                missing from it are parsed here.
        """
        self._contents: dict[str, str] = {}
        self._edges: dict[str, list[str]] = {}
        for entry in files:
            path = normalize_path(entry.file_path)
            self._contents[path] = entry.content
            self._edges[path] = []

        symbols = symbols or {}
        for path, content in self._contents.items():
            module = symbols.get(path)
            if module is None:
                module = extract_module_symbols(path, content)
            for specifier in module.import_sources:
                target = resolve_import(specifier, path, self._edges)
                if target is not None and target not in self._edges[path]:
                    self._edges[path].append(target)

    @property
    def files(self) -> list[str]:
        return list(self._edges)

    def dependencies_of(self, file_path: str) -> list[str]:
        return list(self._edges.get(normalize_path(file_path), []))

    def dependents_of(self, file_path: str) -> list[str]:
        target = normalize_path(file_path)
        return [src for src, targets in self._edges.items() if target in targets]

    def find_cycles(self) -> list[list[str]]:
        """Report every import cycle found by depth-first search.

        Each cycle is the path slice from the revisited file's first
        occurrence on the current DFS path to the file that closes the loop.
        A file lying on several cycles may appear in several results.
        """
        cycles: list[list[str]] = []
        visited: set[str] = set()

        for root in self._edges:
            if root in visited:
                continue
            path: list[str] = [root]
            on_path: set[str] = {root}
            visited.add(root)
            stack = [(root, iter(self._edges[root]))]

            while stack:
                node, neighbors = stack[-1]
                advanced = False
                for neighbor in neighbors:
                    if neighbor in on_path:
                        cycles.append(path[path.index(neighbor):])
                    elif neighbor not in visited:
                        visited.add(neighbor)
                        on_path.add(neighbor)
                        path.append(neighbor)
                        stack.append((neighbor, iter(self._edges[neighbor])))
                        advanced = True
                        break
                if not advanced:
                    stack.pop()
                    path.pop()
                    on_path.discard(node)

        return cycles

    def find_long_files(self, max_lines: int = MAX_FILE_LINES) -> list[Anomaly]:
        anomalies = []
        for path, content in self._contents.items():
            count = len(content.split("\n"))
            if count > max_lines:
                anomalies.append(Anomaly(
                    kind="file_too_long",
                    message=f'File "{path}" is too long.',
                    details={"file_path": path, "line_count": count, "max_lines": max_lines},
                ))
        return anomalies

    def find_circular_dependencies(self) -> list[Anomaly]:
        return [
            Anomaly(
                kind="circular_dependency",
                message="Circular dependency detected: " + " -> ".join(cycle + [cycle[0]]),
                details={"cycle": cycle},
            )
            for cycle in self.find_cycles()
        ]


def analyze_project_structure(
    files: list[FileEntry],
    max_lines: int = MAX_FILE_LINES,
) -> list[Anomaly]:
    """Return long-file anomalies followed by circular-dependency anomalies."""
    graph = DependencyGraph(files)
    anomalies = graph.find_long_files(max_lines) + graph.find_circular_dependencies()
    logger.info("Structure analysis of %d files found %d anomalies", len(files), len(anomalies))
    return anomalies
