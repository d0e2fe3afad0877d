"""
Base detector with the file-walking helpers every signal scan shares.
"""

import fnmatch
import re
import threading
from pathlib import Path
from typing import Callable, Iterator, Optional

from ..core.config import Settings
from ..core.errors import AppError, ScanCancelledError
from ..core.models import AnalysisDepth
from ..utils.secure_logging import get_secure_logger
from .models import ScanStats

logger = get_secure_logger(__name__)

BINARY_EXTENSIONS = {
    ".exe", ".dll", ".so", ".dylib", ".bin",
    ".pyc", ".pyo", ".class", ".o", ".obj", ".jar",
    ".png", ".jpg", ".jpeg", ".gif", ".ico", ".webp", ".svg",
    ".pdf", ".doc", ".docx", ".xls", ".xlsx",
    ".zip", ".tar", ".gz", ".bz2", ".7z", ".rar",
    ".mp3", ".mp4", ".avi", ".mov", ".wav",
    ".woff", ".woff2", ".ttf", ".eot",
    ".sqlite", ".db",
}

SOURCE_EXTENSIONS = {
    ".py", ".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs",
    ".java", ".kt", ".scala", ".go", ".rb", ".php", ".cs",
    ".rs", ".swift", ".c", ".cc", ".cpp", ".h", ".hpp",
    ".sh", ".bash", ".ps1", ".sql", ".tf", ".hcl",
}

CONFIG_EXTENSIONS = {
    ".yml", ".yaml", ".json", ".toml", ".ini", ".cfg", ".conf",
    ".env", ".properties", ".xml", ".gradle",
}

MANIFEST_NAMES = {
    "package.json", "requirements.txt", "pyproject.toml", "setup.py", "setup.cfg",
    "Pipfile", "go.mod", "pom.xml", "build.gradle", "Gemfile", "Cargo.toml",
    "composer.json", "Dockerfile", "docker-compose.yml", "docker-compose.yaml",
    "Jenkinsfile", "Makefile", ".env",
}

DOC_EXTENSIONS = {".md", ".rst", ".txt", ".adoc"}

TEST_DIR_NAMES = {"test", "tests", "__tests__", "spec", "specs", "testing", "fixtures"}
DOC_DIR_NAMES = {"docs", "doc", "documentation"}

_TEST_FILE_RE = re.compile(r"(^test_.*|.*_test\.[a-z]+$|.*\.(test|spec)\.[a-z]+$)", re.IGNORECASE)


def is_test_path(relative_path: str) -> bool:
    """Check whether a repository-relative path belongs to test code."""
    path = Path(relative_path)
    if any(part.lower() in TEST_DIR_NAMES for part in path.parts[:-1]):
        return True
    return bool(_TEST_FILE_RE.match(path.name))


def is_doc_path(relative_path: str) -> bool:
    """Check whether a repository-relative path is documentation."""
    path = Path(relative_path)
    if path.suffix.lower() in DOC_EXTENSIONS:
        return True
    return any(part.lower() in DOC_DIR_NAMES for part in path.parts[:-1])


class BaseDetector:
    """
    Base class for snapshot scanners.

    Provides path filtering, binary sniffing, depth-based file selection
    and line matching. Subclasses run these helpers inside worker threads,
    so they must not touch shared mutable state other than the
    ``ScanStats`` handed to them.
    """

    name: str = "base"

    def __init__(self, settings: Settings):
        """
        Initialize detector.

        Args:
            settings: Analyzer settings
        """
        self.settings = settings
        self._exclude_patterns = settings.analysis.exclude_paths
        self._max_file_bytes = int(settings.analysis.max_file_size_mb * 1024 * 1024)

    def resolve_root(self, extracted_path: str | Path | None) -> Path:
        """
        Validate the snapshot directory.

        Raises:
            AppError: If the path is missing or not a directory
        """
        if not extracted_path:
            raise AppError("Snapshot has no extracted path", 500, "SNAPSHOT_PATH_MISSING")
        root = Path(extracted_path)
        if not root.is_dir():
            raise AppError(
                f"Snapshot path does not exist: {root}",
                500,
                "SNAPSHOT_PATH_MISSING",
                {"path": str(root)},
            )
        return root

    def should_skip_path(self, path: Path | str) -> bool:
        """
        Check if a path should be skipped based on exclude patterns.

        Args:
            path: Repository-relative path to check

        Returns:
            True if path should be skipped
        """
        path_str = str(path)

        for pattern in self._exclude_patterns:
            if pattern.endswith("/"):
                directory = pattern[:-1]
                if path_str.startswith(pattern) or f"/{directory}/" in f"/{path_str}":
                    return True
            elif fnmatch.fnmatch(path_str, pattern):
                return True
            elif fnmatch.fnmatch(Path(path_str).name, pattern):
                return True

        return False

    def should_skip_file(self, file_path: Path, relative_path: str) -> bool:
        """
        Check if a file should be skipped.

        Excluded paths, files over the size limit, unreadable files and
        binary files are skipped.
        """
        if self.should_skip_path(relative_path):
            return True

        try:
            if file_path.stat().st_size > self._max_file_bytes:
                logger.debug("Skipped large file %s", relative_path)
                return True
        except OSError:
            return True

        return self._is_binary(file_path)

    def _is_binary(self, file_path: Path) -> bool:
        if file_path.suffix.lower() in BINARY_EXTENSIONS:
            return True

        try:
            with open(file_path, "rb") as f:
                if b"\x00" in f.read(1024):
                    return True
        except OSError:
            return True

        return False

    def select_for_depth(self, relative_path: str, depth: AnalysisDepth) -> bool:
        """
        Decide whether a file is read at the given analysis depth.

        ``structure_only`` reads manifests and configuration files,
        ``security_relevant`` adds source code but leaves out tests and
        documentation, and ``full`` reads every text file.
        """
        path = Path(relative_path)
        suffix = path.suffix.lower()
        is_config = path.name in MANIFEST_NAMES or suffix in CONFIG_EXTENSIONS or path.name.startswith(".env")

        if depth == AnalysisDepth.FULL:
            return True
        if depth == AnalysisDepth.STRUCTURE_ONLY:
            return is_config
        if is_test_path(relative_path) or is_doc_path(relative_path):
            return False
        return is_config or suffix in SOURCE_EXTENSIONS

    def iter_files(
        self,
        root: Path,
        selector: Callable[[str], bool],
        stats: Optional[ScanStats] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[tuple[Path, str]]:
        """
        Iterate over readable text files under a snapshot root.

        Args:
            root: Snapshot root directory
            selector: Predicate on the relative path; unselected files are
                ignored without being counted
            stats: Counters updated with scanned and skipped files
            cancel_event: When set, the walk stops with ScanCancelledError

        Yields:
            (absolute path, relative path) tuples, in sorted order
        """
        for file_path in sorted(root.rglob("*")):
            if cancel_event is not None and cancel_event.is_set():
                raise ScanCancelledError()

            if not file_path.is_file():
                continue

            relative_path = self.get_relative_path(file_path, root)
            if not selector(relative_path):
                continue

            if self.should_skip_file(file_path, relative_path):
                if stats is not None:
                    stats.skipped_files += 1
                continue

            if stats is not None:
                stats.scanned_files += 1
            yield file_path, relative_path

    def read_file_lines(self, file_path: Path) -> list[tuple[int, str]]:
        """
        Read file and return numbered lines.

        Args:
            file_path: Path to file

        Returns:
            List of (line_number, line_content) tuples; empty if unreadable
        """
        try:
            with open(file_path, encoding="utf-8", errors="replace") as f:
                return [(i + 1, line.rstrip("\n\r")) for i, line in enumerate(f)]
        except OSError:
            return []

    def read_file_content(self, file_path: Path) -> str:
        try:
            with open(file_path, encoding="utf-8", errors="replace") as f:
                return f.read()
        except OSError:
            return ""

    def get_relative_path(self, file_path: Path, root: Path) -> str:
        """
        Get path relative to the snapshot root, with forward slashes.
        """
        try:
            return file_path.relative_to(root).as_posix()
        except ValueError:
            return file_path.as_posix()

    @staticmethod
    def find_pattern_matches(
        lines: list[tuple[int, str]],
        patterns: list[re.Pattern],
    ) -> list[tuple[int, str]]:
        """
        Find lines matching any of the patterns.

        A line is reported once even if several patterns match it.

        Returns:
            List of (line_number, stripped line) tuples
        """
        matches = []
        for line_number, text in lines:
            for pattern in patterns:
                if pattern.search(text):
                    matches.append((line_number, text.strip()))
                    break
        return matches
