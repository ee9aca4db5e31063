"""
Diff Parser Module

This module parses unified diffs (``git diff`` / forge ``.diff`` output)
into addressable line coordinates.

Design Decisions:
- Single forward cursor over the diff lines; never raises on malformed input
- Only hunk start offsets drive line numbering; declared lengths are recorded
  but not enforced unless strict validation is requested
- Unparsable hunk headers are consumed and skipped
- Provide a line-numbered rendering so the reviewer can cite exact positions
"""

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from forge_review.config import get_settings
from forge_review.logging_config import get_logger
from forge_review.models import Change, ChangeType, FileDiff, FileStatus, Hunk

logger = get_logger(__name__)


# Regex pattern for hunk headers: @@ -old_start,old_count +new_start,new_count @@
HUNK_HEADER_PATTERN = re.compile(
    r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@"
)

FILE_HEADER_PREFIX = "diff --git"
HUNK_PREFIX = "@@"
NEW_SIDE_PATTERN = re.compile(r" b/(.+)$")
NO_NEWLINE_MARKER = "\\"


@dataclass
class HunkLengthMismatch:
    """A hunk whose body disagrees with the lengths declared in its header."""
    path: str
    hunk_index: int
    declared_old: int
    declared_new: int
    actual_old: int
    actual_new: int


class DiffParser:
    """
    Parser for unified diff format.

    Converts raw multi-file diffs into ``FileDiff`` records whose changes
    carry old/new line numbers suitable for review comment placement.

    Usage:
        parser = DiffParser()
        files = parser.parse(diff_text)
    """

    def __init__(self, strict: bool = False):
        """
        Initialize the diff parser.

        Args:
            strict: Drop hunks whose line counts disagree with their header
        """
        self.strict = strict

    def parse(self, diff_text: str) -> List[FileDiff]:
        """
        Parse a unified diff that may span several files.

        Args:
            diff_text: Raw unified diff content

        Returns:
            FileDiff records in the order they appear in the diff
        """
        if not diff_text:
            return []

        lines = diff_text.split("\n")
        files: List[FileDiff] = []
        current: Optional[FileDiff] = None
        i = 0

        while i < len(lines):
            line = lines[i]

            if line.startswith(FILE_HEADER_PREFIX):
                current, i = self._parse_file_header(lines, i)
                files.append(current)
                continue

            # Content outside a file section is ignored
            if current is None or not line.startswith(HUNK_PREFIX):
                i += 1
                continue

            header_match = HUNK_HEADER_PATTERN.match(line)
            i += 1
            if header_match is None:
                logger.debug("Skipping unparsable hunk header", path=current.path, header=line[:80])
                continue

            hunk, i = self._parse_hunk(lines, i, header_match)
            current.hunks.append(hunk)

        if self.strict:
            self._drop_mismatched_hunks(files)

        return files

    def _parse_file_header(self, lines: List[str], i: int) -> Tuple[FileDiff, int]:
        """Consume a ``diff --git`` line and the extended header after it."""
        path_match = NEW_SIDE_PATTERN.search(lines[i])
        file_diff = FileDiff(path=path_match.group(1) if path_match else "unknown")
        i += 1

        while i < len(lines):
            line = lines[i]
            if line.startswith(HUNK_PREFIX) or line.startswith(FILE_HEADER_PREFIX):
                break
            if line.startswith("new file"):
                file_diff.status = FileStatus.ADDED
            elif line.startswith("deleted file"):
                file_diff.status = FileStatus.DELETED
            elif line.startswith("rename"):
                file_diff.status = FileStatus.RENAMED
                if line.startswith("rename from "):
                    file_diff.old_path = line[len("rename from "):]
            elif line.startswith("+++ b/"):
                file_diff.path = line[len("+++ b/"):]
            i += 1

        return file_diff, i

    def _parse_hunk(self, lines: List[str], i: int, header_match: re.Match) -> Tuple[Hunk, int]:
        """Consume the body of one hunk starting just after its header."""
        old_start = int(header_match.group(1))
        new_start = int(header_match.group(3))
        hunk = Hunk(
            old_start=old_start,
            old_count=int(header_match.group(2)) if header_match.group(2) else 1,
            new_start=new_start,
            new_count=int(header_match.group(4)) if header_match.group(4) else 1,
        )

        old_line = old_start
        new_line = new_start

        while i < len(lines):
            raw_line = lines[i]
            if raw_line.startswith(HUNK_PREFIX) or raw_line.startswith(FILE_HEADER_PREFIX):
                break

            marker = raw_line[:1]
            content = raw_line[1:]

            if marker == "+":
                hunk.changes.append(Change(type=ChangeType.ADD, content=content, new_line=new_line))
                new_line += 1
            elif marker == "-":
                hunk.changes.append(Change(type=ChangeType.DELETE, content=content, old_line=old_line))
                old_line += 1
            elif marker == " ":
                hunk.changes.append(Change(
                    type=ChangeType.CONTEXT,
                    content=content,
                    old_line=old_line,
                    new_line=new_line,
                ))
                old_line += 1
                new_line += 1
            elif marker != NO_NEWLINE_MARKER:
                # Foreign line: end of this hunk, leave it for the outer scan
                break

            i += 1

        return hunk, i

    def validate_hunks(self, files: Iterable[FileDiff]) -> List[HunkLengthMismatch]:
        """
        Compare every hunk body against the lengths declared in its header.

        The parser itself is permissive; this is the optional strict check.
        """
        mismatches: List[HunkLengthMismatch] = []

        for file_diff in files:
            for index, hunk in enumerate(file_diff.hunks):
                actual_old = sum(1 for c in hunk.changes if c.type != ChangeType.ADD)
                actual_new = sum(1 for c in hunk.changes if c.type != ChangeType.DELETE)
                if actual_old != hunk.old_count or actual_new != hunk.new_count:
                    mismatches.append(HunkLengthMismatch(
                        path=file_diff.path,
                        hunk_index=index,
                        declared_old=hunk.old_count,
                        declared_new=hunk.new_count,
                        actual_old=actual_old,
                        actual_new=actual_new,
                    ))

        return mismatches

    def _drop_mismatched_hunks(self, files: List[FileDiff]) -> None:
        mismatches = self.validate_hunks(files)
        if not mismatches:
            return

        bad = {(m.path, m.hunk_index) for m in mismatches}
        for file_diff in files:
            file_diff.hunks = [
                hunk for index, hunk in enumerate(file_diff.hunks)
                if (file_diff.path, index) not in bad
            ]

        logger.warning(
            "Dropped hunks with mismatched lengths",
            count=len(mismatches),
            files=sorted({m.path for m in mismatches})
        )

    def addressable_lines(self, file_diff: FileDiff) -> Tuple[Set[int], Set[int]]:
        """
        Get the line numbers a review comment may anchor to.

        Forges only accept comments on lines that appear in the diff.

        Returns:
            Tuple of (old-side line numbers, new-side line numbers)
        """
        old_lines: Set[int] = set()
        new_lines: Set[int] = set()

        for hunk in file_diff.hunks:
            for change in hunk.changes:
                if change.old_line is not None:
                    old_lines.add(change.old_line)
                if change.new_line is not None:
                    new_lines.add(change.new_line)

        return old_lines, new_lines

    def filter_by_patterns(
        self,
        files: List[FileDiff],
        include: Sequence[str] = (),
        exclude: Sequence[str] = ()
    ) -> List[FileDiff]:
        """
        Keep files matching any include glob and no exclude glob.

        Globs support ``*`` (within a path segment), ``**`` (any depth)
        and ``?``. An empty include list keeps everything.
        """
        include_res = [glob_to_regex(p) for p in include]
        exclude_res = [glob_to_regex(p) for p in exclude]

        kept = []
        for file_diff in files:
            if include_res and not any(r.match(file_diff.path) for r in include_res):
                continue
            if any(r.match(file_diff.path) for r in exclude_res):
                continue
            kept.append(file_diff)

        if len(kept) != len(files):
            logger.debug(
                "Filtered diff files",
                kept=len(kept),
                skipped=len(files) - len(kept)
            )

        return kept

    def format_for_review(
        self,
        files: List[FileDiff],
        max_chars: int = 60000
    ) -> str:
        """
        Render parsed diffs with explicit line coordinates for the reviewer.

        Added and context lines are labelled ``[NEW:n]``, deleted lines
        ``[OLD:n]``, so a comment can cite exactly one side.

        Args:
            files: Parsed file diffs
            max_chars: Character limit for the whole rendering

        Returns:
            Formatted string for the reviewer prompt
        """
        output_parts: List[str] = []
        total_chars = 0

        for index, file_diff in enumerate(files):
            if total_chars >= max_chars:
                output_parts.append(
                    f"\n... (truncated - {len(files) - index} files remaining)"
                )
                break

            section = self._format_file(file_diff)

            if total_chars + len(section) > max_chars:
                remaining = max_chars - total_chars
                section = section[:remaining] + "\n... (file truncated)"

            output_parts.append(section)
            total_chars += len(section)

        return "\n".join(output_parts)

    def _format_file(self, file_diff: FileDiff) -> str:
        parts = [f"## {file_diff.path} ({file_diff.status.value})", ""]

        for hunk in file_diff.hunks:
            parts.append(f"@@ starting at line {hunk.new_start} (old: {hunk.old_start}) @@")
            for change in hunk.changes:
                if change.type == ChangeType.ADD:
                    parts.append(f"[NEW:{change.new_line}] +{change.content}")
                elif change.type == ChangeType.DELETE:
                    parts.append(f"[OLD:{change.old_line}] -{change.content}")
                else:
                    parts.append(f"[NEW:{change.new_line}]  {change.content}")
            parts.append("")

        return "\n".join(parts)


def glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """Translate a path glob into an anchored regular expression."""
    regex = ""
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            regex += "(?:.*/)?"
            i += 3
        elif pattern.startswith("**", i):
            regex += ".*"
            i += 2
        elif pattern[i] == "*":
            regex += "[^/]*"
            i += 1
        elif pattern[i] == "?":
            regex += "[^/]"
            i += 1
        else:
            regex += re.escape(pattern[i])
            i += 1
    return re.compile(f"^{regex}$")


# Singleton instance
_parser_instance: Optional[DiffParser] = None


def get_diff_parser() -> DiffParser:
    """Get the singleton DiffParser instance."""
    global _parser_instance
    if _parser_instance is None:
        _parser_instance = DiffParser(strict=get_settings().strict_diff_validation)
    return _parser_instance
