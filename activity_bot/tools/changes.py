"""
Change generator — picks files in the working copy and produces line edits.

`generate_edits` is pure: the file listing, the random source and the clock
are all passed in, so it can be exercised without a filesystem.
"""

from __future__ import annotations

import os
import random
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Mapping

import structlog

from activity_bot.config import DEFAULT_EXTENSIONS, BotConfig
from activity_bot.errors import NoEligibleTargets

log = structlog.get_logger()

INSERT = "insert"
MODIFY = "modify"
OPERATIONS = (INSERT, MODIFY)

SKIP_DIRS = {".git", "target", "node_modules", "__pycache__"}


@dataclass(frozen=True)
class Edit:
    path: str          # relative to the working copy, POSIX separators
    operation: str     # INSERT or MODIFY
    line: int          # zero-based; valid once earlier edits to the same file are applied
    content: str


def list_eligible_files(
    repo_path: str,
    extensions: Iterable[str] = DEFAULT_EXTENSIONS,
    target_dir: str = ".",
) -> dict[str, int]:
    """Return {relative_path: line_count} for every eligible text file, sorted by path."""
    root = Path(repo_path)
    base = root / target_dir
    exts = {e.lower().lstrip(".") for e in extensions}
    found: dict[str, int] = {}

    if not base.is_dir():
        log.warning("changes.target_dir_missing", path=str(base))
        return found

    for dirpath, dirnames, filenames in os.walk(base):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
        for filename in filenames:
            path = Path(dirpath) / filename
            if path.suffix.lower().lstrip(".") not in exts or not path.is_file():
                continue
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                log.debug("changes.file_skipped", path=str(path), error=str(e))
                continue
            found[path.relative_to(root).as_posix()] = len(text.splitlines())

    return dict(sorted(found.items()))


def generate_edits(
    config: BotConfig,
    targets: Mapping[str, int],
    rng: random.Random,
    now: datetime,
) -> list[Edit]:
    """Pick files and line edits within the configured ranges.

    Args:
        config:  supplies [min_files, max_files] and [min_lines, max_lines].
        targets: {path: current line count} of the eligible files.
        rng:     random source; a seeded Random makes the result reproducible.
        now:     timestamp written into the filler lines.

    Raises:
        NoEligibleTargets if `targets` is empty.
    """
    if not targets:
        raise NoEligibleTargets("Working copy has no eligible files to edit")

    n_files = min(rng.randint(config.min_files, config.max_files), len(targets))
    chosen = rng.sample(sorted(targets), n_files)
    stamp = now.strftime("%Y-%m-%d %H:%M:%S")

    edits: list[Edit] = []
    for path in chosen:
        n_lines = rng.randint(config.min_lines, config.max_lines)
        count = targets[path]
        for i in range(n_lines):
            operation = rng.choice(OPERATIONS) if count else INSERT
            if operation == MODIFY:
                line = rng.randrange(count)
            else:
                line = rng.randint(0, count)
                count += 1
            content = f"Line {i + 1}: Bot update at {stamp} ({rng.getrandbits(32):08x})"
            edits.append(Edit(path=path, operation=operation, line=line, content=content))

    log.debug("changes.generated",
              files=n_files, edits=len(edits), eligible=len(targets))
    return edits


def group_by_file(edits: Iterable[Edit]) -> "OrderedDict[str, list[Edit]]":
    """Group edits by path, keeping first-seen file order and per-file edit order."""
    grouped: "OrderedDict[str, list[Edit]]" = OrderedDict()
    for edit in edits:
        grouped.setdefault(edit.path, []).append(edit)
    return grouped


def apply_to_text(text: str, edits: Iterable[Edit]) -> str:
    """Apply one file's edits, in order, to its text. CRLF files stay CRLF."""
    newline = "\r\n" if "\r\n" in text else "\n"
    lines = text.splitlines()
    for edit in edits:
        if edit.operation == MODIFY and 0 <= edit.line < len(lines):
            lines[edit.line] = edit.content
        else:
            lines.insert(min(max(edit.line, 0), len(lines)), edit.content)
    return newline.join(lines) + newline
