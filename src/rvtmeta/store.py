"""File-backed store of extracted results.

One JSON file per source model, named by :func:`sanitize_name`.  Files are
written atomically (write to ``.tmp`` then rename) so a reader never sees a
partial result.  Retrieval is by exact sanitized filename only.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

from rvtmeta.models import ExtractedResult

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
RESULT_SUFFIX = ".json"


def sanitize_name(identifier: str) -> str:
    """Deterministic result filename for a source identifier.

    Uses the basename only; every run of characters outside
    ``[A-Za-z0-9._-]`` becomes ``_``.

    >>> sanitize_name("models/RAC basic sample (v2).rvt")
    'RAC_basic_sample_v2_.rvt.json'
    """
    base = re.split(r"[\\/]", identifier.strip())[-1]
    name = _UNSAFE_CHARS.sub("_", base).strip(".")
    if not name:
        name = "result"
    return f"{name}{RESULT_SUFFIX}"


class ResultStore:
    """Directory of serialized :class:`ExtractedResult` files.

    Args:
        directory: Where result files live (created on first save).
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)

    def save(self, result: ExtractedResult) -> Path:
        """Atomically write *result*; returns the final path.

        A result from the same source replaces the previous one.

        Raises:
            FileExistsError: The filename already holds the result of a
                different source (same basename in another directory).
        """
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / sanitize_name(result.source)
        owner = _stored_source(path)
        if owner is not None and not _same_source(owner, result.source):
            raise FileExistsError(
                f"{path.name} already holds the result for {owner!r}; "
                f"not overwriting it with {result.source!r}"
            )
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(result.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
        tmp_path.replace(path)
        logger.info("Saved result for %s to %s", result.source, path)
        return path

    def path_for(self, filename: str) -> Path:
        """Resolve an exact result filename.

        Raises:
            FileNotFoundError: *filename* is not a sanitized result name in
                this store (path components, wrong suffix, or missing).
        """
        if (
            not filename
            or filename != Path(filename).name
            or not filename.endswith(RESULT_SUFFIX)
            or _UNSAFE_CHARS.search(filename)
            or filename.startswith(".")
        ):
            raise FileNotFoundError(f"Not a result filename: {filename!r}")
        path = self.directory / filename
        if not path.is_file():
            raise FileNotFoundError(f"No result named {filename!r}")
        return path

    def load(self, filename: str) -> ExtractedResult:
        """Load a result by exact filename.

        Raises:
            FileNotFoundError: No such result (see :meth:`path_for`).
            ValueError: The file is not a readable result.
        """
        path = self.path_for(filename)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return ExtractedResult.from_dict(data)
        except (KeyError, TypeError, AttributeError) as exc:
            raise ValueError(f"Result file {filename!r} is malformed: {exc}") from exc

    def exists(self, filename: str) -> bool:
        try:
            self.path_for(filename)
        except FileNotFoundError:
            return False
        return True

    def filenames(self) -> list[str]:
        """Result filenames, sorted."""
        if not self.directory.is_dir():
            return []
        return sorted(p.name for p in self.directory.glob(f"*{RESULT_SUFFIX}") if p.is_file())


def _stored_source(path: Path) -> str | None:
    """Source recorded in an existing result file, if it can be read."""
    if not path.is_file():
        return None
    try:
        source = json.loads(path.read_text(encoding="utf-8")).get("source")
    except (OSError, ValueError, AttributeError):
        return None
    return source if isinstance(source, str) else None


def _same_source(a: str, b: str) -> bool:
    return a == b or Path(a).resolve() == Path(b).resolve()
