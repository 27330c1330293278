"""Deterministic locations of per-task artifacts under the uploads directory."""

from __future__ import annotations

from pathlib import Path

SPLIT_DIR_NAME = "split"
MERGED_SUFFIX = ".md"


class ArtifactPathsNotInitializedError(RuntimeError):
    def __init__(self) -> None:
        super().__init__("Artifact paths are not initialized; call init(uploads_dir) first")


class ArtifactPathResolver:
    """Computes page, source and merged artifact paths from the uploads root.

    Paths are pure functions of the configured root, the task id and the page number, so
    they are never stored per page. ``init`` is called once before workers start.
    """

    def __init__(self, uploads_dir: Path | None = None, *, page_suffix: str = ".png") -> None:
        self._uploads_dir: Path | None = None
        self._page_suffix = page_suffix
        if uploads_dir is not None:
            self.init(uploads_dir)

    def init(self, uploads_dir: Path, *, page_suffix: str | None = None) -> None:
        self._uploads_dir = Path(uploads_dir)
        if page_suffix is not None:
            self._page_suffix = page_suffix

    def reset(self) -> None:
        self._uploads_dir = None

    @property
    def is_initialized(self) -> bool:
        return self._uploads_dir is not None

    @property
    def uploads_dir(self) -> Path:
        return self._root()

    @property
    def page_suffix(self) -> str:
        return self._page_suffix

    def upload_dir(self, task_id: str) -> Path:
        return self._root() / task_id

    def task_dir(self, task_id: str) -> Path:
        """Directory holding the split page artifacts of one task."""

        return self.upload_dir(task_id) / SPLIT_DIR_NAME

    def page_path(self, task_id: str, page: int) -> Path:
        return self.task_dir(task_id) / f"page-{page}{self._page_suffix}"

    def source_path(self, task_id: str, filename: str) -> Path:
        return self.upload_dir(task_id) / filename

    def merged_path(self, task_id: str, filename: str) -> Path:
        return self.upload_dir(task_id) / f"{Path(filename).stem}{MERGED_SUFFIX}"

    def _root(self) -> Path:
        if self._uploads_dir is None:
            raise ArtifactPathsNotInitializedError()
        return self._uploads_dir
