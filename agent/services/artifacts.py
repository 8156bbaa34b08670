from __future__ import annotations

from pathlib import Path
from typing import Optional, Union


class ArtifactStore:
    """Manage local copies of uploaded result files, one directory per job."""

    def __init__(self, root: Optional[Path] = None) -> None:
        resolved_root = root or Path.cwd() / "results"
        self._root = resolved_root.resolve()

    @property
    def root(self) -> Path:
        return self._root

    def _ensure_dir(self, path: Path) -> Path:
        path.mkdir(parents=True, exist_ok=True)
        return path

    def job_dir(self, job_id: str) -> Path:
        target = (self._root / job_id).resolve()
        if target == self._root or self._root not in target.parents:
            raise ValueError(f"Job id escapes the results directory: {job_id!r}")
        return self._ensure_dir(target)

    def write_copy(self, job_id: str, file_name: str, content: Union[bytes, str]) -> Path:
        destination = self.job_dir(job_id) / Path(file_name).name
        data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        destination.write_bytes(data)
        return destination

    def relative(self, path: Path) -> str:
        return str(path.resolve().relative_to(self._root))
