import hashlib
import logging
from pathlib import Path

from brandvisuals.config import settings
from brandvisuals.errors import StorageError


logger = logging.getLogger("brandvisuals.pipeline")

FILES_ROUTE = "/files"


def object_path(brand_id: str, job_set_id: str, job_id: str, content: bytes, extension: str = "png") -> str:
    digest = hashlib.sha256(content).hexdigest()[:16]
    return f"{brand_id}/{job_set_id}/{job_id}/{digest}.{extension.lstrip('.')}"


class LocalObjectStore:
    """Durable object store backed by a directory; objects are served under /files."""

    def __init__(self, root: Path | None = None, public_base_url: str | None = None):
        self.root = Path(root or settings.storage_root / "objects")
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = (public_base_url or settings.public_base_url).rstrip("/")

    def _resolve(self, path: str) -> Path:
        target = (self.root / path.lstrip("/")).resolve()
        if self.root.resolve() not in target.parents:
            raise StorageError(f"Object path escapes storage root: {path}")
        return target

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}{FILES_ROUTE}/{path.lstrip('/')}"

    def path_from_url(self, url: str) -> str | None:
        prefix = f"{self.public_base_url}{FILES_ROUTE}/"
        if url.startswith(prefix):
            return url[len(prefix):]
        if url.startswith(f"{FILES_ROUTE}/"):
            return url[len(FILES_ROUTE) + 1:]
        return None

    def put(self, path: str, content: bytes) -> str:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as exc:
            raise StorageError(f"Failed to write object {path}: {exc}") from exc
        return self.public_url(path)

    def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except OSError as exc:
            raise StorageError(f"Failed to read object {path}: {exc}") from exc

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def delete(self, path: str) -> bool:
        target = self._resolve(path)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError:
            logger.warning("object_delete_failed path=%s", path, exc_info=True)
            return False
        return True

    def local_file(self, path: str) -> Path | None:
        target = self._resolve(path)
        return target if target.is_file() else None
