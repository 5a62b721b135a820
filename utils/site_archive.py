"""In-memory site archive: an ordered mapping of POSIX relative path → bytes.

Serialized as a zip file for storage. A handle has a single writer at a time;
concurrent block tasks only ever *add* entries under unique generated names.
"""
import io
import secrets
import zipfile
from collections.abc import Iterator

IMAGES_PREFIX = "images/"


class SiteArchive:
    def __init__(self, files: dict[str, bytes] | None = None) -> None:
        self._files: dict[str, bytes] = dict(files or {})

    # ------------------------------------------------------------------
    # Mapping access
    # ------------------------------------------------------------------

    def __contains__(self, path: str) -> bool:
        return path in self._files

    def __iter__(self) -> Iterator[str]:
        return iter(self._files)

    def __len__(self) -> int:
        return len(self._files)

    def read(self, path: str) -> bytes:
        return self._files[path]

    def read_text(self, path: str) -> str:
        return self._files[path].decode("utf-8")

    @property
    def paths(self) -> list[str]:
        return list(self._files)

    def image_paths(self) -> list[str]:
        return [p for p in self._files if p.startswith(IMAGES_PREFIX)]

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add(self, path: str, data: bytes | str) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._files[path] = data

    def add_image(self, data: bytes, suffix: str = ".png") -> str:
        """Store image bytes under a fresh ``images/img_<random>.png`` path and return it."""
        while True:
            path = f"{IMAGES_PREFIX}img_{secrets.token_hex(6)}{suffix}"
            if path not in self._files:
                break
        self._files[path] = data
        return path

    def remove(self, path: str) -> bool:
        return self._files.pop(path, None) is not None

    def purge_except_images(self) -> list[str]:
        """Delete every entry outside ``images/``; returns the removed paths."""
        removed = [p for p in self._files if not p.startswith(IMAGES_PREFIX)]
        for path in removed:
            del self._files[path]
        return removed

    def copy(self) -> "SiteArchive":
        return SiteArchive(self._files)

    # ------------------------------------------------------------------
    # Zip serialization
    # ------------------------------------------------------------------

    def to_bytes(self) -> bytes:
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for path, data in self._files.items():
                zf.writestr(path, data)
        return buf.getvalue()

    @classmethod
    def from_bytes(cls, data: bytes) -> "SiteArchive":
        files: dict[str, bytes] = {}
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            for info in zf.infolist():
                if info.is_dir():
                    continue
                files[info.filename] = zf.read(info.filename)
        return cls(files)


def new_archive_name(prefix: str = "site") -> str:
    return f"{prefix}-{secrets.token_hex(8)}.zip"
