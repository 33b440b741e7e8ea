import asyncio
import hashlib
import json
import uuid
from pathlib import Path, PurePosixPath
from typing import Mapping, Optional

import httpx

from common.contracts import UploadResult
from common.errors import StorageError
from common.logger import get_logger

FETCH_TIMEOUT_S = 30.0


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()[:16]


class FileSystemStorage:
    """Artifact store on a local (or mounted) directory.

    Objects are written under ``{namespace}/{id}/{sha256[:16]}.png`` and
    served from ``public_url``; identical bytes map to the same key, so
    re-running a job overwrites rather than duplicates. URLs outside
    ``public_url`` are fetched over HTTP.
    """

    def __init__(
            self,
            base_dir: str,
            public_url: str,
            http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._logger = get_logger(__name__)
        self._base_dir = Path(base_dir)
        self._base_dir.mkdir(parents=True, exist_ok=True)
        self._public_url = public_url.rstrip("/")
        self._http = http_client
        self._owns_http = http_client is None

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    def public_url_for(self, key: str) -> str:
        return f"{self._public_url}/{key}"

    async def upload(
            self,
            namespace: str,
            id: str,
            data: bytes,
            metadata: Mapping[str, str],
    ) -> UploadResult:
        key = self._build_key(namespace, id, data)
        path = self._resolve(key)

        try:
            await asyncio.to_thread(self._write_file, path, data, dict(metadata))
        except OSError as e:
            raise StorageError(f"Failed to upload {key}: {e}") from e

        self._logger.info("Stored %s (%d bytes)", key, len(data))
        return UploadResult(key=key, public_url=self.public_url_for(key), size=len(data))

    async def fetch(self, url: str) -> bytes:
        prefix = f"{self._public_url}/"
        if url.startswith(prefix):
            path = self._resolve(url[len(prefix):])
            try:
                return await asyncio.to_thread(path.read_bytes)
            except OSError as e:
                raise StorageError(f"Failed to read {url}: {e}") from e

        return await self._fetch_remote(url)

    async def _fetch_remote(self, url: str) -> bytes:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=FETCH_TIMEOUT_S, follow_redirects=True)

        try:
            response = await self._http.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise StorageError(f"Error fetching image from {url}: {e}") from e

        return response.content

    @staticmethod
    def _build_key(namespace: str, id: str, data: bytes) -> str:
        parts = [p for p in PurePosixPath(namespace, id).parts if p not in ("", ".", "..", "/")]
        if not parts:
            raise StorageError("Empty storage key")
        return "/".join(parts + [f"{content_hash(data)}.png"])

    def _resolve(self, key: str) -> Path:
        path = (self._base_dir / key).resolve()
        if self._base_dir.resolve() not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    @staticmethod
    def _write_file(path: Path, data: bytes, metadata: dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp_path.write_bytes(data)
            tmp_path.replace(path)
            path.with_suffix(".json").write_text(json.dumps(metadata), encoding="utf-8")

        except OSError:
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)
            raise
