"""Object-store adapters.

Objects are addressed by slash-separated keys relative to the bucket root.
The ceremony keeps each round under ``ceremony/contributions/{id}/{family}/``.
"""
import logging
import shutil
from datetime import timedelta
from pathlib import Path
from typing import Protocol

from .errors import ConfigurationError, TransferFailed
from .utils.process import require_tool, run_command

logger = logging.getLogger(__name__)

CONTRIBUTIONS_PREFIX = "ceremony/contributions"
R1CS_PREFIX = "ceremony/r1cs"


def contribution_key(contribution_id: str, family: str | None = None, filename: str | None = None) -> str:
    parts = [CONTRIBUTIONS_PREFIX, contribution_id]
    if family:
        parts.append(str(family))
    if filename:
        parts.append(filename)
    return "/".join(parts)


class BlobStore(Protocol):
    def list_keys(self, prefix: str, suffix: str = "") -> list[str]: ...

    def children(self, prefix: str) -> list[str]: ...

    def exists(self, key: str) -> bool: ...

    def upload(self, local: Path, key: str) -> None: ...

    def download(self, key: str, local: Path) -> Path: ...

    def upload_tree(self, local_dir: Path, prefix: str) -> int: ...

    def download_tree(self, prefix: str, local_dir: Path) -> list[Path]: ...

    def sign_url(self, key: str, method: str, expiry: timedelta) -> str: ...


class LocalStore:
    """Directory-backed store for rehearsal ceremonies. URLs are file:// URIs."""

    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    def _path(self, key: str) -> Path:
        path = (self.root / key.strip("/")).resolve()
        if self.root != path and self.root not in path.parents:
            raise ValueError(f"key escapes the store root: {key!r}")
        return path

    def list_keys(self, prefix: str, suffix: str = "") -> list[str]:
        directory = self._path(prefix)
        if not directory.is_dir():
            return []
        return sorted(
            f"{prefix.strip('/')}/{p.name}"
            for p in directory.iterdir()
            if p.is_file() and p.name.endswith(suffix)
        )

    def children(self, prefix: str) -> list[str]:
        directory = self._path(prefix)
        if not directory.is_dir():
            return []
        return sorted(p.name for p in directory.iterdir() if p.is_dir())

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def upload(self, local: Path, key: str) -> None:
        dest = self._path(key)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local, dest)

    def download(self, key: str, local: Path) -> Path:
        src = self._path(key)
        if not src.is_file():
            raise TransferFailed(f"object not found: {key}")
        local = Path(local)
        local.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, local)
        return local

    def upload_tree(self, local_dir: Path, prefix: str) -> int:
        count = 0
        local_dir = Path(local_dir)
        for path in sorted(local_dir.rglob("*")):
            if path.is_file():
                self.upload(path, f"{prefix.strip('/')}/{path.relative_to(local_dir).as_posix()}")
                count += 1
        return count

    def download_tree(self, prefix: str, local_dir: Path) -> list[Path]:
        src = self._path(prefix)
        if not src.is_dir():
            return []
        fetched = []
        for path in sorted(src.rglob("*")):
            if path.is_file():
                dest = Path(local_dir) / path.relative_to(src)
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(path, dest)
                fetched.append(dest)
        return fetched

    def sign_url(self, key: str, method: str, expiry: timedelta) -> str:
        return self._path(key).as_uri()


class GsutilStore:
    """Google Cloud Storage through the ``gsutil`` command-line tool."""

    def __init__(self, bucket: str, service_account_key: Path | None = None, gsutil: str = "gsutil"):
        self.bucket = bucket
        self.service_account_key = service_account_key
        self.gsutil = require_tool(gsutil, "Install the Google Cloud SDK and run `gcloud auth login`.")

    def _uri(self, key: str) -> str:
        return f"gs://{self.bucket}/{key.strip('/')}"

    def _check(self, args: list, describe: str):
        proc = run_command([self.gsutil, *args])
        if proc.returncode != 0:
            logger.error("gsutil failed", extra={"describe": describe, "stderr": proc.stderr[-2000:]})
            raise TransferFailed(f"{describe} failed: {proc.stderr.strip()[-500:]}")
        return proc

    def list_keys(self, prefix: str, suffix: str = "") -> list[str]:
        proc = run_command([self.gsutil, "ls", f"{self._uri(prefix)}/*{suffix}"])
        # ls exits non-zero when nothing matches
        if proc.returncode != 0:
            return []
        base = f"gs://{self.bucket}/"
        return sorted(
            line.strip()[len(base):]
            for line in proc.stdout.splitlines()
            if line.strip().startswith(base) and not line.strip().endswith("/")
        )

    def children(self, prefix: str) -> list[str]:
        proc = run_command([self.gsutil, "ls", f"{self._uri(prefix)}/"])
        if proc.returncode != 0:
            return []
        return sorted(
            line.strip().rstrip("/").rsplit("/", 1)[-1]
            for line in proc.stdout.splitlines()
            if line.strip().endswith("/")
        )

    def exists(self, key: str) -> bool:
        return run_command([self.gsutil, "-q", "stat", self._uri(key)]).returncode == 0

    def upload(self, local: Path, key: str) -> None:
        self._check(["cp", str(local), self._uri(key)], f"upload of {key}")

    def download(self, key: str, local: Path) -> Path:
        local = Path(local)
        local.parent.mkdir(parents=True, exist_ok=True)
        self._check(["cp", self._uri(key), str(local)], f"download of {key}")
        return local

    def upload_tree(self, local_dir: Path, prefix: str) -> int:
        files = [p for p in Path(local_dir).rglob("*") if p.is_file()]
        if files:
            self._check(["-m", "cp", "-r", f"{Path(local_dir)}/*", f"{self._uri(prefix)}/"], f"upload of {prefix}")
        return len(files)

    def download_tree(self, prefix: str, local_dir: Path) -> list[Path]:
        local_dir = Path(local_dir)
        local_dir.mkdir(parents=True, exist_ok=True)
        self._check(["-m", "cp", "-r", f"{self._uri(prefix)}/*", f"{local_dir}/"], f"download of {prefix}")
        return sorted(p for p in local_dir.rglob("*") if p.is_file())

    def sign_url(self, key: str, method: str, expiry: timedelta) -> str:
        if not self.service_account_key or not Path(self.service_account_key).is_file():
            raise ConfigurationError(
                "no service account key available for URL signing",
                remedy="Set GOOGLE_APPLICATION_CREDENTIALS or place service-account-key.json in the working directory.",
            )
        hours = max(1, int(expiry.total_seconds() // 3600))
        duration = f"{hours // 24}d" if hours % 24 == 0 else f"{hours}h"
        proc = self._check(
            ["signurl", "-m", method, "-d", duration, str(self.service_account_key), self._uri(key)],
            f"signing {key}",
        )
        # Signed URL is the last field of the last row
        rows = proc.stdout.strip().splitlines()
        if not rows or not rows[-1].split():
            raise TransferFailed(f"gsutil signurl returned no URL for {key}")
        return rows[-1].split()[-1]


def open_store(settings) -> BlobStore:
    if settings.bucket:
        return GsutilStore(settings.bucket, settings.service_account_key)
    logger.info("no bucket configured, using local store", extra={"root": str(settings.local_store_dir)})
    return LocalStore(settings.local_store_dir)
