import logging
import os
import shutil
import time
from pathlib import Path
from urllib.parse import unquote, urlparse

import requests

from ..errors import CapabilityExpired, TransferFailed
from ..metrics import TRANSFER_ATTEMPTS
from ..retry import BackoffPolicy, TransientError, retry

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 60
READ_TIMEOUT = 3600
CHUNK_SIZE = 1 << 20


def _local_path(url: str) -> Path | None:
    """Filesystem path for file:// URLs issued by the local store."""
    parsed = urlparse(url)
    if parsed.scheme != "file":
        return None
    return Path(unquote(parsed.path))


def _is_expired(resp) -> bool:
    if resp.status_code not in (400, 401, 403):
        return False
    body = resp.text or ""
    return "ExpiredToken" in body or "expired" in body.lower()


def fetch(url: str, dest: Path) -> None:
    """Single download attempt. Writes to a .part file and renames on success."""
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    src = _local_path(url)
    if src is not None:
        if not src.is_file():
            raise TransferFailed(f"source file not found: {src}")
        shutil.copyfile(src, dest)
        return

    tmp = dest.with_name(dest.name + ".part")
    try:
        resp = requests.get(url, stream=True, timeout=(CONNECT_TIMEOUT, READ_TIMEOUT))
    except requests.RequestException as exc:
        raise TransientError(str(exc)) from exc
    with resp:
        if _is_expired(resp):
            raise CapabilityExpired(f"download URL for {dest.name} has expired")
        if not 200 <= resp.status_code < 300:
            raise TransientError(f"HTTP {resp.status_code}")
        try:
            with open(tmp, "wb") as f:
                for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
        except requests.RequestException as exc:
            tmp.unlink(missing_ok=True)
            raise TransientError(str(exc)) from exc
    os.replace(tmp, dest)


def put(path: Path, url: str) -> None:
    """Single upload attempt; any 2xx is the backend's write acknowledgement."""
    path = Path(path)
    dest = _local_path(url)
    if dest is not None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(path, dest)
        return

    try:
        with open(path, "rb") as f:
            resp = requests.put(
                url,
                data=f,
                headers={"Content-Type": "application/octet-stream"},
                timeout=(CONNECT_TIMEOUT, READ_TIMEOUT),
            )
    except requests.RequestException as exc:
        raise TransientError(str(exc)) from exc
    if _is_expired(resp):
        raise CapabilityExpired(f"upload URL for {path.name} has expired")
    if not 200 <= resp.status_code < 300:
        raise TransientError(f"HTTP {resp.status_code}")


def _counted(direction: str, operation):
    def attempt():
        try:
            result = operation()
        except (TransientError, CapabilityExpired, TransferFailed):
            TRANSFER_ATTEMPTS.labels(direction, "failure").inc()
            raise
        TRANSFER_ATTEMPTS.labels(direction, "success").inc()
        return result
    return attempt


def download(url: str, dest: Path, policy: BackoffPolicy, sleep=time.sleep) -> Path:
    dest = Path(dest)
    logger.info("downloading", extra={"file": dest.name})
    retry(_counted("download", lambda: fetch(url, dest)), policy, describe=f"download of {dest.name}", sleep=sleep)
    return dest


def upload(path: Path, url: str, policy: BackoffPolicy, sleep=time.sleep) -> None:
    path = Path(path)
    logger.info("uploading", extra={"file": path.name, "bytes": path.stat().st_size})
    retry(_counted("upload", lambda: put(path, url)), policy, describe=f"upload of {path.name}", sleep=sleep)
