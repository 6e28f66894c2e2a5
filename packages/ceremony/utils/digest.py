import hashlib
import os
from pathlib import Path
from typing import Iterable


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(1 << 20), b""):
            h.update(block)
    return h.hexdigest()


def write_atomic(path: Path, text: str) -> None:
    """Write to a sibling temp file, then rename over the target."""
    path = Path(path)
    tmp = path.with_name(path.name + ".new")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)


def checksum_lines(files: Iterable[Path]) -> list[str]:
    """``{sha256}  {filename}`` lines sorted by filename."""
    entries = sorted((Path(f).name, sha256_file(f)) for f in files)
    return [f"{digest}  {name}" for name, digest in entries]


def parse_checksum_file(path: Path) -> dict[str, str]:
    entries = {}
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        digest, _, name = line.partition("  ")
        entries[name.strip()] = digest.strip()
    return entries
