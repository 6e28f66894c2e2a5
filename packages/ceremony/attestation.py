"""Per-round attestation log and the contributor-side verification log."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .utils.digest import sha256_file

ATTESTATION_FILE = "contribution_hashes.txt"
VERIFICATION_LOG_FILE = "verification_hashes.txt"
CIRCUITS_HEADER = "Circuit contributions:"

MATCH = "MATCH"
DIFF = "DIFF"
ONLY_LOCAL = "ONLY_LOCAL"
ONLY_EXPECTED = "ONLY_EXPECTED"


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%a %b %d %H:%M:%S UTC %Y")


@dataclass
class AttestationRecord:
    contribution_id: str
    contributor: str
    date: str = field(default_factory=_utc_now)
    lines: list[tuple[str, str]] = field(default_factory=list)

    def append(self, circuit: str, contribution_hash: str) -> None:
        self.lines.append((circuit, contribution_hash))

    def render(self) -> str:
        out = [
            f"Contribution: {self.contribution_id}",
            f"Contributor: {self.contributor}",
            f"Date: {self.date}",
            "",
            CIRCUITS_HEADER,
        ]
        out += [f"{circuit}: {h}" for circuit, h in self.lines]
        return "\n".join(out) + "\n"

    def write(self, path: Path) -> str:
        """Write the log and return its SHA-256."""
        path = Path(path)
        path.write_text(self.render(), encoding="utf-8")
        return sha256_file(path)

    def hashes(self) -> dict[str, str]:
        return dict(self.lines)

    @classmethod
    def parse(cls, text: str) -> "AttestationRecord":
        header = {}
        lines = []
        in_body = False
        for raw in text.splitlines():
            line = raw.strip()
            if line == CIRCUITS_HEADER:
                in_body = True
                continue
            if ": " not in line:
                continue
            key, _, value = line.partition(": ")
            if in_body:
                lines.append((key, value.strip()))
            else:
                header[key] = value.strip()
        if not in_body:
            # Bare "circuit: hash" listings carry no header block
            lines = [(k, v) for k, v in header.items() if k not in ("Contribution", "Contributor", "Date")]
        return cls(
            contribution_id=header.get("Contribution", ""),
            contributor=header.get("Contributor", ""),
            date=header.get("Date", ""),
            lines=lines,
        )

    @classmethod
    def load(cls, path: Path) -> "AttestationRecord":
        return cls.parse(Path(path).read_text(encoding="utf-8"))


def compare_attestations(local: dict[str, str], expected: dict[str, str]) -> list[tuple[str, str, str | None, str | None]]:
    """Per-circuit comparison sorted by circuit name: (status, circuit, local, expected)."""
    rows = []
    for name in sorted(set(local) | set(expected)):
        lh, eh = local.get(name), expected.get(name)
        if lh is None:
            status = ONLY_EXPECTED
        elif eh is None:
            status = ONLY_LOCAL
        elif lh == eh:
            status = MATCH
        else:
            status = DIFF
        rows.append((status, name, lh, eh))
    return rows


class VerificationLog:
    """``verification_hashes.txt``: SHA-256 of every file the verifier checked."""

    def __init__(self, source: Path):
        self.source = source
        self.entries: list[tuple[str, str]] = []

    def add(self, circuit: str, path: Path) -> str:
        digest = sha256_file(path)
        self.entries.append((circuit, digest))
        return digest

    def render(self) -> str:
        out = ["Verification Hashes", f"Date: {_utc_now()}", f"VerifyDir: {self.source}", ""]
        out += [f"{circuit}: {digest}" for circuit, digest in self.entries]
        return "\n".join(out) + "\n"

    def write(self, path: Path) -> str:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.render(), encoding="utf-8")
        return sha256_file(path)
