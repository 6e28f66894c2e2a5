"""Contribution chain model: ids, artifact naming grammar and chain links.

File names carry the chain position, so the grammar here must stay
bit-exact with what earlier rounds uploaded:

    {circuit}_0000.ph2                                  round zero
    {circuit}_{contributor}_contribution_{seq4}.ph2     later rounds

Both forms may also appear with the ``.evals`` extension.
"""
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Union

from .catalog import CircuitIdentity, identity_from_name
from .errors import (
    InvalidContributor,
    MalformedPredecessorId,
    UnrecognizedArtifactName,
)

INITIAL_ID = "0000_initial"
SEQUENCE_WIDTH = 4
COMMITMENT_EXT = ".ph2"
EVALS_EXT = ".evals"
ARTIFACT_EXTENSIONS = (COMMITMENT_EXT, EVALS_EXT)

# No "_" (it separates the suffix grammar) and nothing path-unsafe.
_CONTRIBUTOR_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9.-]*$")


def validate_contributor(contributor: str) -> str:
    if not contributor or not _CONTRIBUTOR_RE.match(contributor) or ".." in contributor:
        raise InvalidContributor(
            f"invalid contributor label: {contributor!r}",
            remedy="Use letters, digits, '-' or '.' only (no '_' or '/').",
        )
    return contributor


def format_sequence(sequence: int) -> str:
    return f"{sequence:0{SEQUENCE_WIDTH}d}"


@dataclass(frozen=True)
class ContributionId:
    sequence: int
    contributor: str

    def __str__(self) -> str:
        return f"{format_sequence(self.sequence)}_{self.contributor}"

    @classmethod
    def parse(cls, value: str) -> "ContributionId":
        head, _, tail = value.strip().partition("_")
        if not (head.isascii() and head.isdigit()):
            raise MalformedPredecessorId(
                f"contribution id must start with a numeric sequence: {value!r}",
                remedy="Pass the id of the previous round, e.g. 0000_initial or 0001_alice.",
            )
        return cls(int(head), tail)


def next_id(predecessor_id: str, contributor: str) -> str:
    """Contribution id of the round that follows ``predecessor_id``."""
    previous = ContributionId.parse(predecessor_id)
    return str(ContributionId(previous.sequence + 1, validate_contributor(contributor)))


# -----------------------------------------------------------------------------
# Artifact-name grammar
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Initial:
    sequence: int = 0


@dataclass(frozen=True)
class Contribution:
    contributor: str
    sequence: int


Marker = Union[Initial, Contribution]

_INITIAL_RE = re.compile(r"^(?P<circuit>.+?)(?<!_contribution)_(?P<seq>0000)$")
_LEGACY_INITIAL_RE = re.compile(r"^(?P<circuit>.+)_initial_contribution_0$")
_CONTRIBUTION_RE = re.compile(r"^(?P<circuit>.+)_(?P<contributor>[^_]+)_contribution_(?P<seq>[0-9]+)$")


@dataclass(frozen=True)
class ArtifactName:
    circuit: str
    marker: Marker
    extension: str = COMMITMENT_EXT

    @property
    def filename(self) -> str:
        if isinstance(self.marker, Initial):
            suffix = format_sequence(self.marker.sequence)
        else:
            suffix = f"{self.marker.contributor}_contribution_{format_sequence(self.marker.sequence)}"
        return f"{self.circuit}_{suffix}{self.extension}"

    @property
    def sequence(self) -> int:
        return self.marker.sequence

    def successor(self, contributor: str, sequence: int) -> "ArtifactName":
        return ArtifactName(self.circuit, Contribution(validate_contributor(contributor), sequence), self.extension)

    def with_extension(self, extension: str) -> "ArtifactName":
        return ArtifactName(self.circuit, self.marker, extension)


def parse_artifact_name(filename: str) -> ArtifactName:
    name = Path(filename).name
    extension = next((ext for ext in ARTIFACT_EXTENSIONS if name.endswith(ext)), None)
    if extension is None:
        raise UnrecognizedArtifactName(f"not a ceremony artifact: {name!r}")
    stem = name[: -len(extension)]

    m = _INITIAL_RE.match(stem) or _LEGACY_INITIAL_RE.match(stem)
    if m:
        return ArtifactName(m.group("circuit"), Initial(0), extension)
    m = _CONTRIBUTION_RE.match(stem)
    if m:
        marker = Contribution(m.group("contributor"), int(m.group("seq")))
        return ArtifactName(m.group("circuit"), marker, extension)
    raise UnrecognizedArtifactName(
        f"file name does not match the ceremony naming grammar: {name!r}",
        remedy="Only files produced by this ceremony may be placed in contribution directories.",
    )


def derive_output_name(input_filename: str, contributor: str, new_sequence: int) -> str:
    return parse_artifact_name(input_filename).successor(contributor, new_sequence).filename


def canonical_circuit_name(filename: str) -> str:
    return parse_artifact_name(filename).circuit


def circuit_identity(filename: str) -> CircuitIdentity:
    return identity_from_name(canonical_circuit_name(filename))


def initial_name(circuit: str, extension: str = COMMITMENT_EXT) -> str:
    return ArtifactName(circuit, Initial(0), extension).filename


# -----------------------------------------------------------------------------
# Chain links
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class LinkFiles:
    commitment: Path
    evals: Path | None = None


@dataclass
class ChainLink:
    """One ceremony round. Populated circuit by circuit, sealed once uploaded."""

    sequence: int
    contributor: str
    predecessor_id: str
    files: dict[str, LinkFiles] = field(default_factory=dict)
    sealed: bool = False

    def __post_init__(self):
        validate_contributor(self.contributor)
        predecessor = ContributionId.parse(self.predecessor_id)
        if self.sequence != predecessor.sequence + 1:
            raise MalformedPredecessorId(
                f"sequence {self.sequence} does not follow predecessor {self.predecessor_id}",
                remedy="Build the next round from the id printed in the URLs file.",
            )

    @classmethod
    def start(cls, predecessor_id: str, contributor: str) -> "ChainLink":
        return cls(ContributionId.parse(predecessor_id).sequence + 1, contributor, predecessor_id)

    @property
    def id(self) -> str:
        return str(ContributionId(self.sequence, self.contributor))

    def output_name(self, input_filename: str) -> str:
        return derive_output_name(input_filename, self.contributor, self.sequence)

    def add(self, circuit: str, commitment: Path, evals: Path | None = None) -> None:
        if self.sealed:
            raise RuntimeError(f"chain link {self.id} is sealed")
        if circuit in self.files:
            raise ValueError(f"circuit {circuit} already recorded in {self.id}")
        self.files[circuit] = LinkFiles(Path(commitment), Path(evals) if evals else None)

    def missing(self, required: Iterable[str]) -> list[str]:
        return sorted(set(required) - set(self.files))

    def seal(self) -> None:
        self.sealed = True
