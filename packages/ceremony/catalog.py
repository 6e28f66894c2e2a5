"""Circuit catalog: the fixed set of circuits tracked through the ceremony.

The tables below are the single source of truth for what a coordinator
initializes, what a contributor is expected to touch and what the verifier
and finalizer count as coverage. Editing them changes every consumer at once.
"""
import enum
import itertools
import re
from dataclasses import dataclass
from typing import Iterable

from .errors import UnrecognizedArtifactName


class Family(str, enum.Enum):
    V1 = "v1"
    V2 = "v2"
    BATCH = "batch"


class Kind(str, enum.Enum):
    INCLUSION = "inclusion"
    NON_INCLUSION = "non-inclusion"
    COMBINED = "combined"
    APPEND = "append"
    UPDATE = "update"
    ADDRESS_APPEND = "address-append"


FAMILY_ORDER = (Family.V1, Family.V2, Family.BATCH)
BATCH_KINDS = frozenset({Kind.APPEND, Kind.UPDATE, Kind.ADDRESS_APPEND})

# A ceremony version is initialized in one go and may span several families.
CEREMONY_VERSIONS = {
    "v1": (Family.V1,),
    "v2": (Family.V2, Family.BATCH),
}

# Non-inclusion height implied by a 3-number combined name.
IMPLIED_NON_INCLUSION_HEIGHT = {Family.V1: None, Family.V2: 40}


@dataclass(frozen=True)
class CircuitIdentity:
    family: Family
    kind: Kind
    heights: tuple[int, ...]
    counts: tuple[int, ...]

    @property
    def name(self) -> str:
        """Canonical name. Combined circuits only carry the inclusion height."""
        heights = self.heights[:1] if self.kind is Kind.COMBINED else self.heights
        return "_".join([self.family.value, self.kind.value, *map(str, heights), *map(str, self.counts)])

    @property
    def key_name(self) -> str:
        """Base name of the deployed .key/.vkey pair."""
        if self.kind is Kind.COMBINED and self.family is Family.V1:
            return "_".join([self.family.value, self.kind.value, *map(str, self.heights), *map(str, self.counts)])
        return self.name

    def parameter_args(self) -> list[str]:
        kind = self.kind.value
        if self.kind is Kind.COMBINED:
            inc_height, non_inc_height = self.heights
            inc_accounts, non_inc_accounts = self.counts
            return [
                "--circuit", kind,
                "--inclusion-tree-height", str(inc_height),
                "--inclusion-compressed-accounts", str(inc_accounts),
                "--non-inclusion-tree-height", str(non_inc_height),
                "--non-inclusion-compressed-accounts", str(non_inc_accounts),
            ]
        if self.kind in BATCH_KINDS:
            return [
                "--circuit", kind,
                f"--{kind}-tree-height", str(self.heights[0]),
                f"--{kind}-batch-size", str(self.counts[0]),
            ]
        return [
            "--circuit", kind,
            f"--{kind}-tree-height", str(self.heights[0]),
            f"--{kind}-compressed-accounts", str(self.counts[0]),
        ]

    def generator_args(self) -> list[str]:
        """Flags for the constraint-system generator (``r1cs`` command)."""
        args = self.parameter_args()
        if self.family is Family.V1:
            args.append("--legacy")
        return args

    def import_args(self) -> list[str]:
        """Flags for the key-import tool (``import-setup`` command)."""
        args = self.parameter_args()
        if self.family is Family.V1:
            args.append("--v1")
        return args


# -----------------------------------------------------------------------------
# Tables: (kind, heights, count axes). Counts are the cartesian product of axes.
# -----------------------------------------------------------------------------
CATALOG_TABLE = {
    Family.V1: [
        (Kind.COMBINED, (26, 26), [(1, 2, 3, 4, 8), (1, 2, 4, 8)]),
        (Kind.INCLUSION, (26,), [(1, 2, 3, 4, 8)]),
        (Kind.NON_INCLUSION, (26,), [(1, 2)]),
    ],
    Family.V2: [
        (Kind.COMBINED, (32, 40), [tuple(range(1, 5)), tuple(range(1, 5))]),
        (Kind.INCLUSION, (32,), [tuple(range(1, 21))]),
        (Kind.NON_INCLUSION, (40,), [tuple(range(1, 33))]),
    ],
    Family.BATCH: [
        (Kind.APPEND, (32,), [(500,)]),
        (Kind.UPDATE, (32,), [(500,)]),
        (Kind.ADDRESS_APPEND, (40,), [(250,)]),
    ],
}


def expand_table(table: dict) -> dict[Family, tuple[CircuitIdentity, ...]]:
    expanded = {}
    for family, rows in table.items():
        circuits = []
        for kind, heights, axes in rows:
            for counts in itertools.product(*axes):
                circuits.append(CircuitIdentity(family, kind, tuple(heights), tuple(counts)))
        expanded[Family(family)] = tuple(circuits)
    return expanded


class Catalog:
    """Enumerates circuit identities per family."""

    def __init__(self, circuits: dict[Family, Iterable[CircuitIdentity]]):
        self._circuits = {Family(f): tuple(c) for f, c in circuits.items()}
        self._by_name = {}
        for family_circuits in self._circuits.values():
            for circuit in family_circuits:
                if circuit.name in self._by_name:
                    raise ValueError(f"duplicate circuit name in catalog: {circuit.name}")
                self._by_name[circuit.name] = circuit

    @classmethod
    def from_table(cls, table: dict) -> "Catalog":
        return cls(expand_table(table))

    @property
    def families(self) -> tuple[Family, ...]:
        return tuple(f for f in FAMILY_ORDER if f in self._circuits)

    def enumerate(self, family: Family) -> list[CircuitIdentity]:
        return list(self._circuits.get(Family(family), ()))

    def names(self, family: Family) -> list[str]:
        return [c.name for c in self.enumerate(family)]

    def lookup(self, name: str) -> CircuitIdentity | None:
        return self._by_name.get(name)

    def __len__(self) -> int:
        return len(self._by_name)

    def __iter__(self):
        for family in self.families:
            yield from self._circuits[family]


DEFAULT_CATALOG = Catalog.from_table(CATALOG_TABLE)


def enumerate_circuits(family: Family, catalog: Catalog = DEFAULT_CATALOG) -> list[CircuitIdentity]:
    return catalog.enumerate(family)


def parse_family(value: str) -> Family:
    try:
        return Family(value.strip().lower())
    except ValueError:
        valid = ", ".join(f.value for f in FAMILY_ORDER)
        raise ValueError(f"invalid family: {value!r} (valid: {valid})") from None


def parse_families(selector: str | None) -> tuple[Family, ...]:
    """Resolve a family selector: a family name, ``all`` or nothing (= all)."""
    if selector is None or selector.strip().lower() in ("", "all"):
        return FAMILY_ORDER
    return (parse_family(selector),)


def families_for_version(version: str) -> tuple[Family, ...]:
    try:
        return CEREMONY_VERSIONS[version]
    except KeyError:
        raise ValueError(f"invalid ceremony version: {version!r} (valid: v1, v2)") from None


# -----------------------------------------------------------------------------
# Name -> identity: family prefix first, then kind, then parameter arity.
# -----------------------------------------------------------------------------
_BARE_FAMILY_HINTS = [
    (re.compile(r"^(combined_26_|inclusion_26_|non-inclusion_26_)"), Family.V1),
    (re.compile(r"^(combined_32_|inclusion_32_|non-inclusion_40_)"), Family.V2),
    (re.compile(r"^(append_32_500|update_32_500|address-append_40_250)$"), Family.BATCH),
]
_KINDS_LONGEST_FIRST = sorted(Kind, key=lambda k: len(k.value), reverse=True)


def _split_family(name: str) -> tuple[Family, str]:
    for family in FAMILY_ORDER:
        prefix = f"{family.value}_"
        if name.startswith(prefix):
            return family, name[len(prefix):]
    for pattern, family in _BARE_FAMILY_HINTS:
        if pattern.match(name):
            return family, name
    raise UnrecognizedArtifactName(f"no circuit family prefix in name: {name!r}")


def identity_from_name(name: str) -> CircuitIdentity:
    family, rest = _split_family(name)

    kind = next((k for k in _KINDS_LONGEST_FIRST if rest.startswith(f"{k.value}_")), None)
    if kind is None:
        raise UnrecognizedArtifactName(f"unknown circuit kind in name: {name!r}")
    tokens = rest[len(kind.value) + 1:].split("_")
    if not all(t.isascii() and t.isdigit() for t in tokens):
        raise UnrecognizedArtifactName(f"non-numeric circuit parameters in name: {name!r}")
    numbers = [int(t) for t in tokens]

    if kind in BATCH_KINDS:
        if family is Family.V1:
            raise UnrecognizedArtifactName(f"batch circuit kind in v1 name: {name!r}")
        family = Family.BATCH
    elif family is Family.BATCH:
        raise UnrecognizedArtifactName(f"non-batch circuit kind in batch name: {name!r}")

    if kind is Kind.COMBINED:
        if len(numbers) == 4:
            return CircuitIdentity(family, kind, tuple(numbers[:2]), tuple(numbers[2:]))
        if len(numbers) == 3:
            height, inc_accounts, non_inc_accounts = numbers
            non_inc_height = IMPLIED_NON_INCLUSION_HEIGHT[family] or height
            return CircuitIdentity(family, kind, (height, non_inc_height), (inc_accounts, non_inc_accounts))
        raise UnrecognizedArtifactName(f"combined circuit needs 3 or 4 parameters: {name!r}")

    if len(numbers) != 2:
        raise UnrecognizedArtifactName(f"{kind.value} circuit needs 2 parameters: {name!r}")
    return CircuitIdentity(family, kind, (numbers[0],), (numbers[1],))
