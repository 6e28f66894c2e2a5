"""Coordinator side: turn the final round into deployable proving keys.

Each step skips work whose outputs already exist, so a finalize pass can be
re-run after fixing a single failed circuit.
"""
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .catalog import DEFAULT_CATALOG, FAMILY_ORDER, Catalog, CircuitIdentity, Family, Kind, identity_from_name
from .chain import COMMITMENT_EXT, EVALS_EXT, INITIAL_ID, ContributionId, parse_artifact_name
from .errors import CeremonyError, MissingPredecessorState, UnrecognizedArtifactName
from .metrics import KEYS_BUILT
from .setup_binary import ProverTool, SetupBinary
from .storage import CONTRIBUTIONS_PREFIX, BlobStore, contribution_key
from .utils.digest import checksum_lines, parse_checksum_file, sha256_file, write_atomic

logger = logging.getLogger(__name__)

CHECKSUM_FILE = "CHECKSUM"
KEY_EXT = ".key"
VKEY_EXT = ".vkey"

R1csResolver = Callable[[str], Path | None]


@dataclass
class FinalizeReport:
    contribution_id: str
    extracted: int = 0
    extract_failed: list[str] = field(default_factory=list)
    built: int = 0
    skipped: int = 0
    build_failed: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    deployed: list[str] = field(default_factory=list)
    checksum_entries: int = 0

    @property
    def ok(self) -> bool:
        return not (self.extract_failed or self.build_failed or self.missing)


def latest_contribution(contributions_dir: Path, store: BlobStore | None = None) -> str | None:
    """Highest-numbered contribution id, local directories first."""
    def numbered(names):
        ids = []
        for name in names:
            try:
                ids.append((ContributionId.parse(name).sequence, name))
            except CeremonyError:
                continue
        return [name for seq, name in sorted(ids) if seq > 0]

    local = numbered(p.name for p in Path(contributions_dir).glob("*") if p.is_dir())
    if local:
        return local[-1]
    if store is not None:
        remote = numbered(store.children(CONTRIBUTIONS_PREFIX))
        if remote:
            return remote[-1]
    return None


def fetch_contribution(store: BlobStore, contribution_id: str, dest: Path, families) -> int:
    count = 0
    for family in families:
        prefix = contribution_key(contribution_id, family.value)
        for key in store.list_keys(prefix):
            if key.endswith((COMMITMENT_EXT, EVALS_EXT)):
                store.download(key, Path(dest) / family.value / key.rsplit("/", 1)[-1])
                count += 1
    return count


# -----------------------------------------------------------------------------
# r1cs resolution: ordered list of lookups, first hit wins
# -----------------------------------------------------------------------------
def _in_family_dirs(root: Path) -> R1csResolver:
    def resolve(name: str) -> Path | None:
        for family in FAMILY_ORDER:
            candidate = root / family.value / "r1cs" / f"{name}.r1cs"
            if candidate.is_file():
                return candidate
        return None
    return resolve


def _prefixed(initial_dir: Path) -> R1csResolver:
    def resolve(name: str) -> Path | None:
        if name.startswith(tuple(f"{f.value}_" for f in FAMILY_ORDER)):
            return None
        try:
            identity = identity_from_name(name)
        except UnrecognizedArtifactName:
            return None
        candidate = initial_dir / identity.family.value / "r1cs" / f"{identity.family.value}_{name}.r1cs"
        return candidate if candidate.is_file() else None
    return resolve


def _flat(r1cs_dir: Path) -> R1csResolver:
    def resolve(name: str) -> Path | None:
        candidate = r1cs_dir / f"{name}.r1cs"
        return candidate if candidate.is_file() else None
    return resolve


def r1cs_resolvers(contribution_dir: Path | None, initial_dir: Path, r1cs_dir: Path) -> list[R1csResolver]:
    resolvers = []
    if contribution_dir is not None:
        resolvers.append(_in_family_dirs(contribution_dir))
    resolvers += [_in_family_dirs(initial_dir), _prefixed(initial_dir), _flat(r1cs_dir)]
    return resolvers


def resolve_r1cs(name: str, resolvers: list[R1csResolver]) -> Path | None:
    for resolve in resolvers:
        found = resolve(name)
        if found is not None:
            return found
    return None


def deployed_key_name(r1cs: Path, identity: CircuitIdentity) -> str:
    """v1 combined keys carry both heights; every other key keeps its r1cs name."""
    stem = Path(r1cs).stem
    if identity.kind is Kind.COMBINED and identity.family is Family.V1:
        return identity.key_name if stem.startswith("v1_") else identity.key_name[len("v1_"):]
    return stem


# -----------------------------------------------------------------------------
# Steps
# -----------------------------------------------------------------------------
def extract(binary: SetupBinary, ph2: Path, circuit: str, keys_dir: Path) -> tuple[Path, Path]:
    pk, vk = keys_dir / f"{circuit}.pk", keys_dir / f"{circuit}.vk"
    if pk.is_file() and vk.is_file():
        logger.info("keys already extracted", extra={"circuit": circuit})
        return pk, vk
    raw_pk, raw_vk = binary.extract_keys(ph2, keys_dir)
    raw_pk.replace(pk)
    raw_vk.replace(vk)
    return pk, vk


def write_checksum(deploy_dir: Path) -> int:
    files = sorted(p for p in Path(deploy_dir).iterdir() if p.suffix in (KEY_EXT, VKEY_EXT) and p.is_file())
    lines = checksum_lines(files)
    write_atomic(Path(deploy_dir) / CHECKSUM_FILE, "".join(f"{line}\n" for line in lines))
    return len(lines)


def check_checksums(deploy_dir: Path) -> dict[str, str]:
    """Compare CHECKSUM against the files on disk: name -> ok|mismatch|missing|unlisted."""
    deploy_dir = Path(deploy_dir)
    listed = parse_checksum_file(deploy_dir / CHECKSUM_FILE)
    status = {}
    for name, digest in listed.items():
        path = deploy_dir / name
        if not path.is_file():
            status[name] = "missing"
        else:
            status[name] = "ok" if sha256_file(path) == digest else "mismatch"
    for path in deploy_dir.iterdir():
        if path.suffix in (KEY_EXT, VKEY_EXT) and path.name not in listed:
            status[path.name] = "unlisted"
    return dict(sorted(status.items()))


def finalize(
    contribution_id: str,
    contributions_dir: Path,
    initial_dir: Path,
    r1cs_dir: Path,
    keys_dir: Path,
    output_dir: Path,
    binary: SetupBinary,
    prover: ProverTool,
    deploy_dir: Path | None = None,
    families=None,
    catalog: Catalog = DEFAULT_CATALOG,
    store: BlobStore | None = None,
) -> FinalizeReport:
    """Extract, import and deploy keys for every catalog circuit of the final round.

    Per-circuit failures are counted in the report; the pass always runs to
    the end. Without ``families`` every family the round holds is finalized.
    """
    requested = tuple(Family(f) for f in families) if families else catalog.families
    contribution_dir = Path(contributions_dir) / contribution_id
    if store is not None and not any(
        any((contribution_dir / f.value).glob(f"*{COMMITMENT_EXT}")) for f in requested
    ):
        fetched = fetch_contribution(store, contribution_id, contribution_dir, requested)
        logger.info("downloaded final contribution", extra={"contribution": contribution_id, "files": fetched})
    if families:
        selected = requested
    else:
        selected = tuple(f for f in requested if (contribution_dir / f.value).is_dir())

    report = FinalizeReport(contribution_id)
    keys_dir, output_dir = Path(keys_dir), Path(output_dir)
    keys_dir.mkdir(parents=True, exist_ok=True)
    output_dir.mkdir(parents=True, exist_ok=True)
    resolvers = r1cs_resolvers(
        contribution_dir if contribution_id != INITIAL_ID else None, Path(initial_dir), Path(r1cs_dir)
    )

    files = {}
    for family in selected:
        for ph2 in (contribution_dir / family.value).glob(f"*{COMMITMENT_EXT}"):
            try:
                files[parse_artifact_name(ph2.name).circuit] = ph2
            except UnrecognizedArtifactName:
                logger.warning("ignoring unrecognized file", extra={"file": ph2.name})
    if not files:
        raise MissingPredecessorState(
            f"no contribution files found for {contribution_id}",
            remedy="Check the contribution id and that the round was uploaded.",
        )

    for family in selected:
        for identity in catalog.enumerate(family):
            circuit = identity.name
            ph2 = files.get(circuit)
            if ph2 is None:
                report.missing.append(circuit)
                continue

            try:
                pk, vk = extract(binary, ph2, circuit, keys_dir)
                report.extracted += 1
            except CeremonyError as exc:
                logger.error("key extraction failed", extra={"circuit": circuit, "error": str(exc)})
                report.extract_failed.append(circuit)
                continue

            r1cs = resolve_r1cs(circuit, resolvers)
            if r1cs is None:
                logger.error("ceremony r1cs not found", extra={"circuit": circuit})
                report.build_failed.append(circuit)
                KEYS_BUILT.labels("failed").inc()
                continue
            try:
                resolved = identity_from_name(r1cs.stem)
            except UnrecognizedArtifactName:
                report.build_failed.append(circuit)
                KEYS_BUILT.labels("failed").inc()
                continue

            key_name = deployed_key_name(r1cs, resolved)
            key_file, vkey_file = output_dir / f"{key_name}{KEY_EXT}", output_dir / f"{key_name}{VKEY_EXT}"
            if key_file.is_file() and vkey_file.is_file():
                report.skipped += 1
                KEYS_BUILT.labels("skipped").inc()
            elif prover.import_setup(resolved, r1cs, pk, vk, key_file, vkey_file):
                report.built += 1
                KEYS_BUILT.labels("built").inc()
            else:
                report.build_failed.append(circuit)
                KEYS_BUILT.labels("failed").inc()
                continue

            if deploy_dir is not None:
                Path(deploy_dir).mkdir(parents=True, exist_ok=True)
                for built in (key_file, vkey_file):
                    shutil.copyfile(built, Path(deploy_dir) / built.name)
                report.deployed.append(key_name)

    if deploy_dir is not None and Path(deploy_dir).is_dir():
        report.checksum_entries = write_checksum(deploy_dir)

    logger.info(
        "finalize complete",
        extra={
            "contribution": contribution_id,
            "built": report.built,
            "skipped": report.skipped,
            "failed": len(report.build_failed) + len(report.extract_failed),
            "missing": len(report.missing),
        },
    )
    return report
