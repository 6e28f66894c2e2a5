"""Chain verification.

Every candidate is checked against the round-zero commitment of its circuit,
never against the adjacent round, so a single pass certifies the whole chain
up to the candidate.
"""
import logging
import tempfile
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path

from .attestation import AttestationRecord, VerificationLog, compare_attestations
from .catalog import DEFAULT_CATALOG, FAMILY_ORDER, Catalog, Family
from .chain import COMMITMENT_EXT, INITIAL_ID, initial_name, parse_artifact_name
from .errors import MissingPredecessorState, UnrecognizedArtifactName
from .metrics import VERIFY_OUTCOMES
from .setup_binary import SetupBinary
from .storage import BlobStore, contribution_key
from .utils.digest import sha256_file

logger = logging.getLogger(__name__)

PASS = "pass"
FAIL = "fail"
SKIP = "skip"
MISSING = "missing"


@dataclass(frozen=True)
class CircuitOutcome:
    family: Family | None
    circuit: str
    outcome: str
    detail: str = ""


@dataclass
class RoundVerdict:
    outcomes: list[CircuitOutcome] = field(default_factory=list)
    log_path: Path | None = None
    log_sha256: str | None = None

    @property
    def checked(self) -> int:
        """Candidate files looked at (missing circuits have no file)."""
        return sum(1 for o in self.outcomes if o.outcome != MISSING)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.outcome != PASS)

    @property
    def passed(self) -> bool:
        return self.failed == 0 and self.checked > 0

    def counts(self) -> Counter:
        return Counter(o.outcome for o in self.outcomes)

    def by_family(self) -> dict[str, tuple[int, int]]:
        """family -> (passed, total)."""
        summary = {}
        for o in self.outcomes:
            key = o.family.value if o.family else "legacy"
            ok, total = summary.get(key, (0, 0))
            summary[key] = (ok + (o.outcome == PASS), total + 1)
        return summary


def _check(binary: SetupBinary, candidate: Path, initial: Path | None, family, circuit, log) -> CircuitOutcome:
    if initial is None or not initial.is_file():
        return CircuitOutcome(family, circuit, SKIP, "initial file not found")
    ok = binary.verify(candidate, initial)
    log.add(circuit, candidate)
    return CircuitOutcome(family, circuit, PASS if ok else FAIL, "" if ok else "verification failed")


def _circuit_of(path: Path) -> str | None:
    try:
        return parse_artifact_name(path.name).circuit
    except UnrecognizedArtifactName:
        return None


def verify_round(
    candidate_dir: Path,
    initial_dir: Path,
    binary: SetupBinary,
    families=None,
    catalog: Catalog = DEFAULT_CATALOG,
    log_path: Path | None = None,
) -> RoundVerdict:
    """Verify every ``.ph2`` of a round against round zero.

    With ``families`` given, every catalog circuit of those families must be
    present. Otherwise coverage is checked for the family directories found.
    Without any family directory the legacy flat layout is scanned.
    """
    candidate_dir, initial_dir = Path(candidate_dir), Path(initial_dir)
    requested = tuple(Family(f) for f in families) if families else None
    log = VerificationLog(candidate_dir)
    verdict = RoundVerdict()

    scan = requested or tuple(f for f in FAMILY_ORDER if (candidate_dir / f.value).is_dir())
    for family in scan:
        family_dir = candidate_dir / family.value
        seen = set()
        for ph2 in sorted(family_dir.glob(f"*{COMMITMENT_EXT}")):
            circuit = _circuit_of(ph2)
            if circuit is None:
                verdict.outcomes.append(CircuitOutcome(family, ph2.stem, FAIL, "unrecognized file name"))
                continue
            seen.add(circuit)
            initial = initial_dir / family.value / initial_name(circuit)
            verdict.outcomes.append(_check(binary, ph2, initial, family, circuit, log))
        for circuit in catalog.names(family):
            if circuit not in seen:
                verdict.outcomes.append(CircuitOutcome(family, circuit, MISSING, "no candidate file"))

    if not scan:
        logger.info("no family directories, scanning flat layout", extra={"dir": str(candidate_dir)})
        for ph2 in sorted(candidate_dir.glob(f"*{COMMITMENT_EXT}")):
            circuit = _circuit_of(ph2)
            if circuit is None:
                verdict.outcomes.append(CircuitOutcome(None, ph2.stem, FAIL, "unrecognized file name"))
                continue
            found = [
                (f, initial_dir / f.value / initial_name(circuit))
                for f in FAMILY_ORDER
                if (initial_dir / f.value / initial_name(circuit)).is_file()
            ]
            family, initial = found[0] if found else (None, None)
            verdict.outcomes.append(_check(binary, ph2, initial, family, circuit, log))

    for o in verdict.outcomes:
        VERIFY_OUTCOMES.labels(o.family.value if o.family else "legacy", o.outcome).inc()
        if o.outcome != PASS:
            logger.warning("circuit not verified", extra={"circuit": o.circuit, "outcome": o.outcome, "detail": o.detail})

    if log_path is not None:
        verdict.log_path = Path(log_path)
        verdict.log_sha256 = log.write(log_path)
    return verdict


def _fetch_initial(store: BlobStore, initial_dir: Path) -> None:
    if initial_dir.is_dir() and any(initial_dir.iterdir()):
        return
    logger.info("initial contribution directory not found, downloading", extra={"dir": str(initial_dir)})
    if not store.download_tree(contribution_key(INITIAL_ID), initial_dir):
        raise MissingPredecessorState(
            "could not download the round-zero contribution",
            remedy="Run `ceremony init` and `ceremony upload` first, or check the bucket.",
        )


def required_families(contribution_id: str, candidate_dir: Path, initial_dir: Path, ledger=None):
    """Families a round must cover when none were named.

    The latest issuance in the ledger wins. Without one, every family
    initialized in round zero is required. A legacy flat round returns None.
    """
    candidate_dir = Path(candidate_dir)
    has_family_dirs = any((candidate_dir / f.value).is_dir() for f in FAMILY_ORDER)
    if not has_family_dirs and any(candidate_dir.glob(f"*{COMMITMENT_EXT}")):
        return None
    if ledger is not None:
        issued = ledger.issued(contribution_id)
        if issued:
            return [Family(f) for f in issued[-1].families.split(",") if f]
    return [f for f in FAMILY_ORDER if (Path(initial_dir) / f.value).is_dir()] or None


def verify_contribution(
    contribution_id: str,
    contributions_dir: Path,
    initial_dir: Path,
    binary: SetupBinary,
    store: BlobStore | None = None,
    families=None,
    catalog: Catalog = DEFAULT_CATALOG,
    ledger=None,
    log_path: Path | None = None,
) -> RoundVerdict:
    """Coordinator check of one round, local copy first, then the store."""
    initial_dir = Path(initial_dir)
    if store is not None:
        _fetch_initial(store, initial_dir)

    local = Path(contributions_dir) / contribution_id
    if local.is_dir() or store is None:
        logger.info("using local contribution", extra={"dir": str(local)})
        required = families or required_families(contribution_id, local, initial_dir, ledger)
        verdict = verify_round(local, initial_dir, binary, required, catalog, log_path)
    else:
        with tempfile.TemporaryDirectory(prefix="verify_temp_") as tmp:
            fetched = store.download_tree(contribution_key(contribution_id), Path(tmp))
            logger.info("downloaded contribution", extra={"contribution": contribution_id, "files": len(fetched)})
            required = families or required_families(contribution_id, Path(tmp), initial_dir, ledger)
            verdict = verify_round(Path(tmp), initial_dir, binary, required, catalog, log_path)

    if ledger is not None:
        ledger.record_verdict(contribution_id, [(o.family or "legacy", o.circuit, o.outcome, o.detail) for o in verdict.outcomes])
    return verdict


@dataclass
class LocalVerification:
    verdict: RoundVerdict
    attestation_path: Path | None = None
    attestation_sha256: str | None = None
    comparison: list = field(default_factory=list)


def verify_local(
    verify_dir: Path,
    initial_dir: Path,
    binary: SetupBinary,
    log_path: Path,
    attestation_path: Path | None = None,
    expected_path: Path | None = None,
) -> LocalVerification:
    """Contributor check of the inputs retained by the last round.

    Only the families present are checked and catalog coverage is not
    enforced.
    """
    verdict = verify_round(verify_dir, initial_dir, binary, log_path=log_path, catalog=Catalog({}))
    result = LocalVerification(verdict)
    if attestation_path is not None and Path(attestation_path).is_file():
        result.attestation_path = Path(attestation_path)
        result.attestation_sha256 = sha256_file(attestation_path)
        if expected_path is not None and Path(expected_path).is_file():
            local = AttestationRecord.load(attestation_path).hashes()
            expected = AttestationRecord.load(expected_path).hashes()
            result.comparison = compare_attestations(local, expected)
    return result
