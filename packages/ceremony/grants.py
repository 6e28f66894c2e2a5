"""Coordinator side: turn the predecessor's files into a contributor's URLs file."""
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

from .attestation import ATTESTATION_FILE
from .catalog import FAMILY_ORDER, Family
from .chain import COMMITMENT_EXT, EVALS_EXT, ContributionId, next_id, parse_artifact_name
from .errors import MissingPredecessorState
from .schemas import ExchangeManifest, FamilyGrants, TransferGrant
from .storage import BlobStore, contribution_key

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY = timedelta(days=7)


def detect_families(store: BlobStore, predecessor_id: str) -> tuple[Family, ...]:
    present = set(store.children(contribution_key(predecessor_id)))
    return tuple(f for f in FAMILY_ORDER if f.value in present)


def _grant(store: BlobStore, key: str, mode: str, expiry: timedelta, expires_at: datetime) -> TransferGrant:
    method = "GET" if mode == "read" else "PUT"
    return TransferGrant(path=key, mode=mode, url=store.sign_url(key, method, expiry), expires_at=expires_at)


def family_grants(
    store: BlobStore,
    family: Family,
    predecessor_id: str,
    contribution_id: str,
    expiry: timedelta = DEFAULT_EXPIRY,
    now: datetime | None = None,
) -> FamilyGrants:
    expires_at = (now or datetime.now(timezone.utc)) + expiry
    contributor = ContributionId.parse(contribution_id)
    commitments = store.list_keys(contribution_key(predecessor_id, family.value), COMMITMENT_EXT)
    if not commitments:
        raise MissingPredecessorState(
            f"no {COMMITMENT_EXT} files under {contribution_key(predecessor_id, family.value)}",
            remedy="Check the predecessor id, or upload its state before issuing URLs.",
        )

    grants = []
    for key in commitments:
        filename = key.rsplit("/", 1)[-1]
        artifact = parse_artifact_name(filename)
        grants.append(_grant(store, key, "read", expiry, expires_at))
        evals_key = key[: -len(COMMITMENT_EXT)] + EVALS_EXT
        has_evals = store.exists(evals_key)
        if has_evals:
            grants.append(_grant(store, evals_key, "read", expiry, expires_at))

        produced = artifact.successor(contributor.contributor, contributor.sequence)
        outputs = [produced.filename]
        if has_evals:
            outputs.append(produced.with_extension(EVALS_EXT).filename)
        for name in outputs:
            grants.append(_grant(store, contribution_key(contribution_id, family.value, name), "write", expiry, expires_at))

    grants.append(
        _grant(store, contribution_key(contribution_id, family.value, ATTESTATION_FILE), "write", expiry, expires_at)
    )
    logger.info(
        "issued grants",
        extra={"family": family.value, "contribution": contribution_id, "circuits": len(commitments)},
    )
    return FamilyGrants.from_grants(family, grants)


def manifest_filename(contribution_id: str, families=None) -> str:
    families = list(families or ())
    if len(families) == 1:
        return f"{contribution_id}_{Family(families[0]).value}_urls.json"
    return f"{contribution_id}_urls.json"


def issue_grants(
    store: BlobStore,
    contributor: str,
    predecessor_id: str,
    families=None,
    expiry: timedelta = DEFAULT_EXPIRY,
    output_dir: Path | None = None,
    ledger=None,
    now: datetime | None = None,
) -> ExchangeManifest:
    """Sign every read/write URL the contributor needs and build the URLs file.

    ``families=None`` detects which families the predecessor holds. Fails
    fast: the first missing family aborts the issuance.
    """
    contribution_id = next_id(predecessor_id, contributor)
    selected = tuple(Family(f) for f in families) if families else detect_families(store, predecessor_id)
    if not selected:
        raise MissingPredecessorState(
            f"no families found for predecessor {predecessor_id}",
            remedy="Check the predecessor id, or upload its state before issuing URLs.",
        )

    now = now or datetime.now(timezone.utc)
    per_family = [family_grants(store, f, predecessor_id, contribution_id, expiry, now) for f in selected]
    manifest = ExchangeManifest.build(contributor, predecessor_id, per_family, expires_at=now + expiry)

    path = Path(output_dir) / manifest_filename(contribution_id, families) if output_dir is not None else None
    if ledger is not None:
        ledger.record_issue(contribution_id, contributor, predecessor_id, selected, path, now + expiry)
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(manifest.dump(), encoding="utf-8")
        logger.info("wrote URLs file", extra={"path": str(path)})
    return manifest
