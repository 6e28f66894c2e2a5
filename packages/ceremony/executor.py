"""Contributor side: download the predecessor, contribute, upload the result."""
import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

from .attestation import ATTESTATION_FILE, AttestationRecord
from .catalog import Family
from .chain import COMMITMENT_EXT, EVALS_EXT, ChainLink, parse_artifact_name
from .errors import CeremonyError, ContributionNotProduced, EmptyRound
from .retry import BackoffPolicy
from .schemas import ExchangeManifest, FamilyGrants
from .setup_binary import SetupBinary
from .utils import transfer

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "ceremony_contribution_"
REMEDY = (
    "Please cleanup the workspace and restart the entire process afterwards. "
    "If the issues persist, please contact the coordinator. Clean up via: rm -rf {workspace}"
)


@dataclass
class Workspace:
    root: Path

    @classmethod
    def create(cls, base: Path, now: float | None = None) -> "Workspace":
        root = Path(base) / f"{WORKSPACE_PREFIX}{int(now if now is not None else time.time())}"
        ws = cls(root)
        for d in (ws.download, ws.output, ws.root / "verify_inputs"):
            d.mkdir(parents=True, exist_ok=True)
        return ws

    @classmethod
    def latest(cls, base: Path) -> "Workspace | None":
        found = sorted(p for p in Path(base).glob(f"{WORKSPACE_PREFIX}*") if p.is_dir())
        return cls(found[-1]) if found else None

    @property
    def download(self) -> Path:
        return self.root / "download"

    @property
    def output(self) -> Path:
        return self.root / "output"

    @property
    def attestation_path(self) -> Path:
        return self.output / ATTESTATION_FILE

    def verify_inputs(self, family: Family | None = None) -> Path:
        base = self.root / "verify_inputs"
        return base / Family(family).value if family else base

    def remedy(self) -> str:
        return REMEDY.format(workspace=self.root)


@dataclass
class RoundResult:
    contribution_id: str
    workspace: Workspace
    attestation: AttestationRecord
    attestation_sha256: str
    link: ChainLink
    families: list[Family] = field(default_factory=list)
    uploaded: list[str] = field(default_factory=list)


def _download_family(ws: Workspace, grants: FamilyGrants, policy: BackoffPolicy, sleep) -> None:
    for filename, url in grants.download.items():
        transfer.download(url, ws.download / filename, policy, sleep=sleep)


def _contribute_family(
    ws: Workspace, binary: SetupBinary, link: ChainLink, record: AttestationRecord, family: Family
) -> int:
    count = 0
    for ph2 in sorted(ws.download.glob(f"*{COMMITMENT_EXT}")):
        artifact = parse_artifact_name(ph2.name)
        produced = artifact.successor(link.contributor, link.sequence)
        output = ws.output / produced.filename
        logger.info("contributing", extra={"family": family.value, "circuit": artifact.circuit})
        contribution_hash = binary.contribute(ph2, output)
        if not output.is_file():
            raise ContributionNotProduced(f"contribution failed for {artifact.circuit} (output file not created)")
        evals = ws.output / produced.with_extension(EVALS_EXT).filename
        link.add(artifact.circuit, output, evals if evals.is_file() else None)
        record.append(artifact.circuit, contribution_hash)
        count += 1
    return count


def _upload_family(ws: Workspace, grants: FamilyGrants, record: AttestationRecord, policy, sleep) -> list[str]:
    uploaded = []
    for filename, url in grants.upload.items():
        local = ws.output / filename
        if filename == ATTESTATION_FILE:
            record.write(local)
        if not local.is_file():
            if filename.endswith(EVALS_EXT):
                logger.info("no evals produced, skipping upload", extra={"file": filename})
                continue
            raise ContributionNotProduced(f"expected output file not found: {filename}")
        transfer.upload(local, url, policy, sleep=sleep)
        uploaded.append(filename)
    return uploaded


def _retain_inputs(ws: Workspace, family: Family) -> None:
    dest = ws.verify_inputs(family)
    dest.mkdir(parents=True, exist_ok=True)
    for ph2 in ws.download.glob(f"*{COMMITMENT_EXT}"):
        shutil.copy2(ph2, dest / ph2.name)
    for leftover in ws.download.iterdir():
        if leftover.is_file():
            leftover.unlink()


def execute_round(
    manifest: ExchangeManifest,
    binary: SetupBinary,
    families=None,
    workspace: Workspace | None = None,
    base_dir: Path | None = None,
    policy: BackoffPolicy = BackoffPolicy(),
    sleep=time.sleep,
) -> RoundResult:
    """Run one contribution over the selected families, one family at a time.

    Families outside the selection are never downloaded or uploaded. Any
    failure aborts the round; the raised error carries the clean-up hint.
    """
    ws = workspace or Workspace.create(base_dir or Path.cwd())
    link = ChainLink.start(manifest.previous_contribution, manifest.contributor)
    record = AttestationRecord(link.id, manifest.contributor)
    result = RoundResult(link.id, ws, record, "", link)

    selected = manifest.select(families)
    if not selected:
        raise EmptyRound("the URLs file holds none of the requested families", remedy=ws.remedy())

    try:
        for grants in selected:
            family = grants.version
            logger.info("processing family", extra={"family": family.value, "contribution": link.id})
            _download_family(ws, grants, policy, sleep)
            count = _contribute_family(ws, binary, link, record, family)
            if count == 0:
                raise EmptyRound(f"no {family.value} circuits were processed")
            result.uploaded += _upload_family(ws, grants, record, policy, sleep)
            _retain_inputs(ws, family)
            result.families.append(family)
            logger.info("family complete", extra={"family": family.value, "circuits": count})
    except CeremonyError as exc:
        exc.remedy = " ".join(filter(None, [exc.remedy, ws.remedy()]))
        raise

    result.attestation_sha256 = record.write(ws.attestation_path)
    link.seal()
    return result
