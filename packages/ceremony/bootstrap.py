"""Round zero: constraint systems, powers of tau and the initial commitments."""
import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

from .catalog import DEFAULT_CATALOG, Catalog, Family, families_for_version
from .chain import INITIAL_ID, initial_name
from .errors import MissingPredecessorState, SetupCommandFailed
from .retry import BackoffPolicy
from .setup_binary import ProverTool, SetupBinary
from .storage import BlobStore, contribution_key
from .utils import transfer

logger = logging.getLogger(__name__)


@dataclass
class InitReport:
    version: str
    r1cs_total: int = 0
    r1cs_ok: int = 0
    commitments_total: int = 0
    commitments_ok: int = 0
    failed: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and self.commitments_ok == self.commitments_total > 0


def ensure_ph1(
    binary: SetupBinary,
    ptau_file: Path,
    ph1_file: Path,
    ptau_url: str,
    policy: BackoffPolicy = BackoffPolicy(),
    sleep=time.sleep,
) -> Path:
    """Convert the powers of tau once, downloading the ptau file if needed."""
    ph1_file = Path(ph1_file)
    if ph1_file.is_file():
        return ph1_file
    if not Path(ptau_file).is_file():
        logger.info("downloading powers of tau", extra={"url": ptau_url})
        transfer.download(ptau_url, ptau_file, policy, sleep=sleep)
    logger.info("converting ptau to ph1")
    return binary.phase1_import(ptau_file, ph1_file)


def generate_r1cs(prover: ProverTool, catalog: Catalog, families, r1cs_dir: Path, report: InitReport) -> None:
    r1cs_dir = Path(r1cs_dir)
    r1cs_dir.mkdir(parents=True, exist_ok=True)
    for family in families:
        for identity in catalog.enumerate(family):
            report.r1cs_total += 1
            target = r1cs_dir / f"{identity.name}.r1cs"
            if target.is_file():
                report.r1cs_ok += 1
                continue
            try:
                prover.generate_r1cs(identity, target)
                report.r1cs_ok += 1
            except SetupCommandFailed as exc:
                logger.error("r1cs generation failed", extra={"circuit": identity.name, "rc": exc.returncode})
                report.failed.append(identity.name)


def create_commitments(
    binary: SetupBinary, catalog: Catalog, families, r1cs_dir: Path, ph1: Path, initial_dir: Path, report: InitReport
) -> None:
    for family in families:
        family_dir = Path(initial_dir) / family.value
        (family_dir / "r1cs").mkdir(parents=True, exist_ok=True)
        for identity in catalog.enumerate(family):
            r1cs = Path(r1cs_dir) / f"{identity.name}.r1cs"
            if not r1cs.is_file():
                continue
            report.commitments_total += 1
            ph2 = family_dir / initial_name(identity.name)
            if not ph2.is_file():
                try:
                    binary.phase2_new(ph1, r1cs, ph2)
                except SetupCommandFailed as exc:
                    logger.error("p2n failed", extra={"circuit": identity.name, "rc": exc.returncode})
                    if identity.name not in report.failed:
                        report.failed.append(identity.name)
                    continue
            shutil.copyfile(r1cs, family_dir / "r1cs" / r1cs.name)
            report.commitments_ok += 1


def initialize(
    version: str,
    binary: SetupBinary,
    prover: ProverTool,
    r1cs_dir: Path,
    initial_dir: Path,
    ptau_file: Path,
    ph1_file: Path,
    ptau_url: str,
    catalog: Catalog = DEFAULT_CATALOG,
    policy: BackoffPolicy = BackoffPolicy(),
    sleep=time.sleep,
) -> InitReport:
    """Build round zero for a ceremony version. Existing outputs are kept."""
    families = families_for_version(version)
    report = InitReport(version)
    generate_r1cs(prover, catalog, families, r1cs_dir, report)
    ph1 = ensure_ph1(binary, ptau_file, ph1_file, ptau_url, policy, sleep)
    create_commitments(binary, catalog, families, r1cs_dir, ph1, initial_dir, report)
    logger.info(
        "initialization complete",
        extra={
            "version": version,
            "r1cs": f"{report.r1cs_ok}/{report.r1cs_total}",
            "commitments": f"{report.commitments_ok}/{report.commitments_total}",
        },
    )
    return report


def upload_initial(store: BlobStore, initial_dir: Path, families=None) -> dict[str, int]:
    initial_dir = Path(initial_dir)
    if not initial_dir.is_dir():
        raise MissingPredecessorState(
            f"initial commitments directory not found: {initial_dir}",
            remedy="Run `ceremony init` or `ceremony init --version v1` first.",
        )
    if families:
        selected = [Family(f) for f in families]
        for family in selected:
            if not (initial_dir / family.value).is_dir():
                raise MissingPredecessorState(
                    f"directory not found: {initial_dir / family.value}",
                    remedy="Run `ceremony init` for the matching version first.",
                )
    else:
        selected = [f for f in DEFAULT_CATALOG.families if (initial_dir / f.value).is_dir()]
    if not selected:
        raise MissingPredecessorState(f"no family directories to upload in {initial_dir}")

    uploaded = {}
    for family in selected:
        uploaded[family.value] = store.upload_tree(initial_dir / family.value, contribution_key(INITIAL_ID, family.value))
        logger.info("uploaded initial commitments", extra={"family": family.value, "files": uploaded[family.value]})
    return uploaded
