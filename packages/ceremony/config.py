import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field

DEFAULT_PTAU_URL = "https://storage.googleapis.com/zkevm/ptau/powersOfTau28_hez_final_19.ptau"
DEFAULT_SEMAPHORE_REPO = "https://github.com/lightprotocol/semaphore-mtb-setup.git"


class Settings(BaseModel):
    """Ceremony configuration. Read once from the environment, then passed around."""

    root: Path = Field(..., examples=["/srv/ceremony"])
    contributions_dir: Path
    r1cs_dir: Path
    keys_dir: Path
    output_dir: Path
    deploy_dir: Optional[Path] = None
    local_store_dir: Path

    setup_bin: Path
    prover_dir: Optional[Path] = None
    ptau_file: Path
    ptau_url: str = DEFAULT_PTAU_URL
    semaphore_repo: str = DEFAULT_SEMAPHORE_REPO
    semaphore_ref: Optional[str] = None

    bucket: Optional[str] = None
    service_account_key: Optional[Path] = None
    url_expiry_days: int = 7

    transfer_max_retries: int = 10
    transfer_base_delay: float = 5.0
    transfer_max_delay: float = 300.0

    database_url: str
    metrics_port: Optional[int] = None
    sentry_dsn: Optional[str] = None
    log_level: str = "INFO"

    @property
    def initial_dir(self) -> Path:
        return self.contributions_dir / "0000_initial"

    @property
    def ph1_file(self) -> Path:
        return self.ptau_file.with_suffix(".ph1")


def _path(env: Mapping[str, str], name: str, default: Path) -> Path:
    value = env.get(name)
    return Path(value).expanduser() if value else default


def _optional_path(env: Mapping[str, str], name: str) -> Optional[Path]:
    value = env.get(name)
    return Path(value).expanduser() if value else None


def _service_account_key(env: Mapping[str, str]) -> Optional[Path]:
    # Prefer explicit GOOGLE_APPLICATION_CREDENTIALS; fall back to a local key file
    explicit = env.get("GOOGLE_APPLICATION_CREDENTIALS")
    if explicit and Path(explicit).is_file():
        return Path(explicit)
    local = Path("service-account-key.json")
    if local.is_file():
        return local.resolve()
    return None


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if env is None else env
    root = _path(env, "CEREMONY_ROOT", Path.cwd()).resolve()
    contributions = _path(env, "CEREMONY_CONTRIBUTIONS_DIR", root / "contributions")
    ptau = _path(env, "PTAU_FILE", root / "semaphore-mtb-setup" / "powersOfTau28_hez_final_19.ptau")

    metrics_port = env.get("CEREMONY_METRICS_PORT")
    return Settings(
        root=root,
        contributions_dir=contributions,
        r1cs_dir=_path(env, "CEREMONY_R1CS_DIR", root / "ceremony" / "r1cs"),
        keys_dir=_path(env, "CEREMONY_KEYS_DIR", root / "proving-keys"),
        output_dir=_path(env, "CEREMONY_OUTPUT_DIR", root / "light-protocol-keys"),
        deploy_dir=_optional_path(env, "CEREMONY_DEPLOY_DIR"),
        local_store_dir=_path(env, "CEREMONY_LOCAL_STORE", root / "store"),
        setup_bin=_path(env, "SETUP_BIN", root / "semaphore-mtb-setup" / "semaphore-mtb-setup"),
        prover_dir=_optional_path(env, "PROVER_DIR"),
        ptau_file=ptau,
        ptau_url=env.get("PTAU_URL", DEFAULT_PTAU_URL),
        semaphore_repo=env.get("SEMAPHORE_REPO", DEFAULT_SEMAPHORE_REPO),
        semaphore_ref=env.get("SEMAPHORE_REF") or None,
        bucket=env.get("BUCKET") or None,
        service_account_key=_service_account_key(env),
        url_expiry_days=int(env.get("URL_EXPIRY_DAYS", "7")),
        transfer_max_retries=int(env.get("TRANSFER_MAX_RETRIES", "10")),
        transfer_base_delay=float(env.get("TRANSFER_BASE_DELAY", "5")),
        transfer_max_delay=float(env.get("TRANSFER_MAX_DELAY", "300")),
        database_url=env.get("DATABASE_URL") or f"sqlite:///{root / 'ceremony.db'}",
        metrics_port=int(metrics_port) if metrics_port else None,
        sentry_dsn=env.get("SENTRY_DSN") or None,
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
    )
