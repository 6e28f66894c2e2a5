import json
import logging
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Optional

import sentry_sdk
import typer
from pydantic import ValidationError
from pythonjsonlogger import jsonlogger

from . import bootstrap, finalizer, grants, verifier
from .attestation import VERIFICATION_LOG_FILE
from .catalog import families_for_version, parse_families
from .config import Settings, load_settings
from .db import Ledger
from .errors import CeremonyError, ConfigurationError
from .executor import Workspace, execute_round
from .metrics import start_metrics_server
from .retry import BackoffPolicy
from .schemas import ExchangeManifest
from .setup_binary import ProverTool, SetupBinary
from .storage import open_store

app = typer.Typer(help="Phase-2 trusted-setup ceremony tooling.")

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(jsonlogger.JsonFormatter())
    logging.basicConfig(level=getattr(logging, level, logging.INFO), handlers=[handler], force=True)


@app.callback()
def main(ctx: typer.Context):
    settings = load_settings()
    configure_logging(settings.log_level)
    sentry_sdk.init(dsn=settings.sentry_dsn)
    start_metrics_server(settings.metrics_port)
    ctx.obj = settings


@contextmanager
def handle_errors():
    try:
        yield
    except CeremonyError as exc:
        typer.echo(f"Error: {exc}")
        if exc.remedy:
            typer.echo(exc.remedy)
        raise typer.Exit(code=1)
    except ValidationError as exc:
        typer.echo(f"Error: invalid URLs file: {exc}")
        raise typer.Exit(code=1)


def _policy(settings: Settings) -> BackoffPolicy:
    return BackoffPolicy(
        base_delay=settings.transfer_base_delay,
        ceiling=settings.transfer_max_delay,
        max_attempts=settings.transfer_max_retries,
    )


def _families(selector: Optional[str]):
    """None for "all" so callers can auto-detect."""
    if selector is None or selector.strip().lower() in ("", "all"):
        return None
    try:
        return parse_families(selector)
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc


def _binary(settings: Settings, workspace: Optional[Workspace] = None) -> SetupBinary:
    if Path(settings.setup_bin).is_file():
        return SetupBinary(settings.setup_bin)
    if workspace is not None:
        built = workspace.root / "semaphore-mtb-setup" / "semaphore-mtb-setup"
        if built.is_file():
            return SetupBinary(built)
    return SetupBinary(settings.setup_bin)


@app.command()
def init(
    ctx: typer.Context,
    version: str = typer.Option("v2", help="Ceremony version: v1 or v2 (v2 includes batch circuits)."),
):
    """Generate constraint systems and round-zero commitments."""
    settings: Settings = ctx.obj
    with handle_errors():
        try:
            families_for_version(version)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        binary = SetupBinary(settings.setup_bin)
        prover = ProverTool(settings.prover_dir)
        report = bootstrap.initialize(
            version,
            binary,
            prover,
            settings.r1cs_dir,
            settings.initial_dir,
            settings.ptau_file,
            settings.ph1_file,
            settings.ptau_url,
            policy=_policy(settings),
        )
    typer.echo(f"R1CS files: {report.r1cs_ok}/{report.r1cs_total}")
    typer.echo(f"Initial commitments: {report.commitments_ok}/{report.commitments_total}")
    for name in report.failed:
        typer.echo(f"  failed: {name}")
    typer.echo(f"Commitments: {settings.initial_dir}")
    if not report.ok:
        raise typer.Exit(code=1)


@app.command()
def upload(ctx: typer.Context, family: str = typer.Argument("all", help="v1, v2, batch or all")):
    """Upload the round-zero state to the object store."""
    settings: Settings = ctx.obj
    with handle_errors():
        counts = bootstrap.upload_initial(open_store(settings), settings.initial_dir, _families(family))
    for name, count in counts.items():
        typer.echo(f"{name}: {count} files uploaded")


@app.command("issue-grants")
def issue_grants(
    ctx: typer.Context,
    contributor: str = typer.Argument(...),
    previous: str = typer.Argument(..., help="Predecessor contribution id, e.g. 0000_initial"),
    family: str = typer.Argument("all", help="v1, v2, batch or all"),
    output_dir: Path = typer.Option(Path("."), help="Where to write the URLs file."),
):
    """Sign read/write URLs for the next contributor."""
    settings: Settings = ctx.obj
    with handle_errors():
        manifest = grants.issue_grants(
            open_store(settings),
            contributor,
            previous,
            _families(family),
            expiry=timedelta(days=settings.url_expiry_days),
            output_dir=output_dir,
            ledger=Ledger(settings.database_url),
        )
    path = output_dir / grants.manifest_filename(manifest.contribution_id, _families(family))
    typer.echo(f"Contribution ID: {manifest.contribution_id}")
    for entry in manifest.families():
        typer.echo(f"  {entry.version.value}: {len(entry.download)} downloads, {len(entry.upload)} uploads")
    typer.echo(f"URLs file: {path}")
    if manifest.expires_at:
        typer.echo(f"Expires: {manifest.expires_at.isoformat()}")


@app.command()
def contribute(
    ctx: typer.Context,
    urls_file: Path = typer.Argument(..., exists=True, dir_okay=False),
    family: Optional[str] = typer.Option(None, help="Only process this family."),
    build_binary: bool = typer.Option(False, help="Clone and build the setup binary into the workspace."),
):
    """Add your contribution to every circuit in the URLs file."""
    settings: Settings = ctx.obj
    with handle_errors():
        manifest = ExchangeManifest.model_validate_json(urls_file.read_text(encoding="utf-8"))
        typer.echo(f"Contributor: {manifest.contributor}")
        typer.echo(f"Contribution ID: {manifest.contribution_id}")
        ws = Workspace.create(Path.cwd())
        if build_binary:
            binary = SetupBinary.build_from_source(
                settings.semaphore_repo, ws.root / "semaphore-mtb-setup", settings.semaphore_ref
            )
        else:
            binary = _binary(settings)
        result = execute_round(manifest, binary, _families(family), workspace=ws, policy=_policy(settings))

    typer.echo("Contribution Complete!")
    typer.echo(result.attestation.render())
    typer.echo(f"Your hashes are saved in: {result.workspace.attestation_path}")
    typer.echo(f"SHA256(contribution_hashes.txt): {result.attestation_sha256}")
    typer.echo(f"Offline verification inputs saved in: {result.workspace.verify_inputs()}")
    typer.echo(
        f"Publish your attestation: copy the hashes file to attestations/{result.contribution_id}/ and open a PR."
    )


def _print_verdict(verdict: verifier.RoundVerdict) -> None:
    for o in verdict.outcomes:
        line = f"{o.outcome.upper()}: {o.circuit}"
        typer.echo(f"{line} - {o.detail}" if o.detail else line)
    for name, (ok, total) in verdict.by_family().items():
        typer.echo(f"{name}: {ok}/{total} verified")
    typer.echo(f"Total: {verdict.counts()['pass']}/{len(verdict.outcomes)} circuits verified")
    if verdict.failed:
        typer.echo(f"Failed: {verdict.failed} circuits")
    if verdict.log_sha256:
        typer.echo(f"Verification log: {verdict.log_path}")
        typer.echo(f"SHA256({VERIFICATION_LOG_FILE}): {verdict.log_sha256}")


@app.command()
def verify(
    ctx: typer.Context,
    contribution_id: str = typer.Argument(...),
    family: Optional[str] = typer.Option(None, help="Only verify this family."),
):
    """Verify a contribution against the round-zero parameters."""
    settings: Settings = ctx.obj
    with handle_errors():
        verdict = verifier.verify_contribution(
            contribution_id,
            settings.contributions_dir,
            settings.initial_dir,
            _binary(settings),
            store=open_store(settings),
            families=_families(family),
            ledger=Ledger(settings.database_url),
            log_path=settings.root / f"{contribution_id}_{VERIFICATION_LOG_FILE}",
        )
    _print_verdict(verdict)
    if not verdict.passed:
        raise typer.Exit(code=1)


@app.command("verify-local")
def verify_local(
    ctx: typer.Context,
    verify_dir: Optional[Path] = typer.Argument(None, help="Defaults to the latest workspace's verify_inputs."),
    expected: Optional[Path] = typer.Option(None, help="Published attestation to compare against."),
):
    """Re-verify the inputs retained by your last contribution."""
    settings: Settings = ctx.obj
    with handle_errors():
        ws = Workspace.latest(Path.cwd())
        if verify_dir is None:
            if ws is None:
                raise ConfigurationError(
                    "no contribution workspace found",
                    remedy="Run `ceremony contribute` first, or pass the verify_inputs directory.",
                )
            verify_dir = ws.verify_inputs()
        result = verifier.verify_local(
            verify_dir,
            settings.initial_dir,
            _binary(settings, ws),
            log_path=Path.cwd() / VERIFICATION_LOG_FILE,
            attestation_path=ws.attestation_path if ws else None,
            expected_path=expected,
        )
    _print_verdict(result.verdict)
    if result.attestation_sha256:
        typer.echo(f"Hashes file: {result.attestation_path}")
        typer.echo(f"SHA256(contribution_hashes.txt): {result.attestation_sha256}")
    for status, name, local_hash, expected_hash in result.comparison:
        typer.echo(f"{status + ':':<15}{name} -> local={local_hash} expected={expected_hash}")
    if not result.verdict.passed:
        raise typer.Exit(code=1)


@app.command()
def finalize(
    ctx: typer.Context,
    contribution_id: Optional[str] = typer.Argument(None, help="Defaults to the latest contribution."),
    family: Optional[str] = typer.Option(None, help="Only finalize this family."),
):
    """Extract keys from the final round and build deployable key files."""
    settings: Settings = ctx.obj
    with handle_errors():
        store = open_store(settings)
        contribution_id = contribution_id or finalizer.latest_contribution(settings.contributions_dir, store)
        if contribution_id is None:
            raise ConfigurationError("no contribution found to finalize")
        report = finalizer.finalize(
            contribution_id,
            settings.contributions_dir,
            settings.initial_dir,
            settings.r1cs_dir,
            settings.keys_dir,
            settings.output_dir,
            _binary(settings),
            ProverTool(settings.prover_dir),
            deploy_dir=settings.deploy_dir,
            families=_families(family),
            store=store,
        )
    typer.echo(f"Contribution: {report.contribution_id}")
    typer.echo(f"Key extraction: {report.extracted} extracted, {len(report.extract_failed)} failed")
    typer.echo(f"Key building: {report.built} built, {report.skipped} existing, {len(report.build_failed)} failed")
    for name in report.missing:
        typer.echo(f"  missing: {name}")
    for name in report.extract_failed + report.build_failed:
        typer.echo(f"  failed: {name}")
    if settings.deploy_dir:
        typer.echo(f"Deployed {len(report.deployed)} keys, CHECKSUM has {report.checksum_entries} entries")
    if not report.ok:
        raise typer.Exit(code=1)


@app.command()
def audit(ctx: typer.Context, contribution_id: str = typer.Argument(...)):
    """Show what the ledger knows about a contribution."""
    settings: Settings = ctx.obj
    ledger = Ledger(settings.database_url)
    issued = ledger.issued(contribution_id)
    checks = ledger.audits(contribution_id)
    if not issued and not checks:
        typer.echo("not found")
        raise typer.Exit(code=1)
    data = {
        "contribution_id": contribution_id,
        "issued": [
            {
                "contributor": row.contributor,
                "previous_contribution": row.previous_contribution,
                "families": row.families.split(","),
                "issued_at": row.issued_at.isoformat(),
                "expires_at": row.expires_at.isoformat() if row.expires_at else None,
            }
            for row in issued
        ],
        "verification": [
            {"family": row.family, "circuit": row.circuit, "outcome": row.outcome, "detail": row.detail}
            for row in checks
        ],
    }
    typer.echo(json.dumps(data))


@app.command("check-checksums")
def check_checksums(ctx: typer.Context, deploy_dir: Optional[Path] = typer.Argument(None)):
    """Check deployed key files against their CHECKSUM manifest."""
    settings: Settings = ctx.obj
    deploy_dir = deploy_dir or settings.deploy_dir
    if deploy_dir is None or not (Path(deploy_dir) / finalizer.CHECKSUM_FILE).is_file():
        typer.echo(f"Error: no {finalizer.CHECKSUM_FILE} found in {deploy_dir}")
        raise typer.Exit(code=1)
    status = finalizer.check_checksums(deploy_dir)
    bad = {name: s for name, s in status.items() if s != "ok"}
    for name, s in bad.items():
        typer.echo(f"{s.upper()}: {name}")
    typer.echo(f"{len(status) - len(bad)}/{len(status)} files match")
    if bad:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
