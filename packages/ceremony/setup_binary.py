"""Wrappers around the external setup binary and the prover tool.

The setup binary does all of the cryptography; this module only shapes
arguments, times the calls and turns exit codes into outcomes.
"""
import logging
import os
import shutil
import time
from pathlib import Path

from .catalog import CircuitIdentity
from .errors import ConfigurationError, SetupCommandFailed
from .metrics import SETUP_COMMAND_TIME
from .utils.process import check_command, require_tool, run_command

logger = logging.getLogger(__name__)

PROVING_SYSTEM_WRITTEN = "Proving system written"


class SetupBinary:
    def __init__(self, path: Path):
        path = Path(path)
        if not path.is_file() or not os.access(path, os.X_OK):
            raise ConfigurationError(
                f"setup binary not found or not executable: {path}",
                remedy="Build it with `ceremony contribute --build-binary` or set SETUP_BIN.",
            )
        self.path = path

    def _run(self, command: str, *args, cwd: Path | None = None):
        start = time.time()
        try:
            return run_command([self.path, command, *args], cwd=cwd)
        finally:
            SETUP_COMMAND_TIME.labels(command).observe(time.time() - start)

    def _check(self, command: str, *args, cwd: Path | None = None):
        proc = self._run(command, *args, cwd=cwd)
        if proc.returncode != 0:
            output = (proc.stdout or "") + (proc.stderr or "")
            raise SetupCommandFailed(f"{command} failed (rc={proc.returncode})", proc.returncode, output[-4000:])
        return proc

    def phase1_import(self, ptau: Path, ph1: Path) -> Path:
        self._check("p1i", ptau, ph1)
        return Path(ph1)

    def phase2_new(self, ph1: Path, r1cs: Path, ph2: Path) -> Path:
        self._check("p2n", ph1, r1cs, ph2)
        return Path(ph2)

    def contribute(self, ph2_in: Path, ph2_out: Path) -> str:
        """Apply fresh entropy. Returns the contribution hash (last output line).

        A missing output file is detected by the caller, not here.
        """
        proc = self._run("p2c", ph2_in, ph2_out)
        lines = ((proc.stdout or "") + (proc.stderr or "")).strip().splitlines()
        if proc.returncode != 0:
            logger.error("p2c failed", extra={"input": Path(ph2_in).name, "rc": proc.returncode})
        return lines[-1].strip() if lines else ""

    def verify(self, candidate: Path, initial: Path) -> bool:
        proc = self._run("p2v", candidate, initial)
        if proc.returncode != 0:
            logger.info(
                "verification rejected",
                extra={"candidate": Path(candidate).name, "output": (proc.stdout + proc.stderr)[-1000:]},
            )
        return proc.returncode == 0

    def extract_keys(self, ph2: Path, workdir: Path) -> tuple[Path, Path]:
        """Run ``key`` in ``workdir``; the binary writes ``pk`` and ``vk`` there."""
        workdir = Path(workdir)
        self._check("key", Path(ph2).resolve(), cwd=workdir)
        pk, vk = workdir / "pk", workdir / "vk"
        if not pk.is_file() or not vk.is_file():
            raise SetupCommandFailed(f"key extraction for {Path(ph2).name} wrote no pk/vk")
        return pk, vk

    @classmethod
    def build_from_source(cls, repo: str, dest_dir: Path, ref: str | None = None) -> "SetupBinary":
        """Clone the setup repository and ``go build`` it."""
        require_tool("git", "Install git.")
        require_tool("go", "Install Go from https://go.dev/dl/.")
        dest_dir = Path(dest_dir)
        binary = dest_dir / dest_dir.name
        if binary.is_file():
            return cls(binary)
        if dest_dir.exists():
            shutil.rmtree(dest_dir)
        logger.info("building setup binary", extra={"repo": repo, "ref": ref})
        check_command(["git", "clone", "--depth", "1", repo, dest_dir], "git clone")
        if ref:
            check_command(["git", "fetch", "--depth", "1", "origin", ref], "git fetch", cwd=dest_dir)
            check_command(["git", "checkout", "FETCH_HEAD"], "git checkout", cwd=dest_dir)
        check_command(["go", "build", "-o", binary.name], "go build", cwd=dest_dir)
        return cls(binary)


class ProverTool:
    """The prover's ``go run main.go`` entry point: r1cs generation and key import."""

    def __init__(self, prover_dir: Path):
        prover_dir = Path(prover_dir) if prover_dir else None
        if prover_dir is None or not (prover_dir / "main.go").is_file():
            raise ConfigurationError(
                f"prover sources not found: {prover_dir}",
                remedy="Set PROVER_DIR to the directory holding the prover's main.go.",
            )
        require_tool("go", "Install Go from https://go.dev/dl/.")
        self.prover_dir = prover_dir

    def _go(self, command: str, *args):
        start = time.time()
        try:
            return run_command(["go", "run", "main.go", command, *args], cwd=self.prover_dir)
        finally:
            SETUP_COMMAND_TIME.labels(command).observe(time.time() - start)

    def generate_r1cs(self, identity: CircuitIdentity, output: Path) -> Path:
        proc = self._go("r1cs", *identity.generator_args(), "--output", Path(output).resolve())
        if proc.returncode != 0 or not Path(output).is_file():
            raise SetupCommandFailed(
                f"r1cs generation failed for {identity.name}", proc.returncode, (proc.stdout + proc.stderr)[-4000:]
            )
        return Path(output)

    def import_setup(
        self, identity: CircuitIdentity, r1cs: Path, pk: Path, vk: Path, output: Path, vkey_output: Path
    ) -> bool:
        proc = self._go(
            "import-setup",
            *identity.import_args(),
            "--r1cs", Path(r1cs).resolve(),
            "--pk", Path(pk).resolve(),
            "--vk", Path(vk).resolve(),
            "--output", Path(output).resolve(),
            "--vkey-output", Path(vkey_output).resolve(),
        )
        written = PROVING_SYSTEM_WRITTEN in (proc.stdout or "") + (proc.stderr or "")
        if not written:
            logger.error("import-setup failed", extra={"circuit": identity.name, "output": (proc.stdout + proc.stderr)[-2000:]})
        return written and Path(output).is_file() and Path(vkey_output).is_file()
